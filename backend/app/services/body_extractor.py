"""
Cascading body extractor.

Recovers the human-authored part of an inbound email from whatever the
provider handed over.  Three strategies run in strict priority order and the
first non-empty result wins:

  1. Direct field:      the text / plain / body-plain form fields (then body,
                         then html converted to text).
  2. Embedded message:  the first text/plain (else text/html) MIME part of
                         the raw message in the "email" field, decoded per
                         its own Content-Transfer-Encoding.
  3. Heuristic scan:    line-by-line hunt through the raw message (or the
                         whole payload) for something that reads like prose.

Strategy 3 can misclassify content, so it only runs once 1 and 2 have both
come back empty.  Every strategy cuts the text at the first quoted-reply
marker ("On ... wrote:" or a line starting with ">").

None of these functions raise on malformed input.
"""

import base64
import binascii
import logging
import re
from typing import Callable, Optional

from app.services.content_decoder import decode, html_to_text, normalize_newlines

logger = logging.getLogger(__name__)


# Field names tried by strategy 1, in priority order.
DIRECT_TEXT_FIELDS = ("text", "plain", "body-plain", "body")
DIRECT_HTML_FIELDS = ("html", "body-html")

# Header keys stripped from a body even after the header/body separator.
# Forwarded and nested messages reintroduce these inside the body.
COMMON_HEADER_KEYS = frozenset({
    "from", "to", "cc", "bcc", "subject", "date", "sent", "reply-to",
    "message-id", "in-reply-to", "references", "received", "return-path",
    "mime-version", "content-type", "content-transfer-encoding",
    "content-disposition", "content-id", "dkim-signature", "delivered-to",
    "authentication-results", "arc-seal", "arc-message-signature",
    "arc-authentication-results", "x-received", "x-gm-message-state",
    "x-google-smtp-source", "x-mailer", "thread-topic", "thread-index",
})

_HEADER_LINE_RE = re.compile(r"^(?P<key>[A-Za-z][A-Za-z0-9-]*):[ \t]")
_QUOTE_INTRO_RE = re.compile(r"^On\s.*\bwrote:\s*$", re.IGNORECASE)
_FROM_WROTE_RE = re.compile(r"^From:.*\bwrote:\s*$", re.IGNORECASE)
_BARE_ADDRESS_RE = re.compile(r"^<?[\w.+'-]+@[\w-]+(?:\.[\w-]+)+>?$")
_NAMED_ADDRESS_RE = re.compile(r"^[^<>]*<[^<>@\s]+@[^<>\s]+>$")
_JSON_LINE_RE = re.compile(r"^(?:\{.*\}|\[.*\])$")
_LETTER_RUN_RE = re.compile(r"[A-Za-z]{4,}")
_BASE64_BLOB_RE = re.compile(r"^[A-Za-z0-9+/=]{30,}$")
_BOUNDARY_LINE_RE = re.compile(r"^--\S*$")


# ---------------------------------------------------------------------------
# Line classification helpers
# ---------------------------------------------------------------------------

def is_quote_marker(line: str, next_line: str = "") -> bool:
    """
    True when `line` starts a quoted reply.

    Gmail wraps long attributions across two lines ("On Mon, Jun 1, 2020 at
    9:00 AM Jane Doe <" / "jane@example.com> wrote:"), so a line starting
    with "On " whose successor ends in "wrote:" also counts.
    """
    stripped = line.strip()
    if not stripped:
        return False
    if stripped.startswith(">"):
        return True
    if _QUOTE_INTRO_RE.match(stripped) or _FROM_WROTE_RE.match(stripped):
        return True
    if stripped.startswith("On ") and next_line.strip().endswith("wrote:"):
        return True
    return False


def is_common_header_line(line: str) -> bool:
    m = _HEADER_LINE_RE.match(line.strip())
    if not m:
        return False
    key = m.group("key").lower()
    return key in COMMON_HEADER_KEYS or key.startswith("x-")


def strip_quoted_reply(text: str) -> str:
    """Drop everything from the first quoted-reply marker onward."""
    lines = text.split("\n")
    for i, line in enumerate(lines):
        following = lines[i + 1] if i + 1 < len(lines) else ""
        if is_quote_marker(line, following):
            return "\n".join(lines[:i]).strip()
    return text.strip()


def strip_header_lines(text: str) -> str:
    return "\n".join(
        line for line in text.split("\n") if not is_common_header_line(line)
    )


def _clean(text: str) -> str:
    return normalize_newlines(strip_quoted_reply(text)).strip()


# ---------------------------------------------------------------------------
# Strategy 1: direct field
# ---------------------------------------------------------------------------

def extract_from_fields(fields: dict[str, str]) -> str:
    for name in DIRECT_TEXT_FIELDS:
        value = fields.get(name)
        if value and value.strip():
            body = _clean(decode(value))
            if body:
                logger.debug(f"Body taken from form field {name!r}")
                return body

    for name in DIRECT_HTML_FIELDS:
        value = fields.get(name)
        if value and value.strip():
            body = _clean(html_to_text(decode(value)))
            if body:
                logger.debug(f"Body taken from HTML form field {name!r}")
                return body

    return ""


# ---------------------------------------------------------------------------
# Strategy 2: structured embedded message
# ---------------------------------------------------------------------------

def _split_lines(text: str) -> list[str]:
    return text.replace("\r\n", "\n").replace("\r", "\n").split("\n")


def _header_block(lines: list[str], start: int) -> tuple[dict[str, str], int]:
    """
    Read a header block beginning at lines[start].

    Returns ({lower-cased key: value}, index of the first body line).
    Folded continuation lines are joined to the header they continue.
    """
    headers: dict[str, str] = {}
    last_key: Optional[str] = None
    i = start
    while i < len(lines):
        line = lines[i]
        if not line.strip():
            return headers, i + 1
        if line[0] in " \t" and last_key:
            headers[last_key] += " " + line.strip()
        else:
            key, sep, value = line.partition(":")
            if sep:
                last_key = key.strip().lower()
                headers.setdefault(last_key, value.strip())
        i += 1
    return headers, i


def _decode_part(body: str, transfer_encoding: str) -> str:
    encoding = transfer_encoding.lower().strip()
    if encoding == "base64":
        try:
            raw = base64.b64decode("".join(body.split()), validate=False)
        except (binascii.Error, ValueError):
            logger.warning("Undecodable base64 text/plain part; using it as-is")
            return decode(body)
        return normalize_newlines(raw.decode("utf-8", errors="replace"))
    # quoted-printable, 7bit, 8bit, or nothing: decode() is a no-op on plain text
    return decode(body)


def find_mime_part(message: str, mime_type: str = "text/plain") -> Optional[str]:
    """
    Locate the first MIME part of `mime_type` and return its decoded body.

    A part is recognised by a header block whose Content-Type matches; its
    Content-Transfer-Encoding (if any) comes from the same block.  The body
    runs until the next boundary line or the end of the message.  A
    top-level message with headers but no Content-Type counts as text/plain.
    """
    lines = _split_lines(message)
    while lines and not lines[0].strip():
        lines.pop(0)

    i = 0
    top_level = True
    while i < len(lines):
        if not top_level and not _BOUNDARY_LINE_RE.match(lines[i].strip()):
            i += 1
            continue

        block_start = i if top_level else i + 1
        headers, body_start = _header_block(lines, block_start)
        content_type = headers.get("content-type", "").lower()

        implicit_plain = (
            mime_type == "text/plain" and top_level and bool(headers) and not content_type
        )
        if content_type.startswith(mime_type) or implicit_plain:
            body_lines: list[str] = []
            for body_line in lines[body_start:]:
                if _BOUNDARY_LINE_RE.match(body_line.strip()):
                    break
                body_lines.append(body_line)
            return _decode_part(
                "\n".join(body_lines),
                headers.get("content-transfer-encoding", ""),
            )

        top_level = False
        i = max(body_start, i + 1)

    return None


def extract_from_embedded(embedded: Optional[str]) -> str:
    if not embedded or not embedded.strip():
        return ""

    part = find_mime_part(embedded, "text/plain")
    if part is None:
        html = find_mime_part(embedded, "text/html")
        part = html_to_text(html) if html else None
    if not part:
        return ""

    body = strip_header_lines(strip_quoted_reply(part))
    return normalize_newlines(body).strip()


# ---------------------------------------------------------------------------
# Strategy 3: heuristic scan
# ---------------------------------------------------------------------------

def _is_structural_noise(stripped: str) -> bool:
    lowered = stripped.lower()
    return (
        stripped.startswith("--")
        or lowered.startswith("content-")
        or lowered.startswith("mime-")
        or "form-data" in lowered
        or "boundary=" in lowered
        or "charset=" in lowered
        or bool(_BASE64_BLOB_RE.match(stripped))
    )


def _is_address_or_json(stripped: str) -> bool:
    return bool(
        _BARE_ADDRESS_RE.match(stripped)
        or _NAMED_ADDRESS_RE.match(stripped)
        or _JSON_LINE_RE.match(stripped)
    )


def _starts_body(stripped: str) -> bool:
    """The first line of a body: prose-like, not an address, not JSON."""
    if _is_address_or_json(stripped):
        return False
    if not _LETTER_RUN_RE.search(stripped):
        return False
    return " " in stripped or len(stripped) > 30


def extract_heuristically(text: str) -> str:
    if not text or not text.strip():
        return ""

    lines = _split_lines(text)
    collected: list[str] = []
    in_body = False
    skipping_header = False

    for i, line in enumerate(lines):
        stripped = line.strip()
        following = lines[i + 1] if i + 1 < len(lines) else ""

        if not in_body:
            # Folded continuation of a header we already skipped.
            if skipping_header and stripped and line[:1] in (" ", "\t"):
                continue
            skipping_header = False
            if not stripped or _is_structural_noise(stripped):
                continue
            if _HEADER_LINE_RE.match(stripped):
                skipping_header = True
                continue
            if _starts_body(stripped):
                in_body = True
            else:
                continue

        if is_quote_marker(stripped, following):
            break
        if not stripped:
            collected.append("")
            continue
        if _is_structural_noise(stripped) or is_common_header_line(stripped):
            continue
        if _is_address_or_json(stripped):
            continue
        collected.append(decode(stripped))

    return normalize_newlines("\n".join(collected)).strip()


# ---------------------------------------------------------------------------
# Cascade
# ---------------------------------------------------------------------------

def extract_body(
    raw: str,
    fields: dict[str, str],
    embedded: Optional[str],
) -> str:
    """
    Recover the message body, trying each strategy in priority order.

    Returns "" when all three strategies come up empty; the caller decides
    whether that is acceptable.
    """
    strategies: list[tuple[str, Callable[[], str]]] = [
        ("direct field", lambda: extract_from_fields(fields)),
        ("embedded message", lambda: extract_from_embedded(embedded)),
        ("heuristic scan", lambda: extract_heuristically(embedded or raw)),
    ]

    for name, strategy in strategies:
        body = strategy().strip()
        if body:
            logger.info(f"Body extracted by {name} strategy ({len(body)} chars)")
            return body

    logger.warning("All body extraction strategies came up empty")
    return ""
