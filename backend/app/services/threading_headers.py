"""
Threading metadata resolver.

Pulls Message-ID, In-Reply-To and References out of the header block of a raw
message.  Runs independently of body extraction: a message whose body could
not be recovered still carries usable threading headers.
"""

import logging
import re
from typing import Optional

from app.models.inbound_email import ThreadingHeaders

logger = logging.getLogger(__name__)


_BRACKETED_ID_RE = re.compile(r"<([^<>\s]+)>")

_THREADING_KEYS = ("message-id", "in-reply-to", "references")


def read_header_block(raw: str) -> dict[str, str]:
    """
    Return the top-level header block as {lower-cased key: value}.

    Continuation lines (leading space or tab) are joined to the header they
    continue with a single space.  The first occurrence of a key wins.
    Scanning stops at the first blank line.
    """
    headers: dict[str, str] = {}
    last_key: Optional[str] = None
    lines = raw.replace("\r\n", "\n").replace("\r", "\n").split("\n")

    # Tolerate leading blank lines left over from form-data framing.
    while lines and not lines[0].strip():
        lines.pop(0)

    for line in lines:
        if not line.strip():
            break
        if line[0] in " \t":
            if last_key is not None:
                headers[last_key] = f"{headers[last_key]} {line.strip()}".strip()
            continue
        key, sep, value = line.partition(":")
        if not sep:
            last_key = None
            continue
        key = key.strip().lower()
        if key in headers:
            last_key = None
            continue
        headers[key] = value.strip()
        last_key = key

    return headers


def strip_brackets(value: Optional[str]) -> Optional[str]:
    """Return the first <...> id in value, without brackets."""
    if not value or not value.strip():
        return None
    m = _BRACKETED_ID_RE.search(value)
    if m:
        return m.group(1)
    return value.strip().strip("<>").strip() or None


def reference_ids(references: Optional[str]) -> list[str]:
    """Split a References header into bare message ids, oldest first."""
    if not references:
        return []
    ids = _BRACKETED_ID_RE.findall(references)
    if ids:
        return ids
    return [token.strip("<>") for token in references.split() if token.strip("<>")]


def resolve_threading(embedded: Optional[str]) -> ThreadingHeaders:
    """
    Extract threading headers from a raw message (headers + body).

    Header names are matched case-insensitively.  Missing headers are simply
    left as None; nothing here raises.
    """
    if not embedded or not embedded.strip():
        return ThreadingHeaders()

    headers = read_header_block(embedded)
    found = {key: headers.get(key) for key in _THREADING_KEYS}

    references = found["references"]
    threading = ThreadingHeaders(
        message_id=strip_brackets(found["message-id"]),
        in_reply_to=strip_brackets(found["in-reply-to"]),
        references=" ".join(references.split()) if references else None,
    )
    logger.debug(
        f"Threading headers: message_id={threading.message_id!r}, "
        f"in_reply_to={threading.in_reply_to!r}"
    )
    return threading
