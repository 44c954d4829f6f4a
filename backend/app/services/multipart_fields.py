"""
Multipart form-data field extraction.

SendGrid's inbound parse webhook posts a multipart/form-data body with fields
such as from, to, subject, text, html, envelope, headers and (when "send raw"
is enabled) email, which carries the complete original message.

The buffers we receive are frequently not well-formed enough for a strict
multipart parser (mixed line endings, a missing closing boundary, charset
fields in odd places), so fields are located by their Content-Disposition
marker instead:

    --<boundary>
    Content-Disposition: form-data; name="<field>"
    [optional part headers]
    <blank line>
    <value>
    --<boundary>...

An empty result means "this is not form-data"; callers should move on to the
next payload format rather than treat it as an error.
"""

import re
from typing import Optional


_DISPOSITION_RE = re.compile(
    r'Content-Disposition:[ \t]*form-data;[ \t]*name="(?P<name>[^"]+)"[^\r\n]*\r?\n'
    r"(?:[^\r\n]+\r?\n)*?"   # further part headers (Content-Type, ...)
    r"\r?\n",
    re.IGNORECASE,
)

_BOUNDARY_PARAM_RE = re.compile(r'boundary="?([^";\s]+)"?', re.IGNORECASE)

# Any boundary-looking line; used when the real boundary cannot be determined.
_GENERIC_BOUNDARY_RE = re.compile(r"\r?\n--[A-Za-z0-9'()+_,./:=?-]+")


def boundary_from_content_type(content_type: str) -> Optional[str]:
    """Return the boundary parameter of a multipart Content-Type header."""
    if not content_type:
        return None
    m = _BOUNDARY_PARAM_RE.search(content_type)
    return m.group(1) if m else None


def detect_boundary(raw: str) -> Optional[str]:
    """
    Infer the outer boundary from the buffer itself.

    The line immediately before the first Content-Disposition marker is the
    opening delimiter, "--<boundary>".
    """
    m = _DISPOSITION_RE.search(raw)
    if not m:
        return None
    preceding = raw[:m.start()].rstrip("\r\n")
    last_line = preceding.rsplit("\n", 1)[-1].strip()
    if last_line.startswith("--") and len(last_line) > 2:
        return last_line[2:]
    return None


def _value_end(raw: str, start: int, boundary: Optional[str]) -> int:
    """Index where the field value starting at `start` ends."""
    if boundary:
        delimiter = re.compile(r"\r?\n--" + re.escape(boundary))
        m = delimiter.search(raw, start)
    else:
        m = _GENERIC_BOUNDARY_RE.search(raw, start)
    return m.start() if m else len(raw)


def extract_fields(raw: str, boundary: Optional[str] = None) -> dict[str, str]:
    """
    Split a multipart buffer into {field name: raw value}.

    Values are returned exactly as they appear (not decoded, not trimmed)
    minus the line break that precedes the next boundary.  When a field name
    repeats, the first occurrence wins.  Returns {} when no form-data markers
    are present.
    """
    if not raw:
        return {}

    boundary = boundary or detect_boundary(raw)
    fields: dict[str, str] = {}

    for m in _DISPOSITION_RE.finditer(raw):
        name = m.group("name")
        if name in fields:
            continue
        end = _value_end(raw, m.end(), boundary)
        fields[name] = raw[m.end():end]

    return fields


def extract_embedded_message(
    raw: str,
    fields: Optional[dict[str, str]] = None,
) -> Optional[str]:
    """
    Return the raw original message carried in the "email" field, if any.

    The value is returned unparsed (headers + body).  Pass already-extracted
    fields to avoid scanning the buffer twice.
    """
    if fields is None:
        fields = extract_fields(raw)
    embedded = fields.get("email")
    if embedded is None or not embedded.strip():
        return None
    return embedded
