"""
Inbound email adapter service.

Turns a queued RawDelivery into a provider-agnostic ExtractedEmail.

The payload kind is decided once, when the webhook receiver builds the
RawDelivery (build_delivery / classify_payload).  At processing time
parse_delivery() turns the stored bytes into one variant of the
InboundPayload union and extract_email() hands it to the extractor
registered for that kind.

Supported payload shapes
------------------------
  raw_mime     multipart/form-data in the SendGrid inbound-parse layout:
               from, to, subject, text, html, envelope, headers, email
  buffered     a complete RFC-822 message (headers + body), optionally
               wrapped in JSON as {"rawMimeBase64": ...} or {"buffer": ...}
  direct_json  a JSON object with at least from, subject and text
  unknown      anything else; the from/sender/email, subject/title and
               text/body/content/message keys are scraped before giving up

Adding a new payload shape:
  1. Add a variant to PayloadKind and the InboundPayload union.
  2. Teach classify_payload() to recognise it.
  3. Write an extract_<kind>(payload) -> ExtractedEmail function and register
     it in _EXTRACTORS.
"""

import base64
import binascii
import json
import logging
import re
from datetime import datetime, timezone
from email import policy
from email.errors import HeaderParseError
from email.header import decode_header, make_header
from email.parser import BytesParser
from typing import Any, Callable, Optional

from pydantic import TypeAdapter

from app.models.inbound_email import (
    NO_SUBJECT,
    UNKNOWN_SENDER,
    BufferedPayload,
    DirectJsonPayload,
    ExtractedEmail,
    InboundPayload,
    PayloadKind,
    RawDelivery,
    RawMimePayload,
    ThreadingHeaders,
    UnknownPayload,
)
from app.services.body_extractor import (
    extract_body,
    extract_from_fields,
    extract_heuristically,
    strip_quoted_reply,
)
from app.services.content_decoder import decode, html_to_text, normalize_newlines
from app.services.errors import PermanentPayloadError
from app.services.multipart_fields import (
    boundary_from_content_type,
    detect_boundary,
    extract_embedded_message,
    extract_fields,
)
from app.services.threading_headers import (
    read_header_block,
    resolve_threading,
    strip_brackets,
)

logger = logging.getLogger(__name__)


# JSON keys that wrap a base64-encoded raw message.
WRAPPER_KEYS = ("rawMimeBase64", "buffer")

# Key aliases for the best-effort scrape of unknown payloads.
SENDER_ALIASES = ("from", "sender", "email")
SUBJECT_ALIASES = ("subject", "title")
TEXT_ALIASES = ("text", "body", "content", "message")

MESSAGE_ID_ALIASES = ("messageId", "message_id", "Message-ID", "message-id")
IN_REPLY_TO_ALIASES = ("inReplyTo", "in_reply_to", "In-Reply-To", "in-reply-to")
REFERENCES_ALIASES = ("references", "References")

# Header keys that mark a text buffer as an RFC-822 message.
_RFC822_KEYS = frozenset({"from", "subject", "message-id", "received", "mime-version"})

_FORM_DATA_RE = re.compile(r"Content-Disposition:[ \t]*form-data", re.IGNORECASE)
_ANGLE_ADDRESS_RE = re.compile(r"<([^<>\s]+@[^<>\s]+)>")
_ADDRESS_RE = re.compile(r"[\w.+'-]+@[\w-]+(?:\.[\w-]+)+")
_LEADING_HEADER_RE = re.compile(r"^[A-Za-z][A-Za-z0-9-]*:")

_PAYLOAD_ADAPTER = TypeAdapter(InboundPayload)


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------

def _as_text(body: bytes) -> str:
    return body.decode("utf-8", errors="replace")


def _load_json(body: bytes) -> Any:
    """Parse body as JSON; None when it is not JSON."""
    stripped = body.strip()
    if not stripped or stripped[:1] not in (b"{", b"[", b'"'):
        return None
    try:
        return json.loads(stripped)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


def _first_str(data: dict, keys: tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def bare_address(value: Optional[str]) -> Optional[str]:
    """
    Reduce a From-style value to a bare address.

    "Jane Doe <jane@example.com>" -> "jane@example.com"
    "jane@example.com"            -> "jane@example.com"
    "Jane Doe"                    -> None
    """
    if not value:
        return None
    m = _ANGLE_ADDRESS_RE.search(value)
    if m:
        return m.group(1)
    m = _ADDRESS_RE.search(value)
    return m.group(0) if m else None


def resolve_sender(from_value: Optional[str], envelope: Optional[str] = None) -> str:
    """
    Bare sender address from the from field, else from the envelope JSON.

    Falls back to UNKNOWN_SENDER; never raises.
    """
    address = bare_address(decode(from_value).strip()) if from_value else None
    if address:
        return address

    if envelope and envelope.strip():
        try:
            envelope_data = json.loads(envelope)
        except json.JSONDecodeError:
            logger.warning("Envelope field is not valid JSON; ignoring it")
            envelope_data = None
        if isinstance(envelope_data, dict):
            address = bare_address(str(envelope_data.get("from") or ""))
            if address:
                return address

    return UNKNOWN_SENDER


def decode_subject(value: Optional[str]) -> str:
    """Decode RFC 2047 encoded-words and collapse whitespace."""
    if not value or not value.strip():
        return NO_SUBJECT
    text = value
    if "=?" in value:
        try:
            text = str(make_header(decode_header(value)))
        except (HeaderParseError, UnicodeDecodeError, LookupError):
            logger.warning("Undecodable encoded-word in subject; using it as-is")
    subject = " ".join(text.split())
    return subject or NO_SUBJECT


def _merge_threading(*candidates: ThreadingHeaders) -> ThreadingHeaders:
    """Take each header from the first candidate that has it."""
    merged = ThreadingHeaders()
    for candidate in candidates:
        merged.message_id = merged.message_id or candidate.message_id
        merged.in_reply_to = merged.in_reply_to or candidate.in_reply_to
        merged.references = merged.references or candidate.references
    return merged


def _looks_like_rfc822(text: str) -> bool:
    first_line = text.lstrip("\r\n").split("\n", 1)[0]
    if not _LEADING_HEADER_RE.match(first_line):
        return False
    return bool(_RFC822_KEYS & read_header_block(text).keys())


# ---------------------------------------------------------------------------
# Ingestion: classification
# ---------------------------------------------------------------------------

def classify_payload(body: bytes, content_type: str = "") -> PayloadKind:
    """Decide which InboundPayload variant a request body is."""
    if "multipart/form-data" in (content_type or "").lower():
        return PayloadKind.RAW_MIME

    data = _load_json(body)
    if isinstance(data, dict):
        if _first_str(data, ("from",)) and isinstance(data.get("subject"), str) \
                and isinstance(data.get("text"), str):
            return PayloadKind.DIRECT_JSON
        return PayloadKind.UNKNOWN
    if data is not None:
        return PayloadKind.UNKNOWN

    text = _as_text(body)
    if _FORM_DATA_RE.search(text):
        return PayloadKind.RAW_MIME
    if _looks_like_rfc822(text):
        return PayloadKind.BUFFERED
    return PayloadKind.UNKNOWN


def _unwrap(body: bytes) -> tuple[bytes, bool]:
    """
    Return the decoded raw message when body is a base64 JSON wrapper.

    The second element says whether anything was unwrapped.
    """
    data = _load_json(body)
    if not isinstance(data, dict):
        return body, False

    for key in WRAPPER_KEYS:
        encoded = data.get(key)
        if not isinstance(encoded, str) or not encoded.strip():
            continue
        try:
            raw = base64.b64decode("".join(encoded.split()), validate=True)
        except (binascii.Error, ValueError):
            logger.warning(f"Payload key {key!r} is not valid base64; leaving it wrapped")
            return body, False
        logger.info(f"Unwrapped base64 {key!r} payload ({len(raw)} bytes)")
        return raw, True

    return body, False


def build_delivery(
    body: bytes,
    content_type: str = "",
    received_at: Optional[datetime] = None,
) -> RawDelivery:
    """
    Build the RawDelivery the webhook receiver enqueues.

    Base64 JSON wrappers are unwrapped here so that the stored body is the
    message itself, and the payload kind is fixed for the item's lifetime.
    """
    unwrapped, was_wrapped = _unwrap(body)
    if was_wrapped:
        # The wrapper's own content type describes the JSON, not the message.
        content_type = ""

    kind = classify_payload(unwrapped, content_type)
    logger.info(f"Classified inbound payload as {kind.value} ({len(unwrapped)} bytes)")

    return RawDelivery(
        body=unwrapped,
        content_type=content_type or "",
        received_at=received_at or datetime.now(timezone.utc),
        kind=kind,
    )


# ---------------------------------------------------------------------------
# Processing: typed view of a delivery
# ---------------------------------------------------------------------------

def parse_delivery(delivery: RawDelivery) -> InboundPayload:
    """Turn a stored RawDelivery into its InboundPayload variant."""
    kind = delivery.kind

    if kind == PayloadKind.RAW_MIME:
        text = _as_text(delivery.body)
        boundary = boundary_from_content_type(delivery.content_type) or detect_boundary(text)
        return _PAYLOAD_ADAPTER.validate_python(
            {"kind": kind, "text": text, "boundary": boundary}
        )

    if kind == PayloadKind.BUFFERED:
        return _PAYLOAD_ADAPTER.validate_python({"kind": kind, "raw": delivery.body})

    data = _load_json(delivery.body)

    if kind == PayloadKind.DIRECT_JSON and isinstance(data, dict):
        return _PAYLOAD_ADAPTER.validate_python({
            "kind": kind,
            "sender": str(data.get("from") or ""),
            "subject": str(data.get("subject") or ""),
            "text": str(data.get("text") or ""),
            "message_id": _first_str(data, MESSAGE_ID_ALIASES),
            "in_reply_to": _first_str(data, IN_REPLY_TO_ALIASES),
            "references": _first_str(data, REFERENCES_ALIASES),
        })

    if not isinstance(data, dict):
        data = _as_text(delivery.body)
    return _PAYLOAD_ADAPTER.validate_python({"kind": PayloadKind.UNKNOWN, "data": data})


# ---------------------------------------------------------------------------
# Per-kind extractors
# ---------------------------------------------------------------------------

def extract_raw_mime(payload: RawMimePayload) -> ExtractedEmail:
    """
    Extract from a SendGrid-style multipart buffer.

    A buffer without any form-data markers is handed to the RFC-822 path;
    that is a format mismatch, not an error.
    """
    fields = extract_fields(payload.text, payload.boundary)
    if not fields:
        logger.info("No form-data fields found; treating buffer as a raw message")
        return extract_buffered(BufferedPayload(raw=payload.text.encode("utf-8")))

    embedded = extract_embedded_message(payload.text, fields)
    body = extract_body(payload.text, fields, embedded)

    # Threading comes from the raw message when there is one, else from the
    # separate "headers" field.
    threading = _merge_threading(
        resolve_threading(embedded),
        resolve_threading(fields.get("headers")),
    )

    return ExtractedEmail(
        sender=resolve_sender(fields.get("from"), fields.get("envelope")),
        subject=decode_subject(fields.get("subject")),
        body=body,
        message_id=threading.message_id,
        in_reply_to=threading.in_reply_to,
        references=threading.references,
    )


# Raised by the stdlib structured-header parser on malformed MIME headers.
_MALFORMED_MIME_ERRORS = (
    HeaderParseError,
    IndexError,
    KeyError,
    LookupError,
    ValueError,
    AttributeError,
)


def _part_text(part) -> Optional[str]:
    """
    Decoded text of a MIME part, or None when it cannot be decoded.

    A part whose declared charset turns plain ASCII bytes into non-ASCII
    text (utf-16 over ASCII, for instance) is read as ASCII instead.
    """
    content = part.get_content()
    if not isinstance(content, str):
        return None
    raw = part.get_payload(decode=True)
    if isinstance(raw, bytes) and raw.isascii() and not content.isascii():
        logger.warning(
            f"Declared charset {part.get_content_charset()!r} does not match "
            f"the part's ASCII bytes; reading it as ASCII"
        )
        content = raw.decode("ascii")
    return content


def _buffered_body(message) -> str:
    """text/plain part of a parsed message, else its HTML part as text."""
    for preference, convert in (("plain", None), ("html", html_to_text)):
        try:
            part = message.get_body(preferencelist=(preference,))
            content = _part_text(part) if part is not None else None
        except _MALFORMED_MIME_ERRORS as e:
            logger.warning(f"Could not decode text/{preference} part: {e!r}")
            continue
        if content is None:
            continue
        if convert is not None:
            content = convert(content)
        body = normalize_newlines(strip_quoted_reply(content)).strip()
        if body:
            return body
    return ""


def extract_buffered(payload: BufferedPayload) -> ExtractedEmail:
    """
    Extract from a complete RFC-822 message.

    Sender and subject come from the raw header block rather than the
    parsed message, whose structured headers raise on malformed values.
    """
    message = BytesParser(policy=policy.default).parsebytes(payload.raw)
    text = _as_text(payload.raw)
    headers = read_header_block(text)

    body = _buffered_body(message)
    if not body:
        # The stdlib parser found nothing usable; run the tolerant cascade
        # over the raw text instead.
        body = extract_body(text, {}, text)

    threading = resolve_threading(text)

    return ExtractedEmail(
        sender=resolve_sender(headers.get("from")),
        subject=decode_subject(headers.get("subject")),
        body=body,
        message_id=threading.message_id,
        in_reply_to=threading.in_reply_to,
        references=threading.references,
    )


def extract_direct_json(payload: DirectJsonPayload) -> ExtractedEmail:
    return ExtractedEmail(
        sender=resolve_sender(payload.sender),
        subject=decode_subject(payload.subject),
        body=extract_from_fields({"text": payload.text}),
        message_id=strip_brackets(payload.message_id),
        in_reply_to=strip_brackets(payload.in_reply_to),
        references=payload.references,
    )


def extract_unknown(payload: UnknownPayload) -> ExtractedEmail:
    """
    Best-effort scrape of a payload in no recognised shape.

    Raises PermanentPayloadError when neither a sender nor a text field can
    be found; retrying would not change that.
    """
    data = payload.data

    if isinstance(data, dict):
        sender = _first_str(data, SENDER_ALIASES)
        subject = _first_str(data, SUBJECT_ALIASES)
        text = _first_str(data, TEXT_ALIASES)
        if not sender or not text:
            raise PermanentPayloadError(
                f"Unrecognised payload; keys present: {sorted(data)[:20]}"
            )
        logger.info("Extracted basic fields from an unrecognised JSON payload")
        return ExtractedEmail(
            sender=resolve_sender(sender),
            subject=decode_subject(subject),
            body=extract_from_fields({"text": text}),
            message_id=strip_brackets(_first_str(data, MESSAGE_ID_ALIASES)),
            in_reply_to=strip_brackets(_first_str(data, IN_REPLY_TO_ALIASES)),
            references=_first_str(data, REFERENCES_ALIASES),
        )

    headers = read_header_block(data or "")
    sender = next((headers[k] for k in SENDER_ALIASES if headers.get(k)), None)
    body = extract_heuristically(data or "")
    if not sender or not body:
        raise PermanentPayloadError(
            f"Unrecognised payload ({len(data or '')} chars of text)"
        )
    logger.info("Extracted basic fields from an unrecognised text payload")
    return ExtractedEmail(
        sender=resolve_sender(sender),
        subject=decode_subject(headers.get("subject") or headers.get("title")),
        body=body,
    )


# ---------------------------------------------------------------------------
# Registry and dispatcher
# ---------------------------------------------------------------------------

_EXTRACTORS: dict[PayloadKind, Callable[[Any], ExtractedEmail]] = {
    PayloadKind.RAW_MIME: extract_raw_mime,
    PayloadKind.BUFFERED: extract_buffered,
    PayloadKind.DIRECT_JSON: extract_direct_json,
    PayloadKind.UNKNOWN: extract_unknown,
}


def extract_email(delivery: RawDelivery) -> ExtractedEmail:
    """
    Route a delivery to the extractor for its payload kind.

    Only extract_unknown raises (PermanentPayloadError); every other path
    degrades to defaults and an empty body.
    """
    payload = parse_delivery(delivery)
    extractor = _EXTRACTORS[payload.kind]
    email = extractor(payload)
    logger.info(
        f"Extracted email from {email.sender!r}, subject={email.subject!r}, "
        f"body={len(email.body)} chars, message_id={email.message_id!r}"
    )
    return email


# ---------------------------------------------------------------------------
# Identity peek (dedup)
# ---------------------------------------------------------------------------

def peek_identity(delivery: RawDelivery) -> tuple[str, str, str]:
    """
    Cheap (sender, subject, message id) triple used for the dedup key.

    Reads only form fields, JSON keys or the top header block; no body
    extraction happens here.  Missing parts come back as "".
    """
    if delivery.kind == PayloadKind.RAW_MIME:
        text = _as_text(delivery.body)
        boundary = boundary_from_content_type(delivery.content_type)
        fields = extract_fields(text, boundary)
        headers = read_header_block(fields.get("email") or fields.get("headers") or "")
        return (
            (fields.get("from") or "").strip(),
            (fields.get("subject") or "").strip(),
            strip_brackets(headers.get("message-id")) or "",
        )

    data = _load_json(delivery.body)
    if isinstance(data, dict):
        return (
            (_first_str(data, SENDER_ALIASES) or "").strip(),
            (_first_str(data, SUBJECT_ALIASES) or "").strip(),
            strip_brackets(_first_str(data, MESSAGE_ID_ALIASES)) or "",
        )

    headers = read_header_block(_as_text(delivery.body))
    return (
        headers.get("from", ""),
        headers.get("subject", ""),
        strip_brackets(headers.get("message-id")) or "",
    )
