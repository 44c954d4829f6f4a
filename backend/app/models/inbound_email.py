"""
Inbound email models.

RawDelivery is what the webhook receiver stores on the queue: the untouched
request body plus the content-type hint and arrival time.  The payload kind is
decided once, at ingestion, so the processor never has to guess again.

The InboundPayload union is the typed view of a RawDelivery that the adapter
layer builds right before extraction; each variant has its own decode path.
ExtractedEmail is the provider-agnostic result handed to the responder.
"""

import base64
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


UNKNOWN_SENDER = "unknown@example.com"
NO_SUBJECT = "No Subject"


class PayloadKind(str, Enum):
    RAW_MIME = "raw_mime"          # multipart/form-data (SendGrid inbound parse)
    BUFFERED = "buffered"          # a raw RFC-822 message
    DIRECT_JSON = "direct_json"    # JSON with from / subject / text
    UNKNOWN = "unknown"


class RawDelivery(BaseModel):
    """A single webhook delivery, owned by the queue until dequeued."""

    body: bytes
    content_type: str = ""
    received_at: datetime
    kind: PayloadKind = PayloadKind.UNKNOWN

    def to_record(self) -> dict:
        """Serialize for a JSON column; the body is base64-encoded."""
        return {
            "body_base64": base64.b64encode(self.body).decode("ascii"),
            "content_type": self.content_type,
            "received_at": self.received_at.isoformat(),
            "kind": self.kind.value,
        }

    @classmethod
    def from_record(cls, record: dict) -> "RawDelivery":
        return cls(
            body=base64.b64decode(record.get("body_base64") or ""),
            content_type=record.get("content_type") or "",
            received_at=record["received_at"],
            kind=record.get("kind") or PayloadKind.UNKNOWN,
        )


# ---------------------------------------------------------------------------
# Typed payload union
# ---------------------------------------------------------------------------

class RawMimePayload(BaseModel):
    """Multipart form-data buffer, decoded to text."""

    kind: Literal[PayloadKind.RAW_MIME] = PayloadKind.RAW_MIME
    text: str
    boundary: Optional[str] = None


class BufferedPayload(BaseModel):
    """A complete RFC-822 message (headers + body)."""

    kind: Literal[PayloadKind.BUFFERED] = PayloadKind.BUFFERED
    raw: bytes


class DirectJsonPayload(BaseModel):
    kind: Literal[PayloadKind.DIRECT_JSON] = PayloadKind.DIRECT_JSON
    sender: str
    subject: str
    text: str
    message_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None


class UnknownPayload(BaseModel):
    """Anything else; only a best-effort key scrape is attempted."""

    kind: Literal[PayloadKind.UNKNOWN] = PayloadKind.UNKNOWN
    data: Union[dict[str, Any], str]


InboundPayload = Annotated[
    Union[RawMimePayload, BufferedPayload, DirectJsonPayload, UnknownPayload],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Extraction result
# ---------------------------------------------------------------------------

class ThreadingHeaders(BaseModel):
    """
    Message-ID / In-Reply-To / References.

    message_id and in_reply_to are bare ids (angle brackets stripped);
    references keeps the bracketed ids, whitespace collapsed to single spaces.
    """

    message_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None


class ExtractedEmail(BaseModel):
    """
    Clean (sender, subject, body, threading headers) tuple.

    sender is always a bare address, or UNKNOWN_SENDER when none could be
    recovered.  body has already been through the content decoder and may be
    empty when every extraction strategy came up dry.
    """

    sender: str = UNKNOWN_SENDER
    subject: str = NO_SUBJECT
    body: str = ""
    message_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None

    @property
    def has_body(self) -> bool:
        return bool(self.body.strip())
