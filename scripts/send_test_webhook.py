#!/usr/bin/env python3
"""
Dev helper: send a test inbound-email webhook to the local backend.

Builds a SendGrid inbound-parse style multipart/form-data body (or a plain
JSON body with --format json) and POST-s it to the
/api/email-intake/inbound endpoint.

Usage
-----
# Basic: multipart payload with an embedded raw message, localhost:8000
python scripts/send_test_webhook.py

# Reply to an earlier message so both land in one conversation
python scripts/send_test_webhook.py --message-id b@example.com --in-reply-to a@example.com

# JSON payload instead of multipart
python scripts/send_test_webhook.py --format json

# Show the queue afterwards
python scripts/send_test_webhook.py --show-queue

Environment / .env
------------------
INBOUND_WEBHOOK_SECRET   Shared webhook secret (optional; the backend accepts
                         unauthenticated requests when it has none set).
"""

import argparse
import json
import os
import sys
import textwrap
import uuid
from pathlib import Path

import httpx
from dotenv import load_dotenv


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------

def _build_raw_message(
    from_header: str,
    to_address: str,
    subject: str,
    text: str,
    message_id: str,
    in_reply_to: str | None,
) -> str:
    """An RFC-822 message with a quoted-printable text/plain part."""
    boundary = f"inner-{uuid.uuid4().hex[:12]}"
    headers = [
        f"From: {from_header}",
        f"To: {to_address}",
        f"Subject: {subject}",
        f"Message-ID: <{message_id}>",
    ]
    if in_reply_to:
        headers.append(f"In-Reply-To: <{in_reply_to}>")
        headers.append(f"References: <{in_reply_to}>")
    headers.append(f'Content-Type: multipart/alternative; boundary="{boundary}"')

    return "\r\n".join(headers + [
        "",
        f"--{boundary}",
        "Content-Type: text/plain; charset=UTF-8",
        "Content-Transfer-Encoding: quoted-printable",
        "",
        text,
        f"--{boundary}--",
        "",
    ])


def _build_multipart(fields: dict[str, str]) -> tuple[bytes, str]:
    """Encode fields as multipart/form-data; returns (body, content type)."""
    boundary = f"xYzZY{uuid.uuid4().hex[:16]}"
    parts = []
    for name, value in fields.items():
        parts.append(
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="{name}"\r\n'
            f"\r\n"
            f"{value}\r\n"
        )
    parts.append(f"--{boundary}--\r\n")
    return "".join(parts).encode("utf-8"), f"multipart/form-data; boundary={boundary}"


def _print_response(response) -> None:
    status = response.status_code
    symbol = "OK" if status == 200 else "FAIL"
    print(f"\n[{symbol}] HTTP {status}")
    try:
        print(json.dumps(response.json(), indent=2))
    except ValueError:
        print(response.text)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> int:
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(project_root / ".env")
    load_dotenv(project_root / "backend" / ".env")

    parser = argparse.ArgumentParser(
        prog="send_test_webhook.py",
        description="Send a test inbound-email webhook to the backend.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python scripts/send_test_webhook.py
              python scripts/send_test_webhook.py --format json
              python scripts/send_test_webhook.py --in-reply-to a@example.com
        """),
    )
    parser.add_argument("--url", default="http://localhost:8000",
                        help="Backend base URL (default: http://localhost:8000)")
    parser.add_argument("--format", choices=["multipart", "json"], default="multipart",
                        help="Payload format (default: multipart)")
    parser.add_argument("--from", dest="from_header", default="Jane Doe <jane@example.com>",
                        help='Sender (default: "Jane Doe <jane@example.com>")')
    parser.add_argument("--to", default="inbox@inbound.example.com",
                        help="Recipient address")
    parser.add_argument("--subject", default="Hello from the test script",
                        help="Email subject")
    parser.add_argument("--text", default="Hi there! Just checking the inbound pipeline works.",
                        help="Plain-text body")
    parser.add_argument("--message-id", default=None,
                        help="Message-ID without brackets (default: random)")
    parser.add_argument("--in-reply-to", default=None,
                        help="Message-ID this email replies to")
    parser.add_argument("--secret", default=None,
                        help="Override INBOUND_WEBHOOK_SECRET")
    parser.add_argument("--show-queue", action="store_true",
                        help="Print GET /queue after sending")
    parser.add_argument("--dry-run", action="store_true",
                        help="Print the request body without sending it.")

    args = parser.parse_args()

    secret = args.secret or os.getenv("INBOUND_WEBHOOK_SECRET", "")
    message_id = args.message_id or f"{uuid.uuid4().hex}@example.com"

    if args.format == "json":
        payload = {
            "from": args.from_header,
            "subject": args.subject,
            "text": args.text,
            "messageId": message_id,
        }
        if args.in_reply_to:
            payload["inReplyTo"] = args.in_reply_to
        body = json.dumps(payload).encode("utf-8")
        content_type = "application/json"
    else:
        raw_message = _build_raw_message(
            args.from_header, args.to, args.subject, args.text,
            message_id, args.in_reply_to,
        )
        body, content_type = _build_multipart({
            "from": args.from_header,
            "to": args.to,
            "subject": args.subject,
            "text": args.text,
            "envelope": json.dumps({"to": [args.to], "from": args.from_header}),
            "email": raw_message,
        })

    endpoint = f"{args.url.rstrip('/')}/api/email-intake/inbound"
    print(f"Endpoint  : {endpoint}")
    print(f"Format    : {args.format}")
    print(f"From      : {args.from_header}")
    print(f"Subject   : {args.subject}")
    print(f"Message-ID: {message_id}")

    if args.dry_run:
        print("\n[DRY RUN] Body:")
        print(body.decode("utf-8"))
        return 0

    headers = {"Content-Type": content_type}
    if secret:
        headers["X-Webhook-Secret"] = secret

    try:
        response = httpx.post(endpoint, content=body, headers=headers, timeout=30)
        _print_response(response)
        if args.show_queue:
            queue = httpx.get(
                f"{args.url.rstrip('/')}/api/email-intake/queue",
                headers={"X-Webhook-Secret": secret} if secret else {},
                timeout=30,
            )
            _print_response(queue)
        return 0 if response.status_code == 200 else 1
    except httpx.ConnectError:
        print(
            f"\nERROR: Could not connect to {endpoint}\n"
            "Is the backend running? Start it with:\n"
            "  cd backend && uvicorn app.main:app --reload",
            file=sys.stderr,
        )
        return 1
    except httpx.HTTPError as exc:
        print(f"\nERROR: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
