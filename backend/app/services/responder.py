"""
Reply generation.

The processor hands each extracted email, plus the messages already in its
conversation, to a Responder and treats any exception it raises as a
retryable failure.  The Anthropic responder is the real one; EchoResponder
needs no network and is what local development and the tests use.
"""

import logging
import os
from typing import Optional

import anthropic

from app.models.inbound_email import ExtractedEmail

logger = logging.getLogger(__name__)

# Model configuration
MODEL = "claude-sonnet-4-5-20250929"
MAX_TOKENS = 1024

REPLY_PROMPT = """\
You are answering an email on behalf of the account owner. Write a short,
friendly reply to the newest message below. Use the earlier messages in the
conversation only for context. Reply with the body text only: no subject
line, no greeting block copied from the original, no signature placeholders.

CONVERSATION SO FAR (oldest first):
{history}

NEWEST MESSAGE
From: {sender}
Subject: {subject}

{body}
"""


def format_history(thread_history: list[ExtractedEmail]) -> str:
    if not thread_history:
        return "(none)"
    blocks = []
    for i, message in enumerate(thread_history, start=1):
        blocks.append(
            f"[{i}] From: {message.sender}\n"
            f"Subject: {message.subject}\n\n"
            f"{message.body or '(empty body)'}"
        )
    return "\n\n".join(blocks)


def build_prompt(context: ExtractedEmail, thread_history: list[ExtractedEmail]) -> str:
    return REPLY_PROMPT.format(
        history=format_history(thread_history),
        sender=context.sender,
        subject=context.subject,
        body=context.body or "(empty body)",
    )


class Responder:
    """generate_reply(context, thread_history) -> reply text."""

    name = "base"

    def generate_reply(
        self,
        context: ExtractedEmail,
        thread_history: list[ExtractedEmail],
    ) -> str:
        raise NotImplementedError


class EchoResponder(Responder):
    """Offline responder: acknowledges the message without calling out."""

    name = "echo"

    def generate_reply(
        self,
        context: ExtractedEmail,
        thread_history: list[ExtractedEmail],
    ) -> str:
        return (
            f"Thanks for your message about \"{context.subject}\". "
            f"This conversation now has {len(thread_history) + 1} message(s)."
        )


class AnthropicResponder(Responder):
    name = "anthropic"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: float = 30.0,
    ):
        if api_key is None:
            api_key = os.getenv("ANTHROPIC_API_KEY")
        self.model = model or os.getenv("RESPONDER_MODEL") or MODEL
        self.client = anthropic.Anthropic(api_key=api_key, timeout=timeout)

    def generate_reply(
        self,
        context: ExtractedEmail,
        thread_history: list[ExtractedEmail],
    ) -> str:
        prompt = build_prompt(context, thread_history)

        response = self.client.messages.create(
            model=self.model,
            max_tokens=MAX_TOKENS,
            messages=[{"role": "user", "content": prompt}],
        )

        reply = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        ).strip()
        logger.info(
            f"Reply generated for {context.sender} "
            f"({response.usage.input_tokens} in / {response.usage.output_tokens} out tokens)"
        )
        return reply


def get_responder(timeout: float = 30.0) -> Responder:
    """
    Pick the responder from the RESPONDER env var.

    Falls back to EchoResponder when the Anthropic responder is selected but
    ANTHROPIC_API_KEY is not set.
    """
    choice = os.getenv("RESPONDER", "anthropic").lower().strip()
    if choice == "echo":
        return EchoResponder()
    if choice != "anthropic":
        raise ValueError(
            f"Unknown responder {choice!r}. Supported responders: ['anthropic', 'echo']"
        )
    if not os.getenv("ANTHROPIC_API_KEY"):
        logger.warning("ANTHROPIC_API_KEY is not set; replies will come from the echo responder")
        return EchoResponder()
    return AnthropicResponder(timeout=timeout)
