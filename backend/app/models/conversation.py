"""
Conversation thread model.
"""

from datetime import datetime

from pydantic import BaseModel


class ConversationThread(BaseModel):
    """
    An ordered chain of messages that reply to each other.

    message_ids is kept in arrival order.  Only the thread resolver appends
    to it.
    """

    conversation_id: str
    message_ids: list[str] = []
    created_at: datetime

    def contains(self, message_id: str) -> bool:
        return message_id in self.message_ids
