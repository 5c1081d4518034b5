"""Frames of the real-time channel: ``{"event": <name>, "data": {...}}``."""
from datetime import datetime
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class HubFrame(BaseModel):

    event: str
    data: Any = None


class JoinPayload(BaseModel):

    userId: str = Field(min_length=1)


class SendMessagePayload(BaseModel):

    senderId: str
    receiverId: str
    content: str
    conversationId: str
    messageId: Optional[str] = None
    createdAt: Optional[datetime] = None
    clientMessageId: Optional[str] = None


class TypingPayload(BaseModel):

    senderId: str
    receiverId: str
    isTyping: bool


class MarkReadPayload(BaseModel):
    """Read receipt. ``notifyUserId`` is the user whose messages were read.

    Older clients send the same value as ``senderId``.
    """

    model_config = ConfigDict(populate_by_name=True)

    notifyUserId: str = Field(validation_alias=AliasChoices("notifyUserId", "senderId"))
    conversationId: str
