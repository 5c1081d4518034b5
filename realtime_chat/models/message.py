from datetime import datetime
from typing import Optional, TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    conversationId: str
    senderId: str
    receiverId: str
    content: str
    read: bool
    createdAt: datetime
    # client ack for optimistic sends
    clientMessageId: Optional[str]
