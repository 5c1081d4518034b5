from typing import Optional

from pydantic import BaseModel, Field


class StartConversationRequest(BaseModel):

    participantId: str = Field(min_length=1)


class SendMessageRequest(BaseModel):

    receiverId: str = Field(min_length=1)
    content: str
    conversationId: Optional[str] = None
    # temporary id of an optimistic send, echoed back on the stored message
    clientMessageId: Optional[str] = None
