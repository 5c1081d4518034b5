from fastapi import APIRouter, Depends, status

from realtime_chat.schemas.chat import SendMessageRequest
from realtime_chat.services.chat_service import ChatService
from realtime_chat.utils.dependencies import get_chat_service, get_current_user


router = APIRouter(prefix="/messages", tags=["chat"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def send_message(body: SendMessageRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    # persisting here is authoritative; the hub relay inside is best effort
    message = await service.send_message(
        current_user["_id"],
        body.receiverId,
        body.content,
        conversation_id=body.conversationId,
        client_message_id=body.clientMessageId,
    )
    return {"message": message}
