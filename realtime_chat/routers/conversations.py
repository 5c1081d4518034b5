from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status

from realtime_chat.config import get_settings
from realtime_chat.schemas.chat import StartConversationRequest
from realtime_chat.services.chat_service import ChatService
from realtime_chat.utils.dependencies import get_chat_service, get_current_user


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.get("")
async def list_conversations(current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    conversations = await service.list_conversations(current_user["_id"])
    return {"conversations": conversations}


@router.post("")
async def start_conversation(body: StartConversationRequest, response: Response, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    conversation, created = await service.start_conversation(current_user["_id"], body.participantId)
    if created:
        response.status_code = status.HTTP_201_CREATED
        return {"conversation": conversation}
    response.status_code = status.HTTP_200_OK
    return {"conversation": conversation, "message": "Conversation already exists"}


@router.get("/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    current_user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    settings = get_settings()
    limit = min(limit or settings.default_page_limit, settings.max_page_limit)
    return await service.open_conversation(current_user["_id"], conversation_id, page=page, limit=limit)


@router.post("/{conversation_id}/read")
async def mark_conversation_read(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    count = await service.mark_conversation_read(current_user["_id"], conversation_id)
    return {"updated": count}


@router.delete("/{conversation_id}")
async def delete_conversation(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    await service.delete_conversation(current_user["_id"], conversation_id)
    return {"success": True}
