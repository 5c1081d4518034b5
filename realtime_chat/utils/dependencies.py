from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.requests import HTTPConnection

from realtime_chat.database.connection import mongo_db_dependency
from realtime_chat.errors import UnauthorizedError
from realtime_chat.repositories.conversation_repository import ConversationRepository
from realtime_chat.repositories.message_repository import MessageRepository
from realtime_chat.services.chat_service import ChatService
from realtime_chat.utils.delivery_hub import DeliveryHub
from realtime_chat.utils.security import subject_from_token


_bearer = HTTPBearer(auto_error=False)


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer)) -> dict:
    user_id = subject_from_token(credentials.credentials if credentials else None)
    if not user_id:
        raise UnauthorizedError("Unauthorized")
    return {"_id": user_id}


def get_hub(connection: HTTPConnection) -> DeliveryHub:
    return connection.app.state.hub


def get_chat_service(db=Depends(mongo_db_dependency), hub: DeliveryHub = Depends(get_hub)) -> ChatService:
    msg_repo = MessageRepository(db)
    convo_repo = ConversationRepository(db, msg_repo)
    return ChatService(msg_repo, convo_repo, hub)
