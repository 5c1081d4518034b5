import logging
from typing import Any, Dict, List, Optional, Tuple

from realtime_chat.errors import ForbiddenError, NotFoundError, ValidationError
from realtime_chat.repositories.conversation_repository import ConversationRepository
from realtime_chat.repositories.message_repository import MessageRepository
from realtime_chat.utils.delivery_hub import DeliveryHub


logger = logging.getLogger(__name__)


def _ensure_participant(conversation: Dict[str, Any], user_id: str) -> None:
    if user_id not in conversation.get("participants", []):
        raise ForbiddenError("You don't have access to this conversation")


class ChatService:

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        hub: Optional[DeliveryHub] = None,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._hub = hub

    async def list_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        conversations = await self._conversation_repo.list_for_user(user_id)
        last_messages = await self._message_repo.get_many(
            c["lastMessage"] for c in conversations if c.get("lastMessage")
        )
        for convo in conversations:
            if convo.get("lastMessage"):
                convo["lastMessage"] = last_messages.get(convo["lastMessage"])
        return conversations

    async def start_conversation(self, user_id: str, participant_id: Optional[str]) -> Tuple[Dict[str, Any], bool]:
        if not participant_id:
            raise ValidationError("Participant ID is required")
        if participant_id == user_id:
            raise ValidationError("Cannot start a conversation with yourself")
        return await self._conversation_repo.find_or_create([user_id, participant_id])

    async def get_conversation_for(self, user_id: str, conversation_id: str) -> Dict[str, Any]:
        conversation = await self._conversation_repo.get(conversation_id)
        _ensure_participant(conversation, user_id)
        return conversation

    async def open_conversation(self, user_id: str, conversation_id: str, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        conversation = await self.get_conversation_for(user_id, conversation_id)
        messages, total = await self._message_repo.list_by_conversation(conversation_id, page=page, limit=limit)
        await self._message_repo.mark_read(conversation_id, user_id)
        conversation = await self._conversation_repo.reset_unread(conversation_id, user_id)
        return {
            "conversation": conversation,
            "messages": messages,
            "pagination": {
                "page": page,
                "limit": limit,
                "totalMessages": total,
                "hasMore": page * limit < total,
            },
        }

    async def mark_conversation_read(self, user_id: str, conversation_id: str) -> int:
        await self.get_conversation_for(user_id, conversation_id)
        modified = await self._message_repo.mark_read(conversation_id, user_id)
        await self._conversation_repo.reset_unread(conversation_id, user_id)
        return modified

    async def send_message(
        self,
        sender_id: str,
        receiver_id: Optional[str],
        content: Optional[str],
        conversation_id: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not receiver_id or not content or not content.strip():
            raise ValidationError("Receiver ID and content are required")
        if receiver_id == sender_id:
            raise ValidationError("Cannot send a message to yourself")
        if conversation_id:
            conversation = await self._conversation_repo.get(conversation_id)
            _ensure_participant(conversation, sender_id)
            if receiver_id not in conversation["participants"]:
                raise ValidationError("Receiver is not a participant of this conversation")
        else:
            conversation, _ = await self._conversation_repo.find_or_create([sender_id, receiver_id])

        message = await self._message_repo.append(
            conversation["_id"],
            sender_id,
            receiver_id,
            content,
            client_message_id=client_message_id,
        )
        # not transactional: a failure here leaves the unread counter stale
        try:
            await self._conversation_repo.record_new_message(conversation["_id"], message, receiver_id)
        except NotFoundError:
            logger.warning("Conversation %s vanished after message %s was stored", conversation["_id"], message["_id"])
            raise

        if self._hub is not None:
            await self._hub.relay_message({**message, "messageId": message["_id"]})
        return message

    async def delete_conversation(self, user_id: str, conversation_id: str) -> None:
        await self.get_conversation_for(user_id, conversation_id)
        await self._conversation_repo.delete(conversation_id)
