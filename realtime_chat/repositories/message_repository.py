import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from realtime_chat.errors import NotFoundError, ValidationError
from realtime_chat.utils.documents import normalize_document, to_object_id, utc_now


logger = logging.getLogger(__name__)


class MessageRepository:
    """Append-only message log, the source of truth for history and read state."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    @property
    def conversations(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversationId", ASCENDING), ("createdAt", ASCENDING)])
        await self.collection.create_index([("receiverId", ASCENDING), ("read", ASCENDING)])

    async def append(
        self,
        conversation_id,
        sender_id: str,
        receiver_id: str,
        content: str,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not content or not content.strip():
            raise ValidationError("Message content cannot be empty")
        convo_oid = to_object_id(conversation_id, "conversation ID")
        convo = await self.conversations.find_one(
            {"_id": convo_oid, "participants": {"$all": [sender_id, receiver_id]}},
            {"_id": 1},
        )
        if convo is None:
            raise NotFoundError("Conversation not found for these participants")
        doc: Dict[str, Any] = {
            "conversationId": convo_oid,
            "senderId": sender_id,
            "receiverId": receiver_id,
            "content": content.strip(),
            "read": False,
            "createdAt": utc_now(),
            "clientMessageId": client_message_id,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return normalize_document(doc)

    async def list_by_conversation(
        self,
        conversation_id,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Dict[str, Any]], int]:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        query = {"conversationId": to_object_id(conversation_id, "conversation ID")}
        total = await self.collection.count_documents(query)
        skip = (page - 1) * limit
        if skip >= total:
            return [], total
        cursor = (
            self.collection.find(query)
            .sort([("createdAt", ASCENDING), ("_id", ASCENDING)])
            .skip(skip)
            .limit(limit)
        )
        items = await cursor.to_list(length=limit)
        return [normalize_document(it) for it in items], total

    async def get_many(self, message_ids: Iterable) -> Dict[str, Dict[str, Any]]:
        oids = [to_object_id(mid, "message ID") for mid in message_ids if mid]
        if not oids:
            return {}
        cursor = self.collection.find({"_id": {"$in": oids}})
        items = await cursor.to_list(length=len(oids))
        return {str(it["_id"]): normalize_document(it) for it in items}

    async def mark_read(self, conversation_id, receiver_id: str) -> int:
        result = await self.collection.update_many(
            {
                "conversationId": to_object_id(conversation_id, "conversation ID"),
                "receiverId": receiver_id,
                "read": False,
            },
            {"$set": {"read": True}},
        )
        return result.modified_count or 0

    async def count_unread(self, conversation_id, receiver_id: str) -> int:
        return await self.collection.count_documents(
            {
                "conversationId": to_object_id(conversation_id, "conversation ID"),
                "receiverId": receiver_id,
                "read": False,
            }
        )

    async def delete_by_conversation(self, conversation_id) -> int:
        result = await self.collection.delete_many(
            {"conversationId": to_object_id(conversation_id, "conversation ID")}
        )
        deleted = result.deleted_count or 0
        logger.info("Deleted %d messages of conversation %s", deleted, conversation_id)
        return deleted
