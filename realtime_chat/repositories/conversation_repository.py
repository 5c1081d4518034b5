import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from realtime_chat.errors import ConflictError, NotFoundError, ValidationError
from realtime_chat.repositories.message_repository import MessageRepository
from realtime_chat.utils.documents import normalize_document, to_object_id, utc_now


logger = logging.getLogger(__name__)

KEY_SEPARATOR = ","


def participant_key(participant_ids: Iterable[str]) -> Tuple[List[str], str]:
    participants = sorted({str(p).strip() for p in participant_ids if p and str(p).strip()})
    if len(participants) < 2:
        raise ValidationError("A conversation needs at least two distinct participants")
    # ids become field names under unreadCount, where "." nests and "$" is reserved
    if any(KEY_SEPARATOR in p or "." in p or p.startswith("$") for p in participants):
        raise ValidationError("Invalid participant ID")
    return participants, KEY_SEPARATOR.join(participants)


class ConversationRepository:
    """Maps participant sets to conversation records. Performs no authorization."""

    def __init__(self, db: AsyncIOMotorDatabase, message_repo: Optional[MessageRepository] = None) -> None:
        self._db = db
        self._message_repo = message_repo or MessageRepository(db)

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participantKey", ASCENDING)], unique=True)
        await self.collection.create_index([("participants", ASCENDING)])
        await self.collection.create_index([("updatedAt", DESCENDING)])

    async def get(self, conversation_id) -> Dict[str, Any]:
        doc = await self.collection.find_one({"_id": to_object_id(conversation_id, "conversation ID")})
        if doc is None:
            raise NotFoundError("Conversation not found")
        return normalize_document(doc)

    async def find_or_create(self, participant_ids: Iterable[str]) -> Tuple[Dict[str, Any], bool]:
        participants, key = participant_key(participant_ids)
        existing = await self.collection.find_one({"participantKey": key})
        if existing:
            return normalize_document(existing), False
        try:
            return await self._create(participants, key), True
        except ConflictError:
            # another request created it between our lookup and insert
            logger.info("Concurrent creation of conversation %s, re-reading", key)
            existing = await self.collection.find_one({"participantKey": key})
            if existing is None:
                raise
            return normalize_document(existing), False

    async def _create(self, participants: List[str], key: str) -> Dict[str, Any]:
        now = utc_now()
        doc: Dict[str, Any] = {
            "participants": participants,
            "participantKey": key,
            "lastMessage": None,
            "unreadCount": {p: 0 for p in participants},
            "createdAt": now,
            "updatedAt": now,
        }
        try:
            result = await self.collection.insert_one(doc)
        except DuplicateKeyError as exc:
            raise ConflictError(f"Conversation already exists for {key}") from exc
        doc["_id"] = result.inserted_id
        logger.info("Created conversation %s for %s", result.inserted_id, key)
        return normalize_document(doc)

    async def record_new_message(self, conversation_id, message: Dict[str, Any], receiver_id: str) -> Dict[str, Any]:
        doc = await self.collection.find_one_and_update(
            {"_id": to_object_id(conversation_id, "conversation ID")},
            {
                "$set": {
                    "lastMessage": to_object_id(message["_id"], "message ID"),
                    "updatedAt": utc_now(),
                },
                "$inc": {f"unreadCount.{receiver_id}": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise NotFoundError("Conversation not found")
        return normalize_document(doc)

    async def reset_unread(self, conversation_id, participant_id: str) -> Dict[str, Any]:
        doc = await self.collection.find_one_and_update(
            {"_id": to_object_id(conversation_id, "conversation ID")},
            {"$set": {f"unreadCount.{participant_id}": 0}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise NotFoundError("Conversation not found")
        return normalize_document(doc)

    async def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        cursor = self.collection.find({"participants": user_id}).sort(
            [("updatedAt", DESCENDING), ("_id", DESCENDING)]
        )
        items = await cursor.to_list(length=None)
        return [normalize_document(it) for it in items]

    async def delete(self, conversation_id) -> None:
        oid = to_object_id(conversation_id, "conversation ID")
        result = await self.collection.delete_one({"_id": oid})
        if not result.deleted_count:
            raise NotFoundError("Conversation not found")
        await self._message_repo.delete_by_conversation(oid)
        logger.info("Deleted conversation %s", oid)
