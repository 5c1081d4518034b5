"""Per-conversation view model on the client.

Three asynchronous sources feed one message list: paginated REST history,
the acknowledgement of a REST send, and events pushed by the hub. The
controller merges them so that the visible list

    - holds every message once (keyed by its server id),
    - is sorted by ``(createdAt, id)`` at all times,
    - replaces an optimistic entry in place once the stored message shows up,
      no matter which source delivers it first.

Optimistic entries carry a temporary id which is also sent to the server as
``clientMessageId``; the stored message echoes it back, which is how a
fetched or pushed record is matched with its provisional twin.
"""
import bisect
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple

from realtime_chat.client.channel import HubChannel
from realtime_chat.errors import ChatError, SendError, ValidationError

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "temp-"


class ChatApi(Protocol):

    async def get_conversation(self, conversation_id: str, page: int = 1, limit: int = 20) -> Dict[str, Any]: ...

    async def send_message(
        self,
        receiver_id: str,
        content: str,
        conversation_id: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]: ...

    async def mark_read(self, conversation_id: str) -> int: ...


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        parsed = datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _sort_key(message: Dict[str, Any]) -> Tuple[datetime, str]:
    return message["createdAt"], str(message["_id"])


class ChatSessionController:

    def __init__(
        self,
        conversation_id: str,
        self_id: str,
        api: ChatApi,
        channel: Optional[HubChannel] = None,
        peer_id: Optional[str] = None,
        page_limit: int = 20,
    ) -> None:
        self.conversation_id = conversation_id
        self.self_id = self_id
        self.peer_id = peer_id
        self.page_limit = page_limit
        self._api = api
        self._channel = channel

        self.conversation: Optional[Dict[str, Any]] = None
        self.page = 0
        self.total_messages = 0
        self.has_more = True
        self.peer_typing = False

        self._messages: List[Dict[str, Any]] = []
        self._known_ids: Set[str] = set()
        # temp ids of optimistic sends not yet matched with a stored message
        self._pending: Set[str] = set()
        # ids that arrived outside of history pages (hub events, own sends)
        self._live_ids: Set[str] = set()
        self._unsubscribers: List[Callable[[], None]] = []
        self._closed = False

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return [dict(m) for m in self._messages]

    @property
    def is_open(self) -> bool:
        return bool(self._unsubscribers) and not self._closed

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        self._closed = False
        if self._channel is not None and not self._unsubscribers:
            self._unsubscribers = [
                self._channel.on("receive-message", self.on_incoming),
                self._channel.on("user-typing", self.on_typing),
                self._channel.on("messages-read", self.on_messages_read),
                self._channel.on("message-sent", self.on_message_sent),
            ]
        await self.load_page(1)
        await self._emit_read_receipt()

    def close(self) -> None:
        """Stop incorporating hub events; the view is being torn down."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self._closed = True
        self.peer_typing = False

    # ------------------------------------------------------------------
    # history
    # ------------------------------------------------------------------

    async def load_page(self, page: int) -> List[Dict[str, Any]]:
        data = await self._api.get_conversation(self.conversation_id, page=page, limit=self.page_limit)
        if self._closed:
            return []
        fetched = data.get("messages", [])
        self.conversation = data.get("conversation") or self.conversation
        self._resolve_peer()

        if page == 1:
            # replace loaded history but keep what history cannot know about yet
            carried = [m for m in self._messages if m["_id"] in self._pending or m["_id"] in self._live_ids]
            self._messages = carried
            self._known_ids = {m["_id"] for m in carried if m["_id"] not in self._pending}

        for raw in fetched:
            self._incorporate(raw)

        pagination = data.get("pagination", {})
        self.page = page if page == 1 else max(self.page, page)
        self.total_messages = pagination.get("totalMessages", len(self._known_ids))
        self.has_more = pagination.get("hasMore", page * self.page_limit < self.total_messages)
        return fetched

    async def load_older(self) -> List[Dict[str, Any]]:
        if not self.has_more:
            return []
        return await self.load_page(self.page + 1)

    def _resolve_peer(self) -> None:
        if self.peer_id or not self.conversation:
            return
        others = [p for p in self.conversation.get("participants", []) if p != self.self_id]
        if others:
            self.peer_id = others[0]

    # ------------------------------------------------------------------
    # sending
    # ------------------------------------------------------------------

    async def optimistic_send(self, content: str) -> Dict[str, Any]:
        text = content.strip() if content else ""
        if not text:
            raise ValidationError("Message content cannot be empty")
        if not self.peer_id:
            raise ValidationError("Cannot send message - recipient not found")

        temp_id = f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"
        provisional = {
            "_id": temp_id,
            "conversationId": self.conversation_id,
            "senderId": self.self_id,
            "receiverId": self.peer_id,
            "content": text,
            "read": False,
            "createdAt": datetime.now(timezone.utc),
            "clientMessageId": temp_id,
            "pending": True,
        }
        self._pending.add(temp_id)
        self._insert_sorted(provisional)

        try:
            stored = await self._api.send_message(
                self.peer_id,
                text,
                conversation_id=self.conversation_id,
                client_message_id=temp_id,
            )
        except Exception as exc:
            self._discard(temp_id)
            logger.warning("Send failed in conversation %s: %s", self.conversation_id, exc)
            raise SendError("Failed to send message. Please try again.") from exc

        stored = {**stored, "clientMessageId": temp_id}
        self._incorporate(stored, live=True)
        # a history page may have matched it already; drop the twin either way
        if temp_id in self._pending:
            self._discard(temp_id)

        await self._relay_sent(stored)
        return dict(self._find(str(stored["_id"])) or stored)

    async def _relay_sent(self, stored: Dict[str, Any]) -> None:
        if self._channel is None:
            return
        payload = {
            "senderId": self.self_id,
            "receiverId": self.peer_id,
            "content": stored["content"],
            "conversationId": self.conversation_id,
            "messageId": str(stored["_id"]),
            "createdAt": parse_timestamp(stored.get("createdAt")).isoformat(),
            "clientMessageId": stored.get("clientMessageId"),
        }
        try:
            await self._channel.emit("send-message", payload)
        except Exception as exc:
            # already persisted; the peer picks it up on its next fetch
            logger.warning("Could not relay message %s: %s", stored["_id"], exc)

    async def set_typing(self, is_typing: bool) -> None:
        if self._channel is None or not self.peer_id:
            return
        await self._channel.emit(
            "typing",
            {"senderId": self.self_id, "receiverId": self.peer_id, "isTyping": is_typing},
        )

    # ------------------------------------------------------------------
    # hub events
    # ------------------------------------------------------------------

    async def on_incoming(self, event: Dict[str, Any]) -> bool:
        if self._closed or not event:
            return False
        if str(event.get("conversationId")) != self.conversation_id:
            return False
        incoming_from_peer = event.get("senderId") != self.self_id
        added = self._incorporate(event, live=True)
        if added and incoming_from_peer:
            message = self._find(str(event.get("messageId") or event.get("_id")))
            if message is not None:
                message["read"] = True
            await self._persist_read()
            await self._emit_read_receipt(notify_user_id=event.get("senderId"))
        return added

    def on_typing(self, event: Dict[str, Any]) -> None:
        if self._closed or not event:
            return
        if event.get("userId") == self.peer_id:
            self.peer_typing = bool(event.get("isTyping"))

    def on_messages_read(self, event: Dict[str, Any]) -> int:
        if self._closed or not event or str(event.get("conversationId")) != self.conversation_id:
            return 0
        flipped = 0
        for message in self._messages:
            if message["senderId"] == self.self_id and not message["read"] and not message.get("pending"):
                message["read"] = True
                flipped += 1
        return flipped

    def on_message_sent(self, event: Dict[str, Any]) -> None:
        logger.debug("Hub acknowledged message %s", (event or {}).get("messageId"))

    async def _persist_read(self) -> None:
        try:
            await self._api.mark_read(self.conversation_id)
        except ChatError as exc:
            # the next history load marks them read as well
            logger.warning("Could not mark conversation %s read: %s", self.conversation_id, exc)

    async def _emit_read_receipt(self, notify_user_id: Optional[str] = None) -> None:
        target = notify_user_id or self.peer_id
        if self._channel is None or not target or target == self.self_id:
            return
        await self._channel.emit("mark-read", {"notifyUserId": target, "conversationId": self.conversation_id})

    # ------------------------------------------------------------------
    # list maintenance
    # ------------------------------------------------------------------

    def _normalize(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        message = dict(raw)
        message_id = message.get("_id") or message.get("messageId")
        message["_id"] = str(message_id) if message_id else None
        message.pop("messageId", None)
        message["conversationId"] = str(message.get("conversationId"))
        message["createdAt"] = parse_timestamp(message.get("createdAt"))
        message["read"] = bool(message.get("read", False))
        message["pending"] = False
        return message

    def _incorporate(self, raw: Dict[str, Any], live: bool = False) -> bool:
        """Merge one server-side record; returns True if the list gained a message."""
        message = self._normalize(raw)
        server_id = message["_id"]
        if not server_id or message["conversationId"] != self.conversation_id:
            return False

        if server_id in self._known_ids:
            existing = self._find(server_id)
            if existing is not None and message["read"]:
                existing["read"] = True
            return False

        self._known_ids.add(server_id)
        if live:
            self._live_ids.add(server_id)

        client_id = message.get("clientMessageId")
        if client_id and client_id in self._pending:
            self._pending.discard(client_id)
            index = self._index_of(client_id)
            if index is not None:
                self._replace_at(index, message)
                return True

        self._insert_sorted(message)
        return True

    def _insert_sorted(self, message: Dict[str, Any]) -> None:
        keys = [_sort_key(m) for m in self._messages]
        self._messages.insert(bisect.bisect_right(keys, _sort_key(message)), message)

    def _replace_at(self, index: int, message: Dict[str, Any]) -> None:
        self._messages[index] = message
        key = _sort_key(message)
        before_ok = index == 0 or _sort_key(self._messages[index - 1]) <= key
        after_ok = index == len(self._messages) - 1 or key <= _sort_key(self._messages[index + 1])
        if not (before_ok and after_ok):
            self._messages.pop(index)
            self._insert_sorted(message)

    def _index_of(self, message_id: str) -> Optional[int]:
        for index, message in enumerate(self._messages):
            if message["_id"] == message_id:
                return index
        return None

    def _find(self, message_id: str) -> Optional[Dict[str, Any]]:
        index = self._index_of(message_id)
        return self._messages[index] if index is not None else None

    def _discard(self, temp_id: str) -> None:
        self._pending.discard(temp_id)
        index = self._index_of(temp_id)
        if index is not None:
            self._messages.pop(index)
