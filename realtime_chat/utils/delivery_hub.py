"""In-process real-time event broker.

Every live connection joins the room named after its user identity, so a user
with several tabs open receives each event once per tab. Delivery is
at-most-once: an event for a room with no members is dropped, nothing is
queued or replayed. Durable state lives in MongoDB; the hub only shortens the
time until connected clients notice it.

Connections are duck-typed: anything with ``async send_json(data)`` works,
which covers Starlette's ``WebSocket`` as well as test doubles.

Not thread-safe. All calls are expected to come from one event loop.
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from fastapi.encoders import jsonable_encoder

from realtime_chat.utils.documents import utc_now


logger = logging.getLogger(__name__)

RECEIVE_MESSAGE = "receive-message"
MESSAGE_SENT = "message-sent"
USER_TYPING = "user-typing"
MESSAGES_READ = "messages-read"
JOINED = "joined"
ERROR = "error"


class Connection(Protocol):

    async def send_json(self, data: Any) -> None: ...


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    JOINED = "joined"
    DISCONNECTED = "disconnected"


class HubSession:

    def __init__(self, connection: Connection) -> None:
        self.connection = connection
        self.user_id: Optional[str] = None
        self.state = ConnectionState.CONNECTING


def build_frame(event: str, data: Any) -> Dict[str, Any]:
    return {"event": event, "data": jsonable_encoder(data)}


class DeliveryHub:
    """Room registry plus the four relay operations of the chat protocol."""

    def __init__(self) -> None:
        # room (user_id) -> connections joined to it
        self.rooms: Dict[str, List[Connection]] = {}
        self._sessions: Dict[Connection, HubSession] = {}

    def register(self, connection: Connection) -> HubSession:
        session = self._sessions.get(connection)
        if session is None:
            session = HubSession(connection)
            self._sessions[connection] = session
        return session

    def session_for(self, connection: Connection) -> Optional[HubSession]:
        return self._sessions.get(connection)

    def join(self, connection: Connection, user_id: str) -> HubSession:
        session = self.register(connection)
        if session.state == ConnectionState.JOINED:
            if session.user_id == user_id:
                return session
            self._remove_from_room(connection, session.user_id)
        self.rooms.setdefault(user_id, []).append(connection)
        session.user_id = user_id
        session.state = ConnectionState.JOINED
        logger.info("User %s joined their room (%d connections)", user_id, len(self.rooms[user_id]))
        return session

    def leave(self, connection: Connection) -> Optional[HubSession]:
        session = self._sessions.pop(connection, None)
        if session is None:
            return None
        if session.user_id is not None:
            self._remove_from_room(connection, session.user_id)
            logger.info("User %s disconnected", session.user_id)
        session.state = ConnectionState.DISCONNECTED
        return session

    def _remove_from_room(self, connection: Connection, room: Optional[str]) -> None:
        members = self.rooms.get(room)
        if not members:
            return
        if connection in members:
            members.remove(connection)
        if not members:
            del self.rooms[room]

    def room_size(self, user_id: str) -> int:
        return len(self.rooms.get(user_id, []))

    def is_online(self, user_id: str) -> bool:
        return self.room_size(user_id) > 0

    async def emit_to_room(self, room: str, event: str, data: Any) -> int:
        """Send one event to every connection of ``room``; returns deliveries."""
        members = list(self.rooms.get(room, []))
        if not members:
            logger.debug("Dropped %s for room %s: nobody connected", event, room)
            return 0
        frame = build_frame(event, data)
        results = await asyncio.gather(
            *[self._safe_send(conn, frame) for conn in members],
            return_exceptions=True,
        )
        delivered = 0
        for conn, ok in zip(members, results):
            if ok is True:
                delivered += 1
            else:
                # its session is gone, so the reader must stop too
                self.leave(conn)
                await self._close_quietly(conn)
                logger.debug("Removed dead connection from room %s", room)
        return delivered

    async def _close_quietly(self, connection: Connection) -> None:
        close = getattr(connection, "close", None)
        if close is None:
            return
        try:
            await close(code=1011)
        except Exception as e:
            logger.debug("Connection already gone: %s", e)

    async def emit_to_connection(self, connection: Connection, event: str, data: Any) -> bool:
        return await self._safe_send(connection, build_frame(event, data))

    async def _safe_send(self, connection: Connection, frame: Dict[str, Any]) -> bool:
        try:
            await connection.send_json(frame)
            return True
        except Exception as e:
            logger.debug("Failed to send to connection: %s", e)
            return False

    async def relay_message(self, event: Dict[str, Any], origin: Optional[Connection] = None) -> int:
        """Push ``receive-message`` to the receiver and ack the originating connection."""
        message_id = event.get("messageId") or event.get("_id")
        payload = {
            "_id": message_id,
            "messageId": message_id,
            "conversationId": event.get("conversationId"),
            "senderId": event.get("senderId"),
            "receiverId": event.get("receiverId"),
            "content": event.get("content"),
            "read": bool(event.get("read", False)),
            "createdAt": event.get("createdAt") or utc_now(),
            "clientMessageId": event.get("clientMessageId"),
        }
        delivered = await self.emit_to_room(str(payload["receiverId"]), RECEIVE_MESSAGE, payload)
        if origin is not None:
            await self.emit_to_connection(origin, MESSAGE_SENT, {"success": True, "messageId": message_id})
        return delivered

    async def relay_typing(self, sender_id: str, receiver_id: str, is_typing: bool) -> int:
        return await self.emit_to_room(receiver_id, USER_TYPING, {"userId": sender_id, "isTyping": is_typing})

    async def relay_read_receipt(self, notify_user_id: str, conversation_id: str) -> int:
        """Tell ``notify_user_id`` (the original sender) that the conversation was read."""
        return await self.emit_to_room(notify_user_id, MESSAGES_READ, {"conversationId": conversation_id})
