import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PayloadError

from realtime_chat.schemas.events import HubFrame, JoinPayload, MarkReadPayload, SendMessagePayload, TypingPayload
from realtime_chat.utils.delivery_hub import ERROR, JOINED, ConnectionState, DeliveryHub, HubSession
from realtime_chat.utils.dependencies import get_hub
from realtime_chat.utils.security import subject_from_token


logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

Handler = Callable[[DeliveryHub, WebSocket, HubSession, str, Any], Awaitable[None]]


class ProtocolError(Exception):
    pass


def _require_joined(session: HubSession, sender_id: Optional[str] = None) -> None:
    if session.state != ConnectionState.JOINED:
        raise ProtocolError("Join your room before sending events")
    if sender_id is not None and sender_id != session.user_id:
        raise ProtocolError("senderId does not match the joined user")


async def _on_join(hub: DeliveryHub, websocket: WebSocket, session: HubSession, user_id: str, data: Any) -> None:
    # clients may send the bare user id as the payload
    payload = JoinPayload(userId=data) if isinstance(data, str) else JoinPayload.model_validate(data or {})
    if payload.userId != user_id:
        logger.warning("Rejected join of room %s by user %s", payload.userId, user_id)
        raise ProtocolError("You can only join your own room")
    hub.join(websocket, payload.userId)
    await hub.emit_to_connection(websocket, JOINED, {"userId": payload.userId})


async def _on_send_message(hub: DeliveryHub, websocket: WebSocket, session: HubSession, user_id: str, data: Any) -> None:
    payload = SendMessagePayload.model_validate(data or {})
    _require_joined(session, payload.senderId)
    await hub.relay_message(payload.model_dump(), origin=websocket)


async def _on_typing(hub: DeliveryHub, websocket: WebSocket, session: HubSession, user_id: str, data: Any) -> None:
    payload = TypingPayload.model_validate(data or {})
    _require_joined(session, payload.senderId)
    await hub.relay_typing(payload.senderId, payload.receiverId, payload.isTyping)


async def _on_mark_read(hub: DeliveryHub, websocket: WebSocket, session: HubSession, user_id: str, data: Any) -> None:
    payload = MarkReadPayload.model_validate(data or {})
    _require_joined(session)
    await hub.relay_read_receipt(payload.notifyUserId, payload.conversationId)


HANDLERS: Dict[str, Handler] = {
    "join": _on_join,
    "send-message": _on_send_message,
    "typing": _on_typing,
    "mark-read": _on_mark_read,
}


@router.websocket("/ws")
async def hub_socket(websocket: WebSocket, hub: DeliveryHub = Depends(get_hub)):
    # JWT protects the channel: token comes as ?token=...
    user_id = subject_from_token(websocket.query_params.get("token"))
    if not user_id:
        await websocket.close(code=4401)
        return

    await websocket.accept()
    session = hub.register(websocket)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            try:
                if raw is None:
                    raise ProtocolError("Frames must be JSON text")
                frame = HubFrame.model_validate_json(raw)
                handler = HANDLERS.get(frame.event)
                if handler is None:
                    raise ProtocolError(f"Unknown event: {frame.event}")
                await handler(hub, websocket, session, user_id, frame.data)
            except PayloadError as exc:
                await hub.emit_to_connection(websocket, ERROR, {"detail": json.loads(exc.json(include_url=False))})
            except ProtocolError as exc:
                await hub.emit_to_connection(websocket, ERROR, {"detail": str(exc)})
    except WebSocketDisconnect:
        pass
    finally:
        hub.leave(websocket)
