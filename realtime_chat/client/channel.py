import inspect
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Any]


class HubChannel:
    """Client end of the real-time channel.

    Outbound frames go through ``send`` (e.g. a connected WebSocket's
    ``send_json``); inbound frames are fed to ``dispatch`` by whoever reads
    the socket, and routed to the handlers registered with ``on``.
    """

    def __init__(self, send: Callable[[Dict[str, Any]], Awaitable[None]]) -> None:
        self._send = send
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    async def emit(self, event: str, data: Any) -> None:
        await self._send({"event": event, "data": data})

    async def join(self, user_id: str) -> None:
        await self.emit("join", {"userId": user_id})

    def on(self, event: str, handler: EventHandler) -> Callable[[], None]:
        self._handlers[event].append(handler)

        def unsubscribe() -> None:
            self.off(event, handler)

        return unsubscribe

    def off(self, event: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    async def dispatch(self, frame: Dict[str, Any]) -> int:
        event = frame.get("event")
        handlers = list(self._handlers.get(event, []))
        if not handlers:
            logger.debug("No handler for %s", event)
        for handler in handlers:
            result = handler(frame.get("data"))
            if inspect.isawaitable(result):
                await result
        return len(handlers)
