from typing import Any, Dict, List, Optional

from realtime_chat.client.session import parse_timestamp


class ConversationInbox:
    """Client-side conversation list kept current from hub events.

    A ``receive-message`` event bumps its conversation to the top, replaces
    ``lastMessage`` and increments the local unread counter, so the list does
    not have to be re-fetched for every message. Events for conversations the
    inbox has never seen return False; the caller fetches the list then.
    """

    def __init__(self, self_id: str, conversations: Optional[List[Dict[str, Any]]] = None) -> None:
        self.self_id = self_id
        self._conversations: List[Dict[str, Any]] = [dict(c) for c in conversations or []]

    @property
    def conversations(self) -> List[Dict[str, Any]]:
        return [dict(c) for c in self._conversations]

    def replace_all(self, conversations: List[Dict[str, Any]]) -> None:
        self._conversations = [dict(c) for c in conversations]

    def unread_for(self, conversation_id: str) -> int:
        convo = self._get(conversation_id)
        if convo is None:
            return 0
        return convo.get("unreadCount", {}).get(self.self_id, 0)

    def apply_incoming(self, message: Dict[str, Any], active_conversation_id: Optional[str] = None) -> bool:
        conversation_id = str(message.get("conversationId"))
        convo = self._get(conversation_id)
        if convo is None:
            return False
        message_id = message.get("_id") or message.get("messageId")
        last = convo.get("lastMessage") or {}
        if message_id and last.get("_id") == message_id:
            return True

        convo["lastMessage"] = {**message, "_id": message_id}
        convo["updatedAt"] = parse_timestamp(message.get("createdAt"))
        if message.get("receiverId") == self.self_id and conversation_id != active_conversation_id:
            unread = dict(convo.get("unreadCount", {}))
            unread[self.self_id] = unread.get(self.self_id, 0) + 1
            convo["unreadCount"] = unread

        self._conversations.remove(convo)
        self._conversations.insert(0, convo)
        return True

    def mark_seen(self, conversation_id: str) -> None:
        convo = self._get(conversation_id)
        if convo is not None:
            convo["unreadCount"] = {**convo.get("unreadCount", {}), self.self_id: 0}

    def remove(self, conversation_id: str) -> None:
        convo = self._get(conversation_id)
        if convo is not None:
            self._conversations.remove(convo)

    def _get(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        for convo in self._conversations:
            if str(convo.get("_id")) == conversation_id:
                return convo
        return None
