from typing import Any, Dict, List, Optional

import httpx

from realtime_chat.errors import ChatError, ForbiddenError, NotFoundError, UnauthorizedError, ValidationError


_ERRORS_BY_STATUS = {
    400: ValidationError,
    401: UnauthorizedError,
    403: ForbiddenError,
    404: NotFoundError,
}


class HttpChatApi:
    """REST client for the conversation and message endpoints."""

    def __init__(self, client: httpx.AsyncClient, token: str) -> None:
        self._client = client
        self._headers = {"Authorization": f"Bearer {token}"}

    async def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        resp = await self._client.request(method, url, headers=self._headers, **kwargs)
        if resp.is_success:
            return resp.json()
        try:
            message = resp.json().get("error") or resp.reason_phrase
        except ValueError:
            message = resp.reason_phrase
        error_cls = _ERRORS_BY_STATUS.get(resp.status_code, ChatError)
        raise error_cls(message)

    async def list_conversations(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/conversations")
        return data["conversations"]

    async def start_conversation(self, participant_id: str) -> Dict[str, Any]:
        data = await self._request("POST", "/conversations", json={"participantId": participant_id})
        return data["conversation"]

    async def get_conversation(self, conversation_id: str, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        return await self._request("GET", f"/conversations/{conversation_id}", params={"page": page, "limit": limit})

    async def mark_read(self, conversation_id: str) -> int:
        data = await self._request("POST", f"/conversations/{conversation_id}/read")
        return data["updated"]

    async def send_message(
        self,
        receiver_id: str,
        content: str,
        conversation_id: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"receiverId": receiver_id, "content": content}
        if conversation_id:
            body["conversationId"] = conversation_id
        if client_message_id:
            body["clientMessageId"] = client_message_id
        data = await self._request("POST", "/messages", json=body)
        return data["message"]

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._request("DELETE", f"/conversations/{conversation_id}")
