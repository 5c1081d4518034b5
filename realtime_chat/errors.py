"""Error taxonomy shared by the stores, the chat service and the REST layer.

Every error carries the HTTP status it maps to. The REST layer renders them
as ``{"error": <message>}``; ``ConflictError`` is recovered inside the
conversation directory and never reaches a client.
"""


class ChatError(Exception):

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ChatError):
    status_code = 400


class UnauthorizedError(ChatError):
    status_code = 401


class ForbiddenError(ChatError):
    status_code = 403


class NotFoundError(ChatError):
    status_code = 404


class ConflictError(ChatError):
    status_code = 409


class SendError(ChatError):
    """Raised client-side when an optimistic send could not be persisted."""

    status_code = 502
