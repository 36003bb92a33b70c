"""Error taxonomy for the messaging core.

Every failure a caller can observe is a ``ChatError`` subclass carrying an
HTTP status code and a human-readable reason. The HTTP surface maps them to
``{"detail": reason}`` responses; the WebSocket gateway turns them into
``error`` events for the offending operation only.
"""


class ChatError(Exception):
    """Base class for all messaging-core failures."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationFailure(ChatError):
    """Missing, malformed or expired bearer credential."""
    status_code = 401


class AccessDenied(ChatError):
    """Role, ownership or attempt check failed."""
    status_code = 403


class NotFound(ChatError):
    """Paper, room or message does not exist."""
    status_code = 404


class ValidationFailure(ChatError):
    """Empty body, oversized body or malformed identifiers."""
    status_code = 400


class PersistenceFailure(ChatError):
    """The chat store is unavailable; the caller should retry."""
    status_code = 503
