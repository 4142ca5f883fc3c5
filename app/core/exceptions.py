"""Domain exceptions for the messaging service.

Services raise these; the API layer renders them through the handler
registered in `app.main`. Duplicate creates (conversation key, message
request id) are never raised: they resolve to the existing row.
"""

from typing import Any, Dict, Optional

from fastapi import status


class MessagingError(Exception):
    """Base exception for messaging, presence and offer operations."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    error_code: str = "messaging_error"
    retryable: bool = False

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.detail, "error": self.error_code}


class NotFound(MessagingError):
    """Conversation, message, offer or notification does not exist."""

    status_code = status.HTTP_404_NOT_FOUND
    error_code = "not_found"

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity.capitalize()} {entity_id} not found")


class PermissionDenied(MessagingError):
    """The acting user is not allowed to perform the operation."""

    status_code = status.HTTP_403_FORBIDDEN
    error_code = "permission_denied"


class InvalidStateTransition(MessagingError):
    """
    The requested transition is not valid from the entity's current state.

    Carries `current_state` so the client can resync instead of retrying.
    """

    status_code = status.HTTP_409_CONFLICT
    error_code = "invalid_state_transition"

    def __init__(self, detail: str, current_state: Optional[str] = None):
        self.current_state = current_state
        super().__init__(detail)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["current_state"] = self.current_state
        return data


class ValidationFailed(MessagingError):
    """Request is well-formed but violates a domain rule (self-chat, empty text)."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = "validation_failed"


class Transient(MessagingError):
    """Storage or network hiccup. The only class eligible for retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "transient"
    retryable = True

    def __init__(self, detail: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(detail)


__all__ = [
    "MessagingError",
    "NotFound",
    "PermissionDenied",
    "InvalidStateTransition",
    "ValidationFailed",
    "Transient",
]
