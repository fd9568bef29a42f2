"""Exception taxonomy for the messaging core.

Every error carries an HTTP status code so routers can convert it with
handle_messaging_error(). Delivery and presence errors never reach the HTTP
layer: delivery failures are retried and surface as a ``failed`` message
status, presence failures are logged and dropped.
"""
from fastapi import HTTPException


class MessagingError(Exception):
    """Base exception for messaging errors."""
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ValidationError(MessagingError):
    """Raised for malformed requests. Nothing is persisted."""
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message, status_code=status_code)


class InvalidTransitionError(ValidationError):
    """Raised when a delivery status would move backwards."""
    def __init__(self, message_id: int, current: str, requested: str):
        self.message_id = message_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Message {message_id} cannot move from {current} to {requested}",
            status_code=409,
        )


class ForbiddenError(MessagingError):
    """Raised when a user acts on a message that is not theirs to change."""
    def __init__(self, message: str):
        super().__init__(message, status_code=403)


class NotFoundError(MessagingError):
    """Raised when a message id is unknown to the store."""
    def __init__(self, message_id: int):
        self.message_id = message_id
        super().__init__(f"Message {message_id} not found", status_code=404)


class PersistenceError(MessagingError):
    """Raised when a store write or read fails.

    The client keeps its local copy in ``sending`` and must retry the whole
    submit.
    """
    def __init__(self, message: str):
        super().__init__(f"Message store unavailable: {message}", status_code=503)


class DeliveryError(MessagingError):
    """Raised when pushing to a live session fails after persistence."""
    def __init__(self, message: str, session_id: str = ""):
        self.session_id = session_id
        super().__init__(message, status_code=502)


class PresenceError(MessagingError):
    """Raised when a presence broadcast fails. Logged, never surfaced."""
    def __init__(self, message: str):
        super().__init__(message, status_code=500)


def handle_messaging_error(error: MessagingError) -> HTTPException:
    """Convert a MessagingError to an HTTPException.

    Args:
        error: The MessagingError to convert.

    Returns:
        HTTPException with appropriate status code and detail.
    """
    return HTTPException(
        status_code=error.status_code,
        detail=error.message,
    )
