"""Messaging and presence core: store, live delivery and reconciliation."""

from .delivery import DeliveryEngine, DeliveryOutcome
from .directory import OpenDirectory, StaticDirectory, UserDirectory
from .errors import (
    DeliveryError,
    ForbiddenError,
    InvalidTransitionError,
    MessagingError,
    NotFoundError,
    PersistenceError,
    PresenceError,
    ValidationError,
    handle_messaging_error,
)
from .presence import PresenceTracker
from .reconciliation import ConversationView, DisplayState, merge_messages
from .registry import Connection, ConnectionRegistry
from .rooms import RoomRouter
from .scheduler import CancellationToken, RetryPolicy, Timer
from .schemas import (
    ConversationKey,
    DeliveryStatus,
    HistoryPage,
    Message,
    MessageCreate,
    MessageType,
    SubmitMessageRequest,
    can_transition,
)
from .service import MessagingService, get_messaging_service
from .store import MessageStore
from .router import router

__all__ = [
    "CancellationToken",
    "Connection",
    "ConnectionRegistry",
    "ConversationKey",
    "ConversationView",
    "DeliveryEngine",
    "DeliveryError",
    "DeliveryOutcome",
    "DeliveryStatus",
    "DisplayState",
    "ForbiddenError",
    "HistoryPage",
    "InvalidTransitionError",
    "Message",
    "MessageCreate",
    "MessageStore",
    "MessageType",
    "MessagingError",
    "MessagingService",
    "NotFoundError",
    "OpenDirectory",
    "PersistenceError",
    "PresenceError",
    "PresenceTracker",
    "RetryPolicy",
    "RoomRouter",
    "StaticDirectory",
    "SubmitMessageRequest",
    "Timer",
    "UserDirectory",
    "ValidationError",
    "can_transition",
    "get_messaging_service",
    "handle_messaging_error",
    "merge_messages",
    "router",
]
