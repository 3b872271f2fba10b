"""Session, presence and message delivery coordination for live chat clients."""

from .coordinator import RealtimeCoordinator  # noqa: F401
from .delivery import DeliveryStateMachine  # noqa: F401
from .errors import (  # noqa: F401
    InvalidPayload,
    NotFound,
    PermissionDenied,
    RealtimeError,
    TargetUnavailable,
    TransientStoreFailure,
)
from .mutations import MessageMutationRelay  # noqa: F401
from .presence import PresenceBroadcaster  # noqa: F401
from .reaper import StaleConnectionReaper  # noqa: F401
from .registry import ConnectionRegistry  # noqa: F401
from .relay import MessageRelay  # noqa: F401
from .rooms import RoomMembership  # noqa: F401
from .session import ClientSession, SessionTransport  # noqa: F401
from .signals import CallSession, EphemeralSignalRelay  # noqa: F401
from .store import (  # noqa: F401
    ChatStore,
    MessageRecord,
    MessageStatus,
    MessageType,
    NewMessage,
    ReceiptOutcome,
)

__all__ = [
    "RealtimeCoordinator",
    "ClientSession",
    "SessionTransport",
    "ConnectionRegistry",
    "RoomMembership",
    "PresenceBroadcaster",
    "MessageRelay",
    "DeliveryStateMachine",
    "MessageMutationRelay",
    "EphemeralSignalRelay",
    "CallSession",
    "StaleConnectionReaper",
    "ChatStore",
    "MessageRecord",
    "MessageStatus",
    "MessageType",
    "NewMessage",
    "ReceiptOutcome",
    "RealtimeError",
    "PermissionDenied",
    "NotFound",
    "TransientStoreFailure",
    "TargetUnavailable",
    "InvalidPayload",
]
