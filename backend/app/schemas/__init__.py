"""Pydantic schemas for API payloads."""

from .messages import MessageRead, MessageStatusRead, MessageStatusResult, MessageStatusUpdate
from .presence import MembershipSyncRequest, MembershipSyncResult, PresenceRead

__all__ = [
    "MessageRead",
    "MessageStatusRead",
    "MessageStatusResult",
    "MessageStatusUpdate",
    "PresenceRead",
    "MembershipSyncRequest",
    "MembershipSyncResult",
]
