from __future__ import annotations

from enum import Enum

from parley.realtime.store import MessageType


class ChatRole(str, Enum):
    """Roles that a participant can have inside a chat."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


__all__ = ["ChatRole", "MessageType"]
