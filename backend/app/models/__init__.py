"""Database models package."""

from .base import Base
from .chat import (
    Chat,
    ChatParticipant,
    Contact,
    Message,
    MessageEdit,
    MessageHidden,
    MessageReaction,
    MessageReceipt,
    User,
)
from .enums import ChatRole, MessageType

__all__ = [
    "Base",
    "User",
    "Contact",
    "Chat",
    "ChatParticipant",
    "Message",
    "MessageEdit",
    "MessageHidden",
    "MessageReaction",
    "MessageReceipt",
    "ChatRole",
    "MessageType",
]
