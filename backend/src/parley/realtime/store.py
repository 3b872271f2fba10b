"""Records exchanged with the durable chat store and the store contract."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Protocol, Sequence


class MessageType(str, Enum):
    """Kinds of message content a client can submit."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"
    VOICE = "voice"
    LOCATION = "location"
    CONTACT = "contact"


@dataclass(slots=True)
class MessageStatus:
    sent: bool = True
    sent_at: datetime | None = None
    delivered: bool = False
    delivered_at: datetime | None = None
    read: bool = False
    read_at: datetime | None = None


@dataclass(slots=True)
class MessageRecord:
    id: int
    chat_id: int
    sender_id: int
    content: str
    created_at: datetime
    message_type: MessageType = MessageType.TEXT
    reply_to_id: int | None = None
    client_id: str | None = None
    status: MessageStatus = field(default_factory=MessageStatus)
    edited_at: datetime | None = None
    deleted: bool = False

    @property
    def edited(self) -> bool:
        return self.edited_at is not None


@dataclass(slots=True)
class NewMessage:
    chat_id: int
    sender_id: int
    content: str
    client_id: str
    message_type: MessageType = MessageType.TEXT
    reply_to_id: int | None = None


@dataclass(slots=True)
class ReceiptOutcome:
    """Result of appending a delivery or read receipt.

    ``delivered_created``/``read_created`` report whether this call created the
    per-recipient receipt; repeated calls return ``False`` for both.
    """

    message: MessageRecord
    delivered_created: bool = False
    delivered_at: datetime | None = None
    read_created: bool = False
    read_at: datetime | None = None


class ChatStore(Protocol):
    """Durable storage collaborator.

    Each call is atomic on its own. Implementations raise
    :class:`~parley.realtime.errors.TransientStoreFailure` when the backend is
    unavailable and :class:`~parley.realtime.errors.NotFound` for unknown ids.
    """

    async def fetch_chat_membership(self, chat_id: int) -> set[int]:
        """Return participant ids of ``chat_id`` or raise ``NotFound``."""

    async def fetch_user_chats(self, user_id: int) -> list[int]: ...

    async def fetch_contacts(self, user_id: int) -> set[int]: ...

    async def get_message(self, message_id: int) -> MessageRecord | None: ...

    async def create_message(self, message: NewMessage) -> tuple[MessageRecord, bool]:
        """Persist ``message`` with ``sent`` set.

        Returns the stored record and ``False`` when a message with the same
        sender and client id already existed.
        """

    async def increment_unread(
        self, chat_id: int, message_id: int, recipients: Sequence[int]
    ) -> None:
        """Move the chat's last-message pointer and bump unread counters."""

    async def append_delivery_receipt(self, message_id: int, user_id: int) -> ReceiptOutcome: ...

    async def append_read_receipt(self, message_id: int, user_id: int) -> ReceiptOutcome:
        """Record a read receipt, creating the delivered receipt if missing."""

    async def reset_unread(self, chat_id: int, user_id: int, message_id: int) -> None: ...

    async def stamp_last_seen(self, user_id: int, when: datetime) -> None: ...

    async def edit_message(self, message_id: int, content: str) -> tuple[MessageRecord, bool]:
        """Replace the content, keeping the previous text as history.

        Returns ``False`` when the content is unchanged.
        """

    async def delete_message(self, message_id: int, user_id: int, *, for_everyone: bool) -> bool:
        """Soft-delete for everyone, or hide the message for ``user_id`` only.

        Returns ``False`` when the message was already deleted or hidden.
        """

    async def set_reaction(self, message_id: int, user_id: int, emoji: str) -> bool:
        """Store the user's single reaction; ``False`` if it already had ``emoji``."""

    async def remove_reaction(self, message_id: int, user_id: int) -> bool: ...


__all__ = [
    "ChatStore",
    "MessageRecord",
    "MessageStatus",
    "MessageType",
    "NewMessage",
    "ReceiptOutcome",
]
