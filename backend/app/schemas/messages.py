"""Schemas related to chat messages and their delivery state."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from app.models.enums import MessageType


class MessageStatusRead(BaseModel):
    """Aggregate delivery state of a message."""

    sent: bool
    sent_at: datetime | None = None
    delivered: bool
    delivered_at: datetime | None = None
    read: bool
    read_at: datetime | None = None


class MessageRead(BaseModel):
    """Serialized representation of a chat message."""

    id: int
    chat_id: int
    sender_id: int
    content: str | None = Field(default=None, description="Empty once deleted for everyone")
    message_type: MessageType = MessageType.TEXT
    reply_to_id: int | None = None
    client_id: str | None = None
    created_at: datetime
    edited_at: datetime | None = None
    deleted: bool = False
    status: MessageStatusRead


class MessageStatusUpdate(BaseModel):
    """Advance the caller's receipt for a message."""

    status: Literal["delivered", "read"] = Field(..., description="Target receipt state")


class MessageStatusResult(BaseModel):
    message: MessageRead
    delivered_created: bool = Field(
        default=False, description="Whether this request created the delivered receipt"
    )
    read_created: bool = Field(
        default=False, description="Whether this request created the read receipt"
    )
