"""Schemas for presence lookups and membership reconciliation."""

from __future__ import annotations

from pydantic import BaseModel, Field


class PresenceRead(BaseModel):
    user_id: int
    online: bool
    sessions: int = Field(..., ge=0, description="Live sessions on this instance")


class MembershipSyncRequest(BaseModel):
    user_ids: list[int] = Field(
        ..., min_length=1, description="Users whose live sessions should be reconciled"
    )


class MembershipSyncResult(BaseModel):
    chat_id: int
    joined: int = Field(..., ge=0)
    left: int = Field(..., ge=0)
