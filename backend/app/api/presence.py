"""Presence lookup and chat membership reconciliation."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from parley.realtime import PermissionDenied, RealtimeCoordinator, RealtimeError

from app.api.deps import get_current_user, get_realtime, http_error
from app.models import User
from app.schemas import MembershipSyncRequest, MembershipSyncResult, PresenceRead

router = APIRouter(tags=["presence"])


@router.get("/presence/{user_id}", response_model=PresenceRead)
def read_presence(
    user_id: int,
    current_user: User = Depends(get_current_user),
    realtime: RealtimeCoordinator = Depends(get_realtime),
) -> PresenceRead:
    snapshot = realtime.presence_of(user_id)
    return PresenceRead(user_id=user_id, online=snapshot["online"], sessions=snapshot["sessions"])


@router.post("/chats/{chat_id}/membership/sync", response_model=MembershipSyncResult)
async def sync_chat_membership(
    chat_id: int,
    payload: MembershipSyncRequest,
    current_user: User = Depends(get_current_user),
    realtime: RealtimeCoordinator = Depends(get_realtime),
) -> MembershipSyncResult:
    """Push a membership change in ``chat_id`` to the listed users' live sessions.

    Call this after adding or removing participants so connected clients start
    or stop receiving the chat's broadcasts without reconnecting.
    """

    try:
        members = await realtime.store.fetch_chat_membership(chat_id)
        if current_user.id not in members and current_user.id not in payload.user_ids:
            raise PermissionDenied("Not a member of this chat", chatId=chat_id)
        summary = await realtime.sync_membership(chat_id, payload.user_ids)
    except RealtimeError as exc:
        raise http_error(exc) from exc
    return MembershipSyncResult(chat_id=chat_id, **summary)
