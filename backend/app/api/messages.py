"""HTTP endpoints for advancing message delivery state."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from parley.realtime import RealtimeCoordinator, RealtimeError
from parley.realtime.store import MessageRecord

from app.api.deps import get_current_user, get_realtime, http_error
from app.models import User
from app.schemas import MessageRead, MessageStatusRead, MessageStatusResult, MessageStatusUpdate

router = APIRouter(prefix="/messages", tags=["messages"])


def serialize_record(record: MessageRecord) -> MessageRead:
    status = record.status
    return MessageRead(
        id=record.id,
        chat_id=record.chat_id,
        sender_id=record.sender_id,
        content=None if record.deleted else record.content,
        message_type=record.message_type,
        reply_to_id=record.reply_to_id,
        client_id=record.client_id,
        created_at=record.created_at,
        edited_at=record.edited_at,
        deleted=record.deleted,
        status=MessageStatusRead(
            sent=status.sent,
            sent_at=status.sent_at,
            delivered=status.delivered,
            delivered_at=status.delivered_at,
            read=status.read,
            read_at=status.read_at,
        ),
    )


@router.put("/{message_id}/status", response_model=MessageStatusResult)
async def update_message_status(
    message_id: int,
    payload: MessageStatusUpdate,
    current_user: User = Depends(get_current_user),
    realtime: RealtimeCoordinator = Depends(get_realtime),
) -> MessageStatusResult:
    """Mark a message delivered or read for the current user.

    Sender sessions are notified exactly as for the websocket events. Marking
    your own message is accepted and changes nothing.
    """

    user_id = current_user.id
    try:
        if payload.status == "read":
            outcome = await realtime.delivery.mark_read(message_id, user_id)
        else:
            outcome = await realtime.delivery.mark_delivered(message_id, user_id)
        if outcome is None:
            record = await realtime.store.get_message(message_id)
            return MessageStatusResult(message=serialize_record(record))
    except RealtimeError as exc:
        raise http_error(exc) from exc

    return MessageStatusResult(
        message=serialize_record(outcome.message),
        delivered_created=outcome.delivered_created,
        read_created=outcome.read_created,
    )
