"""Persist-then-fan-out pipeline for new chat messages."""

from __future__ import annotations

import logging

from app.monitoring.metrics import realtime_events_total

from . import events
from .errors import InvalidPayload, PermissionDenied, TransientStoreFailure
from .events import SubmitMessage
from .registry import ConnectionRegistry
from .rooms import RoomMembership
from .session import ClientSession
from .store import ChatStore, MessageRecord, NewMessage

logger = logging.getLogger(__name__)


def validate_content(content: str, max_length: int, **context) -> None:
    if not content.strip():
        raise InvalidPayload("Message content must not be empty", **context)
    if len(content) > max_length:
        raise InvalidPayload(f"Message content exceeds {max_length} characters", **context)


class MessageRelay:
    """Validate, persist, fan out and acknowledge submitted messages."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        rooms: RoomMembership,
        store: ChatStore,
        *,
        max_length: int = 2000,
    ) -> None:
        self._registry = registry
        self._rooms = rooms
        self._store = store
        self._max_length = max_length

    async def submit(self, session: ClientSession, event: SubmitMessage) -> MessageRecord:
        content = event.content
        validate_content(content, self._max_length, clientId=event.client_id)

        members = await self._store.fetch_chat_membership(event.chat_id)
        if session.user_id not in members:
            raise PermissionDenied("Not a member of this chat", chatId=event.chat_id)

        record, created = await self._store.create_message(
            NewMessage(
                chat_id=event.chat_id,
                sender_id=session.user_id,
                content=content,
                client_id=event.client_id,
                message_type=event.message_type,
                reply_to_id=event.reply_to,
            )
        )

        if created:
            recipients = sorted(members - {session.user_id})
            await self._update_chat_metadata(session, event, record, recipients)
            delivered = self._rooms.broadcast(record.chat_id, events.new_message(record))
            realtime_events_total.labels("messages", "outbound", "new_message").inc(delivered)
            offline = [user_id for user_id in recipients if not self._registry.is_online(user_id)]
            if offline:
                logger.debug(
                    "Message %s has %d offline recipients in chat %s",
                    record.id,
                    len(offline),
                    record.chat_id,
                )
        else:
            logger.info(
                "Duplicate submission %s from user %s resolved to message %s",
                event.client_id,
                session.user_id,
                record.id,
            )

        session.enqueue(events.message_ack(event.client_id, record.id, record.created_at))
        return record

    async def _update_chat_metadata(
        self,
        session: ClientSession,
        event: SubmitMessage,
        record: MessageRecord,
        recipients: list[int],
    ) -> None:
        try:
            await self._store.increment_unread(record.chat_id, record.id, recipients)
        except TransientStoreFailure as exc:
            logger.warning(
                "Chat metadata update failed for message %s in chat %s: %s",
                record.id,
                record.chat_id,
                exc.detail,
            )
            session.enqueue(
                events.error(
                    exc.reason,
                    event=event.type,
                    clientId=event.client_id,
                    stage="chat_metadata",
                    messageId=record.id,
                    detail=exc.detail,
                )
            )


__all__ = ["MessageRelay", "validate_content"]
