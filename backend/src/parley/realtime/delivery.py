"""Per-recipient delivery and read receipts."""

from __future__ import annotations

import logging

from app.monitoring.metrics import realtime_events_total

from . import events
from .errors import NotFound, PermissionDenied
from .locks import KeyedLock
from .registry import ConnectionRegistry
from .rooms import send_to_sessions
from .store import ChatStore, MessageRecord, ReceiptOutcome

logger = logging.getLogger(__name__)


class DeliveryStateMachine:
    """Advance Sent → Delivered → Read for one recipient at a time.

    Transitions only move forward and are idempotent: the store reports whether
    a call created a receipt, and the sender is notified only when it did. A
    read that arrives before any delivery also creates the delivered receipt.
    The message-level flags become true on the first recipient's receipt.

    Work on one message is serialized; different messages proceed in parallel.
    """

    def __init__(self, registry: ConnectionRegistry, store: ChatStore) -> None:
        self._registry = registry
        self._store = store
        self._locks = KeyedLock()

    async def mark_delivered(self, message_id: int, recipient_id: int) -> ReceiptOutcome | None:
        async with self._locks.hold(message_id):
            message = await self._authorize(message_id, recipient_id)
            if message is None:
                return None
            outcome = await self._store.append_delivery_receipt(message_id, recipient_id)
            if outcome.delivered_created:
                self._notify_sender(
                    outcome.message,
                    events.delivery_receipt(message_id, recipient_id, outcome.delivered_at),
                )
            return outcome

    async def mark_read(self, message_id: int, recipient_id: int) -> ReceiptOutcome | None:
        async with self._locks.hold(message_id):
            message = await self._authorize(message_id, recipient_id)
            if message is None:
                return None
            outcome = await self._store.append_read_receipt(message_id, recipient_id)
            if outcome.delivered_created:
                self._notify_sender(
                    outcome.message,
                    events.delivery_receipt(message_id, recipient_id, outcome.delivered_at),
                )
            if outcome.read_created:
                self._notify_sender(
                    outcome.message,
                    events.read_receipt(message_id, message.chat_id, recipient_id, outcome.read_at),
                )
            # The receipt is durable and announced; a failure here only leaves
            # the counter stale until the next read of this chat.
            await self._store.reset_unread(message.chat_id, recipient_id, message_id)
            return outcome

    async def _authorize(self, message_id: int, recipient_id: int) -> MessageRecord | None:
        message = await self._store.get_message(message_id)
        if message is None:
            raise NotFound("Message not found", messageId=message_id)
        if message.sender_id == recipient_id:
            logger.debug("Ignoring receipt from sender %s on message %s", recipient_id, message_id)
            return None
        members = await self._store.fetch_chat_membership(message.chat_id)
        if recipient_id not in members:
            raise PermissionDenied("Not a member of this chat", messageId=message_id)
        return message

    def _notify_sender(self, message: MessageRecord, event: dict) -> None:
        sessions = self._registry.sessions_for(message.sender_id)
        delivered = send_to_sessions(sessions, event)
        realtime_events_total.labels("receipts", "outbound", event["type"]).inc(delivered)


__all__ = ["DeliveryStateMachine"]
