"""Presence fan-out to contacts."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from app.monitoring.metrics import realtime_events_total

from . import events
from .errors import RealtimeError
from .registry import ConnectionRegistry
from .rooms import send_to_sessions
from .session import ClientSession
from .store import ChatStore

logger = logging.getLogger(__name__)


class PresenceBroadcaster:
    """Emit online/offline transitions to the live sessions of a user's contacts.

    Delivery is best effort: contacts without live sessions get nothing and
    nothing is retried. Store failures are logged and swallowed here so that
    presence never affects the connection that triggered it.
    """

    def __init__(self, registry: ConnectionRegistry, store: ChatStore) -> None:
        self._registry = registry
        self._store = store

    async def handle_transition(self, user_id: int, online: bool) -> None:
        if online:
            await self.on_first_session(user_id)
        else:
            await self.on_last_session_removed(user_id)

    async def on_first_session(self, user_id: int) -> None:
        contacts = await self._load_contacts(user_id)
        self._fan_out(contacts, events.presence_online(user_id))

    async def on_last_session_removed(self, user_id: int) -> datetime:
        last_seen = datetime.now(timezone.utc)
        try:
            await self._store.stamp_last_seen(user_id, last_seen)
        except RealtimeError as exc:
            logger.warning("Failed to stamp last seen for user %s: %s", user_id, exc.detail)
        contacts = await self._load_contacts(user_id)
        self._fan_out(contacts, events.presence_offline(user_id, last_seen))
        return last_seen

    async def send_snapshot(self, session: ClientSession) -> None:
        contacts = await self._load_contacts(session.user_id)
        entries = [(contact_id, self._registry.is_online(contact_id)) for contact_id in sorted(contacts)]
        session.enqueue(events.presence_snapshot(entries))

    async def _load_contacts(self, user_id: int) -> set[int]:
        try:
            return await self._store.fetch_contacts(user_id)
        except RealtimeError as exc:
            logger.warning("Failed to load contacts for user %s: %s", user_id, exc.detail)
            return set()

    def _fan_out(self, contacts: set[int], event: dict) -> None:
        sent = 0
        for contact_id in contacts:
            sent += send_to_sessions(self._registry.sessions_for(contact_id), event)
        realtime_events_total.labels("presence", "outbound", event["type"]).inc(sent)
        logger.debug("Presence %s delivered to %s sessions", event["type"], sent)


__all__ = ["PresenceBroadcaster"]
