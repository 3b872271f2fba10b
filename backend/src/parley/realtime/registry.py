"""Live sessions per user identity."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, Set

from app.monitoring.metrics import realtime_connections

from .locks import KeyedLock
from .session import ClientSession

logger = logging.getLogger(__name__)

TransitionListener = Callable[[int, bool], Awaitable[None]]


class ConnectionRegistry:
    """Track which sessions are live for every user.

    Registration and removal for one user run inside that user's critical
    section. Listeners receive ``(user_id, online)`` on the 0→1 and 1→0
    transitions, also from inside the critical section, so a disconnect racing
    a reconnect can never report the user offline while a session is live.
    """

    def __init__(self) -> None:
        self._sessions: Dict[int, Set[ClientSession]] = defaultdict(set)
        self._locks = KeyedLock()
        self._listeners: list[TransitionListener] = []

    def subscribe(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    async def register(self, user_id: int, session: ClientSession) -> int:
        async with self._locks.hold(user_id):
            bucket = self._sessions[user_id]
            if session in bucket:
                return len(bucket)
            bucket.add(session)
            count = len(bucket)
            realtime_connections.labels("sessions").inc()
            if count == 1:
                realtime_connections.labels("users").inc()
                await self._notify(user_id, True)
            return count

    async def unregister(self, session: ClientSession) -> bool:
        """Remove ``session``; return ``True`` if its user just went offline."""

        user_id = session.user_id
        async with self._locks.hold(user_id):
            bucket = self._sessions.get(user_id)
            if not bucket or session not in bucket:
                return False
            bucket.discard(session)
            realtime_connections.labels("sessions").dec()
            if bucket:
                return False
            self._sessions.pop(user_id, None)
            realtime_connections.labels("users").dec()
            await self._notify(user_id, False)
            return True

    def sessions_for(self, user_id: int) -> Set[ClientSession]:
        return set(self._sessions.get(user_id, ()))

    def all_sessions(self) -> list[ClientSession]:
        return [session for bucket in list(self._sessions.values()) for session in list(bucket)]

    def is_online(self, user_id: int) -> bool:
        return bool(self._sessions.get(user_id))

    def session_count(self, user_id: int) -> int:
        return len(self._sessions.get(user_id, ()))

    def online_users(self) -> list[int]:
        return [user_id for user_id, bucket in self._sessions.items() if bucket]

    async def _notify(self, user_id: int, online: bool) -> None:
        for listener in list(self._listeners):
            try:
                await listener(user_id, online)
            except Exception:
                logger.exception(
                    "Presence listener failed for user %s (online=%s)", user_id, online
                )


__all__ = ["ConnectionRegistry", "TransitionListener"]
