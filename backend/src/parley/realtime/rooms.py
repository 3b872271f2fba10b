"""Room subscriptions for live sessions."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, Set

from .errors import PermissionDenied
from .locks import KeyedLock
from .session import ClientSession
from .store import ChatStore

logger = logging.getLogger(__name__)


class RoomMembership:
    """Map chat ids to the sessions receiving their broadcasts.

    Durable membership belongs to the store; this table only mirrors it for
    the sessions that are connected right now.
    """

    def __init__(self, store: ChatStore) -> None:
        self._store = store
        self._rooms: Dict[int, Set[ClientSession]] = defaultdict(set)
        self._by_session: Dict[ClientSession, Set[int]] = defaultdict(set)
        self._locks = KeyedLock()

    async def join(self, session: ClientSession, room_id: int) -> bool:
        """Subscribe ``session`` after checking membership with the store.

        Raises ``NotFound`` for an unknown chat and ``PermissionDenied`` when the
        session's user does not belong to it. Returns ``False`` if the session
        was already subscribed.
        """

        members = await self._store.fetch_chat_membership(room_id)
        if session.user_id not in members:
            raise PermissionDenied("Not a member of this chat", roomId=room_id)
        return await self.add(session, room_id)

    async def add(self, session: ClientSession, room_id: int) -> bool:
        async with self._locks.hold(room_id):
            bucket = self._rooms[room_id]
            if session in bucket:
                return False
            bucket.add(session)
            self._by_session[session].add(room_id)
            return True

    async def leave(self, session: ClientSession, room_id: int) -> bool:
        async with self._locks.hold(room_id):
            bucket = self._rooms.get(room_id)
            if not bucket or session not in bucket:
                return False
            bucket.discard(session)
            if not bucket:
                self._rooms.pop(room_id, None)
            rooms = self._by_session.get(session)
            if rooms is not None:
                rooms.discard(room_id)
                if not rooms:
                    self._by_session.pop(session, None)
            return True

    async def leave_all(self, session: ClientSession) -> list[int]:
        left: list[int] = []
        for room_id in sorted(self._by_session.get(session, ())):
            if await self.leave(session, room_id):
                left.append(room_id)
        return left

    def contains(self, session: ClientSession, room_id: int) -> bool:
        return session in self._rooms.get(room_id, ())

    def rooms_of(self, session: ClientSession) -> Set[int]:
        return set(self._by_session.get(session, ()))

    def sessions_in(self, room_id: int) -> Set[ClientSession]:
        return set(self._rooms.get(room_id, ()))

    def broadcast(
        self,
        room_id: int,
        event: dict[str, Any],
        *,
        exclude: ClientSession | None = None,
    ) -> int:
        """Enqueue ``event`` for every subscribed session; return the count."""

        delivered = 0
        for session in self.sessions_in(room_id):
            if session is exclude:
                continue
            if session.enqueue(event):
                delivered += 1
        return delivered


def send_to_sessions(sessions: Iterable[ClientSession], event: dict[str, Any]) -> int:
    delivered = 0
    for session in list(sessions):
        if session.enqueue(event):
            delivered += 1
    return delivered


__all__ = ["RoomMembership", "send_to_sessions"]
