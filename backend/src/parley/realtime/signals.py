"""Typing indicators and point-to-point call negotiation.

Nothing here is persisted. Typing state only remembers which session last
reported typing so that a disconnect can clear it; call state only remembers
who is negotiating with whom.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Literal

from app.monitoring.metrics import realtime_events_total

from . import events
from .errors import InvalidPayload, PermissionDenied, TargetUnavailable
from .events import CallAnswer, CallEnd, CallInitiate, CallReject, IceCandidate
from .locks import KeyedLock
from .registry import ConnectionRegistry
from .rooms import RoomMembership, send_to_sessions
from .session import ClientSession
from .store import ChatStore

logger = logging.getLogger(__name__)

CallState = Literal["ringing", "active"]


@dataclass
class CallSession:
    caller_id: int
    callee_id: int
    chat_id: int
    call_type: str
    offer: Any = None
    answer: Any = None
    state: CallState = "ringing"
    call_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def pair(self) -> FrozenSet[int]:
        return frozenset((self.caller_id, self.callee_id))

    def peer_of(self, user_id: int) -> int:
        return self.callee_id if user_id == self.caller_id else self.caller_id


class EphemeralSignalRelay:
    def __init__(
        self,
        registry: ConnectionRegistry,
        rooms: RoomMembership,
        store: ChatStore,
    ) -> None:
        self._registry = registry
        self._rooms = rooms
        self._store = store
        self._typing: Dict[int, Dict[int, str]] = defaultdict(dict)
        self._calls: Dict[FrozenSet[int], CallSession] = {}
        self._call_locks = KeyedLock()

    # -- typing -----------------------------------------------------------

    def typing_start(self, session: ClientSession, chat_id: int) -> None:
        if not self._rooms.contains(session, chat_id):
            logger.debug("Dropping typing from %r outside chat %s", session, chat_id)
            return
        self._typing[chat_id][session.user_id] = session.session_id
        self._broadcast_typing(session, chat_id, True)

    def typing_stop(self, session: ClientSession, chat_id: int) -> None:
        if not self._rooms.contains(session, chat_id):
            return
        self._forget_typing(chat_id, session.user_id)
        self._broadcast_typing(session, chat_id, False)

    def typing_users(self, chat_id: int) -> set[int]:
        return set(self._typing.get(chat_id, ()))

    def clear_session(self, session: ClientSession, chat_id: int | None = None) -> list[int]:
        """Emit ``isTyping: false`` wherever ``session`` was the last typist."""

        chat_ids = [chat_id] if chat_id is not None else list(self._typing)
        cleared: list[int] = []
        for room_id in chat_ids:
            if self._typing.get(room_id, {}).get(session.user_id) != session.session_id:
                continue
            self._forget_typing(room_id, session.user_id)
            self._broadcast_typing(session, room_id, False)
            cleared.append(room_id)
        return cleared

    def _forget_typing(self, chat_id: int, user_id: int) -> None:
        bucket = self._typing.get(chat_id)
        if bucket is None:
            return
        bucket.pop(user_id, None)
        if not bucket:
            self._typing.pop(chat_id, None)

    def _broadcast_typing(self, session: ClientSession, chat_id: int, is_typing: bool) -> None:
        event = events.typing(session.user_id, chat_id, is_typing)
        delivered = self._rooms.broadcast(chat_id, event, exclude=session)
        realtime_events_total.labels("typing", "outbound", "typing").inc(delivered)

    # -- calls ------------------------------------------------------------

    def active_call(self, first_user: int, second_user: int) -> CallSession | None:
        return self._calls.get(frozenset((first_user, second_user)))

    async def initiate(self, session: ClientSession, event: CallInitiate) -> CallSession:
        caller_id = session.user_id
        target_id = event.target_user_id
        if caller_id == target_id:
            raise InvalidPayload("Cannot call yourself", event=event.type)

        members = await self._store.fetch_chat_membership(event.chat_id)
        if caller_id not in members or target_id not in members:
            raise PermissionDenied(
                "Both users must belong to the chat", chatId=event.chat_id, targetUserId=target_id
            )

        pair = frozenset((caller_id, target_id))
        async with self._call_locks.hold(pair):
            targets = self._registry.sessions_for(target_id)
            if not targets:
                raise TargetUnavailable("User is offline", targetUserId=target_id)
            replaced = self._calls.get(pair)
            if replaced is not None:
                logger.info("Replacing call %s between %s and %s", replaced.call_id, caller_id, target_id)
            call = CallSession(
                caller_id=caller_id,
                callee_id=target_id,
                chat_id=event.chat_id,
                call_type=event.call_type,
                offer=event.offer,
            )
            self._calls[pair] = call
            self._send(
                targets,
                events.incoming_call(caller_id, event.chat_id, event.call_type, event.offer),
            )
            session.enqueue(events.call_initiated(target_id, event.chat_id))
        return call

    async def answer(self, session: ClientSession, event: CallAnswer) -> CallSession:
        callee_id = session.user_id
        pair = frozenset((event.caller_id, callee_id))
        async with self._call_locks.hold(pair):
            call = self._calls.get(pair)
            if (
                call is None
                or call.state != "ringing"
                or call.caller_id != event.caller_id
                or call.callee_id != callee_id
            ):
                raise PermissionDenied("No ringing call from this user", callerId=event.caller_id)
            targets = self._registry.sessions_for(event.caller_id)
            if not targets:
                raise TargetUnavailable("User is offline", callerId=event.caller_id)
            call.state = "active"
            call.answer = event.answer
            self._send(targets, events.call_answered(callee_id, event.answer))
        return call

    async def reject(self, session: ClientSession, event: CallReject) -> None:
        pair = frozenset((event.caller_id, session.user_id))
        async with self._call_locks.hold(pair):
            self._require_call(pair, callerId=event.caller_id)
            self._calls.pop(pair, None)
            self._send(
                self._registry.sessions_for(event.caller_id),
                events.call_rejected(session.user_id, event.reason),
            )

    async def end(self, session: ClientSession, event: CallEnd) -> None:
        pair = frozenset((event.target_user_id, session.user_id))
        async with self._call_locks.hold(pair):
            self._require_call(pair, targetUserId=event.target_user_id)
            self._calls.pop(pair, None)
            self._send(
                self._registry.sessions_for(event.target_user_id),
                events.call_ended(session.user_id),
            )

    async def ice_candidate(self, session: ClientSession, event: IceCandidate) -> None:
        pair = frozenset((event.target_user_id, session.user_id))
        async with self._call_locks.hold(pair):
            self._require_call(pair, targetUserId=event.target_user_id)
            self._send(
                self._registry.sessions_for(event.target_user_id),
                events.ice_candidate(session.user_id, event.candidate),
            )

    async def discard_calls(self, user_id: int) -> int:
        """Drop every call involving ``user_id`` and tell the other party."""

        discarded = 0
        for pair in [pair for pair in self._calls if user_id in pair]:
            async with self._call_locks.hold(pair):
                call = self._calls.pop(pair, None)
                if call is None:
                    continue
                discarded += 1
                self._send(
                    self._registry.sessions_for(call.peer_of(user_id)),
                    events.call_ended(user_id, reason="disconnected"),
                )
        return discarded

    def _require_call(self, pair: FrozenSet[int], **context: Any) -> CallSession:
        call = self._calls.get(pair)
        if call is None:
            raise PermissionDenied("No call in progress with this user", **context)
        return call

    def _send(self, sessions: set[ClientSession], event: dict[str, Any]) -> None:
        if not sessions:
            logger.debug("Dropping %s: peer has no live sessions", event["type"])
            return
        delivered = send_to_sessions(sessions, event)
        realtime_events_total.labels("calls", "outbound", event["type"]).inc(delivered)


__all__ = ["CallSession", "EphemeralSignalRelay"]
