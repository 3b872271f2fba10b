"""Entry point tying sessions, rooms, presence, messages and signals together."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Iterable

from app.monitoring.metrics import realtime_events_total

from . import events
from .delivery import DeliveryStateMachine
from .errors import RealtimeError
from .events import AnyInboundEvent, parse_inbound
from .mutations import MessageMutationRelay
from .presence import PresenceBroadcaster
from .reaper import StaleConnectionReaper
from .registry import ConnectionRegistry
from .relay import MessageRelay
from .rooms import RoomMembership
from .session import ClientSession, SessionTransport
from .signals import EphemeralSignalRelay
from .store import ChatStore

logger = logging.getLogger(__name__)

EventHandler = Callable[[ClientSession, Any], Awaitable[None]]

_EPHEMERAL_EVENTS = frozenset({"typing_start", "typing_stop"})


class RealtimeCoordinator:
    """Own all realtime state for one process.

    Transports call :meth:`connect` once authenticated, push raw payloads with
    ``session.submit`` and call :meth:`disconnect` when the socket goes away.
    Registry and room tables are only ever changed from here.
    """

    def __init__(
        self,
        store: ChatStore,
        *,
        outbound_queue_size: int = 256,
        inbound_queue_size: int = 64,
        drain_timeout: float = 5.0,
        reaper_interval: float = 30.0,
        message_max_length: int = 2000,
    ) -> None:
        self.store = store
        self.outbound_queue_size = outbound_queue_size
        self.inbound_queue_size = inbound_queue_size
        self.drain_timeout = drain_timeout

        self.registry = ConnectionRegistry()
        self.rooms = RoomMembership(store)
        self.presence = PresenceBroadcaster(self.registry, store)
        self.relay = MessageRelay(self.registry, self.rooms, store, max_length=message_max_length)
        self.delivery = DeliveryStateMachine(self.registry, store)
        self.mutations = MessageMutationRelay(
            self.registry, self.rooms, store, max_length=message_max_length
        )
        self.signals = EphemeralSignalRelay(self.registry, self.rooms, store)
        self.reaper = StaleConnectionReaper(self.registry, self.disconnect, interval=reaper_interval)

        self.registry.subscribe(self._on_presence_transition)
        self._detached: set[str] = set()
        self._handlers: dict[str, EventHandler] = {
            "join_room": self._on_join_room,
            "leave_room": self._on_leave_room,
            "submit_message": self._on_submit_message,
            "mark_delivered": self._on_mark_delivered,
            "mark_read": self._on_mark_read,
            "edit_message": self._on_edit_message,
            "delete_message": self._on_delete_message,
            "add_reaction": self._on_add_reaction,
            "remove_reaction": self._on_remove_reaction,
            "typing_start": self._on_typing_start,
            "typing_stop": self._on_typing_stop,
            "call_initiate": self._on_call_initiate,
            "call_answer": self._on_call_answer,
            "call_reject": self._on_call_reject,
            "call_end": self._on_call_end,
            "ice_candidate": self._on_ice_candidate,
            "ping": self._on_ping,
        }

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        self.reaper.start()

    async def shutdown(self) -> None:
        await self.reaper.stop()
        for session in self.registry.all_sessions():
            await self.disconnect(session, "shutdown")

    async def connect(self, user_id: int, transport: SessionTransport) -> ClientSession:
        session = ClientSession(
            user_id,
            transport,
            inbound_size=self.inbound_queue_size,
            outbound_size=self.outbound_queue_size,
        )
        session.start(self.dispatch)
        session.enqueue(events.connected(user_id, session.session_id))

        count = await self.registry.register(user_id, session)
        logger.info("User %s connected session %s (%d live)", user_id, session.session_id, count)

        try:
            chat_ids = await self.store.fetch_user_chats(user_id)
        except RealtimeError as exc:
            logger.warning("Could not enumerate chats for user %s: %s", user_id, exc.detail)
            # The session stays open without rooms; the client may rejoin explicitly.
            session.enqueue(
                events.error(
                    exc.reason,
                    event="connect",
                    stage="auto_join",
                    **exc.context,
                    detail=exc.detail,
                )
            )
            chat_ids = []
        for chat_id in chat_ids:
            await self.rooms.add(session, chat_id)

        await self.presence.send_snapshot(session)
        return session

    async def disconnect(self, session: ClientSession, reason: str = "closed") -> bool:
        """Tear down ``session``; safe to call more than once.

        Returns ``True`` only when this call removed a registered session, so
        repeated calls or a teardown already running elsewhere report ``False``.
        """

        if session.session_id in self._detached:
            return False
        registered = session in self.registry.sessions_for(session.user_id)
        self._detached.add(session.session_id)
        try:
            await session.close(drain_timeout=self.drain_timeout)
            self.signals.clear_session(session)
            await self.rooms.leave_all(session)
            went_offline = await self.registry.unregister(session)
        finally:
            self._detached.discard(session.session_id)
        logger.info(
            "User %s disconnected session %s (%s)%s",
            session.user_id,
            session.session_id,
            reason,
            "; now offline" if went_offline else "",
        )
        return registered

    async def _on_presence_transition(self, user_id: int, online: bool) -> None:
        if not online:
            discarded = await self.signals.discard_calls(user_id)
            if discarded:
                logger.info("Discarded %d calls of user %s", discarded, user_id)
        await self.presence.handle_transition(user_id, online)

    # -- inbound ----------------------------------------------------------

    async def dispatch(self, session: ClientSession, payload: dict[str, Any]) -> None:
        """Handle one inbound payload; failures become ``error`` events."""

        event_type = payload.get("type") if isinstance(payload, dict) else None
        try:
            event = parse_inbound(payload)
            realtime_events_total.labels("session", "inbound", event.type).inc()
            if session.closing and event.type in _EPHEMERAL_EVENTS:
                return
            await self._handlers[event.type](session, event)
        except RealtimeError as exc:
            session.enqueue(self._error_event(exc.reason, payload, exc.detail, exc.context))
        except Exception:
            logger.exception("Failed to handle %s event for %r", event_type, session)
            session.enqueue(
                self._error_event("internal_error", payload, "Unexpected server error", {})
            )

    @staticmethod
    def _error_event(
        reason: str, payload: Any, detail: str, extra: dict[str, Any]
    ) -> dict[str, Any]:
        context: dict[str, Any] = {}
        if isinstance(payload, dict):
            context["event"] = payload.get("type")
            if payload.get("clientId") is not None:
                context["clientId"] = payload["clientId"]
        context.update(extra)
        context["detail"] = detail
        return events.error(reason, **context)

    async def _on_join_room(self, session: ClientSession, event: AnyInboundEvent) -> None:
        added = await self.rooms.join(session, event.room_id)
        session.enqueue(events.room_joined(event.room_id))
        if added:
            self.rooms.broadcast(
                event.room_id,
                events.user_joined_chat(session.user_id, event.room_id),
                exclude=session,
            )

    async def _on_leave_room(self, session: ClientSession, event: AnyInboundEvent) -> None:
        self.signals.clear_session(session, event.room_id)
        await self.rooms.leave(session, event.room_id)
        session.enqueue(events.room_left(event.room_id))

    async def _on_submit_message(self, session: ClientSession, event: AnyInboundEvent) -> None:
        await self.relay.submit(session, event)

    async def _on_mark_delivered(self, session: ClientSession, event: AnyInboundEvent) -> None:
        await self.delivery.mark_delivered(event.message_id, session.user_id)

    async def _on_mark_read(self, session: ClientSession, event: AnyInboundEvent) -> None:
        await self.delivery.mark_read(event.message_id, session.user_id)

    async def _on_edit_message(self, session: ClientSession, event: AnyInboundEvent) -> None:
        await self.mutations.edit(session, event)

    async def _on_delete_message(self, session: ClientSession, event: AnyInboundEvent) -> None:
        await self.mutations.delete(session, event)

    async def _on_add_reaction(self, session: ClientSession, event: AnyInboundEvent) -> None:
        await self.mutations.react(session, event)

    async def _on_remove_reaction(self, session: ClientSession, event: AnyInboundEvent) -> None:
        await self.mutations.unreact(session, event)

    async def _on_typing_start(self, session: ClientSession, event: AnyInboundEvent) -> None:
        self.signals.typing_start(session, event.chat_id)

    async def _on_typing_stop(self, session: ClientSession, event: AnyInboundEvent) -> None:
        self.signals.typing_stop(session, event.chat_id)

    async def _on_call_initiate(self, session: ClientSession, event: AnyInboundEvent) -> None:
        await self.signals.initiate(session, event)

    async def _on_call_answer(self, session: ClientSession, event: AnyInboundEvent) -> None:
        await self.signals.answer(session, event)

    async def _on_call_reject(self, session: ClientSession, event: AnyInboundEvent) -> None:
        await self.signals.reject(session, event)

    async def _on_call_end(self, session: ClientSession, event: AnyInboundEvent) -> None:
        await self.signals.end(session, event)

    async def _on_ice_candidate(self, session: ClientSession, event: AnyInboundEvent) -> None:
        await self.signals.ice_candidate(session, event)

    async def _on_ping(self, session: ClientSession, event: AnyInboundEvent) -> None:
        session.enqueue(events.PONG)

    # -- membership & presence queries -----------------------------------

    async def sync_membership(self, chat_id: int, user_ids: Iterable[int]) -> dict[str, int]:
        """Bring live sessions of ``user_ids`` in line with the stored membership."""

        members = await self.store.fetch_chat_membership(chat_id)
        joined = left = 0
        for user_id in sorted(set(user_ids)):
            for session in self.registry.sessions_for(user_id):
                if user_id in members:
                    if await self.rooms.add(session, chat_id):
                        session.enqueue(events.room_joined(chat_id))
                        joined += 1
                else:
                    self.signals.clear_session(session, chat_id)
                    if await self.rooms.leave(session, chat_id):
                        session.enqueue(events.room_left(chat_id))
                        left += 1
        logger.info("Membership sync for chat %s: %d joined, %d left", chat_id, joined, left)
        return {"joined": joined, "left": left}

    def presence_of(self, user_id: int) -> dict[str, Any]:
        return {
            "userId": user_id,
            "online": self.registry.is_online(user_id),
            "sessions": self.registry.session_count(user_id),
        }


__all__ = ["RealtimeCoordinator"]
