"""Edits, deletions and reactions on messages that already exist."""

from __future__ import annotations

import logging

from app.monitoring.metrics import realtime_events_total

from . import events
from .errors import NotFound, PermissionDenied
from .events import AddReaction, DeleteMessage, EditMessage, RemoveReaction
from .locks import KeyedLock
from .registry import ConnectionRegistry
from .relay import validate_content
from .rooms import RoomMembership, send_to_sessions
from .session import ClientSession
from .store import ChatStore, MessageRecord

logger = logging.getLogger(__name__)


class MessageMutationRelay:
    """Persist a change to a stored message, then tell the room about it.

    Only the sender may edit or delete a message for everyone; any member may
    react or hide a message for themselves. Changes that leave the stored state
    as it was are not broadcast again. Work on one message is serialized.
    """

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
        self._locks = KeyedLock()

    async def edit(self, session: ClientSession, event: EditMessage) -> MessageRecord:
        validate_content(event.content, self._max_length, messageId=event.message_id)
        async with self._locks.hold(event.message_id):
            message = await self._load_for_member(event.message_id, session.user_id)
            if message.sender_id != session.user_id:
                raise PermissionDenied(
                    "Only the sender can edit this message", messageId=event.message_id
                )
            record, changed = await self._store.edit_message(event.message_id, event.content)
            if changed:
                self._broadcast(record.chat_id, events.message_edited(record))
            return record

    async def delete(self, session: ClientSession, event: DeleteMessage) -> str:
        """Delete for everyone when the sender asks, otherwise hide for the actor.

        Returns the scope that was applied: ``"everyone"`` or ``"me"``.
        """

        user_id = session.user_id
        async with self._locks.hold(event.message_id):
            message = await self._load(event.message_id)
            await self._require_member(message, user_id)
            for_everyone = event.for_everyone and message.sender_id == user_id
            if event.for_everyone and not for_everyone:
                logger.debug(
                    "User %s is not the sender of message %s; hiding it for them only",
                    user_id,
                    message.id,
                )
            changed = await self._store.delete_message(
                message.id, user_id, for_everyone=for_everyone
            )
            scope = "everyone" if for_everyone else "me"
            if changed:
                event_out = events.message_deleted(message.id, message.chat_id, scope)
                if for_everyone:
                    self._broadcast(message.chat_id, event_out)
                else:
                    # Every device of the actor hides it; nobody else is told.
                    send_to_sessions(self._registry.sessions_for(user_id), event_out)
            return scope

    async def react(self, session: ClientSession, event: AddReaction) -> bool:
        async with self._locks.hold(event.message_id):
            message = await self._load_for_member(event.message_id, session.user_id)
            changed = await self._store.set_reaction(message.id, session.user_id, event.emoji)
            if changed:
                self._broadcast(
                    message.chat_id,
                    events.reaction_added(message.id, message.chat_id, session.user_id, event.emoji),
                )
            return changed

    async def unreact(self, session: ClientSession, event: RemoveReaction) -> bool:
        async with self._locks.hold(event.message_id):
            message = await self._load_for_member(event.message_id, session.user_id)
            removed = await self._store.remove_reaction(message.id, session.user_id)
            if removed:
                self._broadcast(
                    message.chat_id,
                    events.reaction_removed(message.id, message.chat_id, session.user_id),
                )
            return removed

    async def _load(self, message_id: int) -> MessageRecord:
        message = await self._store.get_message(message_id)
        if message is None:
            raise NotFound("Message not found", messageId=message_id)
        return message

    async def _load_for_member(self, message_id: int, user_id: int) -> MessageRecord:
        message = await self._load(message_id)
        if message.deleted:
            raise NotFound("Message was deleted", messageId=message_id)
        await self._require_member(message, user_id)
        return message

    async def _require_member(self, message: MessageRecord, user_id: int) -> None:
        members = await self._store.fetch_chat_membership(message.chat_id)
        if user_id not in members:
            raise PermissionDenied("Not a member of this chat", messageId=message.id)

    def _broadcast(self, chat_id: int, event: dict) -> None:
        delivered = self._rooms.broadcast(chat_id, event)
        realtime_events_total.labels("messages", "outbound", event["type"]).inc(delivered)


__all__ = ["MessageMutationRelay"]
