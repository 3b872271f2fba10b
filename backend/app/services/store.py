"""SQLAlchemy implementation of the realtime chat store contract."""

from __future__ import annotations

import logging
import threading
from contextlib import nullcontext
from datetime import datetime, timezone
from typing import Any, Callable, Sequence, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from parley.realtime.errors import NotFound, TransientStoreFailure
from parley.realtime.store import MessageRecord, MessageStatus, NewMessage, ReceiptOutcome

from app.models import (
    Chat,
    ChatParticipant,
    Contact,
    Message,
    MessageEdit,
    MessageHidden,
    MessageReaction,
    MessageReceipt,
    User,
)
from app.monitoring.metrics import realtime_store_failures_total

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_record(message: Message) -> MessageRecord:
    return MessageRecord(
        id=message.id,
        chat_id=message.chat_id,
        sender_id=message.sender_id,
        content=message.content,
        created_at=_aware(message.created_at),
        message_type=message.message_type,
        reply_to_id=message.reply_to_id,
        client_id=message.client_id,
        status=MessageStatus(
            sent=message.is_sent,
            sent_at=_aware(message.sent_at),
            delivered=message.is_delivered,
            delivered_at=_aware(message.delivered_at),
            read=message.is_read,
            read_at=_aware(message.read_at),
        ),
        edited_at=_aware(message.edited_at),
        deleted=message.is_deleted,
    )


class SqlAlchemyChatStore:
    """Run each store operation in its own short-lived session.

    Work happens on Starlette's threadpool so a slow database never blocks the
    event loop. ``SQLAlchemyError`` surfaces as ``TransientStoreFailure``.
    """

    def __init__(self, session_factory: sessionmaker, *, serialize: bool = False) -> None:
        self._session_factory = session_factory
        # SQLite tolerates a single writer; other backends run calls in parallel.
        self._lock = threading.Lock() if serialize else None

    async def _call(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await run_in_threadpool(self._run, fn, *args)
        except SQLAlchemyError as exc:
            realtime_store_failures_total.labels(operation).inc()
            logger.exception("Store operation %s failed", operation)
            raise TransientStoreFailure(
                "Storage temporarily unavailable", operation=operation
            ) from exc

    def _run(self, fn: Callable[..., T], *args: Any) -> T:
        with self._lock if self._lock is not None else nullcontext():
            with self._session_factory() as db:
                return fn(db, *args)

    # -- reads ------------------------------------------------------------

    async def fetch_chat_membership(self, chat_id: int) -> set[int]:
        return await self._call("fetch_chat_membership", self._fetch_chat_membership, chat_id)

    @staticmethod
    def _fetch_chat_membership(db: Session, chat_id: int) -> set[int]:
        if db.get(Chat, chat_id) is None:
            raise NotFound("Chat not found", chatId=chat_id)
        stmt = select(ChatParticipant.user_id).where(ChatParticipant.chat_id == chat_id)
        return set(db.execute(stmt).scalars())

    async def fetch_user_chats(self, user_id: int) -> list[int]:
        return await self._call("fetch_user_chats", self._fetch_user_chats, user_id)

    @staticmethod
    def _fetch_user_chats(db: Session, user_id: int) -> list[int]:
        stmt = (
            select(ChatParticipant.chat_id)
            .where(ChatParticipant.user_id == user_id)
            .order_by(ChatParticipant.chat_id)
        )
        return list(db.execute(stmt).scalars())

    async def fetch_contacts(self, user_id: int) -> set[int]:
        return await self._call("fetch_contacts", self._fetch_contacts, user_id)

    @staticmethod
    def _fetch_contacts(db: Session, user_id: int) -> set[int]:
        stmt = select(Contact.contact_id).where(Contact.owner_id == user_id)
        return set(db.execute(stmt).scalars())

    async def get_message(self, message_id: int) -> MessageRecord | None:
        return await self._call("get_message", self._get_message, message_id)

    @staticmethod
    def _get_message(db: Session, message_id: int) -> MessageRecord | None:
        message = db.get(Message, message_id)
        return to_record(message) if message is not None else None

    # -- writes -----------------------------------------------------------

    async def create_message(self, message: NewMessage) -> tuple[MessageRecord, bool]:
        return await self._call("create_message", self._create_message, message)

    @staticmethod
    def _find_by_client_id(db: Session, sender_id: int, client_id: str) -> Message | None:
        stmt = select(Message).where(Message.sender_id == sender_id, Message.client_id == client_id)
        return db.execute(stmt).scalar_one_or_none()

    def _create_message(self, db: Session, new: NewMessage) -> tuple[MessageRecord, bool]:
        existing = self._find_by_client_id(db, new.sender_id, new.client_id)
        if existing is not None:
            return to_record(existing), False

        if new.reply_to_id is not None:
            parent = db.get(Message, new.reply_to_id)
            if parent is None or parent.chat_id != new.chat_id:
                raise NotFound("Reply target not found", replyTo=new.reply_to_id)

        now = _utcnow()
        message = Message(
            chat_id=new.chat_id,
            sender_id=new.sender_id,
            client_id=new.client_id,
            reply_to_id=new.reply_to_id,
            message_type=new.message_type,
            content=new.content,
            created_at=now,
            is_sent=True,
            sent_at=now,
        )
        db.add(message)
        try:
            db.commit()
        except IntegrityError:
            # Another session of the same sender won the race for this client id
            db.rollback()
            existing = self._find_by_client_id(db, new.sender_id, new.client_id)
            if existing is None:
                raise
            return to_record(existing), False
        db.refresh(message)
        return to_record(message), True

    async def increment_unread(
        self, chat_id: int, message_id: int, recipients: Sequence[int]
    ) -> None:
        await self._call(
            "increment_unread", self._increment_unread, chat_id, message_id, list(recipients)
        )

    @staticmethod
    def _increment_unread(db: Session, chat_id: int, message_id: int, recipients: list[int]) -> None:
        db.execute(
            update(Chat)
            .where(Chat.id == chat_id)
            .values(last_message_id=message_id, last_activity_at=_utcnow())
        )
        if recipients:
            db.execute(
                update(ChatParticipant)
                .where(
                    ChatParticipant.chat_id == chat_id,
                    ChatParticipant.user_id.in_(recipients),
                )
                .values(unread_count=ChatParticipant.unread_count + 1)
            )
        db.commit()

    async def append_delivery_receipt(self, message_id: int, user_id: int) -> ReceiptOutcome:
        return await self._call(
            "append_delivery_receipt", self._append_receipt, message_id, user_id, False
        )

    async def append_read_receipt(self, message_id: int, user_id: int) -> ReceiptOutcome:
        return await self._call(
            "append_read_receipt", self._append_receipt, message_id, user_id, True
        )

    def _append_receipt(
        self, db: Session, message_id: int, user_id: int, read: bool
    ) -> ReceiptOutcome:
        if db.get(Message, message_id) is None:
            raise NotFound("Message not found", messageId=message_id)

        now = _utcnow()
        stmt = select(MessageReceipt).where(
            MessageReceipt.message_id == message_id, MessageReceipt.user_id == user_id
        )
        receipt = db.execute(stmt).scalar_one_or_none()
        if receipt is None:
            receipt = MessageReceipt(message_id=message_id, user_id=user_id)
            db.add(receipt)

        delivered_created = receipt.delivered_at is None
        if delivered_created:
            receipt.delivered_at = now
        read_created = read and receipt.read_at is None
        if read_created:
            receipt.read_at = now

        if delivered_created:
            db.execute(
                update(Message)
                .where(Message.id == message_id, Message.is_delivered.is_(False))
                .values(is_delivered=True, delivered_at=now)
            )
        if read_created:
            db.execute(
                update(Message)
                .where(Message.id == message_id, Message.is_read.is_(False))
                .values(is_read=True, read_at=now)
            )

        try:
            db.commit()
        except IntegrityError:
            # A concurrent call created the receipt first; report nothing new
            db.rollback()
            message = db.get(Message, message_id)
            return ReceiptOutcome(message=to_record(message))

        message = db.get(Message, message_id)
        db.refresh(message)
        receipt_delivered_at = _aware(receipt.delivered_at)
        receipt_read_at = _aware(receipt.read_at)
        return ReceiptOutcome(
            message=to_record(message),
            delivered_created=delivered_created,
            delivered_at=receipt_delivered_at,
            read_created=read_created,
            read_at=receipt_read_at,
        )

    async def reset_unread(self, chat_id: int, user_id: int, message_id: int) -> None:
        await self._call("reset_unread", self._reset_unread, chat_id, user_id, message_id)

    @staticmethod
    def _reset_unread(db: Session, chat_id: int, user_id: int, message_id: int) -> None:
        db.execute(
            update(ChatParticipant)
            .where(ChatParticipant.chat_id == chat_id, ChatParticipant.user_id == user_id)
            .values(unread_count=0, last_read_message_id=message_id)
        )
        db.commit()

    async def stamp_last_seen(self, user_id: int, when: datetime) -> None:
        await self._call("stamp_last_seen", self._stamp_last_seen, user_id, when)

    @staticmethod
    def _stamp_last_seen(db: Session, user_id: int, when: datetime) -> None:
        db.execute(update(User).where(User.id == user_id).values(last_seen_at=when))
        db.commit()


    # -- message changes --------------------------------------------------

    async def edit_message(self, message_id: int, content: str) -> tuple[MessageRecord, bool]:
        return await self._call("edit_message", self._edit_message, message_id, content)

    @staticmethod
    def _edit_message(db: Session, message_id: int, content: str) -> tuple[MessageRecord, bool]:
        message = db.get(Message, message_id)
        if message is None:
            raise NotFound("Message not found", messageId=message_id)
        if message.content == content:
            return to_record(message), False
        now = _utcnow()
        db.add(MessageEdit(message_id=message_id, previous_content=message.content, edited_at=now))
        message.content = content
        message.edited_at = now
        db.commit()
        db.refresh(message)
        return to_record(message), True

    async def delete_message(self, message_id: int, user_id: int, *, for_everyone: bool) -> bool:
        return await self._call(
            "delete_message", self._delete_message, message_id, user_id, for_everyone
        )

    @staticmethod
    def _delete_message(db: Session, message_id: int, user_id: int, for_everyone: bool) -> bool:
        if db.get(Message, message_id) is None:
            raise NotFound("Message not found", messageId=message_id)
        now = _utcnow()
        if for_everyone:
            result = db.execute(
                update(Message)
                .where(Message.id == message_id, Message.is_deleted.is_(False))
                .values(is_deleted=True, deleted_at=now)
            )
            db.commit()
            return result.rowcount > 0

        stmt = select(MessageHidden.id).where(
            MessageHidden.message_id == message_id, MessageHidden.user_id == user_id
        )
        if db.execute(stmt).first() is not None:
            return False
        db.add(MessageHidden(message_id=message_id, user_id=user_id, hidden_at=now))
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return False
        return True

    async def set_reaction(self, message_id: int, user_id: int, emoji: str) -> bool:
        return await self._call("set_reaction", self._set_reaction, message_id, user_id, emoji)

    @staticmethod
    def _set_reaction(db: Session, message_id: int, user_id: int, emoji: str) -> bool:
        if db.get(Message, message_id) is None:
            raise NotFound("Message not found", messageId=message_id)
        stmt = select(MessageReaction).where(
            MessageReaction.message_id == message_id, MessageReaction.user_id == user_id
        )
        reaction = db.execute(stmt).scalar_one_or_none()
        if reaction is not None and reaction.emoji == emoji:
            return False
        if reaction is None:
            reaction = MessageReaction(message_id=message_id, user_id=user_id)
            db.add(reaction)
        reaction.emoji = emoji
        reaction.created_at = _utcnow()
        db.commit()
        return True

    async def remove_reaction(self, message_id: int, user_id: int) -> bool:
        return await self._call("remove_reaction", self._remove_reaction, message_id, user_id)

    @staticmethod
    def _remove_reaction(db: Session, message_id: int, user_id: int) -> bool:
        if db.get(Message, message_id) is None:
            raise NotFound("Message not found", messageId=message_id)
        result = db.execute(
            delete(MessageReaction).where(
                MessageReaction.message_id == message_id, MessageReaction.user_id == user_id
            )
        )
        db.commit()
        return result.rowcount > 0


__all__ = ["SqlAlchemyChatStore", "to_record"]
