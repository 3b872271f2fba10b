"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import asyncio
import os
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterator, Sequence

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("DATABASE_AUTO_CREATE", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from parley.realtime import ClientSession, NotFound, RealtimeCoordinator, TransientStoreFailure
from parley.realtime.store import MessageRecord, MessageStatus, NewMessage, ReceiptOutcome

from app.api import ws as ws_module
from app.core.security import create_access_token
from app.database import get_db
from app.main import app
from app.models import Base, Chat, ChatParticipant, Contact, User
from app.monitoring.registry import registry
from app.services.realtime import configure_realtime
from app.services.store import SqlAlchemyChatStore


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_metrics() -> Iterator[None]:
    for metric in registry._metrics.values():
        metric.clear()
    yield


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def sql_store(session_factory) -> SqlAlchemyChatStore:
    return SqlAlchemyChatStore(session_factory, serialize=True)


@pytest.fixture()
def client(session_factory, sql_store, monkeypatch) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient wired to the in-memory database."""

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    @contextmanager
    def test_db_session() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    monkeypatch.setattr(ws_module, "get_db_session", test_db_session)
    configure_realtime(sql_store)
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def seed(session_factory) -> Callable[..., dict[str, Any]]:
    """Create users, mutual contacts and one chat containing all of them."""

    def _seed(*logins: str, contacts: bool = True) -> dict[str, Any]:
        with session_factory() as session:
            users = [User(login=login, display_name=login.title()) for login in logins]
            session.add_all(users)
            session.flush()
            chat = Chat(title="-".join(logins), is_group=len(users) > 2)
            session.add(chat)
            session.flush()
            for user in users:
                session.add(ChatParticipant(chat_id=chat.id, user_id=user.id))
            if contacts:
                for owner in users:
                    for other in users:
                        if owner.id != other.id:
                            session.add(Contact(owner_id=owner.id, contact_id=other.id))
            session.commit()
            ids = {user.login: user.id for user in users}
            return {"users": ids, "chat_id": chat.id}

    return _seed


def token_for(user_id: int) -> str:
    return create_access_token({"sub": str(user_id)})


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeTransport:
    """Collects outbound events the way a websocket would receive them."""

    def __init__(self) -> None:
        self.connected = True
        self.sent: list[dict[str, Any]] = []
        self.closed_with: int | None = None

    def is_connected(self) -> bool:
        return self.connected

    async def send_json(self, payload: dict[str, Any]) -> bool:
        if not self.connected:
            return False
        self.sent.append(payload)
        return True

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.connected = False
        self.closed_with = code

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [event for event in self.sent if event["type"] == event_type]

    def types(self) -> list[str]:
        return [event["type"] for event in self.sent]


class FakeChatStore:
    """Dictionary-backed store honouring the collaborator contract."""

    def __init__(self) -> None:
        self.chats: dict[int, set[int]] = {}
        self.contacts: dict[int, set[int]] = {}
        self.messages: dict[int, MessageRecord] = {}
        self.receipts: dict[tuple[int, int], dict[str, datetime | None]] = {}
        self.unread: dict[tuple[int, int], int] = {}
        self.last_message: dict[int, int] = {}
        self.last_seen: dict[int, datetime] = {}
        self.edit_history: dict[int, list[str]] = {}
        self.hidden: set[tuple[int, int]] = set()
        self.reactions: dict[tuple[int, int], str] = {}
        self.failing: set[str] = set()
        self.calls: list[str] = []
        self._next_id = 1

    def add_chat(self, chat_id: int, members: Sequence[int]) -> None:
        self.chats[chat_id] = set(members)
        for member in members:
            self.unread.setdefault((chat_id, member), 0)

    def befriend(self, *user_ids: int) -> None:
        for owner in user_ids:
            self.contacts.setdefault(owner, set()).update(u for u in user_ids if u != owner)

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.failing:
            raise TransientStoreFailure("Storage temporarily unavailable", operation=operation)

    async def fetch_chat_membership(self, chat_id: int) -> set[int]:
        self._enter("fetch_chat_membership")
        if chat_id not in self.chats:
            raise NotFound("Chat not found", chatId=chat_id)
        return set(self.chats[chat_id])

    async def fetch_user_chats(self, user_id: int) -> list[int]:
        self._enter("fetch_user_chats")
        return sorted(chat_id for chat_id, members in self.chats.items() if user_id in members)

    async def fetch_contacts(self, user_id: int) -> set[int]:
        self._enter("fetch_contacts")
        return set(self.contacts.get(user_id, ()))

    async def get_message(self, message_id: int) -> MessageRecord | None:
        self._enter("get_message")
        return self.messages.get(message_id)

    async def create_message(self, message: NewMessage) -> tuple[MessageRecord, bool]:
        self._enter("create_message")
        for existing in self.messages.values():
            if existing.sender_id == message.sender_id and existing.client_id == message.client_id:
                return existing, False
        if message.reply_to_id is not None:
            parent = self.messages.get(message.reply_to_id)
            if parent is None or parent.chat_id != message.chat_id:
                raise NotFound("Reply target not found", replyTo=message.reply_to_id)
        now = datetime.now(timezone.utc)
        record = MessageRecord(
            id=self._next_id,
            chat_id=message.chat_id,
            sender_id=message.sender_id,
            content=message.content,
            created_at=now,
            message_type=message.message_type,
            reply_to_id=message.reply_to_id,
            client_id=message.client_id,
            status=MessageStatus(sent=True, sent_at=now),
        )
        self._next_id += 1
        self.messages[record.id] = record
        return record, True

    async def increment_unread(self, chat_id: int, message_id: int, recipients: Sequence[int]) -> None:
        self._enter("increment_unread")
        self.last_message[chat_id] = message_id
        for user_id in recipients:
            self.unread[(chat_id, user_id)] = self.unread.get((chat_id, user_id), 0) + 1

    async def append_delivery_receipt(self, message_id: int, user_id: int) -> ReceiptOutcome:
        self._enter("append_delivery_receipt")
        return self._append(message_id, user_id, read=False)

    async def append_read_receipt(self, message_id: int, user_id: int) -> ReceiptOutcome:
        self._enter("append_read_receipt")
        return self._append(message_id, user_id, read=True)

    def _append(self, message_id: int, user_id: int, *, read: bool) -> ReceiptOutcome:
        message = self.messages.get(message_id)
        if message is None:
            raise NotFound("Message not found", messageId=message_id)
        now = datetime.now(timezone.utc)
        receipt = self.receipts.setdefault((message_id, user_id), {"delivered_at": None, "read_at": None})
        delivered_created = receipt["delivered_at"] is None
        if delivered_created:
            receipt["delivered_at"] = now
            if not message.status.delivered:
                message.status.delivered = True
                message.status.delivered_at = now
        read_created = read and receipt["read_at"] is None
        if read_created:
            receipt["read_at"] = now
            if not message.status.read:
                message.status.read = True
                message.status.read_at = now
        return ReceiptOutcome(
            message=message,
            delivered_created=delivered_created,
            delivered_at=receipt["delivered_at"],
            read_created=read_created,
            read_at=receipt["read_at"],
        )

    async def reset_unread(self, chat_id: int, user_id: int, message_id: int) -> None:
        self._enter("reset_unread")
        self.unread[(chat_id, user_id)] = 0

    async def stamp_last_seen(self, user_id: int, when: datetime) -> None:
        self._enter("stamp_last_seen")
        self.last_seen[user_id] = when

    def _message(self, message_id: int) -> MessageRecord:
        message = self.messages.get(message_id)
        if message is None:
            raise NotFound("Message not found", messageId=message_id)
        return message

    async def edit_message(self, message_id: int, content: str) -> tuple[MessageRecord, bool]:
        self._enter("edit_message")
        message = self._message(message_id)
        if message.content == content:
            return message, False
        self.edit_history.setdefault(message_id, []).append(message.content)
        message.content = content
        message.edited_at = datetime.now(timezone.utc)
        return message, True

    async def delete_message(self, message_id: int, user_id: int, *, for_everyone: bool) -> bool:
        self._enter("delete_message")
        message = self._message(message_id)
        if for_everyone:
            if message.deleted:
                return False
            message.deleted = True
            return True
        if (message_id, user_id) in self.hidden:
            return False
        self.hidden.add((message_id, user_id))
        return True

    async def set_reaction(self, message_id: int, user_id: int, emoji: str) -> bool:
        self._enter("set_reaction")
        self._message(message_id)
        if self.reactions.get((message_id, user_id)) == emoji:
            return False
        self.reactions[(message_id, user_id)] = emoji
        return True

    async def remove_reaction(self, message_id: int, user_id: int) -> bool:
        self._enter("remove_reaction")
        self._message(message_id)
        return self.reactions.pop((message_id, user_id), None) is not None


async def eventually(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll ``predicate`` until it holds, failing the test after ``timeout``."""

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


async def settle() -> None:
    """Give session writer and processor tasks a chance to run."""

    await asyncio.sleep(0.02)


@pytest.fixture()
def store() -> FakeChatStore:
    return FakeChatStore()


@pytest.fixture()
async def coordinator(store) -> AsyncIterator[RealtimeCoordinator]:
    instance = RealtimeCoordinator(store, drain_timeout=1.0, reaper_interval=0.05)
    try:
        yield instance
    finally:
        await instance.shutdown()


async def open_session(
    coordinator: RealtimeCoordinator, user_id: int
) -> tuple[ClientSession, FakeTransport]:
    transport = FakeTransport()
    session = await coordinator.connect(user_id, transport)
    await settle()
    return session, transport
