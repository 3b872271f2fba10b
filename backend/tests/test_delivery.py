from __future__ import annotations

import asyncio

import pytest

from conftest import eventually, open_session, settle
from parley.realtime import NotFound, PermissionDenied

ALICE, BOB, CAROL, DAVE = 1, 2, 3, 4
CHAT = 10


@pytest.fixture()
def chat(store) -> None:
    store.add_chat(CHAT, [ALICE, BOB, CAROL])
    store.add_chat(20, [DAVE])
    store.befriend(ALICE, BOB)


async def _post(coordinator, session, transport, client_id: str = "c1") -> int:
    await coordinator.dispatch(
        session, {"type": "submit_message", "chatId": CHAT, "content": "hi", "clientId": client_id}
    )
    await eventually(lambda: bool(transport.of_type("message_ack")))
    return transport.of_type("message_ack")[-1]["messageId"]


@pytest.mark.anyio("asyncio")
async def test_offline_recipient_marks_delivered_after_connecting(coordinator, store, chat) -> None:
    first, first_transport = await open_session(coordinator, ALICE)
    _, second_transport = await open_session(coordinator, ALICE)
    message_id = await _post(coordinator, first, first_transport)

    bob, bob_transport = await open_session(coordinator, BOB)
    assert bob_transport.of_type("new_message") == []

    await coordinator.dispatch(bob, {"type": "mark_delivered", "messageId": message_id})
    await eventually(lambda: bool(second_transport.of_type("delivery_receipt")))
    await eventually(lambda: bool(first_transport.of_type("delivery_receipt")))

    receipt = first_transport.of_type("delivery_receipt")[0]
    assert receipt["messageId"] == message_id
    assert receipt["userId"] == BOB
    assert store.messages[message_id].status.delivered
    assert not store.messages[message_id].status.read


@pytest.mark.anyio("asyncio")
async def test_mark_delivered_twice_records_single_receipt(coordinator, store, chat) -> None:
    alice, alice_transport = await open_session(coordinator, ALICE)
    bob, _ = await open_session(coordinator, BOB)
    message_id = await _post(coordinator, alice, alice_transport)

    first = await coordinator.delivery.mark_delivered(message_id, BOB)
    second = await coordinator.delivery.mark_delivered(message_id, BOB)
    await settle()

    assert first.delivered_created and not second.delivered_created
    assert list(store.receipts) == [(message_id, BOB)]
    assert len(alice_transport.of_type("delivery_receipt")) == 1


@pytest.mark.anyio("asyncio")
async def test_read_without_delivery_sets_both_and_resets_unread(coordinator, store, chat) -> None:
    alice, alice_transport = await open_session(coordinator, ALICE)
    bob, _ = await open_session(coordinator, BOB)
    message_id = await _post(coordinator, alice, alice_transport)
    assert store.unread[(CHAT, BOB)] == 1

    await coordinator.dispatch(bob, {"type": "mark_read", "messageId": message_id})
    await eventually(lambda: bool(alice_transport.of_type("read_receipt")))

    types = alice_transport.types()
    assert types.index("delivery_receipt") < types.index("read_receipt")
    read = alice_transport.of_type("read_receipt")[0]
    assert read == {
        "type": "read_receipt",
        "messageId": message_id,
        "chatId": CHAT,
        "userId": BOB,
        "timestamp": read["timestamp"],
    }
    status = store.messages[message_id].status
    assert status.delivered and status.read
    assert store.unread[(CHAT, BOB)] == 0

    await coordinator.dispatch(bob, {"type": "mark_read", "messageId": message_id})
    await coordinator.dispatch(bob, {"type": "mark_delivered", "messageId": message_id})
    await settle()
    assert len(alice_transport.of_type("read_receipt")) == 1
    assert len(alice_transport.of_type("delivery_receipt")) == 1


@pytest.mark.anyio("asyncio")
async def test_message_flags_follow_first_recipient(coordinator, store, chat) -> None:
    alice, alice_transport = await open_session(coordinator, ALICE)
    message_id = await _post(coordinator, alice, alice_transport)

    await asyncio.gather(
        coordinator.delivery.mark_delivered(message_id, BOB),
        coordinator.delivery.mark_read(message_id, CAROL),
    )

    status = store.messages[message_id].status
    assert status.delivered and status.read
    assert set(store.receipts) == {(message_id, BOB), (message_id, CAROL)}


@pytest.mark.anyio("asyncio")
async def test_sender_marking_own_message_is_noop(coordinator, store, chat) -> None:
    alice, alice_transport = await open_session(coordinator, ALICE)
    message_id = await _post(coordinator, alice, alice_transport)

    assert await coordinator.delivery.mark_read(message_id, ALICE) is None
    assert store.receipts == {}
    assert not store.messages[message_id].status.delivered


@pytest.mark.anyio("asyncio")
async def test_unknown_message_and_outsider_are_rejected(coordinator, store, chat) -> None:
    alice, alice_transport = await open_session(coordinator, ALICE)
    message_id = await _post(coordinator, alice, alice_transport)

    with pytest.raises(NotFound):
        await coordinator.delivery.mark_delivered(999, BOB)
    with pytest.raises(PermissionDenied):
        await coordinator.delivery.mark_read(message_id, DAVE)
    assert store.receipts == {}


@pytest.mark.anyio("asyncio")
async def test_read_receipt_survives_unread_reset_failure(coordinator, store, chat) -> None:
    alice, alice_transport = await open_session(coordinator, ALICE)
    bob, bob_transport = await open_session(coordinator, BOB)
    message_id = await _post(coordinator, alice, alice_transport)
    store.failing.add("reset_unread")

    await coordinator.dispatch(bob, {"type": "mark_read", "messageId": message_id})
    await eventually(lambda: bool(bob_transport.of_type("error")))
    await eventually(lambda: bool(alice_transport.of_type("read_receipt")))

    error = bob_transport.of_type("error")[0]
    assert error["reason"] == "transient_store_failure"
    assert error["context"]["operation"] == "reset_unread"
    assert len(alice_transport.of_type("delivery_receipt")) == 1
    assert store.unread[(CHAT, BOB)] == 1

    store.failing.clear()
    await coordinator.dispatch(bob, {"type": "mark_read", "messageId": message_id})
    await settle()

    assert store.unread[(CHAT, BOB)] == 0
    assert len(alice_transport.of_type("read_receipt")) == 1
