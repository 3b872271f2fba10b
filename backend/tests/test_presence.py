from __future__ import annotations

import logging

import pytest

from conftest import eventually, open_session, settle

ALICE, BOB, CAROL = 1, 2, 3


@pytest.fixture()
def contacts(store) -> None:
    store.add_chat(10, [ALICE, BOB])
    store.befriend(ALICE, BOB)
    store.befriend(ALICE, CAROL)


@pytest.mark.anyio("asyncio")
async def test_first_session_announces_online_to_contacts(coordinator, store, contacts) -> None:
    _, alice_transport = await open_session(coordinator, ALICE)

    _, bob_transport = await open_session(coordinator, BOB)
    await eventually(lambda: bool(alice_transport.of_type("presence_online")))

    assert alice_transport.of_type("presence_online") == [{"type": "presence_online", "userId": BOB}]
    snapshot = bob_transport.of_type("presence_snapshot")[0]
    assert snapshot["users"] == [{"userId": ALICE, "online": True}]

    await open_session(coordinator, BOB)
    await settle()
    assert len(alice_transport.of_type("presence_online")) == 1


@pytest.mark.anyio("asyncio")
async def test_last_session_removal_announces_offline_once(coordinator, store, contacts) -> None:
    _, alice_transport = await open_session(coordinator, ALICE)
    bob_one, _ = await open_session(coordinator, BOB)
    bob_two, _ = await open_session(coordinator, BOB)

    await coordinator.disconnect(bob_one)
    await settle()
    assert alice_transport.of_type("presence_offline") == []
    assert coordinator.presence_of(BOB) == {"userId": BOB, "online": True, "sessions": 1}

    await coordinator.disconnect(bob_two)
    await coordinator.disconnect(bob_two)
    await eventually(lambda: bool(alice_transport.of_type("presence_offline")))
    await settle()

    offline = alice_transport.of_type("presence_offline")
    assert len(offline) == 1
    assert offline[0]["userId"] == BOB
    assert offline[0]["lastSeen"] == store.last_seen[BOB].isoformat()
    assert not coordinator.registry.is_online(BOB)


@pytest.mark.anyio("asyncio")
async def test_snapshot_lists_offline_contacts(coordinator, store, contacts) -> None:
    _, alice_transport = await open_session(coordinator, ALICE)

    snapshot = alice_transport.of_type("presence_snapshot")[0]
    assert snapshot["users"] == [
        {"userId": BOB, "online": False},
        {"userId": CAROL, "online": False},
    ]


@pytest.mark.anyio("asyncio")
async def test_presence_store_failures_never_reach_sessions(coordinator, store, contacts, caplog) -> None:
    store.failing.update({"fetch_contacts", "stamp_last_seen"})

    with caplog.at_level(logging.WARNING):
        alice, alice_transport = await open_session(coordinator, ALICE)
        await coordinator.disconnect(alice)

    assert alice_transport.of_type("error") == []
    assert alice_transport.of_type("presence_snapshot")[0]["users"] == []
    assert "Failed to load contacts for user 1" in caplog.text
    assert "Failed to stamp last seen for user 1" in caplog.text
