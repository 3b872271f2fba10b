from __future__ import annotations

import pytest

from conftest import eventually, open_session, settle

ALICE, BOB, CAROL = 1, 2, 3
CHAT = 10


@pytest.fixture()
def chat(store) -> None:
    store.add_chat(CHAT, [ALICE, BOB])
    store.add_chat(20, [CAROL])


@pytest.mark.anyio("asyncio")
async def test_typing_reaches_room_but_not_origin_session(coordinator, chat) -> None:
    alice, alice_transport = await open_session(coordinator, ALICE)
    _, alice_other = await open_session(coordinator, ALICE)
    _, bob_transport = await open_session(coordinator, BOB)

    await coordinator.dispatch(alice, {"type": "typing_start", "chatId": CHAT})
    await eventually(lambda: bool(bob_transport.of_type("typing")))

    assert bob_transport.of_type("typing")[0] == {
        "type": "typing",
        "userId": ALICE,
        "chatId": CHAT,
        "isTyping": True,
    }
    assert alice_other.of_type("typing")[0]["isTyping"] is True
    assert alice_transport.of_type("typing") == []
    assert coordinator.signals.typing_users(CHAT) == {ALICE}

    await coordinator.dispatch(alice, {"type": "typing_stop", "chatId": CHAT})
    await eventually(lambda: len(bob_transport.of_type("typing")) == 2)
    assert bob_transport.of_type("typing")[1]["isTyping"] is False
    assert coordinator.signals.typing_users(CHAT) == set()


@pytest.mark.anyio("asyncio")
async def test_typing_outside_room_is_dropped(coordinator, chat) -> None:
    carol, carol_transport = await open_session(coordinator, CAROL)
    _, bob_transport = await open_session(coordinator, BOB)

    await coordinator.dispatch(carol, {"type": "typing_start", "chatId": CHAT})
    await settle()

    assert bob_transport.of_type("typing") == []
    assert carol_transport.of_type("error") == []


@pytest.mark.anyio("asyncio")
async def test_disconnect_clears_typing(coordinator, chat) -> None:
    alice, _ = await open_session(coordinator, ALICE)
    _, bob_transport = await open_session(coordinator, BOB)

    await coordinator.dispatch(alice, {"type": "typing_start", "chatId": CHAT})
    await coordinator.disconnect(alice)
    await eventually(lambda: len(bob_transport.of_type("typing")) == 2)

    assert [event["isTyping"] for event in bob_transport.of_type("typing")] == [True, False]


@pytest.mark.anyio("asyncio")
async def test_call_to_offline_user_is_target_unavailable(coordinator, chat) -> None:
    alice, alice_transport = await open_session(coordinator, ALICE)

    await coordinator.dispatch(
        alice,
        {"type": "call_initiate", "targetUserId": BOB, "chatId": CHAT, "callType": "video", "offer": {"sdp": "x"}},
    )
    await eventually(lambda: bool(alice_transport.of_type("error")))

    error = alice_transport.of_type("error")[0]
    assert error["reason"] == "target_unavailable"
    assert error["context"]["targetUserId"] == BOB
    assert coordinator.signals.active_call(ALICE, BOB) is None

    _, bob_transport = await open_session(coordinator, BOB)
    assert bob_transport.of_type("incoming_call") == []


@pytest.mark.anyio("asyncio")
async def test_call_negotiation_round_trip(coordinator, chat) -> None:
    alice, alice_transport = await open_session(coordinator, ALICE)
    bob, bob_transport = await open_session(coordinator, BOB)

    await coordinator.dispatch(
        alice,
        {"type": "call_initiate", "targetUserId": BOB, "chatId": CHAT, "callType": "audio", "offer": "offer-sdp"},
    )
    await eventually(lambda: bool(bob_transport.of_type("incoming_call")))
    assert bob_transport.of_type("incoming_call")[0] == {
        "type": "incoming_call",
        "callerId": ALICE,
        "chatId": CHAT,
        "callType": "audio",
        "offer": "offer-sdp",
    }
    assert alice_transport.of_type("call_initiated")[0]["targetUserId"] == BOB

    await coordinator.dispatch(bob, {"type": "call_answer", "callerId": ALICE, "answer": "answer-sdp"})
    await eventually(lambda: bool(alice_transport.of_type("call_answered")))
    assert alice_transport.of_type("call_answered")[0]["answer"] == "answer-sdp"
    assert coordinator.signals.active_call(ALICE, BOB).state == "active"

    await coordinator.dispatch(alice, {"type": "ice_candidate", "targetUserId": BOB, "candidate": {"c": 1}})
    await eventually(lambda: bool(bob_transport.of_type("ice_candidate")))
    assert bob_transport.of_type("ice_candidate")[0]["senderId"] == ALICE

    await coordinator.dispatch(bob, {"type": "call_end", "targetUserId": ALICE})
    await eventually(lambda: bool(alice_transport.of_type("call_ended")))
    assert alice_transport.of_type("call_ended")[0]["enderId"] == BOB
    assert coordinator.signals.active_call(ALICE, BOB) is None


@pytest.mark.anyio("asyncio")
async def test_reject_forwards_reason_and_clears_call(coordinator, chat) -> None:
    alice, alice_transport = await open_session(coordinator, ALICE)
    bob, _ = await open_session(coordinator, BOB)

    await coordinator.dispatch(alice, {"type": "call_initiate", "targetUserId": BOB, "chatId": CHAT})
    await coordinator.dispatch(bob, {"type": "call_reject", "callerId": ALICE, "reason": "busy"})
    await eventually(lambda: bool(alice_transport.of_type("call_rejected")))

    assert alice_transport.of_type("call_rejected")[0] == {
        "type": "call_rejected",
        "rejecterId": BOB,
        "reason": "busy",
    }
    assert coordinator.signals.active_call(ALICE, BOB) is None


@pytest.mark.anyio("asyncio")
async def test_signals_without_call_or_membership_are_denied(coordinator, chat) -> None:
    alice, alice_transport = await open_session(coordinator, ALICE)
    _, _ = await open_session(coordinator, CAROL)

    await coordinator.dispatch(alice, {"type": "call_reject", "callerId": BOB})
    await coordinator.dispatch(alice, {"type": "call_answer", "callerId": BOB})
    await coordinator.dispatch(alice, {"type": "call_initiate", "targetUserId": CAROL, "chatId": CHAT})
    await coordinator.dispatch(alice, {"type": "call_initiate", "targetUserId": ALICE, "chatId": CHAT})
    await eventually(lambda: len(alice_transport.of_type("error")) == 4)

    reasons = [event["reason"] for event in alice_transport.of_type("error")]
    assert reasons == ["permission_denied", "permission_denied", "permission_denied", "invalid_payload"]


@pytest.mark.anyio("asyncio")
async def test_caller_going_offline_ends_call_for_peer(coordinator, chat) -> None:
    alice, _ = await open_session(coordinator, ALICE)
    _, bob_transport = await open_session(coordinator, BOB)

    await coordinator.dispatch(alice, {"type": "call_initiate", "targetUserId": BOB, "chatId": CHAT})
    await coordinator.disconnect(alice)
    await eventually(lambda: bool(bob_transport.of_type("call_ended")))

    assert bob_transport.of_type("call_ended")[0] == {
        "type": "call_ended",
        "enderId": ALICE,
        "reason": "disconnected",
    }
    assert coordinator.signals.active_call(ALICE, BOB) is None
