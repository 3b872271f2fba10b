from __future__ import annotations

import logging

import pytest

from app.monitoring.metrics import realtime_reaped_sessions_total
from conftest import FakeTransport, eventually, open_session
from parley.realtime import ClientSession, ConnectionRegistry, StaleConnectionReaper

ALICE, BOB = 1, 2


@pytest.fixture()
def contacts(store) -> None:
    store.add_chat(10, [ALICE, BOB])
    store.befriend(ALICE, BOB)


@pytest.mark.anyio("asyncio")
async def test_sweep_disconnects_dead_transports(coordinator, store, contacts) -> None:
    _, alice_transport = await open_session(coordinator, ALICE)
    bob, bob_transport = await open_session(coordinator, BOB)

    bob_transport.connected = False
    assert await coordinator.reaper.sweep() == 1
    assert await coordinator.reaper.sweep() == 0

    assert not coordinator.registry.is_online(BOB)
    assert not coordinator.rooms.contains(bob, 10)
    assert BOB in store.last_seen
    await eventually(lambda: bool(alice_transport.of_type("presence_offline")))
    assert realtime_reaped_sessions_total.value() == 1.0


@pytest.mark.anyio("asyncio")
async def test_background_loop_reaps_periodically(coordinator, store, contacts) -> None:
    _, bob_transport = await open_session(coordinator, BOB)
    coordinator.start()
    assert coordinator.reaper.running

    bob_transport.connected = False
    await eventually(lambda: not coordinator.registry.is_online(BOB))

    await coordinator.reaper.stop()
    assert not coordinator.reaper.running


@pytest.mark.anyio("asyncio")
async def test_loop_survives_failing_sweep(coordinator, store, contacts, caplog) -> None:
    calls: list[int] = []
    original_sweep = coordinator.reaper.sweep

    async def flaky_sweep() -> int:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("sweep exploded")
        return await original_sweep()

    coordinator.reaper.sweep = flaky_sweep  # type: ignore[method-assign]
    with caplog.at_level(logging.ERROR):
        coordinator.start()
        await eventually(lambda: len(calls) >= 2)

    assert "Stale connection sweep failed" in caplog.text
    assert coordinator.reaper.running
    await coordinator.reaper.stop()


@pytest.mark.anyio("asyncio")
async def test_sweep_counts_only_sessions_it_tore_down() -> None:
    registry = ConnectionRegistry()
    transport = FakeTransport()
    transport.connected = False
    session = ClientSession(BOB, transport)
    await registry.register(BOB, session)
    attempts: list[str] = []

    async def already_detaching(target: ClientSession, reason: str) -> bool:
        attempts.append(reason)
        return False

    reaper = StaleConnectionReaper(registry, already_detaching, interval=1.0)

    assert await reaper.sweep() == 0
    assert attempts == ["reaped"]
    assert realtime_reaped_sessions_total.value() == 0.0


@pytest.mark.anyio("asyncio")
async def test_repeated_disconnect_reports_no_teardown(coordinator, store, contacts) -> None:
    bob, _ = await open_session(coordinator, BOB)

    assert await coordinator.disconnect(bob, "reaped")
    assert not await coordinator.disconnect(bob, "reaped")
