"""Process-wide realtime coordinator wiring for the FastAPI layer."""

from __future__ import annotations

import logging

from parley.realtime import ChatStore, RealtimeCoordinator

from app.config import get_settings
from app.database import SessionLocal, engine
from app.services.store import SqlAlchemyChatStore

logger = logging.getLogger(__name__)

_coordinator: RealtimeCoordinator | None = None


def _default_store() -> SqlAlchemyChatStore:
    return SqlAlchemyChatStore(SessionLocal, serialize=engine.dialect.name == "sqlite")


def configure_realtime(store: ChatStore | None = None) -> RealtimeCoordinator:
    """(Re)build the coordinator, optionally around a custom store."""

    global _coordinator
    settings = get_settings()
    _coordinator = RealtimeCoordinator(
        store if store is not None else _default_store(),
        outbound_queue_size=settings.realtime_outbound_queue_size,
        inbound_queue_size=settings.realtime_inbound_queue_size,
        drain_timeout=settings.realtime_drain_timeout_seconds,
        reaper_interval=settings.realtime_reaper_interval_seconds,
        message_max_length=settings.chat_message_max_length,
    )
    return _coordinator


def get_coordinator() -> RealtimeCoordinator:
    if _coordinator is None:
        return configure_realtime()
    return _coordinator


async def startup_realtime() -> None:
    coordinator = get_coordinator()
    coordinator.start()
    logger.info(
        "Realtime coordinator started (reaper every %ss)", coordinator.reaper.interval
    )


async def shutdown_realtime() -> None:
    if _coordinator is None:
        return
    await _coordinator.shutdown()
    logger.info("Realtime coordinator stopped")


__all__ = ["configure_realtime", "get_coordinator", "startup_realtime", "shutdown_realtime"]
