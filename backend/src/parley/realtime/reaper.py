"""Periodic reconciliation of registered sessions against transport liveness."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable

from app.monitoring.metrics import realtime_reaped_sessions_total

from .registry import ConnectionRegistry
from .session import ClientSession

logger = logging.getLogger(__name__)

Disconnect = Callable[[ClientSession, str], Awaitable[bool]]


class StaleConnectionReaper:
    """Disconnect sessions whose transport went away without telling us."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        disconnect: Disconnect,
        *,
        interval: float = 30.0,
    ) -> None:
        self._registry = registry
        self._disconnect = disconnect
        self.interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="realtime-reaper")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def sweep(self) -> int:
        reaped = 0
        for session in self._registry.all_sessions():
            if session.is_alive():
                continue
            logger.info("Reaping stale session %s of user %s", session.session_id, session.user_id)
            if await self._disconnect(session, "reaped"):
                reaped += 1
        if reaped:
            realtime_reaped_sessions_total.labels().inc(reaped)
        return reaped

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Stale connection sweep failed")


__all__ = ["StaleConnectionReaper"]
