"""Client session actor.

A session owns two queues. The socket reader pushes raw inbound payloads into
``inbound``; a single processing task consumes them in submission order. The
coordinator talks back only by enqueueing events on ``outbound``, which a
writer task drains into the transport.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

from app.monitoring.metrics import realtime_dropped_events_total

logger = logging.getLogger(__name__)

InboundHandler = Callable[["ClientSession", dict[str, Any]], Awaitable[None]]


class SessionTransport(Protocol):
    """The network side of a session (a websocket in production)."""

    def is_connected(self) -> bool: ...

    async def send_json(self, payload: dict[str, Any]) -> bool: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


class ClientSession:
    """One authenticated, live connection of a user."""

    def __init__(
        self,
        user_id: int,
        transport: SessionTransport,
        *,
        inbound_size: int = 0,
        outbound_size: int = 0,
        session_id: str | None = None,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex
        self.user_id = user_id
        self.transport = transport
        self.connected_at = datetime.now(timezone.utc)
        self.inbound: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=inbound_size)
        self.outbound: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=outbound_size)
        self._closing = False
        self._writer_stopped = False
        self._writer: asyncio.Task[None] | None = None
        self._processor: asyncio.Task[None] | None = None

    def __repr__(self) -> str:
        return f"<ClientSession {self.session_id} user={self.user_id}>"

    @property
    def closing(self) -> bool:
        return self._closing

    def is_alive(self) -> bool:
        return not self._writer_stopped and self.transport.is_connected()

    def start(self, handler: InboundHandler) -> None:
        self._writer = asyncio.create_task(
            self._write_loop(), name=f"session-writer-{self.session_id}"
        )
        self._processor = asyncio.create_task(
            self._process_loop(handler), name=f"session-inbound-{self.session_id}"
        )

    # -- outbound ---------------------------------------------------------

    def enqueue(self, event: dict[str, Any]) -> bool:
        """Queue an event for delivery; never blocks the caller."""

        if self._writer_stopped:
            realtime_dropped_events_total.labels("closed").inc()
            return False
        try:
            self.outbound.put_nowait(event)
        except asyncio.QueueFull:
            realtime_dropped_events_total.labels("queue_full").inc()
            logger.warning(
                "Outbound queue full for session %s; dropping %s event",
                self.session_id,
                event.get("type"),
            )
            return False
        return True

    async def _write_loop(self) -> None:
        try:
            while True:
                event = await self.outbound.get()
                if event is None:
                    break
                if not await self.transport.send_json(event):
                    logger.debug("Transport for session %s stopped accepting events", self.session_id)
                    break
        finally:
            self._writer_stopped = True

    # -- inbound ----------------------------------------------------------

    async def submit(self, payload: dict[str, Any]) -> bool:
        """Hand an inbound payload to the processing task (applies backpressure)."""

        if self._closing:
            return False
        await self.inbound.put(payload)
        return True

    async def _process_loop(self, handler: InboundHandler) -> None:
        while True:
            payload = await self.inbound.get()
            if payload is None:
                break
            try:
                await handler(self, payload)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unhandled error while processing event for session %s", self.session_id)

    # -- shutdown ---------------------------------------------------------

    async def close(self, *, drain_timeout: float = 5.0) -> None:
        """Stop accepting input, finish queued inbound work, then stop the writer.

        Events already submitted are still processed so that a message sent
        right before a disconnect is persisted and fanned out.
        """

        if self._closing:
            return
        self._closing = True

        processor = self._processor
        if processor is not None and processor is not asyncio.current_task():
            try:
                await asyncio.wait_for(self._finish_inbound(processor), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("Session %s did not drain in time; cancelling", self.session_id)
                await _cancel(processor)

        writer = self._writer
        if writer is not None:
            try:
                self.outbound.put_nowait(None)
            except asyncio.QueueFull:
                await _cancel(writer)
            else:
                try:
                    await asyncio.wait_for(asyncio.shield(writer), timeout=drain_timeout)
                except asyncio.TimeoutError:
                    await _cancel(writer)
        self._writer_stopped = True

        if self.transport.is_connected():
            await self.transport.close()

    async def _finish_inbound(self, processor: asyncio.Task[None]) -> None:
        await self.inbound.put(None)
        await processor


async def _cancel(task: asyncio.Task[Any]) -> None:
    if not task.done():
        task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
