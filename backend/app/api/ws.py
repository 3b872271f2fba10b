"""WebSocket endpoint for real-time chat sessions."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, TypeVar

from fastapi import APIRouter, WebSocket, status
from fastapi.exceptions import HTTPException
from fastapi.websockets import WebSocketDisconnect, WebSocketState

from parley.realtime import events

from app.api.deps import get_user_from_token
from app.config import get_settings
from app.database import get_db_session
from app.services.realtime import get_coordinator

router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

T = TypeVar("T")

KEEPALIVE_PING: dict[str, Any] = {"type": "ping"}


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    send_ping: Callable[[], Awaitable[bool]],
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while asking for keepalive pings when idle."""

    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break

            now = time.monotonic()
            should_ping = False
            if interval <= 0:
                should_ping = True
            else:
                if now - last_activity >= interval and (
                    last_ping_sent is None or now - last_ping_sent >= interval
                ):
                    should_ping = True

            if should_ping:
                if not await send_ping():
                    break
                last_ping_sent = now
            continue
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            raise
        except KeyError:
            # receive_text() on a binary frame; the frame is consumed, skip it
            logger.debug("Ignoring non-text websocket frame")
            continue
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Safely send JSON data through websocket, handling disconnections gracefully.

    Returns True if message was sent successfully, False otherwise.
    """
    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


class WebSocketTransport:
    """Adapt a Starlette websocket to the session transport interface."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    def is_connected(self) -> bool:
        return (
            self.websocket.application_state == WebSocketState.CONNECTED
            and self.websocket.client_state == WebSocketState.CONNECTED
        )

    async def send_json(self, payload: dict[str, Any]) -> bool:
        return await safe_send_json(self.websocket, payload)

    async def close(self, code: int = status.WS_1000_NORMAL_CLOSURE, reason: str | None = None) -> None:
        try:
            await self.websocket.close(code=code, reason=reason)
        except RuntimeError as exc:
            logger.debug("Websocket already closed: %s", exc)


async def _resolve_user(websocket: WebSocket) -> int | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return None

    try:
        with get_db_session() as db:
            return get_user_from_token(token, db).id
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return None


@router.websocket("/chat")
async def websocket_chat(websocket: WebSocket) -> None:
    """Run one client session until the socket closes."""

    user_id = await _resolve_user(websocket)
    if user_id is None:
        return

    await websocket.accept()
    coordinator = get_coordinator()
    session = await coordinator.connect(user_id, WebSocketTransport(websocket))

    async def send_ping() -> bool:
        return session.enqueue(KEEPALIVE_PING)

    try:
        async for raw_message in iter_keepalive_messages(
            websocket,
            websocket.receive_text,
            timeout_seconds=settings.websocket_keepalive_timeout_seconds,
            ping_interval_seconds=settings.websocket_keepalive_ping_interval_seconds,
            send_ping=send_ping,
        ):
            try:
                payload = json.loads(raw_message)
            except json.JSONDecodeError:
                session.enqueue(events.error("invalid_payload", detail="Invalid message format"))
                continue

            if isinstance(payload, dict) and payload.get("type") == "pong":
                continue
            if not await session.submit(payload):
                break
    except WebSocketDisconnect:
        pass
    finally:
        await coordinator.disconnect(session, "socket_closed")
