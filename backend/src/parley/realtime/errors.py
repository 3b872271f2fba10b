"""Error taxonomy for realtime operations.

Every error rejects a single inbound operation. The coordinator turns it into
an ``error`` event for the acting session; the session itself stays open.
"""

from __future__ import annotations

from typing import Any


class RealtimeError(Exception):
    """Base class for errors reported back to the acting session."""

    reason = "realtime_error"

    def __init__(self, detail: str, **context: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.context = context


class PermissionDenied(RealtimeError):
    """The actor is not a member of the referenced chat or call."""

    reason = "permission_denied"


class NotFound(RealtimeError):
    """Unknown message, chat or room."""

    reason = "not_found"


class TransientStoreFailure(RealtimeError):
    """A durable read or write failed; the client may retry."""

    reason = "transient_store_failure"


class TargetUnavailable(RealtimeError):
    """The signalling target has no live session."""

    reason = "target_unavailable"


class InvalidPayload(RealtimeError):
    """The inbound event could not be parsed or failed validation."""

    reason = "invalid_payload"


__all__ = [
    "InvalidPayload",
    "NotFound",
    "PermissionDenied",
    "RealtimeError",
    "TargetUnavailable",
    "TransientStoreFailure",
]
