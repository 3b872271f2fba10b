"""Application service helpers."""

from .realtime import configure_realtime, get_coordinator, shutdown_realtime, startup_realtime
from .store import SqlAlchemyChatStore

__all__ = [
    "SqlAlchemyChatStore",
    "configure_realtime",
    "get_coordinator",
    "startup_realtime",
    "shutdown_realtime",
]
