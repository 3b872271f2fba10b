"""Metric definitions for the realtime coordinator."""

from __future__ import annotations

from .registry import registry


realtime_connections = registry.gauge(
    "realtime_active_connections",
    "Number of live client sessions handled by this instance.",
    label_names=("scope",),
)

realtime_events_total = registry.counter(
    "realtime_events_total",
    "Count of realtime events processed by the coordinator.",
    label_names=("topic", "direction", "action"),
)

realtime_dropped_events_total = registry.counter(
    "realtime_dropped_events_total",
    "Outbound events dropped because a session queue was full or closed.",
    label_names=("reason",),
)

realtime_reaped_sessions_total = registry.counter(
    "realtime_reaped_sessions_total",
    "Sessions removed by the stale connection reaper.",
)

realtime_store_failures_total = registry.counter(
    "realtime_store_failures_total",
    "Collaborator store calls that failed.",
    label_names=("operation",),
)
