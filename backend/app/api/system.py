"""Health and Prometheus-compatible metrics endpoints."""

from fastapi import APIRouter, Depends, Response

from parley.realtime import RealtimeCoordinator

from app.api.deps import get_realtime
from app.config import get_settings
from app.monitoring.registry import registry

router = APIRouter(tags=["system"])

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4"


@router.get("/health")
def health_check(realtime: RealtimeCoordinator = Depends(get_realtime)) -> dict[str, object]:
    """Liveness check with a glimpse of realtime load."""

    return {
        "status": "ok",
        "environment": get_settings().environment,
        "online_users": len(realtime.registry.online_users()),
        "reaper_running": realtime.reaper.running,
    }


@router.get("/metrics", response_class=Response, tags=["metrics"])
def export_metrics() -> Response:
    """Expose collected metrics for Prometheus scraping."""

    return Response(content=registry.render(), media_type=PROMETHEUS_CONTENT_TYPE)
