"""
Health API Route
================
- GET /health - service liveness plus metrics source reachability and last run stats
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from alerts_core.exceptions import AlertsEngineError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
def health_check(request: Request):
    """200 when the metrics source answers, 503 otherwise"""
    orchestrator = request.app.state.orchestrator
    config = request.app.state.config

    metrics_api = {"reachable": False, "status": None, "last_metric_ts": None}
    try:
        health = orchestrator.metrics_client.get_health()
        metrics_api.update(
            reachable=True,
            status=health.status,
            last_metric_ts=health.last_metric_ts,
        )
    except AlertsEngineError as e:
        logger.warning(f"Metrics source unreachable from health check: {e}")

    last_run = orchestrator.last_run
    content = {
        "ok": metrics_api["reachable"],
        "time": datetime.now(timezone.utc).isoformat(),
        "timezone": config.app_timezone,
        "metrics_api": metrics_api,
        "last_run_at": last_run.ran_at.isoformat() if last_run else None,
        "alerts_count_last_run": last_run.alert_count if last_run else None,
        "alerts_by_level": last_run.alerts_by_level if last_run else None,
    }
    return JSONResponse(status_code=200 if metrics_api["reachable"] else 503, content=content)
