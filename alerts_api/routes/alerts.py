"""
Alerts API Routes
=================
Endpoints:
- GET  /api/v1/alerts         - Query alerts by date range and level
- GET  /api/v1/alerts/recent  - Most recent alerts
- GET  /api/v1/alerts/rules   - Active rules from the rule cache
- POST /api/v1/alerts/run     - Trigger one alert run
"""
import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from alerts_core.exceptions import AlertsEngineError, RunInProgressError
from alerts_core.models import AlertLevel

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


@router.get("")
def list_alerts(
    request: Request,
    from_date: Optional[date] = Query(None, alias="from", description="Earliest observation date"),
    to_date: Optional[date] = Query(None, alias="to", description="Latest observation date"),
    level: Optional[AlertLevel] = Query(None, description="red, amber or green"),
    limit: int = Query(50, ge=1, le=100),
):
    """Query alerts, newest observation first"""
    if from_date and to_date and from_date > to_date:
        raise HTTPException(status_code=422, detail="'from' must not be after 'to'")

    repository = request.app.state.orchestrator.repository
    try:
        alerts = repository.query(from_date=from_date, to_date=to_date, level=level, limit=limit)
    except Exception as e:
        logger.error(f"Failed to query alerts: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "alerts": [alert.model_dump(mode="json") for alert in alerts],
        "count": len(alerts),
        "filters": {
            "from": from_date.isoformat() if from_date else None,
            "to": to_date.isoformat() if to_date else None,
            "level": level.value if level else None,
            "limit": limit,
        },
    }


@router.get("/recent")
def recent_alerts(request: Request, limit: int = Query(20, ge=1, le=100)):
    """Most recent alerts"""
    repository = request.app.state.orchestrator.repository
    try:
        alerts = repository.get_recent(limit=limit)
    except Exception as e:
        logger.error(f"Failed to fetch recent alerts: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    return {"alerts": [alert.model_dump(mode="json") for alert in alerts], "count": len(alerts)}


@router.get("/rules")
def list_rules(request: Request):
    """Active rules as currently cached"""
    rule_cache = request.app.state.orchestrator.rule_cache
    try:
        rules = rule_cache.get()
    except AlertsEngineError as e:
        logger.error(f"Failed to load rules: {e}")
        raise HTTPException(status_code=503, detail=str(e))

    return {"rules": [rule.model_dump(mode="json") for rule in rules], "count": len(rules)}


@router.post("/run")
def trigger_run(request: Request):
    """Run all active rules once and return the run summary"""
    orchestrator = request.app.state.orchestrator
    try:
        summary = orchestrator.run_once()
    except RunInProgressError as e:
        return JSONResponse(status_code=409, content={"error": e.message, "stage": e.stage})
    except AlertsEngineError as e:
        return JSONResponse(status_code=503, content={"error": e.message, "stage": e.stage})

    return summary.model_dump(mode="json")
