"""Alert webhook receiver: accepts Alertmanager-style batches onto the raw queue
and reads back the alerts the correlation stage has stored."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from incident_platform.config import settings
from incident_platform.dependencies import get_queue, get_store
from incident_platform.incidents.models import AlertRecord
from incident_platform.incidents.store import IncidentStore
from incident_platform.queue.client import QueueClient
from incident_platform.queue.messages import RawAlertMsg
from incident_platform.telemetry.metrics import alerts_received

logger = logging.getLogger("incident_platform.ingestion")
router = APIRouter(prefix="/alerts", tags=["ingestion"])


def _alertname(alert: object) -> str:
    if isinstance(alert, dict) and isinstance(alert.get("labels"), dict):
        return str(alert["labels"].get("alertname", "unknown"))
    return "unknown"


@router.post("/webhook")
async def alertmanager_webhook(payload: Any = Body(...), queue: QueueClient = Depends(get_queue)):
    """Queue every alert of the batch for verification and normalization."""
    alerts = payload.get("alerts") if isinstance(payload, dict) else None
    if not isinstance(alerts, list):
        raise HTTPException(status_code=400, detail="Invalid payload: 'alerts' must be an array")

    results = []
    for alert in alerts:
        name = _alertname(alert)
        message = RawAlertMsg(alert=alert)
        try:
            await queue.push(settings.raw_queue, message)
        except Exception as exc:
            logger.exception("Failed to enqueue alert %s", name)
            results.append({"success": False, "error": str(exc) or type(exc).__name__, "alertname": name})
            continue
        alerts_received.inc()
        results.append({"success": True, "jobId": message.id, "alertname": name})

    queued = sum(1 for r in results if r["success"])
    logger.info("Received %d alerts (%d queued)", len(alerts), queued)

    return {
        "results": results,
        "summary": {"total": len(alerts), "queued": queued, "failed": len(alerts) - queued},
    }


@router.get("", response_model=list[AlertRecord])
async def recent_alerts(
    limit: int = Query(default=50, ge=1, le=500),
    source: str | None = None,
    severity: str | None = None,
    store: IncidentStore = Depends(get_store),
):
    try:
        return await store.list_alerts(limit=limit, source=source, severity=severity)
    except Exception:
        logger.exception("Error fetching alerts")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/{alert_id}", response_model=AlertRecord)
async def get_alert(alert_id: str, store: IncidentStore = Depends(get_store)):
    try:
        alert = await store.get_alert(alert_id)
    except Exception:
        logger.exception("Error fetching alert %s", alert_id)
        raise HTTPException(status_code=500, detail="Internal server error")
    if alert is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    return alert
