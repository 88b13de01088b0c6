"""Incident API — read access, admin updates and magic-link transitions."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel

from incident_platform.dependencies import get_lifecycle, get_store
from incident_platform.incidents.lifecycle import (
    IncidentLifecycle,
    InvalidStatus,
    TransitionOutcome,
    TransitionResult,
)
from incident_platform.incidents.links import resolve_link
from incident_platform.incidents.models import Incident
from incident_platform.incidents.pages import render_page, time_diff
from incident_platform.incidents.store import IncidentNotFound, IncidentStore

logger = logging.getLogger("incident_platform.incidents.api")
router = APIRouter(prefix="/incidents", tags=["incidents"])

_INTERNAL_ERROR = "Internal server error"

_STATUS_CODES = {
    TransitionOutcome.INVALID: 404,
    TransitionOutcome.MUST_ACKNOWLEDGE: 409,
}


class IncidentCreate(BaseModel):
    title: str
    severity: str
    source: str
    description: str = ""
    alert_id: str | None = None


class IncidentStatusUpdate(BaseModel):
    status: str | None = None


def _wants_html(request: Request) -> bool:
    return "text/html" in request.headers.get("accept", "")


def _html(result: TransitionResult) -> str:
    incident = result.incident
    if result.outcome is TransitionOutcome.INVALID:
        return render_page("Invalid Link", ["This link is not valid or has expired."], "error")
    if result.outcome is TransitionOutcome.ACKNOWLEDGED:
        return render_page(
            "Incident Acknowledged",
            [
                "You have acknowledged this incident.",
                "Once you've fixed the issue, use the button below to mark it as resolved.",
            ],
            "success",
            incident,
            resolve_link(incident.resolve_token) if incident.resolve_token else None,
            "Mark as Resolved",
        )
    if result.outcome is TransitionOutcome.RESOLVED:
        took = time_diff(incident.created_at, incident.resolved_at) if incident.resolved_at else "N/A"
        return render_page(
            "Incident Resolved",
            ["Great work! The incident has been marked as resolved.", f"Resolution time: {took}"],
            "resolved",
            incident,
        )
    if result.outcome is TransitionOutcome.MUST_ACKNOWLEDGE:
        return render_page(
            "Acknowledge First",
            ["This incident must be acknowledged before it can be resolved."],
            "info",
            incident,
        )
    resolved = incident.resolved_at.strftime("%Y-%m-%d %H:%M UTC") if incident.resolved_at else "N/A"
    return render_page(
        f"Incident Already {incident.status.value.capitalize()}",
        [f"This incident was already {incident.status.value}.", f"Resolved at: {resolved}"],
        "info",
        incident,
    )


def _transition_response(request: Request, result: TransitionResult):
    status_code = _STATUS_CODES.get(result.outcome, 200)
    if _wants_html(request):
        return HTMLResponse(_html(result), status_code=status_code)
    if result.outcome is TransitionOutcome.INVALID:
        return JSONResponse(
            {"error": result.message, "message": "This link is not valid."},
            status_code=status_code,
        )
    return JSONResponse(
        {
            "message": result.message,
            "status": result.status.value if result.status else None,
            "incident": result.incident.model_dump(mode="json") if result.incident else None,
        },
        status_code=status_code,
    )


@router.post("", status_code=201, response_model=Incident)
async def create_incident(body: IncidentCreate, lifecycle: IncidentLifecycle = Depends(get_lifecycle)):
    try:
        incident = await lifecycle.create(
            title=body.title,
            severity=body.severity,
            source=body.source,
            description=body.description,
            alert_id=body.alert_id,
        )
    except Exception:
        logger.exception("Error creating incident")
        raise HTTPException(status_code=500, detail=_INTERNAL_ERROR)
    logger.info("Created incident %s, pushed to queue for assignment", incident.id)
    return incident


@router.get("", response_model=list[Incident])
async def list_incidents(
    status: str | None = None,
    assigned_to: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    store: IncidentStore = Depends(get_store),
):
    try:
        return await store.list_incidents(status=status, assigned_to=assigned_to, limit=limit)
    except Exception:
        logger.exception("Error listing incidents")
        raise HTTPException(status_code=500, detail=_INTERNAL_ERROR)


@router.get("/metrics/sre")
async def sre_metrics(store: IncidentStore = Depends(get_store)):
    """MTTA / MTTR across all incidents."""
    try:
        return await store.sre_metrics()
    except Exception:
        logger.exception("Error computing SRE metrics")
        raise HTTPException(status_code=500, detail=_INTERNAL_ERROR)


@router.get("/ack/{token}")
async def acknowledge(token: str, request: Request, lifecycle: IncidentLifecycle = Depends(get_lifecycle)):
    try:
        result = await lifecycle.acknowledge(token)
    except Exception:
        logger.exception("Error with acknowledge link")
        return JSONResponse({"error": _INTERNAL_ERROR}, status_code=500)
    return _transition_response(request, result)


@router.get("/resolve/{token}")
async def resolve(token: str, request: Request, lifecycle: IncidentLifecycle = Depends(get_lifecycle)):
    try:
        result = await lifecycle.resolve(token)
    except Exception:
        logger.exception("Error with resolve link")
        return JSONResponse({"error": _INTERNAL_ERROR}, status_code=500)
    return _transition_response(request, result)


@router.get("/{incident_id}", response_model=Incident)
async def get_incident(incident_id: str, store: IncidentStore = Depends(get_store)):
    try:
        incident = await store.get(incident_id)
    except Exception:
        logger.exception("Error fetching incident %s", incident_id)
        raise HTTPException(status_code=500, detail=_INTERNAL_ERROR)
    if incident is None:
        raise HTTPException(status_code=404, detail="Incident not found")
    return incident


@router.get("/{incident_id}/alerts")
async def incident_alerts(incident_id: str, store: IncidentStore = Depends(get_store)):
    try:
        incident = await store.get(incident_id)
        alert_ids = await store.linked_alert_ids(incident_id) if incident else []
    except Exception:
        logger.exception("Error fetching alerts for incident %s", incident_id)
        raise HTTPException(status_code=500, detail=_INTERNAL_ERROR)
    if incident is None:
        raise HTTPException(status_code=404, detail="Incident not found")
    return {"incident_id": incident_id, "alert_ids": alert_ids, "count": len(alert_ids)}


@router.patch("/{incident_id}", response_model=Incident)
async def update_incident(
    incident_id: str,
    body: IncidentStatusUpdate,
    lifecycle: IncidentLifecycle = Depends(get_lifecycle),
):
    try:
        return await lifecycle.update_status(incident_id, body.status)
    except InvalidStatus as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except IncidentNotFound:
        raise HTTPException(status_code=404, detail="Incident not found")
    except Exception:
        logger.exception("Error updating incident %s", incident_id)
        raise HTTPException(status_code=500, detail=_INTERNAL_ERROR)
