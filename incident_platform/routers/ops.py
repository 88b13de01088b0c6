"""Operational endpoints: health, Prometheus scrape, queue depths and dead-letter triage."""

import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from incident_platform.config import settings
from incident_platform.dependencies import get_queue
from incident_platform.queue.client import QueueClient
from incident_platform.telemetry.metrics import get_metrics

logger = logging.getLogger("incident_platform.ops")
router = APIRouter(tags=["ops"])

_start_time = datetime.now(timezone.utc)

_QUEUES = {
    "raw": "raw_queue",
    "retry": "retry_queue",
    "error": "error_queue",
    "success": "success_queue",
    "incidents": "incident_queue",
    "incidents_dead_letter": "incident_dead_letter_queue",
    "notifications": "notification_queue",
    "notifications_dead_letter": "notification_dead_letter_queue",
}

_DEAD_LETTER = {
    "errors": "error_queue",
    "incidents": "incident_dead_letter_queue",
    "notifications": "notification_dead_letter_queue",
}


@router.get("/health")
async def health(request: Request):
    """503 when Redis or the database is unreachable; worker state is informational."""
    state = request.app.state
    try:
        redis_ok = await state.queue.ping()
    except Exception:
        redis_ok = False
    db_ok = await state.db.health_check()

    healthy = redis_ok and db_ok
    now = datetime.now(timezone.utc)
    return JSONResponse(
        {
            "status": "healthy" if healthy else "degraded",
            "redis": redis_ok,
            "database": db_ok,
            "workers": {w.name: w.running for w in getattr(state, "workers", [])},
            "uptime_seconds": round((now - _start_time).total_seconds(), 2),
            "timestamp": now.isoformat(),
        },
        status_code=200 if healthy else 503,
    )


@router.get("/metrics", include_in_schema=False)
async def metrics():
    body, content_type = get_metrics()
    return Response(content=body, media_type=content_type)


@router.get("/queues/stats")
async def queue_stats(request: Request, queue: QueueClient = Depends(get_queue)):
    depths = {label: await queue.length(getattr(settings, field)) for label, field in _QUEUES.items()}
    processor = getattr(request.app.state, "processor", None)
    return {
        "queues": depths,
        "pending_escalations": await queue.scheduled_count(settings.escalation_key),
        "processing": processor.stats.model_dump() if processor else {},
        "max_retries": settings.max_retries,
    }


def _dead_letter_queue(name: str) -> str:
    field = _DEAD_LETTER.get(name)
    if field is None:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown dead-letter queue '{name}'; expected one of {', '.join(_DEAD_LETTER)}",
        )
    return getattr(settings, field)


def _decode(payload: str):
    try:
        return json.loads(payload)
    except ValueError:
        return payload


@router.get("/queues/dead-letter/{name}")
async def dead_letter_peek(
    name: str,
    limit: int = Query(default=10, ge=1, le=500),
    queue: QueueClient = Depends(get_queue),
):
    """Oldest entries first; nothing is removed."""
    key = _dead_letter_queue(name)
    return {
        "queue": key,
        "count": await queue.length(key),
        "messages": [_decode(m) for m in await queue.peek(key, count=limit)],
    }


@router.delete("/queues/dead-letter/{name}")
async def dead_letter_clear(name: str, queue: QueueClient = Depends(get_queue)):
    key = _dead_letter_queue(name)
    removed = await queue.clear(key)
    logger.warning("Cleared %d entries from %s", removed, key)
    return {"queue": key, "removed": removed}
