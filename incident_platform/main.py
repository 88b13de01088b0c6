"""Incident platform — FastAPI service entry point.

Runs the HTTP API and, in the same process, every pipeline worker:

    webhook → raw queue → alert-processor ─┬─▶ success → alert-consumer → incidents
                        ▲                  ├─▶ retry → alert-retry ─┘(back to raw)
                        │                  └─▶ error
    incidents queue → incident-assignment → notifications + escalation due-queue
    escalation due-queue → escalation-scheduler
    notifications queue → notification-dispatch
"""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager

from fastapi import FastAPI

from incident_platform.assignment.oncall import OnCallClient
from incident_platform.assignment.worker import AssignmentWorker
from incident_platform.config import settings
from incident_platform.correlation.consumer import AlertConsumer
from incident_platform.correlation.engine import CorrelationEngine
from incident_platform.escalation.scheduler import EscalationScheduler
from incident_platform.incidents.db import Database
from incident_platform.incidents.lifecycle import IncidentLifecycle
from incident_platform.incidents.router import router as incident_router
from incident_platform.incidents.store import IncidentStore
from incident_platform.ingestion.receiver import router as alert_router
from incident_platform.middleware import MetricsMiddleware
from incident_platform.notifications.worker import NotificationWorker
from incident_platform.queue.client import QueueClient
from incident_platform.queue.processor import AlertProcessor
from incident_platform.queue.worker import AlertProcessingWorker, RetryWorker
from incident_platform.routers import ops
from incident_platform.telemetry.logging import setup_logging

logger = setup_logging(level=settings.log_level, otlp_endpoint=settings.otlp_endpoint)

if settings.otlp_endpoint:
    from incident_platform.telemetry.tracing import setup_tracing

    setup_tracing(settings.otlp_endpoint)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Initializing incident platform...")

    async with AsyncExitStack() as stack:
        db = Database(settings.database_url)
        stack.push_async_callback(db.dispose)
        await db.create_all()

        queue = await stack.enter_async_context(QueueClient.from_url(settings.redis_url))
        await queue.ping()
        logger.info("Redis connected: %s", settings.redis_url)

        oncall = OnCallClient()
        stack.push_async_callback(oncall.close)
        store = IncidentStore(db)
        engine = CorrelationEngine(store, queue)
        processor = AlertProcessor()

        workers = [
            AlertProcessingWorker(queue, processor),
            RetryWorker(queue),
            AlertConsumer(queue, engine),
            AssignmentWorker(queue, store, oncall),
            NotificationWorker(queue),
            EscalationScheduler(queue, store, oncall),
        ]

        app.state.db = db
        app.state.queue = queue
        app.state.store = store
        app.state.processor = processor
        app.state.lifecycle = IncidentLifecycle(store, queue, oncall)
        app.state.workers = workers

        # the stack stops workers before closing what they use
        for worker in workers:
            await worker.start()
            stack.push_async_callback(worker.stop)

        logger.info("Incident platform ready — listening on %s:%d", settings.host, settings.port)
        yield
    logger.info("Incident platform shut down")


app = FastAPI(
    title="Incident Platform",
    description="Alert ingestion, incident correlation, assignment and escalation",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(MetricsMiddleware)

app.include_router(alert_router)
app.include_router(incident_router)
app.include_router(ops.router)

if settings.otlp_endpoint:
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

    FastAPIInstrumentor.instrument_app(app)


def run() -> None:
    import uvicorn

    uvicorn.run("incident_platform.main:app", host=settings.host, port=settings.port)
