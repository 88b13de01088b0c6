"""Escalation scheduler — reassign incidents nobody acknowledged in time."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from pydantic import ValidationError

from incident_platform.assignment.oncall import OnCallClient
from incident_platform.config import settings
from incident_platform.incidents.links import ack_link
from incident_platform.incidents.models import IncidentStatus
from incident_platform.incidents.store import IncidentStore
from incident_platform.queue.client import QueueClient
from incident_platform.queue.messages import EscalationEntry, NotificationRequest
from incident_platform.telemetry.metrics import escalations_total
from incident_platform.telemetry.tracing import pipeline_span

logger = logging.getLogger("incident_platform.escalation")


class EscalationScheduler:
    """Polls the due-queue every ``escalation_check_interval_ms``.

    An entry leaves the due-queue only after it was handled; one that raised is
    retried on the next tick.
    """

    name = "escalation-scheduler"

    def __init__(self, queue: QueueClient, store: IncidentStore, oncall: OnCallClient) -> None:
        self._queue = queue
        self._store = store
        self._oncall = oncall
        self._running = False
        self._wake = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        self._wake.clear()
        self._task = asyncio.create_task(self._poll_loop(), name="escalation-scheduler")
        logger.info(
            "Escalation scheduler started — checking every %ds for unacknowledged incidents",
            settings.escalation_check_interval_ms // 1000,
        )

    async def stop(self) -> None:
        """Cut the interval short; a tick already running completes first."""
        self._running = False
        self._wake.set()
        if self._task:
            await self._task
            self._task = None
        logger.info("Escalation scheduler stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Escalation tick failed")
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=settings.escalation_check_interval_ms / 1000)
            except asyncio.TimeoutError:
                pass

    async def tick(self, now: datetime | None = None) -> int:
        """Handle every entry due at ``now``; returns how many were removed."""
        now = now or datetime.now(timezone.utc)
        due = await self._queue.due(settings.escalation_key, now.timestamp())
        removed = 0

        for raw in due:
            try:
                entry = EscalationEntry.model_validate_json(raw)
            except ValidationError:
                logger.error("Discarding unparseable escalation entry: %s", raw[:200])
                removed += await self._queue.unschedule(settings.escalation_key, raw)
                continue

            try:
                with pipeline_span("escalation.process", incident_id=entry.incident_id):
                    await self.process(entry)
            except Exception:
                logger.exception("Failed to escalate incident %s — will retry", entry.incident_id)
                escalations_total.labels(outcome="failed").inc()
                continue

            removed += await self._queue.unschedule(settings.escalation_key, raw)

        if due:
            logger.info("Processed %d escalation(s)", removed)
        return removed

    async def process(self, entry: EscalationEntry) -> bool:
        """Escalate if the incident is still open; returns True when reassigned."""
        incident = await self._store.get(entry.incident_id)
        if incident is None:
            logger.info("Incident %s not found, skipping escalation", entry.incident_id)
            escalations_total.labels(outcome="discarded").inc()
            return False

        if incident.status is not IncidentStatus.OPEN:
            logger.info("Incident %s already %s, no escalation needed", incident.id, incident.status.value)
            escalations_total.labels(outcome="discarded").inc()
            return False

        if not entry.secondary:
            logger.warning("No secondary engineer for incident %s, cannot escalate", incident.id)
            escalations_total.labels(outcome="no_secondary").inc()
            return False

        secondary = await self._oncall.get_engineer(entry.secondary)
        primary = await self._oncall.get_engineer(entry.primary) if entry.primary else None
        primary_name = primary.name if primary else "unassigned"
        reason = (
            f"Primary engineer ({primary_name}) did not acknowledge within "
            f"{settings.escalation_timeout_minutes} minutes"
        )

        updated = await self._store.assign(incident.id, secondary.email)
        logger.info("ESCALATED: incident %s reassigned from %s to %s", incident.id, entry.primary, secondary.email)

        snapshot = updated.snapshot()
        snapshot["title"] = f"[ESCALATED] {incident.title}"
        snapshot["description"] = f"ESCALATED: {reason}.\n\n{incident.description or ''}"
        await self._queue.push(
            settings.notification_queue,
            NotificationRequest(
                type="escalation",
                incident=snapshot,
                engineer=secondary,
                original_engineer=primary,
                channels=["email", "sms"],
                metadata={
                    "assignment_type": "escalation",
                    "reason": reason,
                    "ack_url": ack_link(incident.ack_token),
                    "escalated_at": datetime.now(timezone.utc).isoformat(),
                },
            ),
        )
        escalations_total.labels(outcome="escalated").inc()
        logger.info("Escalation notification queued for %s", secondary.email)
        return True
