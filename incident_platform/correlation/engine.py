"""Correlation & decision engine — create, attach or skip for each incoming alert.

Rules, in precedence order:

1. severity is critical                                   → create (no store access)
2. alert storm: >= threshold alerts with the same
   (source, title) inside the storm window                → create
3. no open incident for the source inside the dedup window
   AND (severity is high OR firing longer than threshold) → create
4. an open incident exists for the source                 → attach
5. otherwise                                              → skip (alert kept for storm counting)

The storm rule runs before the dedup rules so an unrelated open incident for
the same source never hides a storm.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field

from incident_platform.assignment.worker import enqueue_assignment
from incident_platform.config import settings
from incident_platform.incidents.models import Incident
from incident_platform.incidents.store import IncidentStore
from incident_platform.ingestion.models import NormalizedAlert
from incident_platform.queue.client import QueueClient
from incident_platform.telemetry.metrics import incident_decisions
from incident_platform.telemetry.tracing import pipeline_span

logger = logging.getLogger("incident_platform.correlation")


class DecisionAction(str, Enum):
    CREATE = "create"
    ATTACH = "attach"
    SKIP = "skip"


class AlertCandidate(BaseModel):
    """An alert as the decision rules see it."""

    alert_id: str = Field(default_factory=lambda: str(uuid4()))
    source: str = "unknown"
    title: str = ""
    severity: str = ""
    description: str = ""
    labels: dict[str, str] = {}
    fingerprint: str | None = None
    firing_duration: float = 0.0  # seconds

    @classmethod
    def from_normalized(cls, alert: NormalizedAlert, now: datetime | None = None) -> AlertCandidate:
        now = now or datetime.now(timezone.utc)
        started = alert.timestamp if alert.timestamp.tzinfo else alert.timestamp.replace(tzinfo=timezone.utc)
        return cls(
            alert_id=alert.id,
            source=alert.service,
            title=alert.alertname,
            severity=alert.severity.value,
            description=alert.message,
            labels=alert.labels,
            fingerprint=alert.raw.get("fingerprint"),
            firing_duration=max((now - started).total_seconds(), 0.0),
        )


class Decision(BaseModel):
    action: DecisionAction
    reason: str
    existing_incident: Incident | None = None
    incident: Incident | None = None


class CorrelationEngine:
    def __init__(self, store: IncidentStore, queue: QueueClient) -> None:
        self._store = store
        self._queue = queue
        # serializes decide→write for one source within this process only
        self._source_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    async def decide(self, candidate: AlertCandidate) -> Decision:
        severity = candidate.severity.lower()
        source = candidate.source or "unknown"
        firing_min = candidate.firing_duration / 60

        if severity == "critical":
            return Decision(
                action=DecisionAction.CREATE,
                reason="Rule 1: severity is critical — always create incident",
            )

        similar = await self._store.count_similar_alerts(
            source, candidate.title, settings.alert_storm_window_minutes,
        )
        if similar >= settings.alert_storm_threshold:
            return Decision(
                action=DecisionAction.CREATE,
                reason=(
                    f"Rule 2: alert storm — {similar} similar alerts in last "
                    f"{settings.alert_storm_window_minutes} min"
                ),
            )

        existing = await self._store.find_open_incident(source, settings.dedup_window_minutes)

        if existing is None and (severity == "high" or firing_min > settings.firing_duration_threshold_minutes):
            why = "severity is high" if severity == "high" else f"firing for {firing_min:.1f} min"
            return Decision(
                action=DecisionAction.CREATE,
                reason=f'Rule 3: no open incident for "{source}" and {why}',
            )

        if existing is not None:
            return Decision(
                action=DecisionAction.ATTACH,
                reason=f'Dedup: open incident {existing.id} exists for "{source}" — attaching alert',
                existing_incident=existing,
            )

        return Decision(
            action=DecisionAction.SKIP,
            reason=(
                f"No rules matched (severity={severity}, similar={similar}, "
                f"firing={firing_min:.1f}min) — logging only"
            ),
        )

    @asynccontextmanager
    async def _source_lock(self, source: str):
        """Hold the lock for ``source``; it is dropped once no task holds or awaits it."""
        lock = self._source_locks.get(source)
        if lock is None:
            lock = self._source_locks[source] = asyncio.Lock()
        self._lock_users[source] = self._lock_users.get(source, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[source] -= 1
            if not self._lock_users[source]:
                del self._lock_users[source]
                del self._source_locks[source]

    async def process(self, candidate: AlertCandidate) -> Decision:
        """Persist the alert, decide, and apply the decision."""
        async with self._source_lock(candidate.source or "unknown"):
            await self._store.insert_alert(
                alert_id=candidate.alert_id,
                source=candidate.source or "unknown",
                severity=candidate.severity or "unknown",
                title=candidate.title,
                description=candidate.description,
                labels=candidate.labels,
                fingerprint=candidate.fingerprint,
            )

            linked = await self._store.incident_for_alert(candidate.alert_id)
            if linked is not None:
                logger.info("Alert %s already linked to incident %s — replay ignored", candidate.alert_id, linked)
                return Decision(
                    action=DecisionAction.SKIP,
                    reason=f"Alert already linked to incident {linked}",
                    incident=await self._store.get(linked),
                )

            with pipeline_span("correlation.decide", source=candidate.source, severity=candidate.severity) as span:
                decision = await self.decide(candidate)
                span.set_attribute("incident_platform.action", decision.action.value)
            incident_decisions.labels(action=decision.action.value).inc()

            if decision.action is DecisionAction.CREATE:
                decision.incident = await self._create(candidate, decision.reason)
            elif decision.action is DecisionAction.ATTACH:
                decision.incident = await self._attach(candidate, decision.existing_incident, decision.reason)
            else:
                logger.info(
                    "SKIPPED alert %s — %s (severity=%s source=%s title=%r)",
                    candidate.alert_id, decision.reason, candidate.severity, candidate.source, candidate.title,
                )
            return decision

    async def _create(self, candidate: AlertCandidate, reason: str) -> Incident:
        incident = await self._store.create_incident(
            title=candidate.title,
            severity=candidate.severity,
            source=candidate.source or "unknown",
            description=candidate.description,
            alert_id=candidate.alert_id,
        )
        logger.info("INCIDENT CREATED %s for alert %s — %s", incident.id, candidate.alert_id, reason)
        await enqueue_assignment(self._queue, incident)
        return incident

    async def _attach(self, candidate: AlertCandidate, existing: Incident, reason: str) -> Incident:
        await self._store.link_alert(candidate.alert_id, existing.id)
        await self._store.touch(existing.id)
        total = len(await self._store.linked_alert_ids(existing.id))
        logger.info(
            "ATTACHED alert %s to incident %s (total alerts: %d) — %s",
            candidate.alert_id, existing.id, total, reason,
        )
        return await self._store.get(existing.id) or existing
