"""Incident lifecycle — token-gated transitions and administrative status changes.

    open ──(ack_token)──▶ acknowledged ──(resolve_token)──▶ resolved
      └──────────── any state ──(admin update)──▶ closed / any state

The ack token stays valid after acknowledgment; revisiting it answers with an
informational response because the incident is no longer open.
"""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import BaseModel

from incident_platform.assignment.oncall import OnCallClient
from incident_platform.assignment.worker import enqueue_assignment
from incident_platform.config import settings
from incident_platform.incidents.links import resolve_link
from incident_platform.incidents.models import Incident, IncidentStatus
from incident_platform.incidents.store import IncidentStore, mint_token
from incident_platform.queue.client import QueueClient
from incident_platform.queue.messages import NotificationRequest

logger = logging.getLogger("incident_platform.incidents.lifecycle")


class InvalidStatus(ValueError):
    def __init__(self, status: object) -> None:
        valid = ", ".join(s.value for s in IncidentStatus)
        super().__init__(f"status must be one of: {valid}")
        self.status = status


class TransitionOutcome(str, Enum):
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    ALREADY = "already"
    MUST_ACKNOWLEDGE = "must_acknowledge"
    INVALID = "invalid"


class TransitionResult(BaseModel):
    outcome: TransitionOutcome
    message: str
    status: IncidentStatus | None = None
    incident: Incident | None = None


def _invalid_link() -> TransitionResult:
    return TransitionResult(outcome=TransitionOutcome.INVALID, message="Invalid or expired link")


def _already(incident: Incident) -> TransitionResult:
    return TransitionResult(
        outcome=TransitionOutcome.ALREADY,
        message=f"Incident already {incident.status.value}",
        status=incident.status,
        incident=incident,
    )


class IncidentLifecycle:
    def __init__(self, store: IncidentStore, queue: QueueClient, oncall: OnCallClient) -> None:
        self._store = store
        self._queue = queue
        self._oncall = oncall

    async def create(
        self,
        title: str,
        severity: str,
        source: str,
        description: str = "",
        alert_id: str | None = None,
    ) -> Incident:
        """Direct creation (bypasses the decision rules) followed by assignment."""
        incident = await self._store.create_incident(
            title=title, severity=severity, source=source, description=description, alert_id=alert_id,
        )
        await enqueue_assignment(self._queue, incident)
        return incident

    async def acknowledge(self, token: str) -> TransitionResult:
        incident = await self._store.get_by_ack_token(token)
        if incident is None:
            return _invalid_link()

        if incident.status is IncidentStatus.OPEN:
            if await self._store.acknowledge(incident.id, mint_token()):
                updated = await self._store.get(incident.id)
                logger.info("Incident %s ACKNOWLEDGED via magic link", incident.id)
                await self._notify("acknowledged", updated)
                return TransitionResult(
                    outcome=TransitionOutcome.ACKNOWLEDGED,
                    message="Incident acknowledged",
                    status=updated.status,
                    incident=updated,
                )
            # lost the race to a concurrent transition
            incident = await self._store.get(incident.id)

        return _already(incident)

    async def resolve(self, token: str) -> TransitionResult:
        incident = await self._store.get_by_resolve_token(token)
        if incident is None:
            return _invalid_link()

        if incident.status is IncidentStatus.ACKNOWLEDGED:
            if await self._store.resolve(incident.id):
                updated = await self._store.get(incident.id)
                logger.info("Incident %s RESOLVED via magic link", incident.id)
                await self._notify("resolved", updated)
                return TransitionResult(
                    outcome=TransitionOutcome.RESOLVED,
                    message="Incident resolved",
                    status=updated.status,
                    incident=updated,
                )
            incident = await self._store.get(incident.id)

        if incident.status is IncidentStatus.OPEN:
            return TransitionResult(
                outcome=TransitionOutcome.MUST_ACKNOWLEDGE,
                message="Incident must be acknowledged before it can be resolved",
                status=incident.status,
                incident=incident,
            )

        return _already(incident)

    async def update_status(self, incident_id: str, status: object) -> Incident:
        """Administrative status change; no ordering is enforced on this path."""
        try:
            target = IncidentStatus(status)
        except ValueError:
            raise InvalidStatus(status) from None
        incident = await self._store.set_status(incident_id, target)
        logger.info("Incident %s updated to %s", incident_id, target.value)
        return incident

    async def _notify(self, kind: str, incident: Incident) -> None:
        if not incident.assigned_to:
            logger.info("Incident %s has no assignee — no %s notification", incident.id, kind)
            return

        snapshot = incident.snapshot()
        metadata: dict = {}
        if kind == "acknowledged" and incident.resolve_token:
            metadata["resolve_url"] = resolve_link(incident.resolve_token)
            snapshot["resolve_url"] = metadata["resolve_url"]

        try:
            engineer = await self._oncall.get_engineer(incident.assigned_to)
            await self._queue.push(
                settings.notification_queue,
                NotificationRequest(
                    type=kind,
                    incident=snapshot,
                    engineer=engineer,
                    channels=["email", "sms"],
                    metadata=metadata,
                ),
            )
        except Exception:
            # the transition is already committed; the notification is best effort
            logger.exception("Failed to queue %s notification for incident %s", kind, incident.id)
