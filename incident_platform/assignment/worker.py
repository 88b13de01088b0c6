"""Incident assignment worker — page the primary and arm the escalation timer."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from incident_platform.assignment.oncall import OnCallClient, OnCallUnavailable
from incident_platform.config import settings
from incident_platform.incidents.links import ack_link
from incident_platform.incidents.models import Incident
from incident_platform.incidents.store import IncidentStore
from incident_platform.queue.client import QueueClient
from incident_platform.queue.messages import EscalationEntry, IncidentAssignmentMsg, NotificationRequest
from incident_platform.queue.worker import QueueWorker
from incident_platform.telemetry.metrics import incidents_assigned

logger = logging.getLogger("incident_platform.assignment")


async def enqueue_assignment(queue: QueueClient, incident: Incident) -> None:
    """Hand a freshly created incident to the assignment worker."""
    await queue.push(
        settings.incident_queue,
        IncidentAssignmentMsg(
            incident_id=incident.id,
            title=incident.title,
            severity=incident.severity,
            source=incident.source,
            created_at=incident.created_at,
        ),
    )
    logger.info("Incident %s pushed to '%s'", incident.id, settings.incident_queue)


class AssignmentWorker(QueueWorker[IncidentAssignmentMsg]):
    name = "incident-assignment"
    message_model = IncidentAssignmentMsg

    def __init__(self, queue: QueueClient, store: IncidentStore, oncall: OnCallClient) -> None:
        super().__init__(queue, settings.incident_queue, dead_letter=settings.incident_dead_letter_queue)
        self._store = store
        self._oncall = oncall

    async def handle(self, message: IncidentAssignmentMsg) -> None:
        try:
            await self.assign(message)
        except Exception as exc:
            logger.exception("Assignment failed for incident %s", message.incident_id)
            message.retries += 1
            if message.retries < settings.incident_max_retries:
                logger.info(
                    "Re-queuing incident %s (retry %d/%d)",
                    message.incident_id, message.retries, settings.incident_max_retries,
                )
                await self._queue.push(settings.incident_queue, message)
            else:
                logger.error("Max retries for incident %s — moving to dead-letter queue", message.incident_id)
                await self.dead_letter(message.dumps(), str(exc) or type(exc).__name__)

    async def assign(self, message: IncidentAssignmentMsg) -> EscalationEntry:
        rotation = await self._oncall.get_rotation()
        if rotation.primary is None:
            raise OnCallUnavailable(f"No on-call engineer found for incident {message.incident_id}")

        primary = rotation.primary
        incident = await self._store.assign(message.incident_id, primary.email)
        incidents_assigned.inc()
        logger.info("Incident %s assigned to %s", incident.id, primary.email)

        link = ack_link(incident.ack_token)
        await self._queue.push(
            settings.notification_queue,
            NotificationRequest(
                type="incident_assignment",
                incident={**incident.snapshot(), "ack_url": link},
                engineer=primary,
                channels=["email", "sms"],
                metadata={
                    "assignment_type": "primary",
                    "ack_url": link,
                    "secondary": rotation.secondary.email if rotation.secondary else None,
                },
            ),
        )

        now = datetime.now(timezone.utc)
        escalation_at = now + timedelta(minutes=settings.escalation_timeout_minutes)
        entry = EscalationEntry(
            incident_id=incident.id,
            primary=primary.email,
            secondary=rotation.secondary.email if rotation.secondary else None,
            assigned_at=now,
            due_at=escalation_at,
        )
        await self._queue.schedule(settings.escalation_key, entry, escalation_at.timestamp())
        logger.info("Escalation for incident %s scheduled at %s", incident.id, escalation_at.isoformat())
        return entry
