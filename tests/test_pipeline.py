"""End-to-end: webhook → processing → correlation → assignment → escalation → notification."""

import json
from datetime import datetime, timedelta, timezone

from conftest import firing_alert
from incident_platform.assignment.worker import AssignmentWorker
from incident_platform.config import settings
from incident_platform.correlation.consumer import AlertConsumer
from incident_platform.correlation.engine import CorrelationEngine
from incident_platform.escalation.scheduler import EscalationScheduler
from incident_platform.incidents.models import IncidentStatus
from incident_platform.notifications.worker import NotificationWorker
from incident_platform.queue.messages import EscalationEntry
from incident_platform.queue.worker import AlertProcessingWorker


def _service_down():
    return firing_alert(
        labels={"alertname": "ServiceDown", "severity": "critical", "instance": "payments-01"},
        annotations={"summary": "payments-01 is not answering health checks"},
        startsAt=datetime.now(timezone.utc).isoformat(),
    )


async def test_critical_alert_becomes_assigned_incident(client, queue, redis, store, oncall):
    processing = AlertProcessingWorker(queue)
    consumer = AlertConsumer(queue, CorrelationEngine(store, queue))
    assignment = AssignmentWorker(queue, store, oncall)

    resp = await client.post("/alerts/webhook", json={"alerts": [_service_down()]})
    assert resp.json()["summary"]["queued"] == 1

    assert await processing.run_once()
    assert await consumer.run_once()
    started = datetime.now(timezone.utc)
    assert await assignment.run_once()

    incidents = await store.list_incidents()
    assert len(incidents) == 1
    incident = incidents[0]
    assert incident.title == "ServiceDown"
    assert incident.source == "payments-01"
    assert incident.severity == "critical"
    assert incident.status is IncidentStatus.OPEN
    assert incident.assigned_to == "alice@example.com"
    assert len(await store.linked_alert_ids(incident.id)) == 1

    pending = redis.zsets[settings.escalation_key]
    assert len(pending) == 1
    raw, due = next(iter(pending.items()))
    assert EscalationEntry.model_validate_json(raw).incident_id == incident.id
    expected = started + timedelta(minutes=settings.escalation_timeout_minutes)
    assert abs(due - expected.timestamp()) < 5

    notes = [json.loads(n) for n in redis.items(settings.notification_queue)]
    assert [n["type"] for n in notes] == ["incident_assignment"]
    assert notes[0]["engineer"]["email"] == "alice@example.com"

    for queue_name in (settings.raw_queue, settings.success_queue, settings.incident_queue):
        assert redis.items(queue_name) == []


async def test_unacknowledged_incident_escalates_to_secondary(client, queue, redis, store, oncall):
    processing = AlertProcessingWorker(queue)
    consumer = AlertConsumer(queue, CorrelationEngine(store, queue))
    assignment = AssignmentWorker(queue, store, oncall)
    notifier = NotificationWorker(queue)
    scheduler = EscalationScheduler(queue, store, oncall)

    await client.post("/alerts/webhook", json={"alerts": [_service_down()]})
    await processing.run_once()
    await consumer.run_once()
    await assignment.run_once()

    later = datetime.now(timezone.utc) + timedelta(minutes=settings.escalation_timeout_minutes, seconds=1)
    assert await scheduler.tick(now=later) == 1

    (incident,) = await store.list_incidents()
    assert incident.assigned_to == "bob@example.com"

    while await notifier.run_once():
        pass
    assert notifier.processed_count == 2
    assert redis.items(settings.notification_dead_letter_queue) == []

    ack = await client.get(f"/incidents/ack/{incident.ack_token}")
    assert ack.json()["status"] == "acknowledged"
    assert await scheduler.tick(now=later + timedelta(minutes=10)) == 0


async def test_acknowledged_in_time_is_not_escalated(client, queue, redis, store, oncall):
    processing = AlertProcessingWorker(queue)
    consumer = AlertConsumer(queue, CorrelationEngine(store, queue))
    assignment = AssignmentWorker(queue, store, oncall)
    scheduler = EscalationScheduler(queue, store, oncall)

    await client.post("/alerts/webhook", json={"alerts": [_service_down()]})
    await processing.run_once()
    await consumer.run_once()
    await assignment.run_once()

    (incident,) = await store.list_incidents()
    await client.get(f"/incidents/ack/{incident.ack_token}")

    later = datetime.now(timezone.utc) + timedelta(minutes=settings.escalation_timeout_minutes, seconds=1)
    assert await scheduler.tick(now=later) == 1
    assert (await store.get(incident.id)).assigned_to == "alice@example.com"
    assert await queue.scheduled_count(settings.escalation_key) == 0
