import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from incident_platform.config import settings
from incident_platform.escalation.scheduler import EscalationScheduler
from incident_platform.incidents.models import IncidentStatus
from incident_platform.queue.messages import EscalationEntry


@pytest.fixture
def scheduler(queue, store, oncall):
    return EscalationScheduler(queue, store, oncall)


async def _pending(store, queue, secondary="bob@example.com", due_in=timedelta(minutes=-1)):
    incident = await store.create_incident(title="ServiceDown", severity="critical", source="api")
    await store.assign(incident.id, "alice@example.com")
    now = datetime.now(timezone.utc)
    entry = EscalationEntry(
        incident_id=incident.id,
        primary="alice@example.com",
        secondary=secondary,
        assigned_at=now - timedelta(minutes=6),
        due_at=now + due_in,
    )
    await queue.schedule(settings.escalation_key, entry, entry.due_at.timestamp())
    return incident


async def test_unacknowledged_incident_is_escalated_to_secondary(scheduler, store, queue, redis):
    incident = await _pending(store, queue)

    assert await scheduler.tick() == 1

    assert (await store.get(incident.id)).assigned_to == "bob@example.com"
    assert await queue.scheduled_count(settings.escalation_key) == 0

    note = json.loads(redis.items(settings.notification_queue)[0])
    assert note["type"] == "escalation"
    assert note["engineer"]["email"] == "bob@example.com"
    assert note["originalEngineer"]["email"] == "alice@example.com"
    assert note["incident"]["title"] == "[ESCALATED] ServiceDown"
    assert note["metadata"]["reason"] == "Primary engineer (alice) did not acknowledge within 5 minutes"
    assert note["metadata"]["ack_url"].endswith(f"/incidents/ack/{incident.ack_token}")


async def test_entries_not_yet_due_are_left_alone(scheduler, store, queue):
    incident = await _pending(store, queue, due_in=timedelta(minutes=4))

    assert await scheduler.tick() == 0
    assert await queue.scheduled_count(settings.escalation_key) == 1
    assert (await store.get(incident.id)).assigned_to == "alice@example.com"


@pytest.mark.parametrize("status", [IncidentStatus.ACKNOWLEDGED, IncidentStatus.RESOLVED, IncidentStatus.CLOSED])
async def test_handled_incidents_are_discarded_without_notification(scheduler, store, queue, redis, status):
    incident = await _pending(store, queue)
    await store.set_status(incident.id, status)

    assert await scheduler.tick() == 1
    assert redis.items(settings.notification_queue) == []
    assert (await store.get(incident.id)).assigned_to == "alice@example.com"


async def test_missing_incident_is_discarded(scheduler, queue, redis):
    now = datetime.now(timezone.utc)
    entry = EscalationEntry(incident_id="gone", primary="a@x", secondary="b@x", due_at=now)
    await queue.schedule(settings.escalation_key, entry, now.timestamp() - 1)

    assert await scheduler.tick() == 1
    assert redis.items(settings.notification_queue) == []


async def test_no_secondary_discards_entry(scheduler, store, queue, redis):
    incident = await _pending(store, queue, secondary=None)

    assert await scheduler.tick() == 1
    assert redis.items(settings.notification_queue) == []
    assert (await store.get(incident.id)).assigned_to == "alice@example.com"


async def test_unparseable_entry_is_dropped(scheduler, queue):
    await queue.schedule(settings.escalation_key, "garbage", 0)

    assert await scheduler.tick() == 1
    assert await queue.scheduled_count(settings.escalation_key) == 0


async def test_failed_escalation_is_retried_next_tick(scheduler, store, queue, oncall, monkeypatch):
    incident = await _pending(store, queue)
    real_get_engineer = oncall.get_engineer

    async def flaky(email):
        raise ConnectionError("on-call down")

    monkeypatch.setattr(oncall, "get_engineer", flaky)
    assert await scheduler.tick() == 0
    assert await queue.scheduled_count(settings.escalation_key) == 1

    monkeypatch.setattr(oncall, "get_engineer", real_get_engineer)
    assert await scheduler.tick() == 1
    assert (await store.get(incident.id)).assigned_to == "bob@example.com"


async def test_two_entries_for_one_incident_are_removed_independently(scheduler, store, queue):
    incident = await _pending(store, queue)
    now = datetime.now(timezone.utc)
    duplicate = EscalationEntry(
        incident_id=incident.id, primary="alice@example.com", secondary="bob@example.com",
        assigned_at=now, due_at=now + timedelta(minutes=5),
    )
    await queue.schedule(settings.escalation_key, duplicate, duplicate.due_at.timestamp())

    assert await scheduler.tick() == 1
    assert await queue.scheduled_count(settings.escalation_key) == 1


async def test_tick_accepts_an_explicit_clock(scheduler, store, queue):
    await _pending(store, queue, due_in=timedelta(minutes=4))
    later = datetime.now(timezone.utc) + timedelta(minutes=5)

    assert await scheduler.tick(now=later) == 1


async def test_start_and_stop(scheduler, monkeypatch):
    monkeypatch.setattr(settings, "escalation_check_interval_ms", 10)
    await scheduler.start()
    assert scheduler.running
    await scheduler.stop()
    assert not scheduler.running


async def test_stop_does_not_wait_out_the_check_interval(scheduler, store, queue, monkeypatch):
    monkeypatch.setattr(settings, "escalation_check_interval_ms", 60_000)
    incident = await _pending(store, queue)

    await scheduler.start()
    await asyncio.sleep(0.05)
    await asyncio.wait_for(scheduler.stop(), timeout=2)

    assert (await store.get(incident.id)).assigned_to == "bob@example.com"
