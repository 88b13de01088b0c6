import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from conftest import firing_alert
from incident_platform.config import settings
from incident_platform.correlation.consumer import AlertConsumer
from incident_platform.correlation.engine import AlertCandidate, CorrelationEngine, DecisionAction
from incident_platform.ingestion.normalizer import normalize
from incident_platform.queue.messages import SuccessAlertMsg


class ExplodingStore:
    """Any store access fails the test."""

    def __getattr__(self, name):
        async def _fail(*args, **kwargs):
            raise AssertionError(f"store.{name} must not be called")
        return _fail


def _candidate(**overrides) -> AlertCandidate:
    fields = dict(source="api-server-03", title="HighMemoryUsage", severity="warning",
                  description="memory", firing_duration=60.0)
    fields.update(overrides)
    return AlertCandidate(**fields)


@pytest.fixture
def engine(store, queue):
    return CorrelationEngine(store, queue)


async def test_critical_creates_without_touching_the_store(queue):
    engine = CorrelationEngine(ExplodingStore(), queue)
    decision = await engine.decide(_candidate(severity="critical"))

    assert decision.action is DecisionAction.CREATE
    assert decision.reason.startswith("Rule 1")


async def test_critical_alert_creates_incident_and_queues_assignment(engine, store, redis):
    candidate = _candidate(severity="critical", title="ServiceDown")
    decision = await engine.process(candidate)

    assert decision.action is DecisionAction.CREATE
    incident = decision.incident
    assert incident.title == "ServiceDown"
    assert incident.source == "api-server-03"
    assert await store.linked_alert_ids(incident.id) == [candidate.alert_id]

    queued = [json.loads(m) for m in redis.items(settings.incident_queue)]
    assert [m["incident_id"] for m in queued] == [incident.id]


async def test_storm_creates_on_the_threshold_alert(engine, store, monkeypatch):
    monkeypatch.setattr(settings, "alert_storm_threshold", 3)

    skipped = _candidate()
    first = await engine.process(skipped)
    second = await engine.process(_candidate())
    third = await engine.process(_candidate())

    assert first.action is DecisionAction.SKIP
    assert second.action is DecisionAction.SKIP
    assert third.action is DecisionAction.CREATE
    assert third.reason.startswith("Rule 2: alert storm — 3 similar alerts")

    # skipped alerts stay stored but unlinked
    assert await store.get_alert(skipped.alert_id) is not None
    assert await store.incident_for_alert(skipped.alert_id) is None
    assert await store.count_similar_alerts("api-server-03", "HighMemoryUsage", 10) == 3
    assert len(await store.list_incidents()) == 1


async def test_two_similar_alerts_are_below_threshold(engine, monkeypatch):
    monkeypatch.setattr(settings, "alert_storm_threshold", 3)
    await engine.process(_candidate())
    decision = await engine.process(_candidate())

    assert decision.action is DecisionAction.SKIP
    assert "similar=2" in decision.reason


async def test_storm_beats_an_open_incident_for_the_same_source(engine, store, monkeypatch):
    monkeypatch.setattr(settings, "alert_storm_threshold", 3)
    existing = await store.create_incident(title="Other", severity="high", source="api-server-03")

    actions = [(await engine.process(_candidate())).action for _ in range(3)]

    assert actions == [DecisionAction.ATTACH, DecisionAction.ATTACH, DecisionAction.CREATE]
    assert len(await store.linked_alert_ids(existing.id)) == 2


async def test_high_severity_without_open_incident_creates(engine):
    decision = await engine.process(_candidate(severity="high"))
    assert decision.action is DecisionAction.CREATE
    assert decision.reason == 'Rule 3: no open incident for "api-server-03" and severity is high'


async def test_long_firing_warning_without_open_incident_creates(engine):
    decision = await engine.process(_candidate(firing_duration=6 * 60))
    assert decision.action is DecisionAction.CREATE
    assert "firing for 6.0 min" in decision.reason


async def test_firing_exactly_at_threshold_does_not_create(engine):
    decision = await engine.process(_candidate(firing_duration=5 * 60))
    assert decision.action is DecisionAction.SKIP


async def test_open_incident_absorbs_related_alerts(engine, store):
    created = (await engine.process(_candidate(severity="high"))).incident
    follow_up = await engine.process(_candidate(severity="high", title="HighCPU"))

    assert follow_up.action is DecisionAction.ATTACH
    assert follow_up.incident.id == created.id
    assert follow_up.reason.startswith(f"Dedup: open incident {created.id}")
    assert len(await store.linked_alert_ids(created.id)) == 2
    assert follow_up.incident.updated_at >= created.updated_at


async def test_acknowledged_incident_no_longer_absorbs_alerts(engine, store):
    created = (await engine.process(_candidate(severity="high"))).incident
    await store.acknowledge(created.id, "t" * 64)

    decision = await engine.process(_candidate(severity="high", title="HighCPU"))
    assert decision.action is DecisionAction.CREATE
    assert decision.incident.id != created.id


async def test_replayed_alert_is_not_correlated_twice(engine, store, redis):
    candidate = _candidate(severity="critical")
    first = await engine.process(candidate)
    replay = await engine.process(candidate)

    assert replay.action is DecisionAction.SKIP
    assert replay.incident.id == first.incident.id
    assert len(await store.list_incidents()) == 1
    assert len(redis.items(settings.incident_queue)) == 1


async def test_concurrent_alerts_for_one_source_open_a_single_incident(engine, store):
    first, second = await asyncio.gather(
        engine.process(_candidate(severity="high")),
        engine.process(_candidate(severity="high")),
    )

    assert sorted(d.action.value for d in (first, second)) == ["attach", "create"]
    assert first.incident.id == second.incident.id
    assert len(await store.list_incidents()) == 1


async def test_source_locks_are_released_after_processing(engine):
    await asyncio.gather(
        engine.process(_candidate(source="api", severity="high")),
        engine.process(_candidate(source="api", severity="high")),
    )
    await engine.process(_candidate(source="db"))

    assert engine._source_locks == {}
    assert engine._lock_users == {}


def test_candidate_from_normalized_alert():
    alert = normalize(firing_alert(labels={"alertname": "ServiceDown", "severity": "critical",
                                           "instance": "db-01"}))
    now = datetime(2026, 2, 9, 14, 37, tzinfo=timezone.utc)
    candidate = AlertCandidate.from_normalized(alert, now=now)

    assert candidate.alert_id == alert.id
    assert candidate.source == "db-01"
    assert candidate.title == "ServiceDown"
    assert candidate.severity == "critical"
    assert candidate.fingerprint == "abc123"
    assert candidate.firing_duration == timedelta(minutes=7).total_seconds()


async def test_consumer_feeds_success_queue_into_engine(engine, store, queue):
    alert = normalize(firing_alert(labels={"alertname": "ServiceDown", "severity": "critical"}))
    await queue.push(settings.success_queue, SuccessAlertMsg(alert=alert))

    consumer = AlertConsumer(queue, engine)
    assert await consumer.run_once() is True
    assert await consumer.run_once() is False

    assert await store.incident_for_alert(alert.id) is not None
