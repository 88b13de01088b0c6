"""
Shared fixtures: in-memory Redis double, SQLite-backed incident store,
on-call stub and an HTTP client bound to the FastAPI app.
"""

import asyncio
from typing import Dict, List, Optional

import httpx
import pytest

from incident_platform.assignment.oncall import OnCallUnavailable, Rotation
from incident_platform.config import settings
from incident_platform.incidents.db import Database
from incident_platform.incidents.lifecycle import IncidentLifecycle
from incident_platform.incidents.store import IncidentStore
from incident_platform.queue.client import QueueClient
from incident_platform.queue.messages import Responder
from incident_platform.queue.processor import AlertProcessor


class MockRedis:
    """The subset of redis.asyncio.Redis used by QueueClient, kept in memory."""

    def __init__(self):
        self.lists: Dict[str, List[str]] = {}
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.closed = False

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        self.closed = True

    async def lpush(self, key: str, *values: str) -> int:
        lst = self.lists.setdefault(key, [])
        for value in values:
            lst.insert(0, value)
        return len(lst)

    async def brpop(self, keys, timeout: int = 0):
        for key in keys:
            lst = self.lists.get(key)
            if lst:
                return key, lst.pop()
        await asyncio.sleep(0)
        return None

    async def llen(self, key: str) -> int:
        return len(self.lists.get(key, []))

    async def lrange(self, key: str, start: int, end: int) -> List[str]:
        lst = self.lists.get(key, [])
        n = len(lst)
        s = start if start >= 0 else max(n + start, 0)
        e = end if end >= 0 else n + end
        return lst[s:e + 1]

    async def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> List[str]:
        zset = self.zsets.get(key, {})
        members = [(score, m) for m, score in zset.items() if min_score <= score <= max_score]
        return [m for _, m in sorted(members)]

    async def zrem(self, key: str, *members: str) -> int:
        zset = self.zsets.get(key, {})
        removed = 0
        for member in members:
            if member in zset:
                del zset[member]
                removed += 1
        return removed

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            removed += int(self.lists.pop(key, None) is not None)
            removed += int(self.zsets.pop(key, None) is not None)
        return removed

    async def zcard(self, key: str) -> int:
        return len(self.zsets.get(key, {}))

    def pipeline(self, transaction: bool = True) -> "MockPipeline":
        return MockPipeline(self)

    # test helpers

    def items(self, key: str) -> List[str]:
        """Queue contents, oldest first."""
        return list(reversed(self.lists.get(key, [])))


class MockPipeline:
    """Buffers commands and runs them back to back on execute(), like MULTI/EXEC."""

    def __init__(self, redis: MockRedis):
        self._redis = redis
        self._calls = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self._calls = []

    def __getattr__(self, name):
        def buffer(*args, **kwargs):
            self._calls.append((getattr(self._redis, name), args, kwargs))
            return self
        return buffer

    async def execute(self) -> list:
        calls, self._calls = self._calls, []
        return [await fn(*args, **kwargs) for fn, args, kwargs in calls]


class StubOnCall:
    """On-call collaborator returning a fixed rotation."""

    def __init__(self, primary: Optional[str] = "alice@example.com",
                 secondary: Optional[str] = "bob@example.com"):
        self.primary = primary
        self.secondary = secondary
        self.fail = False
        self.rotation_calls = 0

    async def get_rotation(self) -> Rotation:
        self.rotation_calls += 1
        if self.fail:
            raise OnCallUnavailable("on-call service unreachable")
        return Rotation(
            primary=Responder(email=self.primary, name=self.primary.split("@")[0], phone="+15550001")
            if self.primary else None,
            secondary=Responder(email=self.secondary, name=self.secondary.split("@")[0], phone="+15550002")
            if self.secondary else None,
        )

    async def get_engineer(self, email: str) -> Responder:
        return Responder(email=email, name=email.split("@")[0], phone="+15550000")

    async def close(self) -> None:
        pass


def firing_alert(**overrides) -> dict:
    alert = {
        "status": "firing",
        "labels": {
            "alertname": "HighMemoryUsage",
            "severity": "warning",
            "instance": "api-server-03",
            "job": "node",
        },
        "annotations": {
            "summary": "Memory usage above 85% for 5 minutes",
            "description": "Node memory is running out",
        },
        "startsAt": "2026-02-09T14:30:00Z",
        "generatorURL": "http://prometheus:9090/graph",
        "fingerprint": "abc123",
    }
    alert.update(overrides)
    return alert


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    monkeypatch.setattr(settings, "blocking_pop_timeout_seconds", 1)
    monkeypatch.setattr(settings, "retry_delay_ms", 0)
    monkeypatch.setattr(settings, "worker_error_delay_ms", 0)
    monkeypatch.setattr(settings, "notification_retry_delay_ms", 0)
    monkeypatch.setattr(settings, "public_base_url", "http://incidents.test")
    return settings


@pytest.fixture
def redis():
    return MockRedis()


@pytest.fixture
def queue(redis):
    return QueueClient(redis, redis)


@pytest.fixture
async def db():
    database = Database("sqlite+aiosqlite://")
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
def store(db):
    return IncidentStore(db)


@pytest.fixture
def oncall():
    return StubOnCall()


@pytest.fixture
def lifecycle(store, queue, oncall):
    return IncidentLifecycle(store, queue, oncall)


@pytest.fixture
async def client(db, store, queue, lifecycle):
    from incident_platform.main import app

    app.state.db = db
    app.state.queue = queue
    app.state.store = store
    app.state.lifecycle = lifecycle
    app.state.processor = AlertProcessor()
    app.state.workers = []

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
