"""Redis-backed durable work queues and the escalation due-queue."""

from __future__ import annotations

import logging
from typing import TypeVar

import redis.asyncio as aioredis
from pydantic import BaseModel, ValidationError

logger = logging.getLogger("incident_platform.queue")

M = TypeVar("M", bound=BaseModel)


class MalformedMessage(Exception):
    """A popped payload that does not parse into the expected message type.

    The payload has already left its queue; ``raw`` keeps it for dead-lettering.
    """

    def __init__(self, queue: str, raw: str, error: str) -> None:
        super().__init__(f"Malformed message on {queue}: {error}")
        self.queue = queue
        self.raw = raw
        self.error = error


class QueueClient:
    """Lists used as FIFO queues (LPUSH + BRPOP) plus sorted-set due-queues.

    BRPOP holds its connection for the whole wait, so blocking pops go through
    a second client that is never used for pushes.
    """

    def __init__(self, commands: aioredis.Redis, blocking: aioredis.Redis) -> None:
        self._redis = commands
        self._blocking = blocking

    @classmethod
    def from_url(cls, url: str, max_connections: int = 10) -> QueueClient:
        commands = aioredis.from_url(url, decode_responses=True, max_connections=max_connections)
        blocking = aioredis.from_url(url, decode_responses=True, max_connections=max_connections)
        return cls(commands, blocking)

    async def __aenter__(self) -> QueueClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self._redis.aclose()
        if self._blocking is not self._redis:
            await self._blocking.aclose()

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    # ── FIFO queues ──────────────────────────────────────────────

    async def push(self, queue: str, message: BaseModel | str) -> int:
        """Append a message; returns the queue length after the push."""
        payload = message if isinstance(message, str) else message.model_dump_json(by_alias=True)
        return await self._redis.lpush(queue, payload)

    async def blocking_pop_raw(self, queue: str, timeout: int) -> str | None:
        """Wait up to ``timeout`` seconds for the oldest payload; None on timeout."""
        result = await self._blocking.brpop([queue], timeout=timeout)
        if not result:
            return None
        _key, raw = result
        return raw

    async def blocking_pop(self, queue: str, model: type[M], timeout: int) -> M | None:
        raw = await self.blocking_pop_raw(queue, timeout)
        if raw is None:
            return None
        try:
            return model.model_validate_json(raw)
        except ValidationError as exc:
            raise MalformedMessage(queue, raw, str(exc)) from exc

    async def length(self, queue: str) -> int:
        return await self._redis.llen(queue)

    async def peek(self, queue: str, count: int = 10) -> list[str]:
        """Oldest ``count`` payloads, oldest first, without removing them."""
        items = await self._redis.lrange(queue, -count, -1)
        return list(reversed(items))

    async def clear(self, queue: str) -> int:
        """Drop every payload on ``queue``; returns how many were removed."""
        async with self._redis.pipeline(transaction=True) as pipe:
            removed, _ = await pipe.llen(queue).delete(queue).execute()
        return removed

    # ── Due-queue (sorted set scored by epoch seconds) ────────────

    async def schedule(self, key: str, member: BaseModel | str, due_ts: float) -> None:
        payload = member if isinstance(member, str) else member.model_dump_json(by_alias=True)
        await self._redis.zadd(key, {payload: due_ts})

    async def due(self, key: str, now_ts: float) -> list[str]:
        return await self._redis.zrangebyscore(key, 0, now_ts)

    async def unschedule(self, key: str, member: str) -> int:
        return await self._redis.zrem(key, member)

    async def scheduled_count(self, key: str) -> int:
        return await self._redis.zcard(key)
