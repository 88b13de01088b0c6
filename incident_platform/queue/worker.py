"""Queue workers — long-running BRPOP loops with cooperative shutdown."""

from __future__ import annotations

import asyncio
import logging
from typing import Generic, TypeVar

from pydantic import BaseModel

from incident_platform.config import settings
from incident_platform.queue.client import MalformedMessage, QueueClient
from incident_platform.queue.messages import DeadLetterEntry, ErrorAlertMsg, RawAlertMsg, RetryAlertMsg
from incident_platform.queue.processor import AlertProcessor, Route
from incident_platform.telemetry.metrics import alerts_routed, dead_letters_total
from incident_platform.telemetry.tracing import pipeline_span

logger = logging.getLogger("incident_platform.queue.worker")

M = TypeVar("M", bound=BaseModel)


class QueueWorker(Generic[M]):
    """Pops one message at a time from ``source`` and hands it to ``handle``.

    The loop re-checks ``_running`` after every blocking-pop timeout, which is
    the only way it stops short of cancellation.
    """

    name = "worker"
    message_model: type[M]

    def __init__(self, queue: QueueClient, source: str, dead_letter: str | None = None) -> None:
        self._queue = queue
        self._source = source
        self._dead_letter = dead_letter
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name=self.name)
        logger.info("%s started, listening on '%s'", self.name, self._source)

    async def stop(self) -> None:
        """Let the loop finish the message in hand; it exits at the next pop timeout."""
        self._running = False
        if self._task:
            await self._task
            self._task = None
        logger.info("%s stopped", self.name)

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("%s poll error — retrying in %dms", self.name, settings.worker_error_delay_ms)
                await asyncio.sleep(settings.worker_error_delay_ms / 1000)

    async def run_once(self) -> bool:
        """Pop and handle a single message. Returns False when the pop timed out."""
        try:
            message = await self._queue.blocking_pop(
                self._source, self.message_model, timeout=settings.blocking_pop_timeout_seconds,
            )
        except MalformedMessage as exc:
            logger.error("%s received an unparseable message: %s", self.name, exc.error)
            await self.on_malformed(exc)
            return True

        if message is None:
            return False

        with pipeline_span(f"{self.name}.handle", queue=self._source):
            await self.handle(message)
        return True

    async def handle(self, message: M) -> None:
        raise NotImplementedError

    async def on_malformed(self, exc: MalformedMessage) -> None:
        if self._dead_letter:
            await self.dead_letter(exc.raw, "parse_error")

    async def dead_letter(self, original: str, reason: str) -> None:
        entry = DeadLetterEntry(original_message=original, reason=reason)
        await self._queue.push(self._dead_letter, entry)
        dead_letters_total.labels(queue=self._dead_letter).inc()
        logger.warning("Message sent to dead letter queue '%s': %s", self._dead_letter, reason)


class AlertProcessingWorker(QueueWorker[RawAlertMsg]):
    """raw queue → verify/normalize → success | retry | error queue."""

    name = "alert-processor"
    message_model = RawAlertMsg

    def __init__(self, queue: QueueClient, processor: AlertProcessor | None = None) -> None:
        super().__init__(queue, settings.raw_queue)
        self.processor = processor or AlertProcessor()

    def _destination(self, route: Route) -> str:
        return {
            Route.SUCCESS: settings.success_queue,
            Route.RETRY: settings.retry_queue,
            Route.ERROR: settings.error_queue,
        }[route]

    async def handle(self, message: RawAlertMsg) -> None:
        outcome = self.processor.process(message)
        destination = self._destination(outcome.route)
        await self._queue.push(destination, outcome.message)
        alerts_routed.labels(route=outcome.route.value).inc()
        logger.info("Job %s routed to '%s'", message.id, destination)

    async def on_malformed(self, exc: MalformedMessage) -> None:
        await self._queue.push(
            settings.error_queue,
            ErrorAlertMsg(alert=exc.raw, reason=f"Malformed queue message: {exc.error}", stage="verification"),
        )
        alerts_routed.labels(route=Route.ERROR.value).inc()


class RetryWorker(QueueWorker[RetryAlertMsg]):
    """retry queue → fixed delay → raw queue with the carried attempt count."""

    name = "alert-retry"
    message_model = RetryAlertMsg

    def __init__(self, queue: QueueClient) -> None:
        super().__init__(queue, settings.retry_queue)

    async def handle(self, message: RetryAlertMsg) -> None:
        logger.info(
            "Retrying job %s (attempt %d/%d) after %dms: %s",
            message.id, message.attempt_count, settings.max_retries,
            settings.retry_delay_ms, message.last_error,
        )
        await asyncio.sleep(settings.retry_delay_ms / 1000)
        await self._queue.push(
            settings.raw_queue,
            RawAlertMsg(id=message.id, alert=message.alert, attempt_count=message.attempt_count),
        )
