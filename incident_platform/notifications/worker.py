"""Notification dispatch worker — consumes the notification queue.

Expected message format::

    {
      "type": "incident_assignment" | "escalation" | "acknowledged" | "resolved",
      "incident": {"id", "title", "severity", ...},
      "engineer": {"email", "name", "phone"},
      "channels": ["email", "sms"],
      "metadata": {...}
    }
"""

from __future__ import annotations

import asyncio
import json
import logging

from pydantic import ValidationError

from incident_platform.config import settings
from incident_platform.notifications.channels import NotificationChannel, default_channels
from incident_platform.queue.client import QueueClient
from incident_platform.queue.messages import NOTIFICATION_TYPES, NotificationRequest
from incident_platform.queue.worker import QueueWorker
from incident_platform.telemetry.metrics import notifications_total
from incident_platform.telemetry.tracing import pipeline_span

logger = logging.getLogger("incident_platform.notifications.worker")


class NotificationWorker(QueueWorker[NotificationRequest]):
    name = "notification-dispatch"
    message_model = NotificationRequest

    def __init__(self, queue: QueueClient, channels: dict[str, NotificationChannel] | None = None) -> None:
        super().__init__(queue, settings.notification_queue, dead_letter=settings.notification_dead_letter_queue)
        self._channels = channels if channels is not None else default_channels()
        self.processed_count = 0
        self.error_count = 0

    async def run_once(self) -> bool:
        raw = await self._queue.blocking_pop_raw(self._source, timeout=settings.blocking_pop_timeout_seconds)
        if raw is None:
            return False

        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.error("Failed to parse notification message: %s", raw[:200])
            await self.dead_letter(raw, "parse_error")
            return True

        if not isinstance(data, dict) or not data.get("type") or not data.get("incident") or not data.get("engineer"):
            logger.error("Invalid notification data — missing required fields")
            await self.dead_letter(raw, "invalid_data")
            return True

        if data["type"] not in NOTIFICATION_TYPES:
            logger.warning("Unknown notification type: %s", data["type"])
            await self.dead_letter(raw, f"unknown_type:{data['type']}")
            return True

        try:
            request = NotificationRequest.model_validate(data)
        except ValidationError:
            logger.error("Invalid notification data: %s", raw[:200])
            await self.dead_letter(raw, "invalid_data")
            return True

        with pipeline_span(f"{self.name}.handle", queue=self._source, notification_type=request.type):
            await self.handle(request)
        return True

    async def handle(self, request: NotificationRequest) -> None:
        logger.info(
            "Processing %s notification for incident %s → %s",
            request.type, request.incident.get("id"), request.engineer.email,
        )
        try:
            await self.dispatch(request)
        except Exception:
            logger.exception("Failed to process %s notification", request.type)
            self.error_count += 1
            notifications_total.labels(type=request.type, outcome="failed").inc()

            request.retry_count += 1
            if request.retry_count <= settings.notification_retry_attempts:
                logger.info("Scheduling retry %d/%d", request.retry_count, settings.notification_retry_attempts)
                await asyncio.sleep(settings.notification_retry_delay_ms / 1000)
                await self._queue.push(self._source, request)
            else:
                logger.error("Max retries exceeded, sending to dead letter queue")
                await self.dead_letter(request.dumps(), "max_retries")
            return

        self.processed_count += 1
        notifications_total.labels(type=request.type, outcome="sent").inc()

    async def dispatch(self, request: NotificationRequest) -> None:
        for name in request.channels:
            channel = self._channels.get(name)
            if channel is None:
                logger.warning("Unknown notification channel '%s' — skipped", name)
                continue
            await channel.send(request)
