"""Success-queue consumer — feeds normalized alerts to the correlation engine."""

from __future__ import annotations

import logging

from incident_platform.config import settings
from incident_platform.correlation.engine import AlertCandidate, CorrelationEngine
from incident_platform.queue.client import QueueClient
from incident_platform.queue.messages import SuccessAlertMsg
from incident_platform.queue.worker import QueueWorker

logger = logging.getLogger("incident_platform.correlation.consumer")


class AlertConsumer(QueueWorker[SuccessAlertMsg]):
    name = "alert-consumer"
    message_model = SuccessAlertMsg

    def __init__(self, queue: QueueClient, engine: CorrelationEngine) -> None:
        super().__init__(queue, settings.success_queue)
        self._engine = engine

    async def handle(self, message: SuccessAlertMsg) -> None:
        candidate = AlertCandidate.from_normalized(message.alert)
        decision = await self._engine.process(candidate)
        logger.info(
            "Alert %s (%s/%s) → %s",
            candidate.alert_id, candidate.source, candidate.title, decision.action.value,
        )
