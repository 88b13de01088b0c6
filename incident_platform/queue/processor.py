"""Alert processor — verify, normalize and route a single raw-queue message."""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import BaseModel

from incident_platform.config import settings
from incident_platform.ingestion.models import NormalizationError
from incident_platform.ingestion.normalizer import is_valid, normalize
from incident_platform.ingestion.verifier import verify
from incident_platform.queue.messages import (
    ErrorAlertMsg,
    RawAlertMsg,
    RetryAlertMsg,
    SuccessAlertMsg,
)

logger = logging.getLogger("incident_platform.queue.processor")


class Route(str, Enum):
    SUCCESS = "success"
    RETRY = "retry"
    ERROR = "error"


class ProcessOutcome(BaseModel):
    route: Route
    message: SuccessAlertMsg | RetryAlertMsg | ErrorAlertMsg


class ProcessingStats(BaseModel):
    processed: int = 0
    verified: int = 0
    normalized: int = 0
    retried: int = 0
    errors: int = 0


def _alertname(alert: object) -> str:
    if isinstance(alert, dict) and isinstance(alert.get("labels"), dict):
        return str(alert["labels"].get("alertname", "unknown"))
    return "unknown"


class AlertProcessor:
    """Decides where a raw alert goes next; performs no I/O."""

    def __init__(self, max_retries: int | None = None) -> None:
        self._max_retries = max_retries
        self.stats = ProcessingStats()

    @property
    def max_retries(self) -> int:
        return self._max_retries if self._max_retries is not None else settings.max_retries

    def process(self, msg: RawAlertMsg) -> ProcessOutcome:
        alert = msg.alert
        attempt_count = msg.attempt_count
        self.stats.processed += 1
        logger.info("Processing raw alert: %s (job=%s)", _alertname(alert), msg.id)

        verification = verify(alert)
        if not verification.valid:
            self.stats.errors += 1
            logger.warning("Alert verification failed: %s (job=%s)", verification.reason, msg.id)
            return ProcessOutcome(
                route=Route.ERROR,
                message=ErrorAlertMsg(
                    id=msg.id,
                    alert=alert,
                    reason=verification.reason,
                    stage="verification",
                ),
            )
        self.stats.verified += 1

        try:
            normalized = normalize(alert)
            if not is_valid(normalized):
                raise NormalizationError("Normalized alert structure is invalid")
        except NormalizationError as exc:
            return self._failed(msg, str(exc))

        self.stats.normalized += 1
        logger.info("Alert normalized: %s service=%s severity=%s",
                    normalized.id, normalized.service, normalized.severity.value)
        return ProcessOutcome(
            route=Route.SUCCESS,
            message=SuccessAlertMsg(alert=normalized, attempts=attempt_count + 1),
        )

    def _failed(self, msg: RawAlertMsg, error: str) -> ProcessOutcome:
        attempt_count = msg.attempt_count
        logger.error("Normalization failed (job=%s attempt=%d): %s", msg.id, attempt_count + 1, error)

        if attempt_count < self.max_retries:
            self.stats.retried += 1
            logger.info("Moving to retry queue (attempt %d/%d)", attempt_count + 1, self.max_retries)
            return ProcessOutcome(
                route=Route.RETRY,
                message=RetryAlertMsg(
                    id=msg.id,
                    alert=msg.alert,
                    attempt_count=attempt_count + 1,
                    last_error=error,
                ),
            )

        self.stats.errors += 1
        logger.error("Max retries exceeded, moving to error queue (job=%s)", msg.id)
        return ProcessOutcome(
            route=Route.ERROR,
            message=ErrorAlertMsg(
                id=msg.id,
                alert=msg.alert,
                reason=error,
                stage="normalization",
                attempts=attempt_count + 1,
            ),
        )
