"""Queue message envelopes.

Every logical queue carries one explicit message type, serialized as JSON with
the camelCase keys the other services expect. Alert-pipeline messages carry a
``kind`` tag so any of them can be parsed with ``parse_alert_message``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from incident_platform.ingestion.models import NormalizedAlert


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _job_id() -> str:
    return uuid4().hex


class QueueMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def dumps(self) -> str:
        return self.model_dump_json(by_alias=True)


# ── Alert pipeline ────────────────────────────────────────────────


class RawAlertMsg(QueueMessage):
    kind: Literal["raw"] = "raw"
    id: str = Field(default_factory=_job_id)
    alert: Any
    attempt_count: int = Field(default=0, alias="attemptCount")
    enqueued_at: datetime = Field(default_factory=_now, alias="enqueuedAt")


class RetryAlertMsg(QueueMessage):
    kind: Literal["retry"] = "retry"
    id: str = Field(default_factory=_job_id)
    alert: Any
    attempt_count: int = Field(alias="attemptCount")
    last_error: str = Field(default="", alias="lastError")
    timestamp: datetime = Field(default_factory=_now)


class ErrorAlertMsg(QueueMessage):
    kind: Literal["error"] = "error"
    id: str = Field(default_factory=_job_id)
    alert: Any
    reason: str
    stage: Literal["verification", "normalization"]
    attempts: int | None = None
    timestamp: datetime = Field(default_factory=_now)


class SuccessAlertMsg(QueueMessage):
    kind: Literal["success"] = "success"
    alert: NormalizedAlert
    processed_at: datetime = Field(default_factory=_now, alias="processedAt")
    attempts: int = 1


AlertQueueMessage = Annotated[
    Union[RawAlertMsg, RetryAlertMsg, ErrorAlertMsg, SuccessAlertMsg],
    Field(discriminator="kind"),
]

_alert_message_adapter: TypeAdapter[AlertQueueMessage] = TypeAdapter(AlertQueueMessage)


def parse_alert_message(raw: str | bytes) -> RawAlertMsg | RetryAlertMsg | ErrorAlertMsg | SuccessAlertMsg:
    return _alert_message_adapter.validate_json(raw)


# ── Incidents, notifications, escalation ─────────────────────────


class IncidentAssignmentMsg(QueueMessage):
    incident_id: str
    title: str = ""
    severity: str = ""
    source: str = ""
    created_at: datetime | None = None
    retries: int = Field(default=0, alias="_retries")


class Responder(BaseModel):
    email: str
    name: str = ""
    phone: str | None = None

    @classmethod
    def from_email(cls, email: str) -> Responder:
        return cls(email=email, name=email.split("@")[0])


NOTIFICATION_TYPES = ("incident_assignment", "escalation", "acknowledged", "resolved")


class NotificationRequest(QueueMessage):
    type: str
    incident: dict[str, Any]
    engineer: Responder
    channels: list[str] = Field(default_factory=lambda: ["email", "sms"])
    original_engineer: Responder | None = Field(default=None, alias="originalEngineer")
    metadata: dict[str, Any] = {}
    retry_count: int = Field(default=0, alias="_retryCount")


class DeadLetterEntry(QueueMessage):
    original_message: str = Field(alias="originalMessage")
    reason: str
    timestamp: datetime = Field(default_factory=_now)


class EscalationEntry(QueueMessage):
    """A pending escalation, scored in the due-queue by ``due_at``.

    ``entry_id`` makes every serialized entry distinct, so removing one entry
    by value never removes a concurrent duplicate for the same incident.
    """

    entry_id: str = Field(default_factory=_job_id)
    incident_id: str
    primary: str | None = None
    secondary: str | None = None
    assigned_at: datetime = Field(default_factory=_now)
    due_at: datetime
