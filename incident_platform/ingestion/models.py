"""Data models for alert ingestion and normalization."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field

ORIGIN_TAG = "prometheus"


class AlertSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    WARNING = "warning"
    INFO = "info"


class VerificationResult(BaseModel):
    valid: bool
    reason: str


class NormalizedAlert(BaseModel):
    """Internal standardized alert representation."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    service: str
    severity: AlertSeverity
    message: str
    timestamp: datetime
    labels: dict[str, str] = {}
    source: str = ORIGIN_TAG
    raw: dict = {}

    @property
    def alertname(self) -> str:
        return self.labels.get("alertname", "")


class NormalizationError(Exception):
    """Raised when a verified alert cannot be turned into a NormalizedAlert."""
