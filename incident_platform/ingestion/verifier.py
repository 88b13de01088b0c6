"""Alert verification — decide whether a webhook entry is a real, firing alert.

A raw entry must pass every check below, in order, before it is normalized:

1. ``status`` present and equal to ``"firing"`` (resolved notifications are ignored)
2. ``labels`` mapping with ``alertname``
3. ``severity`` (or ``priority``) label that maps onto a known severity
4. a parseable ``startsAt`` / ``timestamp``
5. ``annotations`` mapping with ``summary``, ``message`` or ``description``
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from incident_platform.ingestion.models import AlertSeverity, VerificationResult

VALID_SEVERITIES = tuple(s.value for s in AlertSeverity)

_SEVERITY_ALIASES = {
    "page": AlertSeverity.CRITICAL.value,
    "urgent": AlertSeverity.HIGH.value,
    "low": AlertSeverity.INFO.value,
}

_MESSAGE_ANNOTATIONS = ("summary", "message", "description")


def normalize_severity(value: Any) -> str | None:
    """Map a raw severity/priority label onto critical/high/warning/info."""
    if not isinstance(value, str):
        return None
    lower = value.strip().lower()
    if lower in _SEVERITY_ALIASES:
        return _SEVERITY_ALIASES[lower]
    return lower if lower in VALID_SEVERITIES else None


def extract_service_name(labels: Mapping[str, Any]) -> str:
    """Priority: instance > service > job > alertname."""
    for key in ("instance", "service", "job", "alertname"):
        value = labels.get(key)
        if value:
            return str(value)
    return "unknown-service"


def parse_timestamp(raw: Any) -> datetime | None:
    """Parse an ISO-8601 string (or epoch milliseconds) into an aware UTC datetime."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        try:
            return datetime.fromtimestamp(raw / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(raw, str) or not raw.strip():
        return None
    text = raw.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def raw_timestamp(alert: Mapping[str, Any]) -> Any:
    return alert.get("startsAt") or alert.get("timestamp")


def verify(alert: Any) -> VerificationResult:
    """Run the verification checks; never raises."""
    if not isinstance(alert, Mapping):
        return VerificationResult(valid=False, reason="Alert payload is not an object")

    status = alert.get("status")
    if not status:
        return VerificationResult(valid=False, reason="Missing status field")
    if status != "firing":
        return VerificationResult(valid=False, reason=f"Alert status is '{status}', not 'firing'")

    labels = alert.get("labels")
    if not isinstance(labels, Mapping):
        return VerificationResult(valid=False, reason="Missing or invalid labels object")
    if not labels.get("alertname"):
        return VerificationResult(valid=False, reason="Missing alertname in labels")

    severity = labels.get("severity") or labels.get("priority")
    if not severity:
        return VerificationResult(valid=False, reason="Missing severity/priority in labels")
    if normalize_severity(severity) is None:
        return VerificationResult(valid=False, reason=f"Invalid severity '{severity}'")

    ts = raw_timestamp(alert)
    if not ts:
        return VerificationResult(valid=False, reason="Missing timestamp (startsAt or timestamp)")
    if parse_timestamp(ts) is None:
        return VerificationResult(valid=False, reason=f"Invalid timestamp format: {ts}")

    annotations = alert.get("annotations")
    if not isinstance(annotations, Mapping):
        return VerificationResult(valid=False, reason="Missing annotations object")
    if not any(annotations.get(key) for key in _MESSAGE_ANNOTATIONS):
        return VerificationResult(
            valid=False,
            reason="Missing message in annotations (summary/message/description)",
        )

    return VerificationResult(valid=True, reason="Alert verified successfully")
