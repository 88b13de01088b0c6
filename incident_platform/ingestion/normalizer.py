"""Normalize verified Prometheus alerts into a canonical NormalizedAlert."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from incident_platform.ingestion.models import ORIGIN_TAG, NormalizationError, NormalizedAlert
from incident_platform.ingestion.verifier import (
    extract_service_name,
    normalize_severity,
    parse_timestamp,
    raw_timestamp,
)

logger = logging.getLogger("incident_platform.ingestion")


def _message(annotations: Mapping[str, Any], alertname: str) -> str:
    for key in ("summary", "message", "description"):
        value = annotations.get(key)
        if value:
            return str(value)
    return f"Alert: {alertname}"


def normalize(alert: Mapping[str, Any]) -> NormalizedAlert:
    """Build a NormalizedAlert from a verified raw alert.

    Raises NormalizationError when the severity cannot be mapped or the
    payload does not have the shape of an alert.
    """
    labels = alert.get("labels") if isinstance(alert, Mapping) else None
    if not isinstance(labels, Mapping):
        raise NormalizationError("Normalization failed: labels object is missing")

    raw_severity = labels.get("severity") or labels.get("priority")
    severity = normalize_severity(raw_severity)
    if severity is None:
        raise NormalizationError(f"Normalization failed: Cannot normalize severity: {raw_severity}")

    annotations = alert.get("annotations")
    if not isinstance(annotations, Mapping):
        annotations = {}

    alertname = str(labels.get("alertname", ""))
    timestamp = parse_timestamp(raw_timestamp(alert)) or datetime.now(timezone.utc)

    try:
        return NormalizedAlert(
            service=extract_service_name(labels),
            severity=severity,
            message=_message(annotations, alertname),
            timestamp=timestamp,
            labels={"alertname": alertname, **{str(k): str(v) for k, v in labels.items()}},
            source=ORIGIN_TAG,
            raw={
                "fingerprint": alert.get("fingerprint"),
                "generatorURL": alert.get("generatorURL"),
                "annotations": dict(annotations),
            },
        )
    except ValidationError as exc:
        raise NormalizationError(f"Normalization failed: {exc.errors()[0]['msg']}") from exc


def is_valid(alert: Any) -> bool:
    """Structural completeness gate applied before an alert enters the success path."""
    if not isinstance(alert, NormalizedAlert):
        return False
    return bool(
        alert.service
        and alert.severity
        and alert.message
        and alert.timestamp
        and alert.labels.get("alertname")
        and alert.source == ORIGIN_TAG
    )


def normalize_batch(alerts: Iterable[Mapping[str, Any]]) -> tuple[list[NormalizedAlert], list[dict]]:
    """Normalize many alerts, collecting failures instead of raising."""
    successful: list[NormalizedAlert] = []
    failed: list[dict] = []
    for alert in alerts:
        try:
            successful.append(normalize(alert))
        except NormalizationError as exc:
            logger.warning("Failed to normalize alert: %s", exc)
            failed.append({"alert": alert, "error": str(exc)})
    return successful, failed
