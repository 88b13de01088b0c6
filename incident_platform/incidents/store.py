"""Incident store — incidents, alerts and alert-to-incident links.

Each method runs in its own short transaction. Nothing here spans the
correlation engine's read (find open incident / count similar alerts) and its
later write.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from incident_platform.incidents.db import Database
from incident_platform.incidents.models import (
    AlertRecord,
    AlertRow,
    Incident,
    IncidentAlertRow,
    IncidentRow,
    IncidentStatus,
    utcnow,
)

logger = logging.getLogger("incident_platform.incidents.store")


def mint_token() -> str:
    """Opaque capability token embedded in magic links."""
    return secrets.token_hex(32)


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{round(seconds)}s"
    if seconds < 3600:
        return f"{round(seconds / 60)}m"
    return f"{seconds / 3600:.1f}h"


class IncidentNotFound(Exception):
    def __init__(self, incident_id: str) -> None:
        super().__init__(f"Incident {incident_id} not found")
        self.incident_id = incident_id


class IncidentStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    # ── Alerts ───────────────────────────────────────────────────

    async def insert_alert(
        self,
        alert_id: str,
        source: str,
        severity: str,
        title: str = "",
        description: str = "",
        labels: dict | None = None,
        fingerprint: str | None = None,
        received_at: datetime | None = None,
    ) -> bool:
        """Persist an alert; returns False when an alert with this id already exists."""
        row = AlertRow(
            id=alert_id,
            source=source,
            severity=severity,
            title=title,
            description=description,
            labels=labels or {},
            fingerprint=fingerprint,
            received_at=received_at or utcnow(),
        )
        try:
            async with self._db.session() as session:
                if await session.get(AlertRow, alert_id) is not None:
                    return False
                session.add(row)
        except IntegrityError:
            return False
        return True

    async def get_alert(self, alert_id: str) -> AlertRecord | None:
        async with self._db.session() as session:
            row = await session.get(AlertRow, alert_id)
            return AlertRecord.model_validate(row) if row else None

    async def list_alerts(
        self, limit: int = 50, source: str | None = None, severity: str | None = None
    ) -> list[AlertRecord]:
        """Most recently received alerts first."""
        stmt = select(AlertRow).order_by(AlertRow.received_at.desc()).limit(limit)
        if source:
            stmt = stmt.where(AlertRow.source == source)
        if severity:
            stmt = stmt.where(AlertRow.severity == severity)
        async with self._db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [AlertRecord.model_validate(row) for row in rows]


    async def count_similar_alerts(self, source: str, title: str, window_minutes: int) -> int:
        """Alerts with the same source and title received within the window."""
        since = utcnow() - timedelta(minutes=window_minutes)
        stmt = (
            select(func.count())
            .select_from(AlertRow)
            .where(AlertRow.source == source, AlertRow.title == title, AlertRow.received_at > since)
        )
        async with self._db.session() as session:
            return int((await session.execute(stmt)).scalar_one())

    # ── Incident lookups ─────────────────────────────────────────

    async def find_open_incident(self, source: str, window_minutes: int) -> Incident | None:
        """Most recent open incident for ``source`` created within the window."""
        since = utcnow() - timedelta(minutes=window_minutes)
        stmt = (
            select(IncidentRow)
            .where(
                IncidentRow.source == source,
                IncidentRow.status == IncidentStatus.OPEN.value,
                IncidentRow.created_at > since,
            )
            .order_by(IncidentRow.created_at.desc())
            .limit(1)
        )
        async with self._db.session() as session:
            row = (await session.execute(stmt)).scalars().first()
            return Incident.model_validate(row) if row else None

    async def get(self, incident_id: str) -> Incident | None:
        async with self._db.session() as session:
            row = await session.get(IncidentRow, incident_id, populate_existing=True)
            return Incident.model_validate(row) if row else None

    async def get_by_ack_token(self, token: str) -> Incident | None:
        return await self._get_by(IncidentRow.ack_token == token)

    async def get_by_resolve_token(self, token: str) -> Incident | None:
        return await self._get_by(IncidentRow.resolve_token == token)

    async def _get_by(self, clause) -> Incident | None:
        async with self._db.session() as session:
            row = (await session.execute(select(IncidentRow).where(clause))).scalars().first()
            return Incident.model_validate(row) if row else None

    async def list_incidents(
        self,
        status: str | None = None,
        assigned_to: str | None = None,
        limit: int = 50,
    ) -> list[Incident]:
        stmt = select(IncidentRow)
        if status:
            stmt = stmt.where(IncidentRow.status == status)
        if assigned_to:
            stmt = stmt.where(IncidentRow.assigned_to == assigned_to)
        stmt = stmt.order_by(IncidentRow.created_at.desc()).limit(limit)
        async with self._db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [Incident.model_validate(r) for r in rows]

    # ── Incident writes ──────────────────────────────────────────

    async def create_incident(
        self,
        title: str,
        severity: str,
        source: str,
        description: str = "",
        alert_id: str | None = None,
    ) -> Incident:
        """Insert an open incident with a fresh ack token, linking ``alert_id`` if given."""
        now = utcnow()
        row = IncidentRow(
            id=str(uuid4()),
            title=title,
            severity=severity,
            source=source,
            description=description or "",
            status=IncidentStatus.OPEN.value,
            ack_token=mint_token(),
            created_at=now,
            updated_at=now,
        )
        async with self._db.session() as session:
            session.add(row)
            await session.flush()
            if alert_id:
                session.add(IncidentAlertRow(alert_id=alert_id, incident_id=row.id, linked_at=now))
        logger.info("Incident created: %s (severity=%s source=%s)", row.id, severity, source)
        return Incident.model_validate(row)

    async def link_alert(self, alert_id: str, incident_id: str) -> bool:
        """Append an alert→incident link; duplicates are ignored (returns False)."""
        try:
            async with self._db.session() as session:
                if await session.get(IncidentAlertRow, (alert_id, incident_id)) is not None:
                    return False
                session.add(IncidentAlertRow(alert_id=alert_id, incident_id=incident_id))
        except IntegrityError:
            return False
        return True

    async def incident_for_alert(self, alert_id: str) -> str | None:
        stmt = (
            select(IncidentAlertRow.incident_id)
            .where(IncidentAlertRow.alert_id == alert_id)
            .order_by(IncidentAlertRow.linked_at)
            .limit(1)
        )
        async with self._db.session() as session:
            return (await session.execute(stmt)).scalars().first()

    async def linked_alert_ids(self, incident_id: str) -> list[str]:
        stmt = (
            select(IncidentAlertRow.alert_id)
            .where(IncidentAlertRow.incident_id == incident_id)
            .order_by(IncidentAlertRow.linked_at)
        )
        async with self._db.session() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def touch(self, incident_id: str) -> None:
        stmt = update(IncidentRow).where(IncidentRow.id == incident_id).values(updated_at=utcnow())
        async with self._db.session() as session:
            await session.execute(stmt)

    async def assign(self, incident_id: str, responder: str) -> Incident:
        stmt = (
            update(IncidentRow)
            .where(IncidentRow.id == incident_id)
            .values(assigned_to=responder, updated_at=utcnow())
        )
        async with self._db.session() as session:
            result = await session.execute(stmt)
        if result.rowcount == 0:
            raise IncidentNotFound(incident_id)
        return await self.get(incident_id)

    async def acknowledge(self, incident_id: str, resolve_token: str) -> bool:
        """open → acknowledged; False if the incident was no longer open."""
        now = utcnow()
        stmt = (
            update(IncidentRow)
            .where(IncidentRow.id == incident_id, IncidentRow.status == IncidentStatus.OPEN.value)
            .values(
                status=IncidentStatus.ACKNOWLEDGED.value,
                acknowledged_at=now,
                updated_at=now,
                resolve_token=resolve_token,
            )
        )
        async with self._db.session() as session:
            result = await session.execute(stmt)
        return result.rowcount == 1

    async def resolve(self, incident_id: str) -> bool:
        """acknowledged → resolved; False if the incident was not acknowledged."""
        now = utcnow()
        stmt = (
            update(IncidentRow)
            .where(IncidentRow.id == incident_id, IncidentRow.status == IncidentStatus.ACKNOWLEDGED.value)
            .values(status=IncidentStatus.RESOLVED.value, resolved_at=now, updated_at=now)
        )
        async with self._db.session() as session:
            result = await session.execute(stmt)
        return result.rowcount == 1

    async def set_status(self, incident_id: str, status: IncidentStatus) -> Incident:
        """Unconditional status change, stamping acknowledged_at/resolved_at on entry."""
        now = utcnow()
        values: dict = {"status": status.value, "updated_at": now}
        if status is IncidentStatus.ACKNOWLEDGED:
            values["acknowledged_at"] = now
        elif status is IncidentStatus.RESOLVED:
            values["resolved_at"] = now

        stmt = update(IncidentRow).where(IncidentRow.id == incident_id).values(**values)
        async with self._db.session() as session:
            result = await session.execute(stmt)
        if result.rowcount == 0:
            raise IncidentNotFound(incident_id)
        return await self.get(incident_id)

    # ── Reporting ────────────────────────────────────────────────

    async def sre_metrics(self) -> dict:
        """MTTA / MTTR over all incidents that reached those states."""
        async with self._db.session() as session:
            acked = (await session.execute(
                select(IncidentRow.created_at, IncidentRow.acknowledged_at)
                .where(IncidentRow.acknowledged_at.is_not(None))
            )).all()
            resolved = (await session.execute(
                select(IncidentRow.created_at, IncidentRow.resolved_at)
                .where(IncidentRow.resolved_at.is_not(None))
            )).all()
            open_count = (await session.execute(
                select(func.count()).select_from(IncidentRow)
                .where(IncidentRow.status == IncidentStatus.OPEN.value)
            )).scalar_one()

        def _mean(pairs) -> float:
            if not pairs:
                return 0.0
            total = sum((_aware(end) - _aware(start)).total_seconds() for start, end in pairs)
            return total / len(pairs)

        mtta, mttr = _mean(acked), _mean(resolved)
        return {
            "mtta": {"seconds": mtta, "human": format_duration(mtta), "sample_size": len(acked)},
            "mttr": {"seconds": mttr, "human": format_duration(mttr), "sample_size": len(resolved)},
            "open_incidents": int(open_count),
            "computed_at": utcnow().isoformat(),
        }
