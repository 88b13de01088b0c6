"""On-call collaborator client — who is primary/secondary right now."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel

from incident_platform.config import settings
from incident_platform.queue.messages import Responder

logger = logging.getLogger("incident_platform.assignment.oncall")


class OnCallUnavailable(Exception):
    """The rotation could not be fetched or has nobody on call."""


class Rotation(BaseModel):
    primary: Responder | None = None
    secondary: Responder | None = None
    schedule_id: str | None = None


def _responder(member: Any) -> Responder | None:
    if not member:
        return None
    if isinstance(member, str):
        return Responder.from_email(member)
    if isinstance(member, dict) and member.get("email"):
        return Responder(
            email=member["email"],
            name=member.get("name") or member["email"].split("@")[0],
            phone=member.get("phone"),
        )
    return None


class OnCallClient:
    """Talks to the on-call service over HTTP."""

    def __init__(self, base_url: str | None = None, schedule_id: str | None = None,
                 http: httpx.AsyncClient | None = None) -> None:
        self._base_url = (base_url or settings.oncall_url).rstrip("/")
        self._schedule_id = schedule_id if schedule_id is not None else settings.oncall_schedule_id
        self._http = http or httpx.AsyncClient(timeout=10.0)

    async def close(self) -> None:
        await self._http.aclose()

    async def get_rotation(self) -> Rotation:
        params = {"schedule_id": self._schedule_id} if self._schedule_id else None
        try:
            resp = await self._http.get(f"{self._base_url}/api/oncall/rotation", params=params)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise OnCallUnavailable(f"On-call rotation lookup failed: {exc}") from exc

        return Rotation(
            primary=_responder(data.get("primary")),
            secondary=_responder(data.get("secondary")),
            schedule_id=data.get("schedule_id"),
        )

    async def get_engineer(self, email: str) -> Responder:
        """Contact details for ``email``; falls back to a name derived from the address."""
        try:
            resp = await self._http.get(f"{self._base_url}/api/oncall/engineer/{quote(email, safe='')}")
            resp.raise_for_status()
            return _responder(resp.json()) or Responder.from_email(email)
        except (httpx.HTTPError, ValueError):
            logger.warning("Could not fetch engineer details for %s", email)
            return Responder.from_email(email)
