"""Notification channels.

Delivery mechanics (SMTP, SMS gateways) live outside this service; the shipped
channels render the message and log it, which is what the dispatch worker
needs to route, retry and dead-letter requests.
"""

from __future__ import annotations

import logging

from incident_platform.queue.messages import NotificationRequest
from incident_platform.templating import render, render_string

logger = logging.getLogger("incident_platform.notifications")

_SUBJECTS = {
    "incident_assignment": "[{{ severity }}] Incident assigned: {{ title }}",
    "escalation": "[{{ severity }}] {{ title }}",
    "acknowledged": "Acknowledged: {{ title }}",
    "resolved": "Resolved: {{ title }}",
}


class NotificationDeliveryError(Exception):
    pass


def render_subject(request: NotificationRequest) -> str:
    return render_string(
        _SUBJECTS.get(request.type, "{{ title }}"),
        severity=str(request.incident.get("severity", "")).upper(),
        title=request.incident.get("title", ""),
    )


def render_body(request: NotificationRequest) -> str:
    links = []
    for key, label in (("ack_url", "Acknowledge"), ("resolve_url", "Resolve")):
        url = request.metadata.get(key) or request.incident.get(key)
        if url:
            links.append((label, url))
    return render(
        "notification.txt.j2",
        subject=render_subject(request),
        engineer=request.engineer,
        incident=request.incident,
        links=links,
    )


class NotificationChannel:
    name = "channel"

    async def send(self, request: NotificationRequest) -> None:
        raise NotImplementedError


class EmailChannel(NotificationChannel):
    name = "email"

    async def send(self, request: NotificationRequest) -> None:
        if not request.engineer.email:
            raise NotificationDeliveryError("engineer has no email address")
        logger.info(
            "EMAIL to=%s subject=%r\n%s",
            request.engineer.email, render_subject(request), render_body(request),
        )


class SmsChannel(NotificationChannel):
    name = "sms"

    async def send(self, request: NotificationRequest) -> None:
        if not request.engineer.phone:
            logger.info("SMS skipped for %s: no phone number on file", request.engineer.email)
            return
        text = render_subject(request)
        url = request.metadata.get("ack_url") or request.metadata.get("resolve_url")
        if url:
            text = f"{text} {url}"
        logger.info("SMS to=%s text=%r", request.engineer.phone, text[:160])


def default_channels() -> dict[str, NotificationChannel]:
    return {channel.name: channel for channel in (EmailChannel(), SmsChannel())}
