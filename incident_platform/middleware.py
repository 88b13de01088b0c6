"""HTTP request metrics, labelled by route template so tokens and ids stay out of label values."""

from __future__ import annotations

import time

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from incident_platform.telemetry.metrics import http_request_duration, http_requests_total

_SKIP_PATHS = frozenset({"/metrics", "/openapi.json", "/docs", "/redoc"})


class MetricsMiddleware:
    """Plain ASGI middleware; an exception escaping the app is recorded as a 500."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["path"] in _SKIP_PATHS:
            await self.app(scope, receive, send)
            return

        status_code = 500
        start = time.perf_counter()

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            route = scope.get("route")
            labels = {
                "method": scope["method"],
                "endpoint": getattr(route, "path", "unmatched"),
                "status_code": str(status_code),
            }
            http_request_duration.labels(**labels).observe(time.perf_counter() - start)
            http_requests_total.labels(**labels).inc()
