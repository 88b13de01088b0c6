"""HTML confirmation pages for magic-link visits from a browser."""

from __future__ import annotations

from datetime import datetime, timezone

from incident_platform.incidents.models import Incident
from incident_platform.templating import render

_COLORS = {
    "success": ("#d4edda", "#c3e6cb", "#155724"),
    "resolved": ("#cce5ff", "#b8daff", "#004085"),
    "error": ("#f8d7da", "#f5c6cb", "#721c24"),
    "info": ("#e2e3e5", "#d6d8db", "#383d41"),
}


def time_diff(start: datetime, end: datetime) -> str:
    minutes = int((end - start).total_seconds() // 60)
    hours = minutes // 60
    return f"{hours}h {minutes % 60}m" if hours else f"{minutes}m"


def render_page(
    title: str,
    paragraphs: list[str],
    kind: str = "info",
    incident: Incident | None = None,
    action_url: str | None = None,
    action_text: str | None = None,
) -> str:
    """Every value is escaped, paragraphs included."""
    return render(
        "page.html.j2",
        title=title,
        paragraphs=paragraphs,
        colors=_COLORS.get(kind, _COLORS["info"]),
        incident=incident,
        action_url=action_url,
        action_text=action_text,
        footer=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
    )
