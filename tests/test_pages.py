from datetime import timedelta

import pytest

from incident_platform.incidents.models import Incident, IncidentStatus, utcnow
from incident_platform.incidents.pages import render_page, time_diff


def _incident(**overrides) -> Incident:
    now = utcnow()
    fields = dict(
        id="0123456789abcdef", title="DiskFull", severity="high", source="db-01",
        status=IncidentStatus.ACKNOWLEDGED, ack_token="a" * 64, created_at=now, updated_at=now,
    )
    fields.update(overrides)
    return Incident(**fields)


def test_page_shows_paragraphs_details_and_action():
    page = render_page(
        "Incident Acknowledged",
        ["First line.", "Second line."],
        "success",
        _incident(),
        "http://incidents.test/incidents/resolve/xyz",
        "Mark as Resolved",
    )

    assert page.startswith("<!DOCTYPE html>")
    assert "<p>First line.</p>" in page
    assert "<p>Second line.</p>" in page
    assert "#01234567<" in page
    assert "#d4edda" in page
    assert '<a href="http://incidents.test/incidents/resolve/xyz" class="btn">Mark as Resolved</a>' in page


def test_every_value_on_the_page_is_escaped():
    page = render_page(
        "<b>title</b>",
        ["<img src=x onerror=alert(1)>"],
        "error",
        _incident(title="<script>alert(1)</script>", source='"db"'),
    )

    assert "<script>" not in page
    assert "<img" not in page
    assert "&lt;b&gt;title&lt;/b&gt;" in page
    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in page


def test_page_without_incident_or_action():
    page = render_page("Invalid Link", ["This link is not valid or has expired."], "unknown-kind")

    assert 'class="details"' not in page
    assert 'class="btn"' not in page
    assert "#e2e3e5" in page


@pytest.mark.parametrize("minutes, text", [(0, "0m"), (45, "45m"), (60, "1h 0m"), (135, "2h 15m")])
def test_time_diff(minutes, text):
    start = utcnow()
    assert time_diff(start, start + timedelta(minutes=minutes)) == text
