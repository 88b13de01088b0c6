"""Jinja2 rendering for browser pages and notification texts.

Templates live in ``incident_platform/templates``. Names ending in
``.html.j2`` are autoescaped; text templates and inline subject lines are not.
"""

from __future__ import annotations

from pathlib import Path

import jinja2

TEMPLATES_DIR = Path(__file__).parent / "templates"

env = jinja2.Environment(
    loader=jinja2.FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=jinja2.select_autoescape(enabled_extensions=("html.j2",), default_for_string=False),
    trim_blocks=True,
    lstrip_blocks=True,
)


def render(name: str, **context) -> str:
    return env.get_template(name).render(**context)


def render_string(source: str, **context) -> str:
    return env.from_string(source).render(**context)
