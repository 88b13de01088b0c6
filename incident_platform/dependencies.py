"""FastAPI dependencies — services created in the lifespan and kept on app.state."""

from fastapi import Request

from incident_platform.incidents.lifecycle import IncidentLifecycle
from incident_platform.incidents.store import IncidentStore
from incident_platform.queue.client import QueueClient


def get_queue(request: Request) -> QueueClient:
    return request.app.state.queue


def get_store(request: Request) -> IncidentStore:
    return request.app.state.store


def get_lifecycle(request: Request) -> IncidentLifecycle:
    return request.app.state.lifecycle
