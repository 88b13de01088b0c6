"""Magic links — token-bearing URLs that drive the incident lifecycle without a login."""

from incident_platform.config import settings


def ack_link(token: str) -> str:
    return f"{settings.public_base_url.rstrip('/')}/incidents/ack/{token}"


def resolve_link(token: str) -> str:
    return f"{settings.public_base_url.rstrip('/')}/incidents/resolve/{token}"
