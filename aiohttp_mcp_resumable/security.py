"""
DNS rebinding protection.

A browser tricked into resolving an attacker's domain to a local address still
sends the attacker's ``Host`` and ``Origin``. Rejecting calls whose headers are
not explicitly allowed keeps such pages away from a locally bound server.
"""

import logging

from aiohttp import web
from mcp.server.transport_security import TransportSecuritySettings

from .exceptions import TransportSecurityError

__all__ = ["HostOriginGuard", "TransportSecuritySettings"]

logger = logging.getLogger(__name__)

# Wildcard port suffix, "localhost:*" matches "localhost:8000"
ANY_PORT = ":*"
# Origin entry that allows every origin
ANY_ORIGIN = "*"


def _matches(value: str, allowed: list[str]) -> bool:
    if value in allowed:
        return True
    for pattern in allowed:
        if pattern.endswith(ANY_PORT) and value.startswith(pattern[: -len(ANY_PORT)] + ":"):
            return True
    return False


class HostOriginGuard:
    """Validates the ``Host`` and ``Origin`` headers of inbound calls."""

    def __init__(self, settings: TransportSecuritySettings | None = None) -> None:
        # Disabled unless asked for, like the SDK middleware
        self._settings = settings or TransportSecuritySettings(enable_dns_rebinding_protection=False)

    @property
    def settings(self) -> TransportSecuritySettings:
        return self._settings

    @property
    def enabled(self) -> bool:
        return self._settings.enable_dns_rebinding_protection

    def validate_host(self, host: str | None) -> bool:
        if not host:
            logger.warning("Missing Host header in request")
            return False
        if _matches(host, self._settings.allowed_hosts):
            return True
        logger.warning("Invalid Host header: %s", host)
        return False

    def validate_origin(self, origin: str | None) -> bool:
        # Same-origin requests carry no Origin
        if not origin:
            return True
        if ANY_ORIGIN in self._settings.allowed_origins or _matches(origin, self._settings.allowed_origins):
            return True
        logger.warning("Invalid Origin header: %s", origin)
        return False

    def check(self, request: web.Request) -> None:
        """Raise ``TransportSecurityError`` when the call comes from a host or origin that is not allowed."""
        if not self.enabled:
            return
        if not self.validate_host(request.headers.get("host")):
            raise TransportSecurityError.invalid_host()
        if not self.validate_origin(request.headers.get("origin")):
            raise TransportSecurityError.invalid_origin()
