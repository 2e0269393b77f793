import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from aiohttp import web
from mcp.types import RequestId
from pydantic import BaseModel

from .cancellation import CancellationSignal
from .exceptions import RequestCancelled

__all__ = ["MethodHandler", "MethodRegistry", "NotificationHandler", "NotificationSender", "RequestContext"]

logger = logging.getLogger(__name__)

NotificationSender = Callable[[str, dict[str, Any] | None], Awaitable[None]]


async def _discard_notification(method: str, params: dict[str, Any] | None) -> None:
    logger.debug("No stream to carry notification %s, dropping it", method)


@dataclass(slots=True, kw_only=True)
class RequestContext:
    """What a handler knows about the call it serves."""

    session_id: str
    method: str
    request_id: RequestId | None = None
    signal: CancellationSignal | None = None
    request: web.Request | None = None
    notifier: NotificationSender = field(default=_discard_notification, repr=False)

    @property
    def cancelled(self) -> bool:
        return self.signal is not None and self.signal.cancelled

    def check_cancelled(self) -> None:
        if self.cancelled:
            raise RequestCancelled()

    async def send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a server notification to the client, related to this request when there is one."""
        await self.notifier(method, params)


MethodHandler = Callable[[dict[str, Any], RequestContext], Awaitable[dict[str, Any] | BaseModel | None]]
NotificationHandler = Callable[[dict[str, Any], RequestContext], Awaitable[None]]


class MethodRegistry:
    """Maps JSON-RPC method names to handlers."""

    def __init__(self) -> None:
        self._methods: dict[str, MethodHandler] = {}
        self._notifications: dict[str, NotificationHandler] = {}

    def method(self, name: str) -> Callable[[MethodHandler], MethodHandler]:
        def decorator(fn: MethodHandler) -> MethodHandler:
            self.add_method(name, fn)
            return fn

        return decorator

    def notification(self, name: str) -> Callable[[NotificationHandler], NotificationHandler]:
        def decorator(fn: NotificationHandler) -> NotificationHandler:
            self.add_notification(name, fn)
            return fn

        return decorator

    def add_method(self, name: str, handler: MethodHandler) -> None:
        if name in self._methods:
            logger.warning("Method %s is already registered, replacing it", name)
        self._methods[name] = handler

    def add_notification(self, name: str, handler: NotificationHandler) -> None:
        if name in self._notifications:
            logger.warning("Notification %s is already registered, replacing it", name)
        self._notifications[name] = handler

    def lookup(self, name: str) -> MethodHandler | None:
        return self._methods.get(name)

    def lookup_notification(self, name: str) -> NotificationHandler | None:
        return self._notifications.get(name)

    @property
    def methods(self) -> list[str]:
        return sorted(self._methods)
