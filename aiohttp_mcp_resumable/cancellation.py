import logging
import time
from dataclasses import dataclass, field

import anyio
from mcp.types import RequestId

from .storage import Clock

__all__ = ["CancellationSignal", "CancellationTracker"]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CancellationSignal:
    """
    Cancellation token of one in-flight request.

    The dispatcher attaches the cancel scope wrapping the handler, so a cancel
    interrupts the handler at its next await point. Handlers that never await
    may poll ``cancelled`` instead.
    """

    request_id: RequestId
    created_at: float
    cancelled: bool = False
    cancelled_at: float | None = None
    _scope: anyio.CancelScope | None = field(default=None, repr=False)

    def attach(self, scope: anyio.CancelScope) -> None:
        self._scope = scope
        if self.cancelled:
            scope.cancel()

    def cancel(self, now: float) -> None:
        self.cancelled = True
        self.cancelled_at = now
        if self._scope is not None:
            self._scope.cancel()


class CancellationTracker:
    """In-flight requests per session, with at most one live entry per request ID."""

    def __init__(self, grace_period: float = 60.0, clock: Clock = time.monotonic) -> None:
        self._grace_period = grace_period
        self._clock = clock
        self._signals: dict[tuple[str, RequestId], CancellationSignal] = {}

    def __len__(self) -> int:
        return len(self._signals)

    def begin(self, session_id: str, request_id: RequestId) -> CancellationSignal:
        self.sweep()
        key = (session_id, request_id)
        if key in self._signals:
            logger.warning("Request %s of session %s is already in flight, replacing it", request_id, session_id)
        signal = CancellationSignal(request_id=request_id, created_at=self._clock())
        self._signals[key] = signal
        return signal

    def cancel(self, session_id: str, request_id: RequestId) -> bool:
        """Cancel a live request. Returns True only for the first cancel of that request."""
        signal = self._signals.get((session_id, request_id))
        if signal is None:
            logger.debug("Ignoring cancel of unknown request %s in session %s", request_id, session_id)
            return False
        if signal.cancelled:
            logger.debug("Request %s of session %s is already cancelled", request_id, session_id)
            return False
        signal.cancel(self._clock())
        logger.info("Cancelled request %s of session %s", request_id, session_id)
        return True

    def is_cancelled(self, session_id: str, request_id: RequestId) -> bool:
        signal = self._signals.get((session_id, request_id))
        return signal is not None and signal.cancelled

    def end(self, session_id: str, request_id: RequestId, signal: CancellationSignal | None = None) -> None:
        """Remove the entry. With ``signal`` given, a newer entry under the same ID is left alone."""
        key = (session_id, request_id)
        if signal is not None and self._signals.get(key) is not signal:
            return
        self._signals.pop(key, None)

    def cancel_all(self, session_id: str) -> int:
        now = self._clock()
        doomed = [key for key in self._signals if key[0] == session_id]
        for key in doomed:
            signal = self._signals.pop(key)
            if not signal.cancelled:
                signal.cancel(now)
        if doomed:
            logger.debug("Cancelled %d in-flight request(s) of session %s", len(doomed), session_id)
        return len(doomed)

    def sweep(self) -> int:
        """Drop cancelled entries older than the grace period."""
        now = self._clock()
        stale = [
            key
            for key, signal in self._signals.items()
            if signal.cancelled and signal.cancelled_at is not None and now - signal.cancelled_at >= self._grace_period
        ]
        for key in stale:
            del self._signals[key]
        return len(stale)
