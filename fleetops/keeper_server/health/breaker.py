"""
Restart circuit breaker.

A sliding window of restart timestamps per tenant. Once max_restarts
restarts fall inside window_s, further restarts are suppressed until the
oldest ones roll off, or an operator resets the breaker.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable

from ..config import BreakerConfig

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Sliding-window restart limiter.

    Example:
        >>> breaker = CircuitBreaker(BreakerConfig(window_s=900, max_restarts=5))
        >>> for _ in range(5):
        ...     breaker.record_restart("t1")
        >>> breaker.is_tripped("t1")
        True
    """

    def __init__(self, config: BreakerConfig | None = None, clock: Callable[[], float] = time.time) -> None:
        self.config = config or BreakerConfig()
        self.clock = clock
        self._windows: dict[str, deque[float]] = {}

    def _window(self, tenant_id: str, create: bool = False) -> deque[float]:
        """The tenant's pruned window. Reads of unknown tenants get a detached empty deque."""
        window = self._windows.get(tenant_id)
        if window is None:
            if not create:
                return deque()
            window = self._windows[tenant_id] = deque()
        cutoff = self.clock() - self.config.window_s
        while window and window[0] <= cutoff:
            window.popleft()
        return window

    def is_tripped(self, tenant_id: str) -> bool:
        return len(self._window(tenant_id)) >= self.config.max_restarts

    def record_restart(self, tenant_id: str) -> None:
        window = self._window(tenant_id, create=True)
        window.append(self.clock())
        if len(window) >= self.config.max_restarts:
            logger.warning(
                f"Circuit breaker tripped for {tenant_id}: {len(window)} restarts "
                f"in {self.config.window_s:.0f}s",
                extra={"tenant_id": tenant_id, "restarts_in_window": len(window)},
            )

    def restarts_in_window(self, tenant_id: str) -> int:
        return len(self._window(tenant_id))

    def retry_after(self, tenant_id: str) -> float:
        """Seconds until the breaker closes again (0 if closed)."""
        window = self._window(tenant_id)
        if len(window) < self.config.max_restarts:
            return 0.0
        # Closes once enough of the oldest entries roll off.
        blocking = window[len(window) - self.config.max_restarts]
        return max(0.0, blocking + self.config.window_s - self.clock())

    def reset(self, tenant_id: str) -> None:
        logger.info(f"Circuit breaker reset for {tenant_id}", extra={"tenant_id": tenant_id})
        self._windows.pop(tenant_id, None)

    def snapshot(self, tenant_id: str) -> dict[str, float | int | bool]:
        return {
            "tripped": self.is_tripped(tenant_id),
            "restarts_in_window": self.restarts_in_window(tenant_id),
            "retry_after_s": self.retry_after(tenant_id),
        }
