"""Per-caller request gate for the ingestion endpoint."""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict, deque
from collections.abc import Callable

from support_triage.core.exceptions import RateLimitError

logger = logging.getLogger(__name__)


class RequestRateLimiter:
    """Rejects a caller that comes back too soon or too often.

    Two rules apply per key:
    - at least ``min_interval_seconds`` between consecutive requests;
    - at most ``max_requests`` within any trailing ``window_seconds``.
    """

    def __init__(
        self,
        min_interval_seconds: float = 30.0,
        max_requests: int = 5,
        window_seconds: float = 30.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._min_interval = min_interval_seconds
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        self._history: defaultdict[str, deque[float]] = defaultdict(deque)
        self._last: dict[str, float] = {}
        # A key idle this long carries no state that could still reject it
        self._idle_after = max(min_interval_seconds, window_seconds)
        self._last_sweep: float | None = None
        self._lock = threading.Lock()

    def __len__(self) -> int:
        """Number of keys currently tracked."""
        with self._lock:
            return len(self._last)

    def check(self, key: str) -> None:
        """Record a request for ``key`` or reject it.

        Raises:
            RateLimitError: With ``retry_after`` seconds until the key may retry.
        """
        now = self._clock()
        with self._lock:
            self._evict_idle(now)
            history = self._history[key]
            while history and now - history[0] >= self._window:
                history.popleft()

            last = self._last.get(key)
            if last is not None and now - last < self._min_interval:
                retry_after = self._min_interval - (now - last)
                logger.info("Request from %s rejected: %.1fs since last", key, now - last)
                raise RateLimitError("Rate limit exceeded", retry_after=retry_after)

            if self._max_requests > 0 and len(history) >= self._max_requests:
                retry_after = self._window - (now - history[0])
                logger.info("Request from %s rejected: %d in window", key, len(history))
                raise RateLimitError("Too many requests, please try again later",
                                     retry_after=retry_after)

            history.append(now)
            self._last[key] = now

    def _evict_idle(self, now: float) -> None:
        """Forget keys idle for longer than both limits, at most once per idle period."""
        if self._last_sweep is not None and now - self._last_sweep < self._idle_after:
            return
        self._last_sweep = now
        idle = [key for key, last in self._last.items() if now - last >= self._idle_after]
        for key in idle:
            del self._last[key]
            self._history.pop(key, None)
        if idle:
            logger.debug("Evicted %d idle rate-limit keys", len(idle))

    def reset(self, key: str | None = None) -> None:
        """Forget one key's history, or everyone's."""
        with self._lock:
            if key is None:
                self._history.clear()
                self._last.clear()
            else:
                self._history.pop(key, None)
                self._last.pop(key, None)
