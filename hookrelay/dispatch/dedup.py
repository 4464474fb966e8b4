"""Loop prevention: suppress repeats of the same notification key."""

import time
from collections import OrderedDict
from collections.abc import Callable, Hashable

import structlog

logger = structlog.get_logger("hookrelay")


class LoopGuard:
    """Sliding-window duplicate filter keyed by ``(subscriptionId, resource)``.

    The table is process-local and bounded. Entries older than twice the
    window are pruned while checking, and the oldest entries are dropped once
    ``max_entries`` is reached. In a multi-instance deployment each instance
    keeps its own table, so suppression is best-effort.
    """

    def __init__(
        self,
        window_seconds: float = 120.0,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._seen: OrderedDict[Hashable, float] = OrderedDict()

    def is_duplicate(self, key: Hashable) -> bool:
        now = self._clock()
        self._prune(now)
        seen_at = self._seen.get(key)
        return seen_at is not None and now - seen_at < self.window_seconds

    def record(self, key: Hashable) -> None:
        self._seen[key] = self._clock()
        self._seen.move_to_end(key)
        while len(self._seen) > self.max_entries:
            self._seen.popitem(last=False)

    def check_and_record(self, key: Hashable) -> bool:
        """Return True when ``key`` is novel, recording it as seen."""
        if self.is_duplicate(key):
            logger.info("Duplicate notification suppressed", key=str(key))
            return False
        self.record(key)
        return True

    def _prune(self, now: float) -> None:
        horizon = now - 2 * self.window_seconds
        # insertion order tracks recording time, so stale keys sit at the front
        while self._seen:
            key, seen_at = next(iter(self._seen.items()))
            if seen_at >= horizon:
                break
            del self._seen[key]

    def clear(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)
