from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Optional

DEFAULT_MAX_KEYS = 1024


class SingleFlightGuard:
    """
    In-memory single-flight guard for one-time operations.

    - At most one claim is outstanding at a time (any key).
    - A key that was ever claimed is refused again unless the guard is `reset()`,
      or the key aged out (`ttl_seconds`) or was pushed out by newer keys (`max_keys`).

    Used as the callback dedup guard (keyed on authorization code) and as the wallet
    single-shot flag (keyed on the provider). Instances are owned by one orchestrator.

    Check-then-set happens without an await in between, so it is safe under asyncio
    without a lock.
    """

    def __init__(
        self,
        *,
        ttl_seconds: Optional[float] = None,
        max_keys: int = DEFAULT_MAX_KEYS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_keys = max(1, int(max_keys))
        self._clock = clock
        self._active: Optional[str] = None
        self._seen: "OrderedDict[str, float]" = OrderedDict()

    def _prune(self, now: float) -> None:
        if self.ttl_seconds is not None:
            cutoff = now - self.ttl_seconds
            while self._seen:
                key, ts = next(iter(self._seen.items()))
                if ts > cutoff or key == self._active:
                    break
                self._seen.popitem(last=False)
        while len(self._seen) > self.max_keys:
            key = next(iter(self._seen))
            if key == self._active:
                self._seen.move_to_end(key)
                continue
            self._seen.popitem(last=False)

    def try_claim(self, key: str) -> bool:
        """
        Claim `key`.

        Returns:
            True on the first claim of `key` while nothing else is outstanding,
            False otherwise (duplicate delivery, or another claim in flight).
        """
        now = self._clock()
        self._prune(now)
        if self._active is not None or key in self._seen:
            return False
        self._active = key
        self._seen[key] = now
        self._prune(now)
        return True

    def release(self) -> None:
        """Drop the outstanding claim. Keys already seen stay refused."""
        self._active = None

    def reset(self) -> None:
        """Forget everything (fresh attempt with the same key allowed)."""
        self._active = None
        self._seen.clear()

    @property
    def claimed(self) -> Optional[str]:
        return self._active

    def __len__(self) -> int:
        return len(self._seen)
