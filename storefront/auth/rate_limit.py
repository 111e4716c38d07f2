from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List


class RateLimiter:
    """
    In-memory limiter for password login attempts, keyed by normalized email.

    Every attempt counts; a successful login resets the key. Keys whose attempts
    have all left the window are dropped, and at most `max_keys` are tracked:
    when full, expired keys are swept first, then the least recently used go.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        window_seconds: int = 300,
        clock: Callable[[], datetime] = datetime.now,
        max_keys: int = 10_000,
    ):
        self._attempts: Dict[str, List[datetime]] = {}
        self._max_attempts = max_attempts
        self._window = timedelta(seconds=window_seconds)
        self._clock = clock
        self._max_keys = max(1, max_keys)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._attempts)

    def _sweep(self, now: datetime) -> None:
        for key in [k for k, ts in self._attempts.items() if not ts or now - ts[-1] >= self._window]:
            del self._attempts[key]

    def _make_room(self, now: datetime) -> None:
        self._sweep(now)
        overflow = len(self._attempts) - self._max_keys + 1
        if overflow <= 0:
            return
        # Oldest last attempt first.
        for key in sorted(self._attempts, key=lambda k: self._attempts[k][-1])[:overflow]:
            del self._attempts[key]

    def check_and_increment(self, identifier: str) -> bool:
        """Record an attempt. Returns False when the identifier is over its limit."""
        now = self._clock()
        with self._lock:
            recent = [t for t in self._attempts.pop(identifier, []) if now - t < self._window]
            if len(recent) >= self._max_attempts:
                self._attempts[identifier] = recent
                return False
            if len(self._attempts) >= self._max_keys:
                self._make_room(now)
            recent.append(now)
            self._attempts[identifier] = recent
            return True

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._attempts.pop(identifier, None)
