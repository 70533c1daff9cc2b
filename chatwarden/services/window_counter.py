"""
Sliding-window event counter.
Counts administrative actions per (tenant, actor, kind) inside a time window.
"""

import bisect
import threading
from contextlib import contextmanager
from typing import Dict, List, Optional, Tuple

from chatwarden.models.enums import ActionKind


Key = Tuple[str, str, ActionKind]


class SlidingWindowCounter:
    """
    Ordered timestamp lists per key, pruned on every record.
    Mutation of one key is serialized; different keys never contend.
    """

    DEFAULT_WINDOW_SECONDS = 10.0

    def __init__(self, window_seconds: float = DEFAULT_WINDOW_SECONDS):
        self.window_seconds = window_seconds
        self._events: Dict[Key, List[float]] = {}
        self._locks: Dict[Key, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: Key) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def _locked(self, key: Key):
        # A lock dropped by reset() or sweep() while we waited on it is stale; take the current one
        while True:
            lock = self._lock_for(key)
            lock.acquire()
            if self._locks.get(key) is lock:
                break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def _forget(self, key: Key):
        # Caller holds the key lock
        self._events.pop(key, None)
        with self._guard:
            self._locks.pop(key, None)

    def record(
        self,
        tenant_id: str,
        actor_id: str,
        kind: ActionKind,
        now: float,
        window: Optional[float] = None,
    ) -> int:
        """
        Record one action at `now` (epoch seconds) and return the count in the window.
        A timestamp already outside the window is not stored.
        """
        window = self.window_seconds if window is None else window
        key = (tenant_id, actor_id, kind)
        with self._locked(key):
            timestamps = self._events.setdefault(key, [])
            # Late arrivals never move the window backwards
            latest = max(now, timestamps[-1]) if timestamps else now
            cutoff = latest - window
            del timestamps[:bisect.bisect_left(timestamps, cutoff)]
            if now >= cutoff:
                bisect.insort(timestamps, now)
            return len(timestamps)

    def count(
        self,
        tenant_id: str,
        actor_id: str,
        kind: ActionKind,
        now: float,
        window: Optional[float] = None,
    ) -> int:
        """Count actions in the window ending at `now` without recording."""
        window = self.window_seconds if window is None else window
        key = (tenant_id, actor_id, kind)
        if key not in self._events:
            return 0
        with self._locked(key):
            timestamps = self._events.get(key, [])
            return len(timestamps) - bisect.bisect_left(timestamps, now - window)

    def reset(self, tenant_id: str, actor_id: str, kind: Optional[ActionKind] = None):
        """Forget an actor's history (one kind, or all kinds)."""
        with self._guard:
            keys = list(self._events)
        keys = [
            k for k in keys
            if k[0] == tenant_id and k[1] == actor_id and (kind is None or k[2] == kind)
        ]
        for key in keys:
            with self._locked(key):
                self._forget(key)

    def sweep(self, now: float, window: Optional[float] = None) -> int:
        """Drop keys whose newest timestamp has left the window. Returns keys removed."""
        window = self.window_seconds if window is None else window
        with self._guard:
            keys = list(self._events)
        removed = 0
        for key in keys:
            with self._locked(key):
                timestamps = self._events.get(key)
                if timestamps and timestamps[-1] >= now - window:
                    continue
                self._forget(key)
                if timestamps is not None:
                    removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._events)
