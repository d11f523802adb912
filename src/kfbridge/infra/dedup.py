"""Time-windowed record of processed message ids.

Guards against redelivery from retried callbacks and from overlapping sync
pages. An id seen within the TTL window is never dispatched twice; older
entries are pruned lazily.
"""

from __future__ import annotations

import threading
from typing import Callable

from kfbridge.infra.time import monotonic_seconds

DEFAULT_DEDUP_TTL_SECONDS = 10 * 60


class DedupCache:
    """msgid -> first-seen timestamp, bounded by a TTL window."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_DEDUP_TTL_SECONDS,
        *,
        clock: Callable[[], float] = monotonic_seconds,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._seen: dict[str, float] = {}
        self._lock = threading.Lock()

    def seen(self, msgid: str) -> bool:
        """Return True if msgid was already recorded; otherwise record it.

        Empty ids are never recorded and never reported as seen.
        """
        if not msgid:
            return False
        now = self._clock()
        with self._lock:
            first_seen = self._seen.get(msgid)
            if first_seen is not None and now - first_seen < self._ttl:
                return True
            self._seen[msgid] = now
            return False

    def prune(self) -> int:
        """Remove entries older than the TTL. Returns the number removed."""
        cutoff = self._clock() - self._ttl
        with self._lock:
            expired = [msgid for msgid, ts in self._seen.items() if ts < cutoff]
            for msgid in expired:
                del self._seen[msgid]
        return len(expired)

    def __contains__(self, msgid: object) -> bool:
        with self._lock:
            return msgid in self._seen

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
