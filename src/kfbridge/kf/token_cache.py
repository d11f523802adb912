"""Access token cache with TTL and per-key single-flight.

One entry per tenant (corp id). Entries live for the issued validity minus a
safety margin (7200s - 300s = 115 min). Never persisted; a restart simply
fetches a new token.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable

from kfbridge.infra.time import epoch_seconds
from kfbridge.observability.logging import get_logger
from kfbridge.observability.redaction import safe_log_context

from .errors import UpstreamError

logger = get_logger(__name__)

DEFAULT_VALIDITY_SECONDS = 7200
SAFETY_MARGIN_SECONDS = 300

# fetcher(account) -> (access_token, expires_in_seconds)
TokenFetcher = Callable[[Any], tuple[str, int]]


@dataclass(frozen=True)
class AccessTokenEntry:
    token: str
    expires_at: float


def token_cache_key(account: Any) -> str:
    """Cache key for a tenant."""
    return f"{account.corp_id}:kf"


class AccessTokenCache:
    """Process-wide (per service instance) credential cache.

    Concurrent misses for the same key wait on a per-key lock, so only one
    upstream credential call is issued.
    """

    def __init__(
        self,
        fetcher: TokenFetcher,
        *,
        clock: Callable[[], float] = epoch_seconds,
        safety_margin: int = SAFETY_MARGIN_SECONDS,
    ) -> None:
        self._fetcher = fetcher
        self._clock = clock
        self._safety_margin = safety_margin
        self._entries: dict[str, AccessTokenEntry] = {}
        self._entries_lock = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._entries_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def _live_entry(self, key: str) -> AccessTokenEntry | None:
        with self._entries_lock:
            entry = self._entries.get(key)
        if entry is not None and self._clock() < entry.expires_at:
            return entry
        return None

    def get_token(self, account: Any) -> str:
        """Return a live token for the tenant, fetching one on a miss.

        Raises:
            UpstreamError: If credentials are missing or issuance fails.
        """
        if not account.corp_id or not account.corp_secret:
            raise UpstreamError("gettoken", -1, "corp_id or corp_secret not configured")

        key = token_cache_key(account)
        entry = self._live_entry(key)
        if entry is not None:
            return entry.token

        with self._lock_for(key):
            # Another caller may have refreshed while we waited
            entry = self._live_entry(key)
            if entry is not None:
                return entry.token

            issued_at = self._clock()
            token, expires_in = self._fetcher(account)
            validity = expires_in if expires_in > 0 else DEFAULT_VALIDITY_SECONDS
            entry = AccessTokenEntry(
                token=token,
                expires_at=issued_at + validity - self._safety_margin,
            )
            with self._entries_lock:
                self._entries[key] = entry

            logger.info(
                "access token refreshed",
                extra={
                    "extra_fields": safe_log_context(
                        account_id=account.account_id,
                        ttl_seconds=validity - self._safety_margin,
                    )
                },
            )
            return token

    def invalidate(self, account: Any) -> None:
        """Drop the cached token for one tenant."""
        with self._entries_lock:
            self._entries.pop(token_cache_key(account), None)

    def invalidate_all(self) -> None:
        """Drop every cached token."""
        with self._entries_lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._entries_lock:
            return len(self._entries)
