"""Cursor-based drain of the upstream message queue.

One drain per callback: fetch pages from the stored cursor until the
upstream reports no more, advancing the cursor after every page. On a cold
start (no stored cursor) the backlog is consumed for its cursor only and
nothing is dispatched.

Concurrency:
- Drains for one (account_id, open_kfid) are serialized by a per-key lock,
  so overlapping callbacks never read the same cursor twice.
- Drains for different keys run in parallel.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

from kfbridge.infra.accounts import ResolvedAccount
from kfbridge.infra.cursor_store import CursorStore, cursor_key
from kfbridge.infra.dedup import DedupCache
from kfbridge.kf.client import MAX_SYNC_LIMIT, KfApiClient
from kfbridge.kf.errors import UpstreamError
from kfbridge.kf.models import EventMessage
from kfbridge.observability.logging import get_logger
from kfbridge.observability.redaction import safe_log_context

from .events import EventRouter, RouteOutcome

logger = get_logger(__name__)


@dataclass
class DrainResult:
    """Counters for one drain. error is set when the drain was aborted."""

    account_id: str
    open_kfid: str | None = None
    cold_start: bool = False
    pages: int = 0
    fetched: int = 0
    dispatched: int = 0
    duplicates: int = 0
    events: int = 0
    dropped: int = 0
    error: str | None = None
    skipped_reason: str | None = None

    @property
    def ran(self) -> bool:
        return self.skipped_reason is None


class SyncLoop:
    def __init__(
        self,
        client: KfApiClient,
        cursor_store: CursorStore,
        dedup: DedupCache,
        router: EventRouter,
        *,
        page_limit: int = MAX_SYNC_LIMIT,
    ) -> None:
        self._client = client
        self._cursors = cursor_store
        self._dedup = dedup
        self._router = router
        self._page_limit = page_limit
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def drain(
        self,
        account: ResolvedAccount,
        *,
        callback_open_kfid: str | None = None,
        delivery_token: str | None = None,
    ) -> DrainResult:
        """Drain every pending page for the account's channel instance.

        Args:
            account: Tenant whose queue to drain.
            callback_open_kfid: Channel instance from the callback, used when
                the account has none configured.
            delivery_token: Short-lived token from the callback, sent only on
                a request without a cursor.

        Returns:
            DrainResult. Upstream failures are recorded in ``error``, not raised.
        """
        result = DrainResult(account_id=account.account_id)

        if not account.corp_id or not account.corp_secret:
            logger.warning(
                "account missing corp credentials, skip drain",
                extra={"extra_fields": safe_log_context(account_id=account.account_id)},
            )
            result.skipped_reason = "missing credentials"
            return result

        open_kfid = account.open_kf_id or callback_open_kfid
        if not open_kfid:
            logger.warning(
                "no open_kfid available, skip drain",
                extra={"extra_fields": safe_log_context(account_id=account.account_id)},
            )
            result.skipped_reason = "missing open_kfid"
            return result
        result.open_kfid = open_kfid

        with self._lock_for(cursor_key(account.account_id, open_kfid)):
            self._drain_locked(account, open_kfid, delivery_token, result)

        logger.info(
            "drain finished",
            extra={
                "extra_fields": safe_log_context(
                    account_id=result.account_id,
                    open_kfid=open_kfid,
                    cold_start=result.cold_start,
                    pages=result.pages,
                    fetched=result.fetched,
                    dispatched=result.dispatched,
                    duplicates=result.duplicates,
                    events=result.events,
                    dropped=result.dropped,
                    error=result.error,
                )
            },
        )
        return result

    def _drain_locked(
        self,
        account: ResolvedAccount,
        open_kfid: str,
        delivery_token: str | None,
        result: DrainResult,
    ) -> None:
        self._dedup.prune()

        cursor = self._cursors.get(account.account_id, open_kfid)
        result.cold_start = not cursor
        if result.cold_start:
            logger.info(
                "cold start, draining history to advance cursor",
                extra={
                    "extra_fields": safe_log_context(
                        account_id=account.account_id, open_kfid=open_kfid
                    )
                },
            )

        has_more = True
        while has_more:
            try:
                page = self._client.sync_messages(
                    account,
                    cursor=cursor,
                    token=None if cursor else delivery_token,
                    open_kfid=open_kfid,
                    limit=self._page_limit,
                )
            except UpstreamError as e:
                logger.error(
                    "sync_msg failed",
                    extra={
                        "extra_fields": safe_log_context(
                            account_id=account.account_id,
                            errcode=e.errcode,
                            pages=result.pages,
                        )
                    },
                )
                result.error = str(e)
                return

            result.pages += 1
            result.fetched += len(page.messages)

            if page.next_cursor:
                self._cursors.set(account.account_id, open_kfid, page.next_cursor)
                cursor = page.next_cursor
            has_more = page.has_more and bool(page.messages)

            if result.cold_start or not page.messages:
                continue

            for message in page.messages:
                self._handle(account, message, result)

    def _handle(self, account: ResolvedAccount, message, result: DrainResult) -> None:
        if message.msgid and self._dedup.seen(message.msgid):
            result.duplicates += 1
            return

        if isinstance(message, EventMessage):
            self._router.route(account, message)
            result.events += 1
            return

        if not message.from_customer:
            result.dropped += 1
            return

        outcome = self._router.route(account, message)
        if outcome is RouteOutcome.DISPATCHED:
            result.dispatched += 1
