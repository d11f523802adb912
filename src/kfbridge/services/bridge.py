"""Bridge service - owns all process-wide state.

One BridgeService per running app: the webhook target registry, the cursor
store, the token and dedup caches, the upstream client, the sync loop and
the background worker. Nothing here is module-global, so tests can build
isolated instances.

Usage:
    service = BridgeService.from_env()
    unregister = service.register_account(account)
    future = service.schedule_callback(job)
    service.close()
"""

from __future__ import annotations

import os
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from kfbridge.domain.dispatch import (
    DISPATCH_TIMEOUT,
    HttpDispatcher,
    MessageDispatcher,
    NullDispatcher,
)
from kfbridge.domain.events import EventRouter
from kfbridge.domain.sync import DrainResult, SyncLoop
from kfbridge.infra.accounts import (
    ResolvedAccount,
    describe_account,
    list_account_ids,
    load_channel_config,
    resolve_account,
)
from kfbridge.infra.cursor_store import DEFAULT_CURSOR_FILE, DEFAULT_DEBOUNCE_SECONDS, CursorStore
from kfbridge.infra.dedup import DEFAULT_DEDUP_TTL_SECONDS, DedupCache
from kfbridge.kf.callback import parse_callback_plaintext
from kfbridge.kf.client import HTTP_TIMEOUT, MAX_SYNC_LIMIT, KfApiClient
from kfbridge.kf.crypto import decrypt_envelope
from kfbridge.kf.errors import DecryptError, ValidationError
from kfbridge.observability.correlation import correlation_scope
from kfbridge.observability.logging import get_logger
from kfbridge.observability.redaction import safe_log_context
from kfbridge.tasks.contracts import CallbackJob
from kfbridge.tasks.worker import DEFAULT_MAX_WORKERS, DrainWorker

logger = get_logger(__name__)

DEFAULT_MAX_BODY_BYTES = 1024 * 1024


def normalize_webhook_path(raw: str) -> str:
    """Leading slash, no trailing slash, "/" for empty."""
    trimmed = (raw or "").strip()
    if not trimmed:
        return "/"
    with_slash = trimmed if trimmed.startswith("/") else f"/{trimmed}"
    if len(with_slash) > 1 and with_slash.endswith("/"):
        return with_slash[:-1]
    return with_slash


@dataclass(frozen=True, eq=False)
class WebhookTarget:
    """An account registered at a webhook path. Compared by identity."""

    account: ResolvedAccount
    path: str


@dataclass(frozen=True)
class OpenedCallback:
    """A decrypted callback, ready to drain."""

    job: CallbackJob
    account: ResolvedAccount
    callback_open_kfid: str | None
    delivery_token: str | None

    @property
    def open_kfid_key(self) -> str:
        return self.account.open_kf_id or self.callback_open_kfid or ""


@dataclass(frozen=True)
class ServiceSettings:
    """Process settings read from the environment."""

    cursor_file: str = DEFAULT_CURSOR_FILE
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES
    dedup_ttl_seconds: float = DEFAULT_DEDUP_TTL_SECONDS
    cursor_debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS
    sync_page_limit: int = MAX_SYNC_LIMIT
    http_timeout: float = HTTP_TIMEOUT
    dispatch_timeout: float = DISPATCH_TIMEOUT
    drain_workers: int = DEFAULT_MAX_WORKERS
    dispatch_url: str | None = None
    config_path: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ServiceSettings":
        env = os.environ if environ is None else environ
        return cls(
            cursor_file=env.get("KF_CURSOR_FILE") or DEFAULT_CURSOR_FILE,
            max_body_bytes=int(env.get("KF_MAX_BODY_BYTES") or DEFAULT_MAX_BODY_BYTES),
            dedup_ttl_seconds=float(env.get("KF_DEDUP_TTL_SECONDS") or DEFAULT_DEDUP_TTL_SECONDS),
            cursor_debounce_seconds=float(
                env.get("KF_CURSOR_DEBOUNCE_SECONDS") or DEFAULT_DEBOUNCE_SECONDS
            ),
            sync_page_limit=int(env.get("KF_SYNC_PAGE_LIMIT") or MAX_SYNC_LIMIT),
            http_timeout=float(env.get("KF_HTTP_TIMEOUT") or HTTP_TIMEOUT),
            dispatch_timeout=float(env.get("KF_DISPATCH_TIMEOUT") or DISPATCH_TIMEOUT),
            drain_workers=int(env.get("KF_DRAIN_WORKERS") or DEFAULT_MAX_WORKERS),
            dispatch_url=env.get("KF_DISPATCH_URL") or None,
            config_path=env.get("KF_CONFIG_PATH") or None,
        )


class BridgeService:
    def __init__(
        self,
        settings: ServiceSettings | None = None,
        *,
        client: KfApiClient | None = None,
        dispatcher: MessageDispatcher | None = None,
        cursor_store: CursorStore | None = None,
        dedup: DedupCache | None = None,
        worker: DrainWorker | None = None,
    ) -> None:
        self.settings = settings or ServiceSettings()
        self.client = client or KfApiClient(timeout=self.settings.http_timeout)
        self.token_cache = self.client.token_cache
        self.cursor_store = cursor_store or CursorStore(
            self.settings.cursor_file,
            debounce_seconds=self.settings.cursor_debounce_seconds,
        )
        self.dedup = dedup or DedupCache(self.settings.dedup_ttl_seconds)
        self.dispatcher = dispatcher or _default_dispatcher(self.settings)
        self.router = EventRouter(self.client, self.dispatcher)
        self.sync_loop = SyncLoop(
            self.client,
            self.cursor_store,
            self.dedup,
            self.router,
            page_limit=self.settings.sync_page_limit,
        )
        self.worker = worker or DrainWorker(self.settings.drain_workers)
        self._targets: dict[str, list[WebhookTarget]] = {}
        self._targets_lock = threading.Lock()
        # drain_key -> callbacks that arrived while its drain was queued or running
        self._inflight: dict[str, list[CallbackJob]] = {}
        self._inflight_lock = threading.Lock()

    # ── target registry ────────────────────────────────────

    def register_account(
        self, account: ResolvedAccount, path: str | None = None
    ) -> Callable[[], None]:
        """Register an account at a webhook path (default: its webhook_path).

        A previous registration of the same account_id is replaced.

        Returns:
            Callable that removes this registration.
        """
        key = normalize_webhook_path(path or account.webhook_path)
        target = WebhookTarget(account=account, path=key)
        with self._targets_lock:
            self._remove_account_locked(account.account_id)
            self._targets.setdefault(key, []).append(target)

        logger.info(
            "webhook target registered",
            extra={"extra_fields": safe_log_context(account_id=account.account_id, path=key)},
        )

        def unregister() -> None:
            with self._targets_lock:
                remaining = [t for t in self._targets.get(key, []) if t is not target]
                if remaining:
                    self._targets[key] = remaining
                else:
                    self._targets.pop(key, None)

        return unregister

    def _remove_account_locked(self, account_id: str) -> None:
        for key in list(self._targets):
            remaining = [t for t in self._targets[key] if t.account.account_id != account_id]
            if remaining:
                self._targets[key] = remaining
            else:
                del self._targets[key]

    def targets_for(self, path: str) -> list[WebhookTarget]:
        with self._targets_lock:
            return list(self._targets.get(normalize_webhook_path(path), []))

    def find_target(self, path: str, account_id: str) -> WebhookTarget | None:
        for target in self.targets_for(path):
            if target.account.account_id == account_id:
                return target
        return None

    def accounts(self) -> list[ResolvedAccount]:
        with self._targets_lock:
            return [t.account for targets in self._targets.values() for t in targets]

    def describe(self) -> list[dict[str, Any]]:
        return [describe_account(a) for a in self.accounts()]

    # ── callbacks ──────────────────────────────────────────

    def schedule_callback(self, job: CallbackJob) -> Future:
        """Hand a verified callback to the background worker.

        At most one drain per ``job.drain_key`` is queued or running. A
        callback arriving meanwhile is folded into one follow-up pass of that
        drain and gets an already-resolved Future.
        """
        key = job.drain_key
        with self._inflight_lock:
            queued = self._inflight.get(key)
            if queued is not None:
                queued.append(job)
            else:
                self._inflight[key] = []
        if queued is not None:
            logger.info(
                "drain already scheduled, callback coalesced",
                extra={"extra_fields": safe_log_context(account_id=job.account_id, path=job.path)},
            )
            coalesced: Future = Future()
            coalesced.set_result(None)
            return coalesced
        try:
            return self.worker.submit(
                self._drain_until_settled, key, job, correlation_id=job.correlation_id
            )
        except RuntimeError:
            with self._inflight_lock:
                self._inflight.pop(key, None)
            raise

    def _drain_until_settled(self, key: str, job: CallbackJob) -> DrainResult | None:
        """Drain for job, then once more per channel instance for coalesced callbacks."""
        try:
            result = self.process_callback(job)
            while True:
                with self._inflight_lock:
                    queued = self._inflight[key]
                    if not queued:
                        del self._inflight[key]
                        return result
                    self._inflight[key] = []
                # newest token per channel instance wins
                passes: dict[str, OpenedCallback] = {}
                for queued_job in queued:
                    with correlation_scope(queued_job.correlation_id or job.correlation_id):
                        opened = self._open_callback(queued_job)
                    if opened is not None:
                        passes[opened.open_kfid_key] = opened
                for opened in passes.values():
                    with correlation_scope(opened.job.correlation_id or job.correlation_id):
                        result = self._drain(opened)
        except BaseException:
            with self._inflight_lock:
                self._inflight.pop(key, None)
            raise

    def process_callback(self, job: CallbackJob) -> DrainResult | None:
        """Decrypt the envelope, read the delivery token, and drain.

        Decrypt and parse failures are logged and end the job without a drain.
        """
        opened = self._open_callback(job)
        if opened is None:
            return None
        return self._drain(opened)

    def _open_callback(self, job: CallbackJob) -> OpenedCallback | None:
        log_ctx = safe_log_context(account_id=job.account_id, path=job.path)
        target = self.find_target(job.path, job.account_id)
        if target is None:
            logger.warning("callback target no longer registered", extra={"extra_fields": log_ctx})
            return None
        account = target.account

        delivery_token: str | None = None
        callback_open_kfid: str | None = None
        if account.encoding_aes_key:
            try:
                plaintext = decrypt_envelope(
                    encoding_aes_key=account.encoding_aes_key,
                    receive_id=account.corp_id,
                    encrypt=job.encrypt,
                )
                notice = parse_callback_plaintext(plaintext)
            except DecryptError as e:
                logger.error(
                    "callback decrypt failed",
                    extra={"extra_fields": safe_log_context(**log_ctx, error=str(e))},
                )
                return None
            except ValidationError as e:
                logger.warning(
                    "callback plaintext unreadable",
                    extra={"extra_fields": safe_log_context(**log_ctx, error=str(e))},
                )
                return None
            delivery_token = notice.token
            callback_open_kfid = notice.open_kfid

        logger.info(
            "callback received",
            extra={
                "extra_fields": safe_log_context(
                    **log_ctx,
                    open_kfid=callback_open_kfid,
                    has_token=bool(delivery_token),
                )
            },
        )
        return OpenedCallback(job, account, callback_open_kfid, delivery_token)

    def _drain(self, opened: OpenedCallback) -> DrainResult:
        return self.sync_loop.drain(
            opened.account,
            callback_open_kfid=opened.callback_open_kfid,
            delivery_token=opened.delivery_token,
        )

    # ── lifecycle ──────────────────────────────────────────

    def close(self) -> None:
        """Finish in-flight drains, then flush cursors."""
        self.worker.shutdown(wait=True)
        self.cursor_store.close()

    @classmethod
    def from_env(
        cls,
        settings: ServiceSettings | None = None,
        channel_cfg: dict[str, Any] | None = None,
    ) -> "BridgeService":
        """Build the service and register every enabled account with a callback token."""
        settings = settings or ServiceSettings.from_env()
        service = cls(settings)
        if channel_cfg is None:
            channel_cfg = load_channel_config(settings.config_path)
        for account_id in list_account_ids(channel_cfg):
            account = resolve_account(channel_cfg, account_id)
            if not account.enabled:
                continue
            if not account.token:
                logger.warning(
                    "account has no callback token, not registered",
                    extra={"extra_fields": safe_log_context(account_id=account_id)},
                )
                continue
            if not account.configured:
                logger.warning(
                    "account partially configured",
                    extra={"extra_fields": safe_log_context(**describe_account(account))},
                )
            service.register_account(account)
        return service


def _default_dispatcher(settings: ServiceSettings) -> MessageDispatcher:
    if settings.dispatch_url:
        return HttpDispatcher(settings.dispatch_url, timeout=settings.dispatch_timeout)
    return NullDispatcher()
