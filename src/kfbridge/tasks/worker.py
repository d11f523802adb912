"""Supervised in-process worker for callback drains.

The webhook acknowledges immediately and submits work here. Every job runs
with the submitting request's correlation ID, and every failure is logged
at this boundary so no job can take the process down.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

from kfbridge.observability.correlation import correlation_scope
from kfbridge.observability.logging import get_logger
from kfbridge.observability.redaction import safe_log_context

logger = get_logger(__name__)

DEFAULT_MAX_WORKERS = 4


class DrainWorker:
    """Thread pool with a pending counter and an idle signal.

    Usage:
        worker = DrainWorker(max_workers=4)
        worker.submit(service.process_callback, job, correlation_id=job.correlation_id)
        worker.wait_idle(timeout=5)
    """

    def __init__(self, max_workers: int = DEFAULT_MAX_WORKERS) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="kf-drain")
        self._pending = 0
        self._cond = threading.Condition()
        self._closed = False

    def submit(
        self,
        fn: Callable[..., Any],
        *args: Any,
        correlation_id: str | None = None,
        **kwargs: Any,
    ) -> Future:
        """Run fn(*args, **kwargs) on the pool.

        Raises:
            RuntimeError: If the worker has been shut down.
        """
        with self._cond:
            if self._closed:
                raise RuntimeError("worker is shut down")
            self._pending += 1
        try:
            return self._executor.submit(self._run, fn, args, kwargs, correlation_id or "")
        except RuntimeError:
            self._done()
            raise

    def _run(
        self,
        fn: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        correlation_id: str,
    ) -> Any:
        try:
            with correlation_scope(correlation_id):
                try:
                    return fn(*args, **kwargs)
                except Exception as e:
                    logger.exception(
                        "background job failed",
                        extra={
                            "extra_fields": safe_log_context(
                                job=getattr(fn, "__name__", type(fn).__name__),
                                error_type=type(e).__name__,
                            )
                        },
                    )
                    return None
        finally:
            self._done()

    def _done(self) -> None:
        with self._cond:
            self._pending -= 1
            if self._pending == 0:
                self._cond.notify_all()

    def pending(self) -> int:
        with self._cond:
            return self._pending

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no job is pending. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._pending == 0, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        with self._cond:
            self._closed = True
        self._executor.shutdown(wait=wait)
