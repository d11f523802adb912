"""Durable per-(account, channel instance) pagination cursors.

Cursors live in memory and are written to a flat JSON document
(``{"<account_id>:<open_kfid>": "<cursor>"}``) by a debounced writer.
The file is rewritten wholesale on every flush.

Durability:
- A cursor set at time T is on disk no later than T + debounce window,
  unless the process dies first. Call flush() on graceful shutdown.
- Persistence failures are logged as PersistenceError; the in-memory map
  keeps serving drains.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Callable

from kfbridge.kf.errors import PersistenceError
from kfbridge.observability.logging import get_logger
from kfbridge.observability.redaction import safe_log_context

logger = get_logger(__name__)

DEFAULT_CURSOR_FILE = str(Path.home() / ".kfbridge" / "state" / "cursors.json")
DEFAULT_DEBOUNCE_SECONDS = 1.0


def cursor_key(account_id: str, open_kfid: str) -> str:
    """Persistence key for a cursor."""
    return f"{account_id}:{open_kfid}"


class DebouncedWriter:
    """Coalesces write requests into one write per window.

    The first schedule() in an idle period arms a timer; further calls
    within the window ride on the same write. flush_now() cancels the timer
    and writes synchronously.
    """

    def __init__(self, write: Callable[[], None], window_seconds: float) -> None:
        self._write = write
        self._window = window_seconds
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def schedule(self) -> None:
        with self._lock:
            if self._timer is not None:
                return
            timer = threading.Timer(self._window, self._fire)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _fire(self) -> None:
        with self._lock:
            self._timer = None
        self._write()

    def flush_now(self) -> None:
        with self._lock:
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        self._write()

    def cancel(self) -> None:
        with self._lock:
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()


class CursorStore:
    """Keyed cursor map with debounced JSON persistence."""

    def __init__(
        self,
        path: str | os.PathLike[str] = DEFAULT_CURSOR_FILE,
        *,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        self._path = Path(path)
        self._cursors: dict[str, str] = {}
        self._lock = threading.Lock()
        # held from snapshot to rename, so the newest snapshot always lands last
        self._write_lock = threading.Lock()
        self._loaded = False
        self._writer = DebouncedWriter(self._write_safely, debounce_seconds)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> None:
        """Load persisted cursors once. Missing file means first run."""
        with self._lock:
            if self._loaded:
                return
            self._loaded = True
            try:
                data = json.loads(self._path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                return
            except (OSError, ValueError) as e:
                err = PersistenceError(f"cursor file unreadable: {type(e).__name__}")
                logger.error(
                    "cursor load failed",
                    extra={"extra_fields": safe_log_context(path=str(self._path), error=str(err))},
                )
                return
            if not isinstance(data, dict):
                return
            for key, value in data.items():
                if isinstance(value, str) and key not in self._cursors:
                    self._cursors[key] = value

    def get(self, account_id: str, open_kfid: str) -> str | None:
        """Return the stored cursor, or None (cold start)."""
        self.load()
        with self._lock:
            return self._cursors.get(cursor_key(account_id, open_kfid))

    def set(self, account_id: str, open_kfid: str, cursor: str) -> None:
        """Advance the cursor and schedule a debounced flush. Empty values are ignored."""
        if not cursor:
            return
        self.load()
        with self._lock:
            self._cursors[cursor_key(account_id, open_kfid)] = cursor
        self._writer.schedule()

    def snapshot(self) -> dict[str, str]:
        with self._lock:
            return dict(self._cursors)

    @property
    def flush_pending(self) -> bool:
        return self._writer.pending

    def flush(self) -> None:
        """Write immediately, cancelling any armed debounce timer.

        Raises:
            PersistenceError: If the file cannot be written.
        """
        self._writer.cancel()
        self._write()

    def close(self) -> None:
        """Flush on shutdown. Failures are logged, not raised."""
        self._writer.cancel()
        self._write_safely()

    def _write(self) -> None:
        with self._write_lock:
            self._write_snapshot(self.snapshot())

    def _write_snapshot(self, data: dict[str, str]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=str(self._path.parent), prefix=".cursors-", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(data, fh, indent=2, sort_keys=True)
                os.replace(tmp_name, self._path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise PersistenceError(f"cursor write failed: {type(e).__name__}") from e

    def _write_safely(self) -> None:
        try:
            self._write()
        except PersistenceError as e:
            logger.error(
                "cursor flush failed",
                extra={"extra_fields": safe_log_context(path=str(self._path), error=str(e))},
            )
