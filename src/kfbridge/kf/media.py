"""Inbound media download and retention.

Files land in ``<dir>/<YYYY-MM-DD>/<prefix>-<ms>-<rand><ext>``. Dated
directories older than keep_days are pruned after dispatch.
"""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from urllib.parse import unquote

from kfbridge.infra.accounts import InboundMediaConfig, ResolvedAccount
from kfbridge.observability.logging import get_logger
from kfbridge.observability.redaction import safe_log_context

from .errors import KfBridgeError

logger = get_logger(__name__)

MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/bmp": ".bmp",
    "audio/amr": ".amr",
    "audio/mpeg": ".mp3",
    "video/mp4": ".mp4",
    "application/pdf": ".pdf",
    "text/plain": ".txt",
}

FILE_PREFIXES = {"image": "img", "voice": "voice", "video": "video", "file": "file"}

_DATED_DIR = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_CD_FILENAME_EXT = re.compile(r"filename\*=UTF-8''([^;]+)", re.IGNORECASE)
_CD_FILENAME = re.compile(r"filename=([^;]+)", re.IGNORECASE)


class InboundMediaError(KfBridgeError):
    """Media could not be saved (too large, or the filesystem refused it)."""


@dataclass(frozen=True)
class MediaDescriptor:
    """Media attached to an inbound message."""

    kind: str
    media_id: str
    path: str | None = None
    content_type: str | None = None
    size_bytes: int | None = None


def parse_content_disposition_filename(header: str | None) -> str | None:
    """Extract the filename from a Content-Disposition header, if any."""
    if not header:
        return None
    match = _CD_FILENAME_EXT.search(header)
    if match:
        return unquote(match.group(1).strip().strip('"'))
    match = _CD_FILENAME.search(header)
    if match:
        return match.group(1).strip().strip('"')
    return None


def pick_extension(content_type: str | None, content_disposition: str | None) -> str:
    """File extension from the disposition filename, else the MIME type, else .bin."""
    filename = parse_content_disposition_filename(content_disposition)
    if filename:
        suffix = Path(filename).suffix
        if suffix:
            return suffix.lower()
    mime = (content_type or "").split(";")[0].strip().lower()
    return MIME_EXTENSIONS.get(mime, ".bin")


def dated_dir(base_dir: str | Path, now: datetime | None = None) -> Path:
    return Path(base_dir).expanduser() / (now or datetime.now()).strftime("%Y-%m-%d")


def save_inbound_media(
    client,
    account: ResolvedAccount,
    *,
    kind: str,
    media_id: str,
    now: datetime | None = None,
) -> MediaDescriptor:
    """Download media by id and store it under the account's inbound dir.

    Raises:
        UpstreamError: If the download fails.
        InboundMediaError: If the file exceeds max_bytes or cannot be written.
    """
    config = account.config.inbound_media
    download = client.download_media(account, media_id)
    size = len(download.content)
    if size > config.max_bytes:
        raise InboundMediaError(f"file too large ({size} > {config.max_bytes})")

    now = now or datetime.now()
    target_dir = dated_dir(config.dir, now)
    ext = pick_extension(download.content_type, download.content_disposition)
    prefix = FILE_PREFIXES.get(kind, "media")
    filename = f"{prefix}-{int(now.timestamp() * 1000)}-{secrets.token_hex(3)}{ext}"
    path = target_dir / filename
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        path.write_bytes(download.content)
    except OSError as e:
        raise InboundMediaError(f"write failed: {type(e).__name__}") from e

    logger.info(
        "inbound media saved",
        extra={
            "extra_fields": safe_log_context(
                account_id=account.account_id,
                kind=kind,
                size_bytes=size,
            )
        },
    )
    return MediaDescriptor(
        kind=kind,
        media_id=media_id,
        path=str(path),
        content_type=download.content_type,
        size_bytes=size,
    )


def prune_inbound_media(config: InboundMediaConfig, *, now: datetime | None = None) -> int:
    """Delete files in dated dirs older than keep_days. Returns files removed.

    A negative keep_days disables pruning.
    """
    if config.keep_days < 0:
        return 0
    base_dir = Path(config.dir).expanduser()
    if not base_dir.is_dir():
        return 0

    cutoff = ((now or datetime.now()) - timedelta(days=config.keep_days)).timestamp()
    removed = 0
    for entry in base_dir.iterdir():
        if not _DATED_DIR.match(entry.name) or not entry.is_dir():
            continue
        try:
            if entry.stat().st_mtime >= cutoff:
                continue
            for item in entry.iterdir():
                if item.is_file() and item.stat().st_mtime < cutoff:
                    item.unlink()
                    removed += 1
        except OSError as e:
            logger.warning(
                "inbound media prune failed",
                extra={"extra_fields": safe_log_context(dir=entry.name, error=type(e).__name__)},
            )
    return removed
