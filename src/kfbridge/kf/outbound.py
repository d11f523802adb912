"""Outbound text messages to customers.

Security: NEVER log external_userid or text. Only log hashes and lengths.
"""

from __future__ import annotations

from kfbridge.infra.accounts import ResolvedAccount
from kfbridge.observability.logging import get_logger
from kfbridge.observability.redaction import hash_identifier, safe_log_context

from .client import KfApiClient, SendResult

logger = get_logger(__name__)

# Upstream limit for one text message
MAX_TEXT_BYTES = 2048

_TARGET_PREFIXES = ("wecom-kf:", "user:")


def normalize_external_userid(target: str) -> str:
    """Strip channel prefixes: "wecom-kf:user:abc" -> "abc"."""
    normalized = target.strip()
    for prefix in _TARGET_PREFIXES:
        if normalized.startswith(prefix):
            normalized = normalized[len(prefix) :]
    return normalized


def split_text_by_bytes(text: str, max_bytes: int = MAX_TEXT_BYTES) -> list[str]:
    """Split text into chunks of at most max_bytes UTF-8 bytes.

    Never splits a code point. Empty text yields no chunks.
    """
    chunks: list[str] = []
    current: list[str] = []
    current_bytes = 0
    for char in text:
        size = len(char.encode("utf-8"))
        if current and current_bytes + size > max_bytes:
            chunks.append("".join(current))
            current, current_bytes = [], 0
        current.append(char)
        current_bytes += size
    if current:
        chunks.append("".join(current))
    return chunks


def send_text_message(
    client: KfApiClient,
    account: ResolvedAccount,
    external_userid: str,
    text: str,
    open_kfid: str | None = None,
) -> SendResult:
    """Send text to a customer, chunked to the per-message byte limit.

    Stops at the first non-zero result and returns it. Configuration
    problems are returned as errcode -1 without calling upstream.

    Raises:
        UpstreamError: On transport failure.
    """
    if not account.can_send_active:
        return SendResult(errcode=-1, errmsg="account not configured for active sending")
    resolved_open_kfid = open_kfid or account.open_kf_id
    if not resolved_open_kfid:
        return SendResult(errcode=-1, errmsg="open_kfid not available")
    chunks = split_text_by_bytes(text)
    if not chunks:
        return SendResult(errcode=-1, errmsg="no content to send")

    touser = normalize_external_userid(external_userid)
    log_ctx = safe_log_context(
        account_id=account.account_id,
        to_hash=hash_identifier(touser),
        text_len=len(text),
        chunks=len(chunks),
    )
    logger.info("sending outbound text", extra={"extra_fields": log_ctx})

    result = SendResult(errcode=0, errmsg="ok")
    for index, chunk in enumerate(chunks):
        result = client.send_message(
            account,
            {
                "touser": touser,
                "open_kfid": resolved_open_kfid,
                "msgtype": "text",
                "text": {"content": chunk},
            },
        )
        if not result.ok:
            logger.error(
                "outbound text failed",
                extra={
                    "extra_fields": safe_log_context(
                        **log_ctx, chunk=index, errcode=result.errcode
                    )
                },
            )
            return result
    return result
