"""Boundary to the agent-dispatch collaborator.

The bridge hands each admitted customer message to a MessageDispatcher and
receives the replies to send back. The collaborator itself (routing,
sessions, reply generation) lives outside this service.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

import requests

from kfbridge.kf.media import MediaDescriptor
from kfbridge.observability.correlation import CORRELATION_ID_HEADER, get_correlation_id
from kfbridge.observability.logging import get_logger
from kfbridge.observability.redaction import hash_identifier, safe_log_context

logger = get_logger(__name__)

DISPATCH_TIMEOUT = 60.0


@dataclass(frozen=True)
class InboundContent:
    """One customer message, reduced to what the collaborator needs.

    Attributes:
        account_id: Tenant the message arrived on.
        open_kfid: Channel instance.
        external_userid: Customer id (PII; never logged).
        msgid: Upstream message id.
        msgtype: Upstream message type.
        text: Extracted text form.
        media: Saved media, for media messages.
        send_time: Upstream send time (epoch seconds).
        session_key: Stable conversation key for the collaborator.
    """

    account_id: str
    open_kfid: str
    external_userid: str
    msgid: str
    msgtype: str
    text: str
    media: MediaDescriptor | None = None
    send_time: int = 0
    session_key: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DispatchResult:
    replies: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def session_key_for(account_id: str, external_userid: str) -> str:
    return f"wecom-kf:{account_id}:user:{external_userid}"


class MessageDispatcher(Protocol):
    def dispatch(self, message: InboundContent) -> DispatchResult: ...


class NullDispatcher:
    """Accepts every message and never replies."""

    def dispatch(self, message: InboundContent) -> DispatchResult:
        logger.info(
            "message accepted without dispatcher",
            extra={
                "extra_fields": safe_log_context(
                    account_id=message.account_id,
                    msgid=message.msgid,
                    msgtype=message.msgtype,
                )
            },
        )
        return DispatchResult()


class HttpDispatcher:
    """POSTs InboundContent as JSON and reads ``{"replies": [...]}`` back."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = DISPATCH_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._session = session or requests.Session()

    def dispatch(self, message: InboundContent) -> DispatchResult:
        log_ctx = safe_log_context(
            account_id=message.account_id,
            msgid=message.msgid,
            user_hash=hash_identifier(message.external_userid),
        )
        try:
            response = self._session.post(
                self._url,
                json=message.to_dict(),
                headers={CORRELATION_ID_HEADER: get_correlation_id()},
                timeout=self._timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(
                "dispatch request failed",
                extra={"extra_fields": safe_log_context(**log_ctx, error_type=type(e).__name__)},
            )
            return DispatchResult(error=f"dispatch failed: {type(e).__name__}")
        try:
            data = response.json()
        except ValueError:
            return DispatchResult(error="dispatch response is not JSON")

        if not isinstance(data, dict):
            return DispatchResult(error="dispatch response is not a JSON object")
        replies = [str(r) for r in data.get("replies") or [] if isinstance(r, str) and r.strip()]
        error = data.get("error")
        return DispatchResult(replies=replies, error=str(error) if error else None)
