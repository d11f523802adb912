"""Thin client for the customer-service upstream API.

Purpose:
- Encapsulate HTTP calls so domain code never builds URLs or parses errcodes.
- Share one AccessTokenCache between the sync loop and the send paths.
- Never log access tokens, corp secrets, or message text.

Usage:
    client = KfApiClient()
    page = client.sync_messages(account, cursor="c1", open_kfid="wk123")
    result = client.send_message(account, {"touser": ..., "msgtype": "text", ...})
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import requests

from kfbridge.infra.accounts import ResolvedAccount
from kfbridge.observability.logging import get_logger
from kfbridge.observability.redaction import safe_log_context

from .errors import UpstreamError
from .models import SyncPage
from .token_cache import AccessTokenCache

logger = get_logger(__name__)

HTTP_TIMEOUT = 10.0

MAX_SYNC_LIMIT = 1000

# errcodes meaning the access token is invalid or expired
TOKEN_ERRCODES = frozenset({40001, 40014, 42001})


@dataclass(frozen=True)
class SendResult:
    """Result of a send call. errcode 0 means success."""

    errcode: int
    errmsg: str = ""
    msgid: str | None = None

    @property
    def ok(self) -> bool:
        return self.errcode == 0

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "SendResult":
        return cls(
            errcode=int(data.get("errcode") or 0),
            errmsg=str(data.get("errmsg") or ""),
            msgid=data.get("msgid") or None,
        )


@dataclass(frozen=True)
class MediaDownload:
    """Raw media bytes plus the headers needed to name the file."""

    content: bytes
    content_type: str | None
    content_disposition: str | None


class KfApiClient:
    """Upstream API wrapper bound to one requests session and token cache."""

    def __init__(
        self,
        session: requests.Session | None = None,
        *,
        timeout: float = HTTP_TIMEOUT,
        token_cache: AccessTokenCache | None = None,
    ) -> None:
        self._session = session or requests.Session()
        self._timeout = timeout
        self.token_cache = token_cache or AccessTokenCache(self.fetch_access_token)

    # ── transport ──────────────────────────────────────────

    def _url(self, account: ResolvedAccount, path: str) -> str:
        normalized = path if path.startswith("/") else f"/{path}"
        return f"{account.api_base_url}{normalized}"

    def _read_json(self, api: str, response: requests.Response) -> dict[str, Any]:
        try:
            response.raise_for_status()
            data = response.json()
        except requests.HTTPError as e:
            raise UpstreamError(api, -1, f"HTTP {response.status_code}") from e
        except ValueError as e:
            raise UpstreamError(api, -1, "response is not JSON") from e
        if not isinstance(data, dict):
            raise UpstreamError(api, -1, "response is not a JSON object")
        return data

    def _check(self, api: str, account: ResolvedAccount, data: dict[str, Any]) -> dict[str, Any]:
        errcode = int(data.get("errcode") or 0)
        if errcode != 0:
            if errcode in TOKEN_ERRCODES:
                self.token_cache.invalidate(account)
            raise UpstreamError(api, errcode, str(data.get("errmsg") or ""))
        return data

    def _post(
        self,
        api: str,
        account: ResolvedAccount,
        path: str,
        body: dict[str, Any],
    ) -> dict[str, Any]:
        access_token = self.token_cache.get_token(account)
        try:
            response = self._session.post(
                self._url(account, path),
                params={"access_token": access_token},
                json=body,
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            logger.error(
                "upstream request failed",
                extra={
                    "extra_fields": safe_log_context(
                        api=api,
                        account_id=account.account_id,
                        error_type=type(e).__name__,
                    )
                },
            )
            raise UpstreamError(api, -1, type(e).__name__) from e
        return self._read_json(api, response)

    # ── credentials ────────────────────────────────────────

    def fetch_access_token(self, account: ResolvedAccount) -> tuple[str, int]:
        """Issue a new access token. Used by the token cache on a miss.

        Returns:
            (access_token, expires_in_seconds)

        Raises:
            UpstreamError: On transport failure, non-zero errcode or empty token.
        """
        try:
            response = self._session.get(
                self._url(account, "/cgi-bin/gettoken"),
                params={"corpid": account.corp_id, "corpsecret": account.corp_secret},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise UpstreamError("gettoken", -1, type(e).__name__) from e

        data = self._read_json("gettoken", response)
        errcode = int(data.get("errcode") or 0)
        if errcode != 0:
            raise UpstreamError("gettoken", errcode, str(data.get("errmsg") or ""))
        token = data.get("access_token")
        if not token:
            raise UpstreamError("gettoken", -1, "empty access_token")
        return str(token), int(data.get("expires_in") or 0)

    # ── messages ───────────────────────────────────────────

    def sync_messages(
        self,
        account: ResolvedAccount,
        *,
        cursor: str | None = None,
        token: str | None = None,
        open_kfid: str | None = None,
        limit: int = MAX_SYNC_LIMIT,
        voice_format: int | None = None,
    ) -> SyncPage:
        """Fetch one page of messages.

        Args:
            account: Tenant.
            cursor: Resume pointer from a previous page.
            token: Short-lived delivery token from the callback.
            open_kfid: Channel-instance id.
            limit: Page size (1..1000).
            voice_format: Optional voice encoding selector.

        Raises:
            UpstreamError: On transport failure or non-zero errcode.
        """
        body: dict[str, Any] = {"limit": max(1, min(limit, MAX_SYNC_LIMIT))}
        if cursor:
            body["cursor"] = cursor
        if token:
            body["token"] = token
        if open_kfid:
            body["open_kfid"] = open_kfid
        if voice_format is not None:
            body["voice_format"] = voice_format

        data = self._post("sync_msg", account, "/cgi-bin/kf/sync_msg", body)
        return SyncPage.from_response(self._check("sync_msg", account, data))

    def send_message(self, account: ResolvedAccount, params: dict[str, Any]) -> SendResult:
        """Send a customer-directed message. Non-zero errcode is returned, not raised."""
        data = self._post("send_msg", account, "/cgi-bin/kf/send_msg", params)
        result = SendResult.from_response(data)
        if result.errcode in TOKEN_ERRCODES:
            self.token_cache.invalidate(account)
        return result

    def send_event_message(
        self,
        account: ResolvedAccount,
        code: str,
        msgtype: str,
        content: dict[str, Any],
    ) -> SendResult:
        """Send a one-time event-triggered message (e.g. welcome) using its code."""
        body: dict[str, Any] = {"code": code, "msgtype": msgtype, **content}
        data = self._post("send_msg_on_event", account, "/cgi-bin/kf/send_msg_on_event", body)
        result = SendResult.from_response(data)
        if result.errcode in TOKEN_ERRCODES:
            self.token_cache.invalidate(account)
        return result

    # ── media ──────────────────────────────────────────────

    def download_media(self, account: ResolvedAccount, media_id: str) -> MediaDownload:
        """Download media bytes by media_id (or a direct URL).

        Raises:
            UpstreamError: On transport failure, HTTP error, or a JSON error body.
        """
        if media_id.startswith(("http://", "https://")):
            url, params = media_id, None
        else:
            access_token = self.token_cache.get_token(account)
            url = self._url(account, "/cgi-bin/media/get")
            params = {"access_token": access_token, "media_id": media_id}

        try:
            response = self._session.get(url, params=params, timeout=self._timeout)
        except requests.RequestException as e:
            raise UpstreamError("media_get", -1, type(e).__name__) from e

        if not response.ok:
            raise UpstreamError("media_get", -1, f"HTTP {response.status_code}")

        content_type = response.headers.get("Content-Type")
        # Errors come back as a JSON body with a 200 status
        if content_type and content_type.startswith(("application/json", "text/plain")):
            try:
                data = response.json()
            except ValueError:
                data = None
            if isinstance(data, dict) and int(data.get("errcode") or 0) != 0:
                self._check("media_get", account, data)

        return MediaDownload(
            content=response.content,
            content_type=content_type,
            content_disposition=response.headers.get("Content-Disposition"),
        )
