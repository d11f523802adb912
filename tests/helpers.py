"""Shared test helper functions for kfbridge tests.

This module contains helper functions that can be imported by both conftest.py
and individual test files. These are NOT fixtures - they are regular functions.
"""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

from kfbridge.domain.dispatch import DispatchResult, InboundContent
from kfbridge.infra.accounts import ResolvedAccount, resolve_account
from kfbridge.kf.client import MediaDownload, SendResult
from kfbridge.kf.crypto import encrypt_envelope
from kfbridge.kf.models import SyncPage
from kfbridge.kf.signature import compute_signature

# 43 chars; base64-decodes (with "=") to a 32-byte key
AES_KEY = "abcdefghijklmnopqrstuvwxyz0123456789ABCDEFG"
CORP_ID = "wwcorp0001"
CORP_SECRET = "corp-secret"
CALLBACK_TOKEN = "cb-token"
OPEN_KFID = "wkOPEN0001"
CUSTOMER = "wmCUSTOMER0001"

TIMESTAMP = "1700000000"
NONCE = "nonce-1"


def make_account(account_id: str = "acct-a", **overrides: Any) -> ResolvedAccount:
    """Resolve a fully configured non-default account (no env fallbacks)."""
    fields: dict[str, Any] = {
        "token": CALLBACK_TOKEN,
        "encoding_aes_key": AES_KEY,
        "corp_id": CORP_ID,
        "corp_secret": CORP_SECRET,
        "open_kf_id": OPEN_KFID,
        "inbound_media": {"enabled": False},
    }
    fields.update(overrides)
    return resolve_account({"accounts": {account_id: fields}}, account_id)


def encrypt(plaintext: str, *, key: str = AES_KEY, receive_id: str = CORP_ID) -> str:
    return encrypt_envelope(encoding_aes_key=key, receive_id=receive_id, plaintext=plaintext)


def signed_query(
    encrypt_value: str,
    *,
    token: str = CALLBACK_TOKEN,
    timestamp: str = TIMESTAMP,
    nonce: str = NONCE,
) -> dict[str, str]:
    return {
        "timestamp": timestamp,
        "nonce": nonce,
        "msg_signature": compute_signature(token, timestamp, nonce, encrypt_value),
    }


def callback_xml(token: str = "SYNC_TOKEN", open_kfid: str = OPEN_KFID) -> str:
    """Decrypted notification plaintext as the platform sends it."""
    return (
        "<xml>"
        "<ToUserName><![CDATA[wwcorp0001]]></ToUserName>"
        "<CreateTime>1700000000</CreateTime>"
        "<MsgType><![CDATA[event]]></MsgType>"
        "<Event><![CDATA[kf_msg_or_event]]></Event>"
        f"<Token><![CDATA[{token}]]></Token>"
        f"<OpenKfId><![CDATA[{open_kfid}]]></OpenKfId>"
        "</xml>"
    )


def text_item(
    msgid: str,
    content: str = "hello",
    *,
    origin: int = 3,
    external_userid: str = CUSTOMER,
    open_kfid: str = OPEN_KFID,
) -> dict[str, Any]:
    return {
        "msgid": msgid,
        "open_kfid": open_kfid,
        "external_userid": external_userid,
        "send_time": 1700000000,
        "origin": origin,
        "msgtype": "text",
        "text": {"content": content},
    }


def event_item(msgid: str, event_type: str, **fields: Any) -> dict[str, Any]:
    return {
        "msgid": msgid,
        "send_time": 1700000000,
        "origin": 4,
        "msgtype": "event",
        "event": {
            "event_type": event_type,
            "open_kfid": OPEN_KFID,
            "external_userid": CUSTOMER,
            **fields,
        },
    }


def page(items: list[dict[str, Any]], next_cursor: str = "", has_more: bool = False) -> dict[str, Any]:
    """Raw sync_msg response body."""
    return {
        "errcode": 0,
        "errmsg": "ok",
        "next_cursor": next_cursor,
        "has_more": 1 if has_more else 0,
        "msg_list": items,
    }


class FakeKfClient:
    """In-memory stand-in for KfApiClient. Pages are served in order."""

    def __init__(self, pages: list[Any] | None = None):
        self.pages: list[Any] = list(pages or [])
        self.sync_calls: list[dict[str, Any]] = []
        self.sent: list[dict[str, Any]] = []
        self.event_sends: list[dict[str, Any]] = []
        self.send_result = SendResult(errcode=0, errmsg="ok", msgid="out-1")
        self.media: dict[str, MediaDownload] = {}
        self.token_cache = MagicMock()

    def sync_messages(self, account, *, cursor=None, token=None, open_kfid=None, limit=1000, voice_format=None):
        self.sync_calls.append(
            {"cursor": cursor, "token": token, "open_kfid": open_kfid, "limit": limit}
        )
        if not self.pages:
            return SyncPage.from_response(page([]))
        item = self.pages.pop(0)
        if isinstance(item, Exception):
            raise item
        return SyncPage.from_response(item)

    def send_message(self, account, params):
        self.sent.append(params)
        return self.send_result

    def send_event_message(self, account, code, msgtype, content):
        self.event_sends.append({"code": code, "msgtype": msgtype, **content})
        return self.send_result

    def download_media(self, account, media_id):
        return self.media[media_id]


class RecordingDispatcher:
    """Dispatcher that records every message and answers with fixed replies."""

    def __init__(self, replies: list[str] | None = None, error: str | None = None):
        self.messages: list[InboundContent] = []
        self.replies = replies or []
        self.error = error

    def dispatch(self, message: InboundContent) -> DispatchResult:
        self.messages.append(message)
        return DispatchResult(replies=list(self.replies), error=self.error)

    @property
    def texts(self) -> list[str]:
        return [m.text for m in self.messages]


class LogRecorder:
    """Simple recorder to capture log calls deterministically."""

    def __init__(self):
        self.calls: list[tuple[str, tuple, dict]] = []

    def _record(self, level: str, *args, **kwargs):
        self.calls.append((level, args, kwargs))

    def info(self, *args, **kwargs):
        self._record("info", *args, **kwargs)

    def warning(self, *args, **kwargs):
        self._record("warning", *args, **kwargs)

    def error(self, *args, **kwargs):
        self._record("error", *args, **kwargs)

    def exception(self, *args, **kwargs):
        self._record("exception", *args, **kwargs)

    def debug(self, *args, **kwargs):
        self._record("debug", *args, **kwargs)

    def messages(self, level: str | None = None) -> list[str]:
        return [args[0] for lvl, args, _ in self.calls if level is None or lvl == level]

    def get_all_logged_content(self) -> str:
        """Concatenate all args and kwargs from all calls into one string."""
        parts = []
        for level, args, kwargs in self.calls:
            parts.append(str(args))
            parts.append(str(kwargs))
        return " ".join(parts)
