"""Customer-service account configuration.

Provides functions to load the channel configuration and resolve one
account (tenant) from it. A channel config holds top-level account fields,
an ``accounts`` map of per-account overrides and an optional
``default_account``.

Priority for each field:
1. Per-account value (accounts.<id>.<field>)
2. Top-level value
3. Environment variable (default account only)
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

from kfbridge.observability.logging import get_logger
from kfbridge.observability.redaction import safe_log_context

logger = get_logger(__name__)

DEFAULT_ACCOUNT_ID = "default"
DEFAULT_API_BASE_URL = "https://qyapi.weixin.qq.com"
DEFAULT_WEBHOOK_PATH = "/wecom-kf"

DEFAULT_INBOUND_MEDIA_DIR = str(Path.home() / ".kfbridge" / "media" / "inbound")
DEFAULT_INBOUND_MEDIA_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_INBOUND_MEDIA_KEEP_DAYS = 7

DmPolicy = Literal["open", "pairing", "allowlist", "disabled"]

# Env fallbacks, default account only
_ENV_FALLBACKS = {
    "corp_id": "WECOM_KF_CORP_ID",
    "corp_secret": "WECOM_KF_CORP_SECRET",
    "open_kf_id": "WECOM_KF_OPEN_KF_ID",
    "token": "WECOM_KF_TOKEN",
    "encoding_aes_key": "WECOM_KF_ENCODING_AES_KEY",
}


@dataclass(frozen=True)
class InboundMediaConfig:
    """Where and how inbound media is saved."""

    enabled: bool = True
    dir: str = DEFAULT_INBOUND_MEDIA_DIR
    max_bytes: int = DEFAULT_INBOUND_MEDIA_MAX_BYTES
    keep_days: int = DEFAULT_INBOUND_MEDIA_KEEP_DAYS

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "InboundMediaConfig":
        data = data or {}
        enabled = data.get("enabled")
        max_bytes = data.get("max_bytes")
        keep_days = data.get("keep_days")
        return cls(
            enabled=enabled if isinstance(enabled, bool) else True,
            dir=str(data.get("dir") or "").strip() or DEFAULT_INBOUND_MEDIA_DIR,
            max_bytes=max_bytes
            if isinstance(max_bytes, int) and max_bytes > 0
            else DEFAULT_INBOUND_MEDIA_MAX_BYTES,
            keep_days=keep_days if isinstance(keep_days, int) else DEFAULT_INBOUND_MEDIA_KEEP_DAYS,
        )


@dataclass(frozen=True)
class AccountConfig:
    """Merged raw configuration for one account."""

    name: str | None = None
    enabled: bool = True
    webhook_path: str | None = None
    token: str | None = None
    encoding_aes_key: str | None = None
    corp_id: str | None = None
    corp_secret: str | None = None
    open_kf_id: str | None = None
    api_base_url: str | None = None
    welcome_text: str | None = None
    dm_policy: str = "open"
    allow_from: tuple[str, ...] = ()
    inbound_media: InboundMediaConfig = field(default_factory=InboundMediaConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AccountConfig":
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {k: v for k, v in data.items() if k in known}
        values["enabled"] = data.get("enabled") is not False
        values["dm_policy"] = str(data.get("dm_policy") or "open")
        values["allow_from"] = tuple(str(x) for x in data.get("allow_from") or ())
        values["inbound_media"] = InboundMediaConfig.from_dict(data.get("inbound_media"))
        return cls(**values)


@dataclass(frozen=True)
class ResolvedAccount:
    """Tenant identity used by every component. Immutable while running."""

    account_id: str
    enabled: bool
    configured: bool
    can_send_active: bool
    config: AccountConfig
    name: str | None = None
    token: str | None = None
    encoding_aes_key: str | None = None
    corp_id: str | None = None
    corp_secret: str | None = None
    open_kf_id: str | None = None

    @property
    def api_base_url(self) -> str:
        return resolve_api_base_url(self.config)

    @property
    def webhook_path(self) -> str:
        return self.config.webhook_path or DEFAULT_WEBHOOK_PATH


def resolve_api_base_url(config: AccountConfig) -> str:
    """Return the API base URL without trailing slash."""
    raw = (config.api_base_url or "").strip()
    if not raw:
        return DEFAULT_API_BASE_URL
    return raw.rstrip("/")


def load_channel_config(path: str | None = None) -> dict[str, Any]:
    """Load the channel config JSON from path or KF_CONFIG_PATH.

    A missing or unreadable file yields an empty config (env-only mode).
    """
    config_path = path or os.environ.get("KF_CONFIG_PATH", "")
    if not config_path:
        return {}
    try:
        with open(config_path, encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError:
        logger.warning(
            "channel config file not found",
            extra={"extra_fields": safe_log_context(path=config_path)},
        )
        return {}
    except (OSError, json.JSONDecodeError) as e:
        logger.error(
            "channel config file unreadable",
            extra={"extra_fields": safe_log_context(path=config_path, error=type(e).__name__)},
        )
        return {}
    return data if isinstance(data, dict) else {}


def list_account_ids(channel_cfg: dict[str, Any]) -> list[str]:
    """Return the default account id followed by every configured account id."""
    ids = [DEFAULT_ACCOUNT_ID]
    for account_id in (channel_cfg.get("accounts") or {}).keys():
        if account_id != DEFAULT_ACCOUNT_ID:
            ids.append(account_id)
    return ids


def resolve_default_account_id(channel_cfg: dict[str, Any]) -> str:
    return str(channel_cfg.get("default_account") or "").strip() or DEFAULT_ACCOUNT_ID


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def resolve_account(channel_cfg: dict[str, Any], account_id: str | None = None) -> ResolvedAccount:
    """Merge top-level and per-account config into a ResolvedAccount.

    Args:
        channel_cfg: Channel configuration dict.
        account_id: Account to resolve. Defaults to the configured default.

    Returns:
        ResolvedAccount with capability flags computed.
    """
    resolved_id = (account_id or "").strip() or resolve_default_account_id(channel_cfg)
    is_default = resolved_id == DEFAULT_ACCOUNT_ID

    top_level = {k: v for k, v in channel_cfg.items() if k not in ("accounts", "default_account")}
    per_account = (channel_cfg.get("accounts") or {}).get(resolved_id) or {}
    merged = AccountConfig.from_dict({**top_level, **per_account})

    def pick(name: str) -> str | None:
        value = _clean(getattr(merged, name))
        if value is None and is_default:
            value = _clean(os.environ.get(_ENV_FALLBACKS[name]))
        return value

    corp_id = pick("corp_id")
    corp_secret = pick("corp_secret")
    open_kf_id = pick("open_kf_id")
    token = pick("token")
    encoding_aes_key = pick("encoding_aes_key")

    return ResolvedAccount(
        account_id=resolved_id,
        name=merged.name,
        enabled=merged.enabled,
        configured=bool(token and encoding_aes_key and corp_id and corp_secret and open_kf_id),
        can_send_active=bool(corp_id and corp_secret and open_kf_id),
        token=token,
        encoding_aes_key=encoding_aes_key,
        corp_id=corp_id,
        corp_secret=corp_secret,
        open_kf_id=open_kf_id,
        config=merged,
    )


def describe_account(account: ResolvedAccount) -> dict[str, Any]:
    """Non-secret summary of an account for status output."""
    return {
        "account_id": account.account_id,
        "name": account.name,
        "enabled": account.enabled,
        "configured": account.configured,
        "can_send_active": account.can_send_active,
        "webhook_path": account.webhook_path,
    }
