"""Tests for account resolution from channel config and env."""

import json

from kfbridge.infra.accounts import (
    DEFAULT_API_BASE_URL,
    DEFAULT_WEBHOOK_PATH,
    describe_account,
    list_account_ids,
    load_channel_config,
    resolve_account,
)


class TestLoadChannelConfig:
    def test_no_path_is_empty(self):
        assert load_channel_config() == {}

    def test_reads_path(self, tmp_path):
        path = tmp_path / "channel.json"
        path.write_text(json.dumps({"corp_id": "ww1"}))
        assert load_channel_config(str(path)) == {"corp_id": "ww1"}

    def test_env_path(self, tmp_path, monkeypatch):
        path = tmp_path / "channel.json"
        path.write_text(json.dumps({"corp_id": "ww2"}))
        monkeypatch.setenv("KF_CONFIG_PATH", str(path))
        assert load_channel_config() == {"corp_id": "ww2"}

    def test_missing_file_is_empty(self, tmp_path):
        assert load_channel_config(str(tmp_path / "nope.json")) == {}

    def test_invalid_json_is_empty(self, tmp_path):
        path = tmp_path / "channel.json"
        path.write_text("{")
        assert load_channel_config(str(path)) == {}


class TestListAccountIds:
    def test_default_first(self):
        cfg = {"accounts": {"b": {}, "default": {}, "a": {}}}
        assert list_account_ids(cfg) == ["default", "b", "a"]

    def test_empty(self):
        assert list_account_ids({}) == ["default"]


class TestResolveAccount:
    def test_per_account_overrides_top_level(self):
        cfg = {
            "corp_id": "top",
            "corp_secret": "s",
            "accounts": {"a": {"corp_id": "mine", "open_kf_id": "wk1"}},
        }
        account = resolve_account(cfg, "a")
        assert account.corp_id == "mine"
        assert account.corp_secret == "s"
        assert account.can_send_active is True
        assert account.configured is False

    def test_env_fallback_for_default_only(self, monkeypatch):
        monkeypatch.setenv("WECOM_KF_CORP_ID", "ww-env")
        assert resolve_account({}).corp_id == "ww-env"
        assert resolve_account({"accounts": {"a": {}}}, "a").corp_id is None

    def test_default_account_setting(self):
        cfg = {"default_account": "b", "accounts": {"b": {"name": "Shop B"}}}
        account = resolve_account(cfg)
        assert account.account_id == "b"
        assert account.name == "Shop B"

    def test_configured_requires_all_fields(self):
        cfg = {
            "token": "t",
            "encoding_aes_key": "k",
            "corp_id": "c",
            "corp_secret": "s",
            "open_kf_id": "o",
        }
        assert resolve_account(cfg).configured is True

    def test_blank_values_are_missing(self):
        account = resolve_account({"corp_id": "   "})
        assert account.corp_id is None

    def test_defaults(self):
        account = resolve_account({})
        assert account.enabled is True
        assert account.webhook_path == DEFAULT_WEBHOOK_PATH
        assert account.api_base_url == DEFAULT_API_BASE_URL
        assert account.config.dm_policy == "open"
        assert account.config.inbound_media.enabled is True

    def test_disabled_and_policy(self):
        cfg = {"enabled": False, "dm_policy": "allowlist", "allow_from": ["u1", 2]}
        account = resolve_account(cfg)
        assert account.enabled is False
        assert account.config.allow_from == ("u1", "2")

    def test_api_base_url_trailing_slash(self):
        assert resolve_account({"api_base_url": "https://p.example/ "}).api_base_url == "https://p.example"

    def test_inbound_media_invalid_values_use_defaults(self):
        account = resolve_account({"inbound_media": {"max_bytes": -5, "keep_days": "x", "enabled": "yes"}})
        media = account.config.inbound_media
        assert media.max_bytes == 10 * 1024 * 1024
        assert media.keep_days == 7
        assert media.enabled is True


def test_describe_account_has_no_secrets():
    account = resolve_account({"corp_secret": "SECRET", "token": "TOKEN", "encoding_aes_key": "KEY"})
    summary = describe_account(account)
    assert "SECRET" not in json.dumps(summary)
    assert "TOKEN" not in json.dumps(summary)
    assert summary["account_id"] == "default"
