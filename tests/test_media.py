"""Tests for inbound media storage and retention."""

import os
from datetime import datetime, timedelta

import pytest

from kfbridge.infra.accounts import InboundMediaConfig
from kfbridge.kf.client import MediaDownload
from kfbridge.kf.media import (
    InboundMediaError,
    parse_content_disposition_filename,
    pick_extension,
    prune_inbound_media,
    save_inbound_media,
)

from helpers import FakeKfClient, make_account

NOW = datetime(2026, 3, 14, 12, 0, 0)


class TestContentDisposition:
    def test_plain_filename(self):
        assert parse_content_disposition_filename('attachment; filename="report.pdf"') == "report.pdf"

    def test_rfc5987_filename(self):
        header = "attachment; filename*=UTF-8''%E6%8A%A5%E5%91%8A.docx"
        assert parse_content_disposition_filename(header) == "报告.docx"

    def test_missing(self):
        assert parse_content_disposition_filename(None) is None
        assert parse_content_disposition_filename("inline") is None


class TestPickExtension:
    def test_filename_wins(self):
        assert pick_extension("image/png", 'attachment; filename="a.JPG"') == ".jpg"

    def test_mime_fallback(self):
        assert pick_extension("audio/amr; charset=binary", None) == ".amr"

    def test_unknown_is_bin(self):
        assert pick_extension("application/x-thing", None) == ".bin"


class TestSaveInboundMedia:
    def _client(self, content=b"data", content_type="image/jpeg"):
        client = FakeKfClient()
        client.media["M1"] = MediaDownload(content=content, content_type=content_type, content_disposition=None)
        return client

    def test_writes_into_dated_dir(self, tmp_path):
        account = make_account(inbound_media={"dir": str(tmp_path)})

        media = save_inbound_media(self._client(), account, kind="image", media_id="M1", now=NOW)

        path = tmp_path / "2026-03-14"
        assert media.path.startswith(str(path))
        saved = os.path.basename(media.path)
        assert saved.startswith("img-")
        assert saved.endswith(".jpg")
        with open(media.path, "rb") as fh:
            assert fh.read() == b"data"
        assert media.content_type == "image/jpeg"

    def test_rejects_oversized(self, tmp_path):
        account = make_account(inbound_media={"dir": str(tmp_path), "max_bytes": 3})
        with pytest.raises(InboundMediaError, match="file too large"):
            save_inbound_media(self._client(b"abcd"), account, kind="file", media_id="M1", now=NOW)
        assert not (tmp_path / "2026-03-14").exists()

    def test_unwritable_dir(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        account = make_account(inbound_media={"dir": str(blocker)})
        with pytest.raises(InboundMediaError, match="write failed"):
            save_inbound_media(self._client(), account, kind="voice", media_id="M1", now=NOW)


class TestPruneInboundMedia:
    def _aged_dir(self, base, name, age_days):
        directory = base / name
        directory.mkdir()
        item = directory / "img-1.jpg"
        item.write_bytes(b"x")
        stamp = (NOW - timedelta(days=age_days)).timestamp()
        os.utime(item, (stamp, stamp))
        os.utime(directory, (stamp, stamp))
        return item

    def test_removes_files_older_than_keep_days(self, tmp_path):
        old = self._aged_dir(tmp_path, "2026-03-01", 13)
        fresh = self._aged_dir(tmp_path, "2026-03-13", 1)
        config = InboundMediaConfig(dir=str(tmp_path), keep_days=7)

        assert prune_inbound_media(config, now=NOW) == 1
        assert not old.exists()
        assert fresh.exists()

    def test_ignores_non_dated_dirs(self, tmp_path):
        other = self._aged_dir(tmp_path, "keep-me", 30)
        config = InboundMediaConfig(dir=str(tmp_path), keep_days=7)
        assert prune_inbound_media(config, now=NOW) == 0
        assert other.exists()

    def test_negative_keep_days_disables(self, tmp_path):
        old = self._aged_dir(tmp_path, "2026-01-01", 60)
        config = InboundMediaConfig(dir=str(tmp_path), keep_days=-1)
        assert prune_inbound_media(config, now=NOW) == 0
        assert old.exists()

    def test_missing_dir(self, tmp_path):
        config = InboundMediaConfig(dir=str(tmp_path / "absent"))
        assert prune_inbound_media(config, now=NOW) == 0
