"""Shared pytest fixtures for kfbridge tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from kfbridge.domain.events import EventRouter  # noqa: E402
from kfbridge.domain.sync import SyncLoop  # noqa: E402
from kfbridge.infra.cursor_store import CursorStore  # noqa: E402
from kfbridge.infra.dedup import DedupCache  # noqa: E402
from kfbridge.services.bridge import BridgeService, ServiceSettings  # noqa: E402

from helpers import FakeKfClient, RecordingDispatcher, make_account  # noqa: E402


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch, tmp_path):
    """Keep env fallbacks and the real home directory out of tests."""
    for name in (
        "KF_CONFIG_PATH",
        "WECOM_KF_CORP_ID",
        "WECOM_KF_CORP_SECRET",
        "WECOM_KF_OPEN_KF_ID",
        "WECOM_KF_TOKEN",
        "WECOM_KF_ENCODING_AES_KEY",
        "KF_DISPATCH_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("KF_CURSOR_FILE", str(tmp_path / "state" / "cursors.json"))


@pytest.fixture
def account():
    return make_account()


@pytest.fixture
def fake_client():
    return FakeKfClient()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def cursor_store(tmp_path):
    store = CursorStore(tmp_path / "cursors.json", debounce_seconds=60)
    yield store
    store.close()


@pytest.fixture
def sync_loop(fake_client, cursor_store, dispatcher):
    router = EventRouter(fake_client, dispatcher)
    return SyncLoop(fake_client, cursor_store, DedupCache(), router)


@pytest.fixture
def service(tmp_path, fake_client, dispatcher):
    settings = ServiceSettings(
        cursor_file=str(tmp_path / "cursors.json"),
        cursor_debounce_seconds=60,
        max_body_bytes=4096,
        drain_workers=2,
    )
    svc = BridgeService(settings, client=fake_client, dispatcher=dispatcher)
    yield svc
    svc.close()
