"""Tests for the background worker and job contracts."""

import threading
from unittest.mock import patch

import pytest

from kfbridge.observability.correlation import get_correlation_id
from kfbridge.tasks import worker as worker_module
from kfbridge.tasks.contracts import CallbackJob
from kfbridge.tasks.worker import DrainWorker

from helpers import LogRecorder


@pytest.fixture
def worker():
    w = DrainWorker(max_workers=2)
    yield w
    w.shutdown(wait=True)


class TestCallbackJob:
    def test_drain_key_joins_path_and_account(self):
        job = CallbackJob(path="/wecom-kf", account_id="acct-a", encrypt="ENC")
        assert job.drain_key == "/wecom-kf|acct-a"

    def test_drain_key_ignores_envelope_and_correlation(self):
        a = CallbackJob(path="/kf", account_id="a", encrypt="E1", correlation_id="c1")
        b = CallbackJob(path="/kf", account_id="a", encrypt="E2", correlation_id="c2")
        assert a.drain_key == b.drain_key
        assert a.drain_key != CallbackJob(path="/kf", account_id="b").drain_key


class TestDrainWorker:
    def test_runs_job_and_returns_result(self, worker):
        future = worker.submit(lambda a, b: a + b, 2, 3)
        assert future.result(timeout=5) == 5

    def test_correlation_id_set_inside_job(self, worker):
        future = worker.submit(get_correlation_id, correlation_id="cid-42")
        assert future.result(timeout=5) == "cid-42"

    def test_failure_is_logged_and_contained(self, worker):
        recorder = LogRecorder()

        def explode():
            raise RuntimeError("boom")

        with patch.object(worker_module, "logger", recorder):
            future = worker.submit(explode)
            assert future.result(timeout=5) is None
        assert recorder.messages("exception") == ["background job failed"]

    def test_wait_idle(self, worker):
        release = threading.Event()
        worker.submit(release.wait, 5)
        assert worker.pending() == 1
        assert worker.wait_idle(timeout=0.05) is False

        release.set()

        assert worker.wait_idle(timeout=5) is True
        assert worker.pending() == 0

    def test_submit_after_shutdown_raises(self):
        w = DrainWorker(max_workers=1)
        w.shutdown()
        with pytest.raises(RuntimeError):
            w.submit(lambda: None)
