"""Tests for the access token cache."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from kfbridge.kf.errors import UpstreamError
from kfbridge.kf.token_cache import AccessTokenCache, token_cache_key

from helpers import make_account


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestAccessTokenCache:
    def test_second_call_reuses_token(self, account):
        fetcher = MagicMock(return_value=("TOKEN-1", 7200))
        cache = AccessTokenCache(fetcher)

        assert cache.get_token(account) == "TOKEN-1"
        assert cache.get_token(account) == "TOKEN-1"
        fetcher.assert_called_once_with(account)

    def test_expires_after_validity_minus_margin(self, account):
        clock = FakeClock()
        fetcher = MagicMock(side_effect=[("TOKEN-1", 7200), ("TOKEN-2", 7200)])
        cache = AccessTokenCache(fetcher, clock=clock)

        cache.get_token(account)
        clock.now += 7200 - 300 - 1
        assert cache.get_token(account) == "TOKEN-1"

        clock.now += 1
        assert cache.get_token(account) == "TOKEN-2"
        assert fetcher.call_count == 2

    def test_zero_expires_in_uses_default_validity(self, account):
        clock = FakeClock()
        fetcher = MagicMock(return_value=("TOKEN-1", 0))
        cache = AccessTokenCache(fetcher, clock=clock)

        cache.get_token(account)
        clock.now += 3600
        cache.get_token(account)
        fetcher.assert_called_once()

    def test_keyed_by_corp(self):
        fetcher = MagicMock(side_effect=[("A", 7200), ("B", 7200)])
        cache = AccessTokenCache(fetcher)
        a = make_account("a", corp_id="corp-a")
        b = make_account("b", corp_id="corp-b")

        assert cache.get_token(a) == "A"
        assert cache.get_token(b) == "B"
        assert len(cache) == 2
        assert token_cache_key(a) == "corp-a:kf"

    def test_invalidate_forces_refetch(self, account):
        fetcher = MagicMock(side_effect=[("TOKEN-1", 7200), ("TOKEN-2", 7200)])
        cache = AccessTokenCache(fetcher)

        cache.get_token(account)
        cache.invalidate(account)
        assert cache.get_token(account) == "TOKEN-2"

    def test_invalidate_all(self, account):
        cache = AccessTokenCache(MagicMock(return_value=("T", 7200)))
        cache.get_token(account)
        cache.invalidate_all()
        assert len(cache) == 0

    def test_missing_credentials_raise(self):
        fetcher = MagicMock()
        cache = AccessTokenCache(fetcher)
        with pytest.raises(UpstreamError):
            cache.get_token(make_account(corp_secret=""))
        fetcher.assert_not_called()

    def test_fetch_error_is_not_cached(self, account):
        fetcher = MagicMock(side_effect=[UpstreamError("gettoken", 40013, "invalid corpid"), ("T", 7200)])
        cache = AccessTokenCache(fetcher)
        with pytest.raises(UpstreamError):
            cache.get_token(account)
        assert cache.get_token(account) == "T"

    def test_concurrent_misses_fetch_once(self, account):
        calls = []

        def slow_fetch(acct):
            calls.append(acct.account_id)
            time.sleep(0.05)
            return ("TOKEN", 7200)

        cache = AccessTokenCache(slow_fetch)
        results: list[str] = []
        threads = [
            threading.Thread(target=lambda: results.append(cache.get_token(account)))
            for _ in range(8)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == ["TOKEN"] * 8
        assert len(calls) == 1
