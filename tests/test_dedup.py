"""Tests for the processed-message dedup cache."""

from kfbridge.infra.dedup import DedupCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestDedupCache:
    def test_first_sight_is_not_duplicate(self):
        cache = DedupCache()
        assert cache.seen("m1") is False
        assert cache.seen("m1") is True
        assert "m1" in cache

    def test_empty_msgid_never_seen(self):
        cache = DedupCache()
        assert cache.seen("") is False
        assert cache.seen("") is False
        assert len(cache) == 0

    def test_expired_entry_is_new_again(self):
        clock = FakeClock()
        cache = DedupCache(600, clock=clock)
        cache.seen("m1")
        clock.now = 601
        assert cache.seen("m1") is False

    def test_prune_removes_old_entries(self):
        clock = FakeClock()
        cache = DedupCache(600, clock=clock)
        cache.seen("old")
        clock.now = 500
        cache.seen("new")
        clock.now = 700

        assert cache.prune() == 1
        assert "old" not in cache
        assert "new" in cache
