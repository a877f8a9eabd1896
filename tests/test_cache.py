"""Unit tests for the tree cache and query deduplication."""

import threading
import pytest
from dataclasses import replace

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.chains.cache import TreeCache, content_hash, structural_hash
from src.data.models import Chain, ChainType


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return TreeCache(ttl_seconds=30, clock=clock)


def _chains():
    return [
        Chain(id="g", type=ChainType.GROUP),
        Chain(id="u", parent_id="g", current_streak=1),
    ]


class TestHashes:
    def test_streak_changes_content_not_structure(self):
        a = _chains()
        b = [a[0], replace(a[1], current_streak=2)]
        assert structural_hash(a) == structural_hash(b)
        assert content_hash(a) != content_hash(b)

    def test_order_independent(self):
        a = _chains()
        assert content_hash(a) == content_hash(list(reversed(a)))


class TestTreeCache:
    def test_same_content_hits(self, cache):
        first = cache.get_tree(_chains())
        second = cache.get_tree(_chains())
        assert first is second
        assert cache.hits == 1

    def test_changed_counters_rebuild(self, cache):
        chains = _chains()
        first = cache.get_tree(chains)
        updated = [chains[0], replace(chains[1], current_streak=5)]
        second = cache.get_tree(updated)
        assert second is not first
        assert second[0].children[0].current_streak == 5

    def test_on_data_change_forces_rebuild(self, cache):
        first = cache.get_tree(_chains())
        cache.on_data_change("chains")
        assert cache.get_tree(_chains()) is not first

    def test_ttl_expiry(self, cache, clock):
        first = cache.get_tree(_chains())
        clock.now = 31
        assert cache.get_tree(_chains()) is not first


class TestDeduplicate:
    def test_cached_until_invalidated(self, cache):
        calls = []
        query = lambda: calls.append(1) or len(calls)
        assert cache.deduplicate("chains:active", query) == 1
        assert cache.deduplicate("chains:active", query) == 1
        cache.on_data_change("chains")
        assert cache.deduplicate("chains:active", query) == 2

    def test_unrelated_invalidation_keeps_entry(self, cache):
        cache.deduplicate("history:all", lambda: "h")
        cache.on_data_change("chains")
        assert "history:all" in cache.stats()["cache_keys"]

    def test_any_change_drops_batched_data(self, cache):
        cache.deduplicate("batchedData", lambda: "batch")
        cache.on_data_change("history")
        assert "batchedData" not in cache.stats()["cache_keys"]

    def test_errors_are_not_cached(self, cache):
        def boom():
            raise RuntimeError("store down")

        with pytest.raises(RuntimeError):
            cache.deduplicate("chains:active", boom)
        assert cache.deduplicate("chains:active", lambda: "ok") == "ok"
        assert cache.stats()["pending_queries"] == 0

    def test_concurrent_callers_share_one_fetch(self, cache):
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow():
            calls.append(1)
            started.set()
            release.wait(5)
            return "value"

        results = []
        first = threading.Thread(target=lambda: results.append(cache.deduplicate("k", slow)))
        first.start()
        started.wait(5)
        second = threading.Thread(target=lambda: results.append(cache.deduplicate("k", slow)))
        second.start()
        release.set()
        first.join(5)
        second.join(5)

        assert results == ["value", "value"]
        assert len(calls) == 1

    def test_clear(self, cache):
        cache.deduplicate("k", lambda: 1)
        cache.get_tree(_chains())
        cache.clear()
        assert cache.stats()["cache_size"] == 0
