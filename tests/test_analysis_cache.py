"""Tests for ClassificationCache: TTL-bounded verdicts keyed by thread id."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from conftest import FakeClock

from support_triage.config.settings import MS_PER_DAY
from support_triage.core.exceptions import StorageError
from support_triage.core.models import CacheEntry, ClassificationResult
from support_triage.storage.analysis_cache import COLLECTION, ClassificationCache
from support_triage.storage.document_store import SQLiteDocumentStore


@pytest.fixture
def cache(store: SQLiteDocumentStore, clock: FakeClock) -> ClassificationCache:
    return ClassificationCache(store, ttl_days=30, clock=clock)


class TestFreshness:
    """An entry is fresh while now - timestamp < ttl."""

    def _entry(self, result: ClassificationResult, ts: int, ttl: int) -> CacheEntry:
        return CacheEntry(key="t1", result=result, timestamp_ms=ts, ttl_ms=ttl)

    def test_just_written_is_fresh(self, support_result: ClassificationResult) -> None:
        assert ClassificationCache.is_fresh(self._entry(support_result, 1000, 500), 1000)

    def test_one_ms_before_expiry_is_fresh(self, support_result: ClassificationResult) -> None:
        assert ClassificationCache.is_fresh(self._entry(support_result, 1000, 500), 1499)

    def test_exact_expiry_is_stale(self, support_result: ClassificationResult) -> None:
        assert not ClassificationCache.is_fresh(self._entry(support_result, 1000, 500), 1500)

    def test_ttl_days_converted_to_ms(self, store: SQLiteDocumentStore) -> None:
        assert ClassificationCache(store, ttl_days=30).ttl_ms == 30 * MS_PER_DAY


class TestPutAndGet:
    def test_put_then_get(
        self,
        cache: ClassificationCache,
        clock: FakeClock,
        support_result: ClassificationResult,
    ) -> None:
        written = cache.put("t1", support_result)
        read = cache.get("t1")

        assert read == written
        assert read is not None
        assert read.result == support_result
        assert read.timestamp_ms == int(clock.now * 1000)
        assert read.ttl_ms == 30 * MS_PER_DAY

    def test_persisted_document_shape(
        self,
        cache: ClassificationCache,
        store: SQLiteDocumentStore,
        support_result: ClassificationResult,
    ) -> None:
        cache.put("t1", support_result)
        document = store.get(COLLECTION, "t1")
        assert document is not None
        assert document["threadId"] == "t1"
        assert document["analysis"]["isSupport"] is True
        assert document["analysis"]["matchedFAQ"] == {
            "id": "faq_1",
            "question": "How do I reset my password?",
        }
        assert set(document) == {"threadId", "analysis", "timestamp", "ttlMs"}

    def test_put_supersedes(
        self,
        cache: ClassificationCache,
        clock: FakeClock,
        support_result: ClassificationResult,
    ) -> None:
        cache.put("t1", support_result)
        clock.advance(60)
        other = ClassificationResult(is_support=False, confidence=0.2)
        cache.put("t1", other)

        entry = cache.get("t1")
        assert entry is not None
        assert entry.result == other

    def test_missing_returns_none(self, cache: ClassificationCache) -> None:
        assert cache.get("absent") is None
        assert cache.lookup("absent") is None

    def test_per_entry_ttl_override(
        self, cache: ClassificationCache, support_result: ClassificationResult
    ) -> None:
        entry = cache.put("t1", support_result, ttl_ms=1234)
        assert entry.ttl_ms == 1234
        stored = cache.get("t1")
        assert stored is not None
        assert stored.ttl_ms == 1234


class TestLookup:
    def test_fresh_entry_returned(
        self,
        cache: ClassificationCache,
        clock: FakeClock,
        support_result: ClassificationResult,
    ) -> None:
        cache.put("t1", support_result)
        clock.advance(29 * 86400)
        assert cache.lookup("t1") is not None

    def test_stale_entry_hidden_but_still_readable(
        self,
        cache: ClassificationCache,
        clock: FakeClock,
        support_result: ClassificationResult,
    ) -> None:
        cache.put("t1", support_result)
        clock.advance(31 * 86400)
        assert cache.lookup("t1") is None
        assert cache.get("t1") is not None


class TestFailures:
    def test_malformed_document_is_absent(
        self, cache: ClassificationCache, store: SQLiteDocumentStore
    ) -> None:
        store.set(COLLECTION, "t1", {"threadId": "t1", "analysis": {"reason": "no verdict"}})
        assert cache.get("t1") is None

    def test_missing_timestamp_is_absent(
        self,
        cache: ClassificationCache,
        store: SQLiteDocumentStore,
        support_result: ClassificationResult,
    ) -> None:
        store.set(COLLECTION, "t1", {"analysis": support_result.to_dict()})
        assert cache.get("t1") is None

    def test_read_failure_is_absent(self, clock: FakeClock) -> None:
        broken = MagicMock()
        broken.get.side_effect = StorageError("disk gone")
        assert ClassificationCache(broken, clock=clock).get("t1") is None

    def test_write_failure_swallowed(
        self, clock: FakeClock, support_result: ClassificationResult
    ) -> None:
        broken = MagicMock()
        broken.set.side_effect = StorageError("read-only")

        entry = ClassificationCache(broken, clock=clock).put("t1", support_result)

        assert entry.result == support_result
        broken.set.assert_called_once()
