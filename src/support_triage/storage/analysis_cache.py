"""Per-thread cache of classification results with a TTL."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from support_triage.config.settings import MS_PER_DAY
from support_triage.core.exceptions import StorageError
from support_triage.core.models import CacheEntry, ClassificationResult
from support_triage.storage.document_store import DocumentStore

logger = logging.getLogger(__name__)

COLLECTION = "email_analyses"
DEFAULT_CACHE_DAYS = 30


class ClassificationCache:
    """Thread id → latest verdict, stored as one document per thread.

    No locking: concurrent writers for one thread are last-write-wins, and two
    concurrent misses may both classify the same thread.
    """

    def __init__(
        self,
        store: DocumentStore,
        ttl_days: int = DEFAULT_CACHE_DAYS,
        *,
        clock: Callable[[], float] = time.time,
        collection: str = COLLECTION,
    ) -> None:
        self._store = store
        self._ttl_ms = ttl_days * MS_PER_DAY
        self._clock = clock
        self._collection = collection

    @property
    def ttl_ms(self) -> int:
        return self._ttl_ms

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def is_fresh(entry: CacheEntry, now_ms: int) -> bool:
        return now_ms - entry.timestamp_ms < entry.ttl_ms

    def get(self, thread_id: str) -> CacheEntry | None:
        """Return the stored entry for a thread regardless of age.

        Unreadable or malformed documents count as absent.
        """
        try:
            document = self._store.get(self._collection, thread_id)
        except StorageError as e:
            logger.error("Cache read failed for thread %s: %s", thread_id, e)
            return None
        if not document:
            return None

        try:
            return CacheEntry(
                key=thread_id,
                result=ClassificationResult.from_dict(document["analysis"]),
                timestamp_ms=int(document["timestamp"]),
                ttl_ms=int(document.get("ttlMs", self._ttl_ms)),
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.debug("Invalid cache data for thread %s: %s", thread_id, e)
            return None

    def lookup(self, thread_id: str) -> CacheEntry | None:
        """Return the entry only if it is still fresh."""
        entry = self.get(thread_id)
        if entry is None or not self.is_fresh(entry, self.now_ms()):
            return None
        return entry

    def put(
        self, thread_id: str, result: ClassificationResult, ttl_ms: int | None = None
    ) -> CacheEntry:
        """Write (or supersede) the entry for a thread.

        A storage failure is logged and swallowed; the in-memory entry is
        returned either way.
        """
        entry = CacheEntry(
            key=thread_id,
            result=result,
            timestamp_ms=self.now_ms(),
            ttl_ms=self._ttl_ms if ttl_ms is None else ttl_ms,
        )
        try:
            self._store.set(self._collection, thread_id, entry.to_dict())
            logger.debug("Stored analysis for thread %s", thread_id)
        except StorageError as e:
            logger.error("Error storing analysis for thread %s: %s", thread_id, e)
        return entry
