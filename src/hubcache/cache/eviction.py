"""LRU eviction of unreferenced blobs."""

from __future__ import annotations

import logging
import time
from contextlib import nullcontext
from typing import Callable, ContextManager, Optional

from hubcache.cache.layout import CacheLayout
from hubcache.cache.locks import LockManager
from hubcache.cache.store import CacheMetadataStore
from hubcache.exceptions import BudgetExceededError, CacheEntryNotFoundError
from hubcache.models import CacheEntry, EvictionResult

logger = logging.getLogger(__name__)


class EvictionPolicy:
    """Frees disk space by removing the least recently used unreferenced blobs.

    A blob that any SnapshotRef points at is never a candidate, so eviction
    can never delete a file a caller can currently reach by name.

    Args:
        store: The index to evict from; all deletions go through
            :meth:`CacheMetadataStore.remove`.
        clock: Must be the same monotonic clock the store stamps
            ``last_access`` with.
        locks: Fetch locks of the cache. A blob is only deleted while its
            lock is free, so no fetch in any process can link onto it
            mid-removal.
    """

    def __init__(
        self,
        store: CacheMetadataStore,
        clock: Callable[[], float] = time.monotonic,
        locks: Optional[LockManager] = None,
    ) -> None:
        self.store = store
        self.locks = locks
        self._clock = clock

    def candidates(self) -> list[CacheEntry]:
        """Unreferenced entries, least recently used first."""
        return sorted(
            self.store.unreferenced_entries(),
            key=lambda e: (e.last_access, e.content_id),
        )

    def evict(self, target_bytes: int, strict: bool = False) -> EvictionResult:
        """Remove candidates in LRU order until *target_bytes* have been freed.

        Args:
            target_bytes: Bytes to free. Zero or less is a no-op.
            strict: Raise instead of returning a result with a shortfall.

        Raises:
            BudgetExceededError: With *strict*, if not enough unreferenced
                content exists.
        """
        result = EvictionResult(requested_bytes=max(0, target_bytes))
        if target_bytes <= 0:
            return result
        for entry in self.candidates():
            if result.freed_bytes >= target_bytes:
                break
            self.remove_entry(entry, result)

        if result.budget_exceeded:
            message = (
                f"Eviction freed {result.freed_bytes} of {target_bytes} requested bytes; "
                f"{result.shortfall_bytes} bytes are still held by referenced content"
            )
            if strict:
                raise BudgetExceededError(message, shortfall_bytes=result.shortfall_bytes)
            logger.warning(message)
        elif result.removed:
            logger.info("Evicted %d blob(s), freed %d bytes", len(result.removed), result.freed_bytes)
        return result

    def enforce_budget(self, max_size_bytes: Optional[int]) -> EvictionResult:
        """Bring the cache back under *max_size_bytes* as far as possible. Never raises."""
        if max_size_bytes is None:
            return EvictionResult(requested_bytes=0)
        excess = self.store.total_size_bytes - max_size_bytes
        if excess <= 0:
            return EvictionResult(requested_bytes=0)
        logger.debug("Cache is %d bytes over its %d byte budget", excess, max_size_bytes)
        try:
            return self.evict(excess)
        except OSError as exc:
            logger.warning("Eviction after publish failed: %s", exc)
            return EvictionResult(requested_bytes=excess)

    def evict_older_than(self, max_age_seconds: float) -> EvictionResult:
        """Remove every unreferenced blob not accessed in the last *max_age_seconds*."""
        cutoff = self._clock() - max_age_seconds
        stale = [e for e in self.candidates() if e.last_access <= cutoff]
        result = EvictionResult(requested_bytes=sum(e.size_bytes for e in stale))
        for entry in stale:
            self.remove_entry(entry, result)
        if result.removed:
            logger.info(
                "Evicted %d blob(s) older than %ss, freed %d bytes",
                len(result.removed),
                max_age_seconds,
                result.freed_bytes,
            )
        return result

    def _claim(self, content_id: str) -> ContextManager[bool]:
        if self.locks is None:
            return nullcontext(True)
        return self.locks.claim_idle(CacheLayout.key_digest(content_id))

    def remove_entry(self, entry: CacheEntry, result: EvictionResult) -> None:
        """Delete one unreferenced blob unless a fetch holds it or it gained a ref."""
        with self._claim(entry.content_id) as claimed:
            if not claimed:
                logger.debug("Blob %s is being fetched; skipping", entry.content_id)
                return
            try:
                removed = self.store.remove(entry.content_id, require_unreferenced=True)
            except CacheEntryNotFoundError:
                logger.debug("Blob %s already removed by another caller", entry.content_id)
                return
        if removed is None:
            logger.debug("Blob %s gained a reference; skipping", entry.content_id)
            return
        result.freed_bytes += removed.size_bytes
        result.removed.append(removed.content_id)
