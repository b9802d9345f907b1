"""The :class:`HubCache` facade: one object wiring the cache components together."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from hubcache.cache.download import DownloadEngine, ProgressCallback
from hubcache.cache.eviction import EvictionPolicy
from hubcache.cache.integrity import verify_integrity
from hubcache.cache.layout import INCOMPLETE_SUFFIX, SIDECAR_SUFFIX, CacheLayout
from hubcache.cache.locks import LockManager
from hubcache.cache.store import CacheMetadataStore
from hubcache.client.hub_client import HubClient
from hubcache.client.metadata_cache import MetadataCache
from hubcache.client.remote import RemoteSource
from hubcache.config import resolve_cache_dir, resolve_config
from hubcache.exceptions import InvalidArgumentError
from hubcache.models import (
    CacheConfig,
    CacheStats,
    EvictionResult,
    GlobalConfig,
    IntegrityReport,
    RefKey,
    RepoType,
)

logger = logging.getLogger(__name__)


class HubCache:
    """Local cache of hub files.

    Args:
        cache_dir: The cache root. Nothing is read from the environment here;
            use :meth:`from_config` for that.
        remote: Where missing files come from. ``None`` serves the cache only.
        config: Budget, lock timeout, chunking and retry settings.
        clock: Monotonic clock shared by the store and the eviction policy.
        metadata_cache: Listing cache the remote reads through, if any. A
            full :meth:`clear` empties it too.

    Example::

        with HubCache.from_config() as cache:
            path = cache.ensure_present("model", "gpt2", "main", "config.json")
    """

    def __init__(
        self,
        cache_dir: Union[str, Path],
        remote: Optional[RemoteSource] = None,
        config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        metadata_cache: Optional[MetadataCache] = None,
    ) -> None:
        self.config = config or CacheConfig()
        self.remote = remote
        self.metadata_cache = metadata_cache
        self.layout = CacheLayout(cache_dir)
        self.locks = LockManager(self.layout, default_timeout=self.config.lock_timeout)
        self.store = CacheMetadataStore(
            self.layout, max_size_bytes=self.config.max_size_bytes, clock=clock
        )
        self.eviction = EvictionPolicy(self.store, clock=clock, locks=self.locks)
        self.store.attach_eviction(self.eviction)
        self.engine = DownloadEngine(
            self.layout,
            self.store,
            self.locks,
            remote,
            chunk_size=self.config.chunk_size,
            resume_attempts=self.config.resume_attempts,
            corrupt_retries=self.config.corrupt_retries,
            lock_timeout=self.config.lock_timeout,
            offline=self.config.offline,
        )

    @classmethod
    def from_config(
        cls,
        config: Optional[GlobalConfig] = None,
        remote: Optional[RemoteSource] = None,
    ) -> HubCache:
        """Build a cache from the resolved user configuration.

        When *remote* is omitted an :class:`~hubcache.client.hub_client.HubClient`
        is created for the configured endpoint, with its tree listings cached
        under ``<cache_dir>/metadata``.
        """
        config = config or resolve_config()
        root = resolve_cache_dir(config.cache.cache_dir)
        metadata_cache: Optional[MetadataCache] = None
        if remote is None:
            metadata_cache = MetadataCache(root, config.metadata_cache)
            remote = HubClient(config.hub, metadata_cache=metadata_cache)
        return cls(root, remote=remote, config=config.cache, metadata_cache=metadata_cache)

    def __enter__(self) -> HubCache:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        if self.remote is not None:
            self.remote.close()
        if self.metadata_cache is not None:
            self.metadata_cache.close()

    # ------------------------------------------------------------------ #
    # Lookups and downloads
    # ------------------------------------------------------------------ #

    def ensure_present(
        self,
        repo_type: Union[RepoType, str],
        repo_id: str,
        revision: str,
        filename: str,
        *,
        force_download: bool = False,
        progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """Local path of a file, downloading it first when it is not cached."""
        return self.engine.ensure_present(
            repo_type, repo_id, revision, filename, force_download=force_download, progress=progress
        )

    def is_cached(
        self, repo_type: Union[RepoType, str], repo_id: str, revision: str, filename: str
    ) -> bool:
        return self.store.lookup(repo_type, repo_id, revision, filename) is not None

    def cache_path(
        self, repo_type: Union[RepoType, str], repo_id: str, revision: str, filename: str
    ) -> Optional[Path]:
        """Blob path of a cached file, or ``None``. Never touches the network."""
        return self.store.lookup(repo_type, repo_id, revision, filename)

    def snapshot_download(
        self,
        repo_type: Union[RepoType, str],
        repo_id: str,
        revision: str,
        allow_patterns: Optional[Iterable[str]] = None,
        ignore_patterns: Optional[Iterable[str]] = None,
        max_workers: Optional[int] = None,
        force_download: bool = False,
    ) -> Path:
        """Cache every matching file of a revision and return its snapshot directory."""
        return self.engine.snapshot_download(
            repo_type,
            repo_id,
            revision,
            allow_patterns=allow_patterns,
            ignore_patterns=ignore_patterns,
            max_workers=max_workers or self.config.max_workers,
            force_download=force_download,
        )

    # ------------------------------------------------------------------ #
    # Maintenance
    # ------------------------------------------------------------------ #

    def stats(self) -> CacheStats:
        return self.store.stats()

    def clear(
        self,
        repo_id: Optional[str] = None,
        repo_type: Union[RepoType, str, None] = None,
    ) -> int:
        """Remove cached refs and the blobs only they referenced.

        With no arguments the whole cache is emptied, including orphaned
        blobs and partial downloads that no running fetch holds, in this
        process or another one sharing the root, and every cached tree
        listing.

        Returns:
            Number of snapshot refs removed.
        """
        if repo_type is not None:
            try:
                kind: Optional[RepoType] = RepoType(repo_type)
            except ValueError as exc:
                raise InvalidArgumentError(f"Unknown repo type: {repo_type!r}") from exc
        else:
            kind = None

        def _matches(key: RefKey) -> bool:
            return (repo_id is None or key.repo_id == repo_id) and (
                kind is None or key.repo_type == kind
            )

        clear_all = repo_id is None and kind is None
        if clear_all:
            # Pick up blobs and links written by other processes.
            self.store.rescan()
        refs, blobs = self.store.remove_refs(_matches)
        swept = EvictionResult(requested_bytes=0)
        if clear_all:
            for entry in self.store.unreferenced_entries():
                self.eviction.remove_entry(entry, swept)
            self._clear_partials()
            if self.metadata_cache is not None:
                self.metadata_cache.clear()
        logger.info("Cleared %d ref(s) and %d blob(s)", len(refs), len(blobs) + len(swept.removed))
        return len(refs)

    def evict(self, target_bytes_to_free: int, strict: bool = False) -> int:
        """Evict unreferenced blobs, least recently used first. Returns bytes freed."""
        return self.eviction.evict(target_bytes_to_free, strict=strict).freed_bytes

    def evict_older_than(self, max_age_seconds: float) -> EvictionResult:
        return self.eviction.evict_older_than(max_age_seconds)

    def verify(self, repair: bool = False, strict: bool = False) -> IntegrityReport:
        """Re-hash every blob; see :func:`~hubcache.cache.integrity.verify_integrity`."""
        return verify_integrity(self.store, repair=repair, strict=strict)

    def _clear_partials(self) -> None:
        tmp = self.layout.tmp_dir
        if not tmp.is_dir():
            return
        partials: dict[str, list[Path]] = {}
        for path in tmp.iterdir():
            if path.suffix in (INCOMPLETE_SUFFIX, SIDECAR_SUFFIX):
                partials.setdefault(path.stem, []).append(path)
        for digest, paths in partials.items():
            # A fetch in any process sharing the root holds this lock while it streams.
            with self.locks.claim_idle(digest) as claimed:
                if not claimed:
                    logger.debug("Keeping partial download %s; its fetch is in progress", digest)
                    continue
                for path in paths:
                    path.unlink(missing_ok=True)
                    logger.debug("Removed partial download %s", path)
