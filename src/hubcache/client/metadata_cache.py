"""Disk-based TTL cache for repository file listings.

Uses :mod:`diskcache` to persist the decoded tree listing of a revision so
that repeated ``ensure_present`` calls on a miss do not hit the hub API every
time. Entries expire after
:attr:`~hubcache.models.MetadataCacheConfig.ttl_seconds`.

Cache keys are SHA-256 hashes of ``repo_type|repo_id|revision``.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Any, Optional, Union

import diskcache

from hubcache.models import MetadataCacheConfig, RemoteFileInfo, RepoType

logger = logging.getLogger(__name__)


class MetadataCache:
    """Disk-backed cache of ``fetch_metadata`` results.

    Stores a list of plain dicts (one per file) in a :class:`diskcache.Cache`
    directory so the pickled payload never depends on model classes.

    Args:
        cache_dir: Root directory for the cache. A ``metadata/``
            subdirectory is created inside it.
        config: ``enabled`` flag and ``ttl_seconds``.

    Example::

        cache = MetadataCache("/tmp/hub-meta", MetadataCacheConfig(ttl_seconds=60))
        cache.set("model", "bert-base-uncased", "main", listing)
        hit = cache.get("model", "bert-base-uncased", "main")
    """

    def __init__(self, cache_dir: Union[str, Path], config: MetadataCacheConfig) -> None:
        self._config = config
        self._cache: Optional[diskcache.Cache] = None
        self._cache_dir = Path(cache_dir)
        if config.enabled:
            self._cache = diskcache.Cache(str(self._cache_dir / "metadata"))

    def get(
        self, repo_type: Union[RepoType, str], repo_id: str, revision: str
    ) -> Optional[dict[str, RemoteFileInfo]]:
        """Return the cached listing, or ``None`` on a miss or when disabled."""
        if self._cache is None:
            return None
        raw = self._cache.get(self._make_key(repo_type, repo_id, revision))
        if raw is None:
            return None
        logger.debug("Metadata cache hit for %s@%s", repo_id, revision)
        return {item["filename"]: RemoteFileInfo.model_validate(item) for item in raw}

    def set(
        self,
        repo_type: Union[RepoType, str],
        repo_id: str,
        revision: str,
        listing: dict[str, RemoteFileInfo],
    ) -> None:
        """Store a listing for ``ttl_seconds``."""
        if self._cache is None:
            return
        payload = [info.model_dump() for info in listing.values()]
        self._cache.set(
            self._make_key(repo_type, repo_id, revision),
            payload,
            expire=self._config.ttl_seconds,
        )

    def invalidate(self, repo_type: Union[RepoType, str], repo_id: str, revision: str) -> None:
        if self._cache is None:
            return
        self._cache.delete(self._make_key(repo_type, repo_id, revision))

    def clear(self) -> None:
        """Remove all entries from the cache."""
        if self._cache is not None:
            self._cache.clear()

    def stats(self) -> dict[str, Any]:
        """Return cache statistics.

        Returns:
            A ``dict`` with ``enabled`` (bool), and when enabled:
            ``size`` (number of entries), ``directory`` (str path), and
            ``ttl_seconds`` (int).
        """
        if self._cache is None:
            return {"enabled": False}
        return {
            "enabled": True,
            "size": len(self._cache),
            "directory": str(self._cache_dir / "metadata"),
            "ttl_seconds": self._config.ttl_seconds,
        }

    def close(self) -> None:
        """Close the underlying :class:`diskcache.Cache` and release resources."""
        if self._cache is not None:
            self._cache.close()

    def _make_key(self, repo_type: Union[RepoType, str], repo_id: str, revision: str) -> str:
        raw = "|".join((RepoType(repo_type).value, repo_id, revision))
        return hashlib.sha256(raw.encode()).hexdigest()
