"""Content-addressed file cache with resumable, single-flight downloads.

The package is layered leaves first:

* :mod:`~hubcache.cache.layout` -- pure path mapping under the cache root.
* :mod:`~hubcache.cache.locks` -- per-key thread + process fetch locks.
* :mod:`~hubcache.cache.store` -- the serialised in-memory index.
* :mod:`~hubcache.cache.download` -- the download state machine.
* :mod:`~hubcache.cache.eviction` -- LRU eviction of unreferenced blobs.
* :mod:`~hubcache.cache.integrity` -- re-hashing and repair.
* :mod:`~hubcache.cache.hub_cache` -- the :class:`HubCache` facade.
"""

from hubcache.cache.download import DownloadAttempt, DownloadEngine, DownloadState
from hubcache.cache.eviction import EvictionPolicy
from hubcache.cache.hub_cache import HubCache
from hubcache.cache.layout import CacheLayout, make_ref_key
from hubcache.cache.locks import LockManager
from hubcache.cache.store import CacheMetadataStore

__all__ = [
    "CacheLayout",
    "CacheMetadataStore",
    "DownloadAttempt",
    "DownloadEngine",
    "DownloadState",
    "EvictionPolicy",
    "HubCache",
    "LockManager",
    "make_ref_key",
]
