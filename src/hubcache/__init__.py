"""hubcache -- a local, content-addressed cache for files served by a model hub.

Files fetched from a versioned hub repository (models, datasets, spaces) are
stored once per content identity under a cache root, referenced from
per-revision snapshot trees, downloaded with resume support, and bounded in
size by least-recently-used eviction.

Typical usage::

    from hubcache import HubCache

    with HubCache.from_config() as cache:
        path = cache.ensure_present("model", "bert-base-uncased", "main", "config.json")

Modules:
    cache: Path layout, lock manager, metadata store, download engine,
        eviction policy and the :class:`HubCache` facade.
    client: The :class:`~hubcache.client.remote.RemoteSource` protocol and
        its httpx-backed implementation.
    models: Pydantic models shared across the package.
    config: XDG-aware configuration and precedence resolution.
    exceptions: Exception hierarchy with exit-code mapping.
    output: stdout/stderr formatting for the CLI.
"""

__version__ = "0.3.0"

from hubcache.cache import HubCache  # noqa: E402
from hubcache.models import CacheConfig, RepoType  # noqa: E402

__all__ = ["HubCache", "CacheConfig", "RepoType", "__version__"]
