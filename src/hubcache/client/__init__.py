"""Remote access for hubcache.

:class:`RemoteSource` is the protocol the cache consumes; :class:`HubClient`
implements it over httpx against the hub REST API, optionally backed by a
:class:`MetadataCache` of tree listings.
"""

from hubcache.client.hub_client import HubClient
from hubcache.client.metadata_cache import MetadataCache
from hubcache.client.remote import RemoteSource, RemoteStream

__all__ = ["HubClient", "MetadataCache", "RemoteSource", "RemoteStream"]
