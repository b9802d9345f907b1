"""Synchronous HTTP client for the hub REST API.

This module provides :class:`HubClient`, the :class:`~hubcache.client.remote.RemoteSource`
used outside of tests. It wraps :class:`httpx.Client` and layers on:

- **Tree listing** -- ``GET /api/{type}s/{repo_id}/tree/{revision}?recursive=1``
  with ``Link: rel="next"`` pagination, decoded into
  :class:`~hubcache.models.RemoteFileInfo` records.
- **Ranged downloads** -- ``GET /{prefix}{repo_id}/resolve/{revision}/{filename}``
  with ``Range: bytes=<start>-``, streamed chunk by chunk.
- **Auth injection** -- an optional bearer token read from the environment
  variable named by :attr:`~hubcache.models.HubConfig.token_env`.
- **Metadata caching** -- optional TTL cache via
  :class:`~hubcache.client.metadata_cache.MetadataCache`.
- **Retry with backoff** -- metadata requests retry on 5xx and network
  errors with exponential delay (1 s, 2 s, 4 s, ...). Downloads do not
  retry here; the download engine resumes them.
"""

from __future__ import annotations

import logging
import os
import re
import time
from typing import Any, Callable, Iterator, Optional, Union
from urllib.parse import quote

import httpx

from hubcache import __version__
from hubcache.client.metadata_cache import MetadataCache
from hubcache.client.remote import RemoteStream
from hubcache.exceptions import (
    HubCacheError,
    NotFoundError,
    RangeNotSatisfiableError,
    TransientFetchError,
)
from hubcache.models import HubConfig, RemoteFileInfo, RepoType

logger = logging.getLogger(__name__)

_CONTENT_RANGE_RE = re.compile(r"^bytes (\d+)-(\d+)/(\d+|\*)$")
_DOWNLOAD_CHUNK = 1024 * 1024


def _etag_to_id(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip()
    if value.startswith("W/"):
        value = value[2:]
    return value.strip('"') or None


def _content_identity(response: httpx.Response) -> Optional[str]:
    """Hub identity of a downloaded file.

    ``/resolve/`` answers LFS files with a redirect to a CDN; the redirect
    carries ``X-Linked-Etag`` while the final response only has the CDN's
    own ETag.
    """
    for hop in (*response.history, response):
        linked = hop.headers.get("x-linked-etag")
        if linked:
            return _etag_to_id(linked)
    return _etag_to_id(response.headers.get("etag"))


class HubClient:
    """HTTP implementation of :class:`~hubcache.client.remote.RemoteSource`.

    Args:
        config: Endpoint, timeout, retry count, SSL and token settings.
        metadata_cache: Optional TTL cache for tree listings.
        transport: Optional httpx transport, e.g. ``httpx.MockTransport``
            in tests.
        sleep: Called with the backoff delay between retries.

    Example::

        with HubClient(HubConfig()) as hub:
            files = hub.fetch_metadata("model", "bert-base-uncased", "main")
    """

    def __init__(
        self,
        config: Optional[HubConfig] = None,
        metadata_cache: Optional[MetadataCache] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config or HubConfig()
        self._metadata_cache = metadata_cache
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.Client] = None

    # ------------------------------------------------------------------ #
    # Context manager
    # ------------------------------------------------------------------ #

    def __enter__(self) -> HubClient:
        self._http()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None
        if self._metadata_cache is not None:
            self._metadata_cache.close()

    # ------------------------------------------------------------------ #
    # RemoteSource
    # ------------------------------------------------------------------ #

    def fetch_metadata(
        self,
        repo_type: Union[RepoType, str],
        repo_id: str,
        revision: str,
        refresh: bool = False,
    ) -> dict[str, RemoteFileInfo]:
        """List every file of a revision.

        A cached listing is used unless *refresh* is set, in which case it is
        dropped and fetched again.

        Raises:
            NotFoundError: On 401 / 403 / 404.
            TransientFetchError: On 5xx or network errors after all retries.
        """
        kind = RepoType(repo_type)
        if self._metadata_cache is not None:
            if refresh:
                self._metadata_cache.invalidate(kind, repo_id, revision)
            else:
                cached = self._metadata_cache.get(kind, repo_id, revision)
                if cached is not None:
                    return cached

        url: Optional[str] = f"/api/{kind.value}s/{repo_id}/tree/{quote(revision, safe='')}"
        params: Optional[dict[str, Any]] = {"recursive": "1"}
        listing: dict[str, RemoteFileInfo] = {}
        while url:
            response = self._get_with_retry(url, params)
            self._map_response_error(response, repo_id, revision)
            for item in response.json():
                if item.get("type") != "file":
                    continue
                info = self._file_info(item)
                listing[info.filename] = info
            url = response.links.get("next", {}).get("url")
            params = None

        logger.debug("Listed %d file(s) in %s@%s", len(listing), repo_id, revision)
        if self._metadata_cache is not None:
            self._metadata_cache.set(kind, repo_id, revision, listing)
        return listing

    def fetch_bytes(
        self,
        repo_type: Union[RepoType, str],
        repo_id: str,
        revision: str,
        filename: str,
        byte_range: Optional[tuple[int, Optional[int]]] = None,
    ) -> RemoteStream:
        """Open a streaming download, from ``byte_range[0]`` when given.

        Raises:
            NotFoundError: On 401 / 403 / 404.
            RangeNotSatisfiableError: On 416.
            TransientFetchError: On 5xx or network errors, including
                failures while iterating the returned stream.
        """
        kind = RepoType(repo_type)
        url = (
            f"/{kind.url_prefix}{repo_id}/resolve/"
            f"{quote(revision, safe='')}/{quote(filename)}"
        )
        headers: dict[str, str] = {}
        if byte_range is not None:
            start, end = byte_range
            headers["Range"] = f"bytes={start}-{'' if end is None else end}"

        client = self._http()
        try:
            request = client.build_request("GET", url, headers=headers)
            response = client.send(request, stream=True)
        except httpx.TransportError as exc:
            raise TransientFetchError(f"Download of {filename} failed: {exc}") from exc

        if response.status_code == 416:
            response.close()
            raise RangeNotSatisfiableError(
                f"Server rejected range {headers.get('Range')} for {filename}"
            )
        if response.status_code >= 400:
            response.read()
            response.close()
            self._map_response_error(response, repo_id, revision, filename)

        start, total = self._parse_extent(response)
        return RemoteStream(
            total_size=total,
            content_id=_content_identity(response),
            start=start,
            chunks=self._iter_body(response, filename),
            _close=response.close,
        )

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _http(self) -> httpx.Client:
        if self._client is None:
            headers = {"User-Agent": f"hubcache/{__version__}"}
            token = os.environ.get(self._config.token_env)
            if token:
                headers["Authorization"] = f"Bearer {token}"
            self._client = httpx.Client(
                base_url=self._config.endpoint.rstrip("/"),
                timeout=self._config.timeout,
                verify=self._config.verify_ssl,
                follow_redirects=True,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    @staticmethod
    def _file_info(item: dict[str, Any]) -> RemoteFileInfo:
        lfs = item.get("lfs") or {}
        if lfs.get("oid"):
            return RemoteFileInfo(
                filename=item["path"],
                size=lfs.get("size", item.get("size", 0)),
                content_id=lfs["oid"],
                hash_algorithm="sha256",
            )
        oid = item.get("oid")
        return RemoteFileInfo(
            filename=item["path"],
            size=item.get("size", 0),
            content_id=oid,
            hash_algorithm="git-sha1" if oid else None,
        )

    @staticmethod
    def _parse_extent(response: httpx.Response) -> tuple[int, Optional[int]]:
        """Return ``(start, total_size)`` from the response headers."""
        if response.status_code == 206:
            match = _CONTENT_RANGE_RE.match(response.headers.get("content-range", ""))
            if match:
                total = None if match.group(3) == "*" else int(match.group(3))
                return int(match.group(1)), total
        length = response.headers.get("content-length")
        return 0, int(length) if length and length.isdigit() else None

    @staticmethod
    def _iter_body(response: httpx.Response, filename: str) -> Iterator[bytes]:
        try:
            yield from response.iter_bytes(_DOWNLOAD_CHUNK)
        except httpx.TransportError as exc:
            raise TransientFetchError(f"Download of {filename} interrupted: {exc}") from exc

    def _get_with_retry(self, url: str, params: Optional[dict[str, Any]]) -> httpx.Response:
        """GET with exponential-backoff retry.

        Retries on 5xx status codes and connection / timeout errors up to
        ``max_retries`` times. The delay doubles each attempt: 1 s, 2 s, 4 s, ...
        """
        client = self._http()
        max_retries = self._config.max_retries

        for attempt in range(max_retries + 1):
            try:
                response = client.get(url, params=params)
                if response.status_code >= 500 and attempt < max_retries:
                    delay = 2 ** attempt
                    logger.debug(
                        "Server error %d, retrying in %ds (attempt %d/%d)",
                        response.status_code,
                        delay,
                        attempt + 1,
                        max_retries,
                    )
                    self._sleep(delay)
                    continue
                return response
            except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as exc:
                if attempt < max_retries:
                    delay = 2 ** attempt
                    logger.debug(
                        "Connection error: %s, retrying in %ds (attempt %d/%d)",
                        exc,
                        delay,
                        attempt + 1,
                        max_retries,
                    )
                    self._sleep(delay)
                    continue
                raise TransientFetchError(
                    f"Connection failed after {max_retries + 1} attempts: {exc}"
                ) from exc

        raise TransientFetchError("Request failed after all retry attempts")  # pragma: no cover

    @staticmethod
    def _map_response_error(
        response: httpx.Response,
        repo_id: str,
        revision: str,
        filename: Optional[str] = None,
    ) -> None:
        """Raise the matching :class:`HubCacheError` for a 4xx / 5xx response."""
        status = response.status_code
        if status < 400:
            return
        target = f"{repo_id}@{revision}" + (f"/{filename}" if filename else "")
        if status in (401, 403, 404):
            raise NotFoundError(
                f"{target} not found or not accessible (HTTP {status})",
                repo_id=repo_id,
                revision=revision,
                filename=filename,
            )
        if status >= 500 or status == 429:
            raise TransientFetchError(f"Hub returned HTTP {status} for {target}")
        raise HubCacheError(f"Hub returned HTTP {status} for {target}")
