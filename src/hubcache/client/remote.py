"""The two remote capabilities the cache consumes.

Anything that can list a revision's files and stream a file's bytes can
back a :class:`~hubcache.cache.HubCache`. :class:`~hubcache.client.hub_client.HubClient`
is the HTTP implementation; tests use an in-memory one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional, Protocol, Union, runtime_checkable

from hubcache.models import RemoteFileInfo, RepoType


@dataclass
class RemoteStream:
    """An open byte stream for one file, possibly starting mid-file.

    Attributes:
        total_size: Size of the complete file, when the remote reports it.
        content_id: Content identity the remote reports for these bytes
            (already normalised), or ``None``.
        start: Offset of the first byte yielded by :attr:`chunks`. A remote
            that ignores a range request reports ``0`` here.
        chunks: Iterator over the body. May raise
            :class:`~hubcache.exceptions.TransientFetchError` mid-way.
    """

    total_size: Optional[int]
    content_id: Optional[str]
    start: int
    chunks: Iterator[bytes]
    _close: Optional[Callable[[], None]] = field(default=None, repr=False)

    def close(self) -> None:
        if self._close is not None:
            close, self._close = self._close, None
            close()

    def __enter__(self) -> RemoteStream:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


@runtime_checkable
class RemoteSource(Protocol):
    """Metadata and byte access for hub repositories.

    Implementations raise :class:`~hubcache.exceptions.NotFoundError` for a
    missing repository, revision or file and
    :class:`~hubcache.exceptions.TransientFetchError` for failures worth
    retrying. Authentication and retry-with-backoff are their concern.
    """

    def fetch_metadata(
        self,
        repo_type: Union[RepoType, str],
        repo_id: str,
        revision: str,
        refresh: bool = False,
    ) -> dict[str, RemoteFileInfo]:
        """Every file of one revision, keyed by repo-relative filename.

        With *refresh*, bypass and replace any listing the source has cached.
        """
        ...

    def fetch_bytes(
        self,
        repo_type: Union[RepoType, str],
        repo_id: str,
        revision: str,
        filename: str,
        byte_range: Optional[tuple[int, Optional[int]]] = None,
    ) -> RemoteStream:
        """Open a stream over *filename*, from ``byte_range[0]`` when given."""
        ...

    def close(self) -> None:
        ...
