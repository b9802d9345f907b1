"""Resumable, verified, single-flight downloads into the cache.

:class:`DownloadEngine` drives one fetch through these states::

    CHECK_CACHE -> HIT | MISS -> ACQUIRE_LOCK -> RESUME_OR_START -> STREAM
                -> VERIFY -> PUBLISH -> RELEASE_LOCK -> DONE
                                 STREAM/VERIFY -> FAILED

The cache is checked without any lock. On a miss the engine asks the remote
for the file's size and content identity, links to an existing blob when the
same content is already cached (no bytes move), and otherwise takes the
per-identity fetch lock. Whoever wins the lock downloads; everyone else
finds the result in the cache when the lock is released.

A partial download lives at ``tmp/<digest>.incomplete`` next to a JSON
sidecar naming the content identity and size it was written for. It is
resumed only when the sidecar, the remote's reported identity and the
server's honoured range offset all agree; otherwise it is discarded.
Nothing reaches ``blobs/`` before the bytes pass verification.
"""

from __future__ import annotations

import enum
import fnmatch
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from hubcache.cache.integrity import hash_file, sha256_file
from hubcache.cache.layout import CacheLayout, make_ref_key, normalize_content_id
from hubcache.cache.locks import LockKey, LockManager
from hubcache.cache.store import CacheMetadataStore
from hubcache.client.remote import RemoteSource, RemoteStream
from hubcache.exceptions import (
    CacheEntryNotFoundError,
    CorruptDownloadError,
    NotFoundError,
    OfflineModeError,
    RangeNotSatisfiableError,
    TransientFetchError,
)
from hubcache.models import RefKey, RemoteFileInfo, RepoType

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class DownloadState(str, enum.Enum):
    """Where a :class:`DownloadAttempt` currently is."""

    CHECK_CACHE = "check_cache"
    HIT = "hit"
    MISS = "miss"
    ACQUIRE_LOCK = "acquire_lock"
    RESUME_OR_START = "resume_or_start"
    STREAM = "stream"
    VERIFY = "verify"
    PUBLISH = "publish"
    RELEASE_LOCK = "release_lock"
    DONE = "done"
    FAILED = "failed"


@dataclass
class DownloadAttempt:
    """Transient record of one fetch; only the partial file and sidecar outlive it."""

    key: RefKey
    content_id: Optional[str]
    temp_path: Path
    expected_size: int
    bytes_received: int = 0
    started_at: float = field(default_factory=time.monotonic)
    state: DownloadState = DownloadState.CHECK_CACHE

    def advance(self, state: DownloadState) -> None:
        logger.debug("%s: %s -> %s", self.key, self.state.value, state.value)
        self.state = state


class DownloadEngine:
    """Fetches files into the cache exactly once, however many callers ask.

    Args:
        layout: Cache paths.
        store: The metadata store to consult and publish into.
        locks: Per-identity fetch locks.
        remote: Where bytes and metadata come from.
        chunk_size: Bytes written per ``write`` call; the remote chooses how
            its stream is chunked.
        resume_attempts: In-process retries after a transient failure. A retry
            happens only when the failed attempt added bytes to the partial.
        corrupt_retries: Fresh restarts after a verification failure.
        lock_timeout: Seconds to wait for another fetch of the same file.
        offline: Never contact the remote; a miss raises
            :class:`OfflineModeError`.
    """

    def __init__(
        self,
        layout: CacheLayout,
        store: CacheMetadataStore,
        locks: LockManager,
        remote: Optional[RemoteSource],
        chunk_size: int = 10 * 1024 * 1024,
        resume_attempts: int = 2,
        corrupt_retries: int = 1,
        lock_timeout: Optional[float] = None,
        offline: bool = False,
    ) -> None:
        self.layout = layout
        self.store = store
        self.locks = locks
        self.remote = remote
        self.chunk_size = chunk_size
        self.resume_attempts = resume_attempts
        self.corrupt_retries = corrupt_retries
        self.lock_timeout = lock_timeout
        self.offline = offline

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def ensure_present(
        self,
        repo_type: Union[RepoType, str],
        repo_id: str,
        revision: str,
        filename: str,
        force_download: bool = False,
        progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """Return the local blob path of a file, downloading it if needed.

        Raises:
            InvalidArgumentError: For malformed coordinates.
            OfflineModeError: On a miss while offline.
            NotFoundError: If the hub has no such file.
            TransientFetchError: If the transfer keeps failing; the partial
                is kept for the next call.
            CorruptDownloadError: If the bytes never verify.
            LockTimeoutError: If another fetch of the same content holds the
                lock for too long.
        """
        key = make_ref_key(repo_type, repo_id, revision, filename)
        if not force_download:
            path = self.store.lookup_key(key)
            if path is not None:
                logger.debug("Cache hit for %s", key)
                return path
        if self.offline:
            raise OfflineModeError(
                f"{key} is not cached and offline mode is enabled"
            )
        info = self._file_info(key, refresh=force_download)
        return self.fetch(key, info, force_download=force_download, progress=progress)

    def fetch(
        self,
        key: RefKey,
        info: RemoteFileInfo,
        force_download: bool = False,
        progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """Bring *key* into the cache given already-known remote metadata."""
        cid = normalize_content_id(info.content_id) if info.content_id else None

        # Linking onto an existing blob also happens under the lock, so
        # eviction in another process cannot delete the blob mid-link.
        lock_key: LockKey = cid if cid is not None else key
        with self.locks.acquire(lock_key, timeout=self.lock_timeout):
            if not force_download:
                # Another caller may have finished, or the blob is already here.
                path = self.store.lookup_key(key)
                if path is not None and (cid is None or path.name == cid):
                    logger.debug("Fetched concurrently by another caller: %s", key)
                    return path
                if cid is not None:
                    linked = self._try_link(key, cid)
                    if linked is not None:
                        return linked
            path = self._download(key, info, cid, lock_key, force_download, progress)
        logger.debug("Released fetch lock for %s", key)
        return path

    def snapshot_download(
        self,
        repo_type: Union[RepoType, str],
        repo_id: str,
        revision: str,
        allow_patterns: Optional[Iterable[str]] = None,
        ignore_patterns: Optional[Iterable[str]] = None,
        max_workers: int = 8,
        force_download: bool = False,
    ) -> Path:
        """Ensure every matching file of a revision is cached; return its snapshot directory.

        Files are fetched in parallel. If any fail, the others still finish
        and the first error is raised afterwards.
        """
        snapshot_dir = self.layout.revision_dir(repo_type, repo_id, revision)
        if self.offline:
            if snapshot_dir.is_dir():
                return snapshot_dir
            raise OfflineModeError(
                f"No cached snapshot of {repo_id}@{revision} and offline mode is enabled"
            )

        listing = self._remote().fetch_metadata(repo_type, repo_id, revision, refresh=force_download)
        selected = filter_filenames(listing, allow_patterns, ignore_patterns)
        logger.info(
            "Snapshot %s@%s: %d of %d file(s) selected", repo_id, revision, len(selected), len(listing)
        )

        def _one(name: str) -> Path:
            key = make_ref_key(repo_type, repo_id, revision, name)
            if not force_download:
                path = self.store.lookup_key(key)
                if path is not None:
                    return path
            return self.fetch(key, listing[name], force_download=force_download)

        errors: list[BaseException] = []
        with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
            futures = [pool.submit(_one, name) for name in selected]
            for future in futures:
                exc = future.exception()
                if exc is not None:
                    errors.append(exc)
        if errors:
            logger.warning("Snapshot %s@%s: %d file(s) failed", repo_id, revision, len(errors))
            raise errors[0]
        snapshot_dir.mkdir(parents=True, exist_ok=True)
        return snapshot_dir

    # ------------------------------------------------------------------ #
    # Retry loops
    # ------------------------------------------------------------------ #

    def _download(
        self,
        key: RefKey,
        info: RemoteFileInfo,
        cid: Optional[str],
        lock_key: LockKey,
        force_download: bool,
        progress: Optional[ProgressCallback],
    ) -> Path:
        restarts_left = self.corrupt_retries
        while True:
            try:
                return self._download_resuming(key, info, cid, lock_key, force_download, progress)
            except CorruptDownloadError as exc:
                if restarts_left <= 0:
                    raise
                restarts_left -= 1
                logger.info("Restarting download of %s from scratch: %s", key, exc)

    def _download_resuming(
        self,
        key: RefKey,
        info: RemoteFileInfo,
        cid: Optional[str],
        lock_key: LockKey,
        force_download: bool,
        progress: Optional[ProgressCallback],
    ) -> Path:
        temp = self.layout.temp_path(lock_key)
        retries_left = self.resume_attempts
        while True:
            before = _file_size(temp)
            try:
                return self._attempt(key, info, cid, lock_key, force_download, progress)
            except RangeNotSatisfiableError:
                self._discard(lock_key)
                if retries_left <= 0:
                    raise
                retries_left -= 1
                logger.info("Server rejected resume range for %s; restarting", key)
            except TransientFetchError as exc:
                after = _file_size(temp)
                if retries_left <= 0 or after <= before:
                    raise
                retries_left -= 1
                logger.info(
                    "Transfer of %s interrupted at %d bytes (%s); resuming", key, after, exc
                )

    # ------------------------------------------------------------------ #
    # One attempt
    # ------------------------------------------------------------------ #

    def _attempt(
        self,
        key: RefKey,
        info: RemoteFileInfo,
        cid: Optional[str],
        lock_key: LockKey,
        force_download: bool,
        progress: Optional[ProgressCallback],
    ) -> Path:
        attempt = DownloadAttempt(
            key=key,
            content_id=cid,
            temp_path=self.layout.temp_path(lock_key),
            expected_size=info.size,
            state=DownloadState.ACQUIRE_LOCK,
        )
        try:
            attempt.advance(DownloadState.RESUME_OR_START)
            offset = self._resume_offset(attempt, lock_key)
            if offset < attempt.expected_size or attempt.expected_size == 0:
                attempt.advance(DownloadState.STREAM)
                self._stream(attempt, lock_key, offset, progress)

            attempt.advance(DownloadState.VERIFY)
            final_cid = self._verify(attempt, info, lock_key)

            attempt.advance(DownloadState.PUBLISH)
            blob = self.store.publish(
                key, final_cid, attempt.expected_size, attempt.temp_path, overwrite=force_download
            )
            self.layout.temp_meta_path(lock_key).unlink(missing_ok=True)
        except BaseException:
            attempt.advance(DownloadState.FAILED)
            raise
        attempt.advance(DownloadState.DONE)
        logger.info(
            "Downloaded %s (%d bytes in %.2fs)",
            key,
            attempt.expected_size,
            time.monotonic() - attempt.started_at,
        )
        return blob

    def _resume_offset(self, attempt: DownloadAttempt, lock_key: LockKey) -> int:
        temp = attempt.temp_path
        sidecar = self.layout.temp_meta_path(lock_key)
        offset = 0
        if attempt.content_id is not None and temp.is_file():
            recorded = _read_sidecar(sidecar)
            size = temp.stat().st_size
            if (
                recorded.get("content_id") == attempt.content_id
                and recorded.get("size") == attempt.expected_size
                and size <= attempt.expected_size
            ):
                offset = size
            else:
                logger.info("Discarding stale partial download for %s", attempt.key)
        if offset == 0:
            self._discard(lock_key)
            if attempt.content_id is not None:
                _write_sidecar(sidecar, attempt)
        else:
            logger.info("Resuming %s from byte %d of %d", attempt.key, offset, attempt.expected_size)
        return offset

    def _stream(
        self,
        attempt: DownloadAttempt,
        lock_key: LockKey,
        offset: int,
        progress: Optional[ProgressCallback],
    ) -> None:
        key = attempt.key
        remote = self._remote()
        byte_range = (offset, None) if offset else None
        stream = remote.fetch_bytes(key.repo_type, key.repo_id, key.revision, key.filename, byte_range)
        try:
            if offset and not self._can_resume(stream, attempt, offset):
                self._discard(lock_key)
                _write_sidecar(self.layout.temp_meta_path(lock_key), attempt)
                offset = 0
                if stream.start != 0:
                    stream.close()
                    stream = remote.fetch_bytes(
                        key.repo_type, key.repo_id, key.revision, key.filename, None
                    )
            elif (
                stream.content_id is not None
                and attempt.content_id is not None
                and stream.content_id != attempt.content_id
            ):
                logger.warning(
                    "Remote reports identity %s for %s, expected %s",
                    stream.content_id,
                    key,
                    attempt.content_id,
                )

            written = offset
            with open(attempt.temp_path, "ab" if offset else "wb") as fh:
                for chunk in _rechunk(stream.chunks, self.chunk_size):
                    written += len(chunk)
                    if written > attempt.expected_size:
                        break
                    fh.write(chunk)
                    attempt.bytes_received += len(chunk)
                    if progress is not None:
                        progress(written, attempt.expected_size)
        finally:
            stream.close()

        if written > attempt.expected_size:
            self._discard(lock_key)
            raise CorruptDownloadError(
                f"Remote sent more than the declared {attempt.expected_size} bytes for {key}",
                expected=attempt.expected_size,
                actual=written,
            )

    def _can_resume(self, stream: RemoteStream, attempt: DownloadAttempt, offset: int) -> bool:
        if stream.start != offset:
            logger.info(
                "Server ignored range request for %s (start=%d, wanted %d); restarting",
                attempt.key,
                stream.start,
                offset,
            )
            return False
        if stream.content_id is None or stream.content_id != attempt.content_id:
            logger.info(
                "Remote identity for %s is %s, partial was for %s; restarting",
                attempt.key,
                stream.content_id,
                attempt.content_id,
            )
            return False
        return True

    def _verify(self, attempt: DownloadAttempt, info: RemoteFileInfo, lock_key: LockKey) -> str:
        actual_size = _file_size(attempt.temp_path)
        if actual_size != attempt.expected_size:
            self._discard(lock_key)
            raise CorruptDownloadError(
                f"Size mismatch for {attempt.key}: expected {attempt.expected_size} bytes, "
                f"got {actual_size}",
                expected=attempt.expected_size,
                actual=actual_size,
            )
        if attempt.content_id is None:
            # No identity from the hub: address the blob by its own sha256.
            return sha256_file(attempt.temp_path)
        if info.hash_algorithm is not None:
            digest = hash_file(attempt.temp_path, info.hash_algorithm)
            if digest != attempt.content_id:
                self._discard(lock_key)
                raise CorruptDownloadError(
                    f"{info.hash_algorithm} mismatch for {attempt.key}: expected "
                    f"{attempt.content_id}, got {digest}",
                    expected=attempt.content_id,
                    actual=digest,
                )
        return attempt.content_id

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _try_link(self, key: RefKey, cid: str) -> Optional[Path]:
        if not self.store.has_blob(cid):
            return None
        try:
            path = self.store.link(key, cid)
        except CacheEntryNotFoundError:
            # Evicted between the check and the link.
            return None
        logger.debug("Deduplicated %s against cached blob %s", key, cid)
        return path

    def _file_info(self, key: RefKey, refresh: bool = False) -> RemoteFileInfo:
        listing = self._remote().fetch_metadata(
            key.repo_type, key.repo_id, key.revision, refresh=refresh
        )
        info = listing.get(key.filename)
        if info is None:
            raise NotFoundError(
                f"File '{key.filename}' not found in {key.repo_id}@{key.revision}",
                repo_id=key.repo_id,
                revision=key.revision,
                filename=key.filename,
            )
        return info

    def _remote(self) -> RemoteSource:
        if self.remote is None:
            raise OfflineModeError("No remote configured; only cached files are available")
        return self.remote

    def _discard(self, lock_key: LockKey) -> None:
        self.layout.temp_path(lock_key).unlink(missing_ok=True)
        self.layout.temp_meta_path(lock_key).unlink(missing_ok=True)


def filter_filenames(
    filenames: Iterable[str],
    allow_patterns: Optional[Iterable[str]] = None,
    ignore_patterns: Optional[Iterable[str]] = None,
) -> list[str]:
    """Filenames matching any allow pattern (all when none) and no ignore pattern."""
    allow = list(allow_patterns or [])
    ignore = list(ignore_patterns or [])
    selected = []
    for name in sorted(filenames):
        if allow and not any(fnmatch.fnmatch(name, p) for p in allow):
            continue
        if any(fnmatch.fnmatch(name, p) for p in ignore):
            continue
        selected.append(name)
    return selected


def _rechunk(chunks: Iterable[bytes], size: int) -> Iterable[bytes]:
    """Yield *chunks* split so no piece exceeds *size* bytes."""
    for chunk in chunks:
        if len(chunk) <= size:
            if chunk:
                yield chunk
            continue
        for i in range(0, len(chunk), size):
            yield chunk[i : i + size]


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except FileNotFoundError:
        return 0


def _read_sidecar(path: Path) -> dict:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def _write_sidecar(path: Path, attempt: DownloadAttempt) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "content_id": attempt.content_id,
        "size": attempt.expected_size,
        "key": str(attempt.key),
    }
    path.write_text(json.dumps(payload), encoding="utf-8")
