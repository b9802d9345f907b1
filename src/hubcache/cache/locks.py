"""Per-key fetch locks shared by threads and processes.

A :class:`LockManager` hands out one lock per download key (a content id, or
a :class:`~hubcache.models.RefKey` when the hub supplies no identity). Each
key is guarded twice:

* a :class:`threading.RLock` serialises threads of this process and lets the
  thread that already holds the key re-enter without deadlocking;
* a :class:`filelock.FileLock` on ``tmp/<digest>.lock`` serialises processes
  sharing the cache root. It is taken only by the outermost acquisition.

``filelock`` uses ``fcntl.flock`` on POSIX and ``msvcrt.locking`` on Windows;
both are released by the kernel when the holder dies, so a crashed process
never leaves a lock that must be stolen. Waiting is bounded by ``timeout``.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Iterator, Optional, Union

import filelock

from hubcache.cache.layout import CacheLayout
from hubcache.exceptions import LockTimeoutError
from hubcache.models import RefKey

logger = logging.getLogger(__name__)

LockKey = Union[str, RefKey]


class _KeyLock:
    """Book-keeping for one key: thread lock, file lock, holder depth and users."""

    __slots__ = ("rlock", "file_lock", "depth", "users")

    def __init__(self, file_lock: filelock.FileLock) -> None:
        self.rlock = threading.RLock()
        self.file_lock = file_lock
        self.depth = 0
        self.users = 0


class LockManager:
    """Hands out scoped, re-entrant, cross-process locks keyed by download key.

    Args:
        layout: Cache layout; sentinel files live under its ``tmp/`` directory.
        default_timeout: Seconds to wait when :meth:`acquire` is called
            without an explicit timeout. ``None`` waits forever.

    Example::

        locks = LockManager(layout, default_timeout=600)
        with locks.acquire(content_id):
            ...  # fetch + publish
    """

    def __init__(self, layout: CacheLayout, default_timeout: Optional[float] = None) -> None:
        self._layout = layout
        self._default_timeout = default_timeout
        self._registry_lock = threading.Lock()
        self._locks: dict[str, _KeyLock] = {}

    @contextmanager
    def acquire(self, key: LockKey, timeout: Optional[float] = None) -> Iterator[None]:
        """Block until *key* is free, then hold it for the duration of the ``with`` block.

        Args:
            key: Content id or :class:`RefKey` naming the fetch.
            timeout: Seconds to wait; falls back to the manager's default.

        Raises:
            LockTimeoutError: If the lock could not be obtained in time.
        """
        if timeout is None:
            timeout = self._default_timeout
        digest = CacheLayout.key_digest(key)
        entry = self._checkout(digest)
        try:
            self._lock(entry, key, timeout)
            try:
                yield
            finally:
                self._unlock(entry)
        finally:
            self._checkin(digest, entry)

    @contextmanager
    def claim_idle(self, digest: str) -> Iterator[bool]:
        """Try, without waiting, to hold the key named by *digest*.

        Yields ``True`` while the key is held for the caller, or ``False``
        when a thread of this process or another process sharing the root
        already holds it. Used to reclaim abandoned partial downloads.
        """
        entry = self._checkout(digest)
        try:
            if not entry.rlock.acquire(blocking=False):
                yield False
                return
            try:
                # The calling thread itself may be the holder.
                if entry.depth > 0:
                    yield False
                    return
                try:
                    entry.file_lock.acquire(timeout=0)
                except filelock.Timeout:
                    yield False
                    return
                try:
                    yield True
                finally:
                    entry.file_lock.release()
            finally:
                entry.rlock.release()
        finally:
            self._checkin(digest, entry)

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _checkout(self, digest: str) -> _KeyLock:
        with self._registry_lock:
            entry = self._locks.get(digest)
            if entry is None:
                self._layout.tmp_dir.mkdir(parents=True, exist_ok=True)
                path = self._layout.digest_lock_path(digest)
                # One FileLock object per key, shared by this process's threads;
                # the RLock above already serialises them.
                entry = _KeyLock(filelock.FileLock(str(path), thread_local=False))
                self._locks[digest] = entry
            entry.users += 1
            return entry

    def _checkin(self, digest: str, entry: _KeyLock) -> None:
        with self._registry_lock:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(digest) is entry:
                del self._locks[digest]

    def _lock(self, entry: _KeyLock, key: LockKey, timeout: Optional[float]) -> None:
        started = time.monotonic()
        acquired = entry.rlock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            raise LockTimeoutError(f"Timed out after {timeout}s waiting for fetch lock on {key}")
        if entry.depth == 0:
            remaining = None if timeout is None else max(0.0, timeout - (time.monotonic() - started))
            try:
                entry.file_lock.acquire(timeout=-1 if remaining is None else remaining)
            except filelock.Timeout as exc:
                entry.rlock.release()
                raise LockTimeoutError(
                    f"Timed out after {timeout}s waiting for another process fetching {key}"
                ) from exc
            except BaseException:
                entry.rlock.release()
                raise
            logger.debug("Acquired fetch lock for %s", key)
        entry.depth += 1

    def _unlock(self, entry: _KeyLock) -> None:
        entry.depth -= 1
        try:
            if entry.depth == 0:
                entry.file_lock.release()
        finally:
            entry.rlock.release()
