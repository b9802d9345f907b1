"""The cache metadata store: the single authority over the in-memory index.

:class:`CacheMetadataStore` owns the :class:`~hubcache.models.CacheEntry`
and :class:`~hubcache.models.SnapshotRef` records plus the running
``total_size_bytes``. Every mutation goes through one
:class:`threading.RLock`, so concurrent callers always see a fully applied
``publish`` or ``remove`` and never a torn total.

The index is only a cache of the disk. It is built lazily by scanning the
cache root on first use, self-heals when a blob vanishes underneath it, and
adopts snapshot links written by other processes when a lookup misses.
Losing it (a crash) loses no data.

Ordering of file-system steps in :meth:`CacheMetadataStore.publish` keeps
the disk valid at every instant:

1. ``os.replace`` the verified temp file onto ``blobs/<shard>/<id>``;
2. create the snapshot symlink under a temporary name and ``os.replace`` it
   into place;
3. update the index.

A crash after step 1 leaves an unreferenced blob (first in line for
eviction); a crash before it leaves only the temp file.
"""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional, Union

from hubcache.cache.layout import CacheLayout, make_ref_key, normalize_content_id
from hubcache.exceptions import CacheEntryNotFoundError, InvalidArgumentError
from hubcache.models import CacheEntry, CacheStats, RefKey, RepoType, SnapshotRef

if TYPE_CHECKING:
    from hubcache.cache.eviction import EvictionPolicy

logger = logging.getLogger(__name__)


class CacheMetadataStore:
    """Serialised index of cached blobs and the snapshot refs pointing at them.

    Args:
        layout: Where the cache lives on disk.
        max_size_bytes: Budget checked after each :meth:`publish`. When the
            total exceeds it and an eviction policy is attached, unreferenced
            blobs are evicted. ``None`` disables the check.
        clock: Monotonic clock used for ``last_access``. Injectable for tests.
        wall_clock: Wall clock used to map file access times found during a
            disk scan onto *clock*.
    """

    def __init__(
        self,
        layout: CacheLayout,
        max_size_bytes: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.layout = layout
        self.max_size_bytes = max_size_bytes
        self._clock = clock
        self._wall_clock = wall_clock
        self._lock = threading.RLock()
        self._entries: dict[str, CacheEntry] = {}
        self._refs: dict[RefKey, str] = {}
        self._by_content: dict[str, set[RefKey]] = {}
        self._total_size = 0
        self._loaded = False
        self._eviction: Optional[EvictionPolicy] = None

    def attach_eviction(self, policy: EvictionPolicy) -> None:
        """Let :meth:`publish` call *policy* when the budget is exceeded."""
        self._eviction = policy

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def lookup(
        self,
        repo_type: Union[RepoType, str],
        repo_id: str,
        revision: str,
        filename: str,
    ) -> Optional[Path]:
        """Return the blob path for a cached file, or ``None``.

        A hit records an access. An index entry whose blob has disappeared
        is dropped (and its snapshot links removed) before the disk is
        re-checked, so a stale index never produces a false hit.
        """
        key = make_ref_key(repo_type, repo_id, revision, filename)
        return self.lookup_key(key)

    def lookup_key(self, key: RefKey) -> Optional[Path]:
        with self._lock:
            self._ensure_loaded()
            cid = self._refs.get(key)
            entry = self._entries.get(cid) if cid is not None else None

        if entry is not None and entry.blob_path.is_file():
            self.record_access(entry.content_id)
            return entry.blob_path

        with self._lock:
            if cid is not None and self._refs.get(key) == cid and not self.layout.blob_path(cid).is_file():
                logger.warning(
                    "Cache index inconsistent: blob %s for %s vanished from disk; dropping it",
                    cid,
                    key,
                )
                self._forget_entry(cid, unlink_refs=True)
            path = self._adopt_from_disk(key)
        if path is not None:
            self.record_access(path.name)
        return path

    def has_blob(self, content_id: str) -> bool:
        """Whether a blob with *content_id* is present (index or disk)."""
        cid = normalize_content_id(content_id)
        with self._lock:
            self._ensure_loaded()
            return self._adopt_blob(cid) is not None

    def get_entry(self, content_id: str) -> Optional[CacheEntry]:
        """Return a copy of the entry for *content_id*, or ``None``."""
        with self._lock:
            self._ensure_loaded()
            entry = self._entries.get(normalize_content_id(content_id))
            return entry.model_copy() if entry is not None else None

    def ref_count(self, content_id: str) -> int:
        with self._lock:
            self._ensure_loaded()
            return len(self._by_content.get(normalize_content_id(content_id), ()))

    def entries(self) -> list[CacheEntry]:
        """Snapshot copies of every entry."""
        with self._lock:
            self._ensure_loaded()
            return [e.model_copy() for e in self._entries.values()]

    def unreferenced_entries(self) -> list[CacheEntry]:
        """Snapshot copies of entries that no SnapshotRef points at."""
        with self._lock:
            self._ensure_loaded()
            return [
                e.model_copy()
                for cid, e in self._entries.items()
                if not self._by_content.get(cid)
            ]

    def refs(self) -> list[SnapshotRef]:
        """Snapshot of every ref, sorted by repo, revision and filename."""
        with self._lock:
            self._ensure_loaded()
            refs = [SnapshotRef(key=k, content_id=c) for k, c in self._refs.items()]
        return sorted(
            refs,
            key=lambda r: (r.key.repo_type.value, r.key.repo_id, r.key.revision, r.key.filename),
        )

    def refs_for(self, content_id: str) -> list[RefKey]:
        with self._lock:
            self._ensure_loaded()
            return list(self._by_content.get(normalize_content_id(content_id), ()))

    def stats(self) -> CacheStats:
        """Totals computed from one consistent view of the index."""
        with self._lock:
            self._ensure_loaded()
            return CacheStats(
                total_size_bytes=self._total_size,
                entry_count=len(self._entries),
                ref_count=len(self._refs),
                repo_ids=sorted({k.repo_id for k in self._refs}),
                max_size_bytes=self.max_size_bytes,
                cache_dir=str(self.layout.root),
            )

    @property
    def total_size_bytes(self) -> int:
        with self._lock:
            self._ensure_loaded()
            return self._total_size

    # ------------------------------------------------------------------ #
    # Mutations
    # ------------------------------------------------------------------ #

    def record_access(self, content_id: str) -> None:
        """Mark *content_id* as just used. Never raises."""
        try:
            cid = normalize_content_id(content_id)
        except InvalidArgumentError:
            return
        with self._lock:
            entry = self._entries.get(cid)
            if entry is None:
                return
            entry.last_access = self._clock()
            blob = entry.blob_path
        # Persist recency in the blob's atime so a rescan keeps LRU order.
        try:
            now = self._wall_clock()
            os.utime(blob, (now, blob.stat().st_mtime))
        except OSError as exc:
            logger.debug("Could not update access time of %s: %s", blob, exc)

    def link(self, key: RefKey, content_id: str) -> Path:
        """Point *key* at an already-present blob without moving any bytes.

        Raises:
            CacheEntryNotFoundError: If the blob is not on disk.
        """
        cid = normalize_content_id(content_id)
        with self._lock:
            self._ensure_loaded()
            entry = self._adopt_blob(cid)
            if entry is None:
                raise CacheEntryNotFoundError(cid)
            self._write_snapshot_link(key, entry.blob_path)
            self._set_ref(key, cid)
            entry.last_access = self._clock()
            logger.debug("Linked %s to existing blob %s", key, cid)
            return entry.blob_path

    def publish(
        self,
        key: RefKey,
        content_id: str,
        size: int,
        temp_path: Path,
        overwrite: bool = False,
    ) -> Path:
        """Move a verified temp file into the blob store and point *key* at it.

        If a blob with the same content id already exists the temp file is
        discarded (dedup) and the total is unchanged, unless *overwrite* is
        set (forced re-download), in which case the new bytes replace it.

        Returns:
            The blob path.
        """
        cid = normalize_content_id(content_id)
        blob = self.layout.blob_path(cid)
        with self._lock:
            self._ensure_loaded()
            entry = self._adopt_blob(cid)
            if entry is not None and overwrite:
                os.replace(temp_path, blob)
                actual = blob.stat().st_size
                self._total_size += actual - entry.size_bytes
                entry.size_bytes = actual
                logger.debug("Replaced blob %s with a fresh download", cid)
            elif entry is not None:
                logger.debug("Blob %s already cached; discarding %s", cid, temp_path)
                Path(temp_path).unlink(missing_ok=True)
            else:
                blob.parent.mkdir(parents=True, exist_ok=True)
                os.replace(temp_path, blob)
                actual = blob.stat().st_size
                if actual != size:
                    logger.warning(
                        "Published blob %s is %d bytes, expected %d; recording on-disk size",
                        cid,
                        actual,
                        size,
                    )
                entry = CacheEntry(
                    content_id=cid,
                    size_bytes=actual,
                    blob_path=blob,
                    last_access=self._clock(),
                )
                self._entries[cid] = entry
                self._total_size += actual
            self._write_snapshot_link(key, blob)
            self._set_ref(key, cid)
            entry.last_access = self._clock()
            over_budget = (
                self.max_size_bytes is not None and self._total_size > self.max_size_bytes
            )
            logger.info("Published %s (%d bytes) as %s", key, entry.size_bytes, cid)

        if over_budget and self._eviction is not None:
            self._eviction.enforce_budget(self.max_size_bytes)
        return blob

    def remove(self, content_id: str, require_unreferenced: bool = False) -> Optional[CacheEntry]:
        """Delete a blob and every snapshot ref pointing at it, as one index operation.

        The blob is unlinked first; if that fails nothing changes. Snapshot
        link failures are logged and left for the next lookup to self-heal.

        Args:
            content_id: Blob to remove.
            require_unreferenced: Skip (and return ``None``) if a ref was
                added since the caller chose this blob. Links other processes
                wrote are found on disk and adopted. Eviction uses this.

        Returns:
            The removed entry, or ``None`` if skipped.

        Raises:
            CacheEntryNotFoundError: If no such blob exists.
        """
        cid = normalize_content_id(content_id)
        with self._lock:
            self._ensure_loaded()
            entry = self._adopt_blob(cid)
            if entry is None:
                raise CacheEntryNotFoundError(cid)
            if require_unreferenced and (self._by_content.get(cid) or self._adopt_links_to(cid)):
                return None
            entry.blob_path.unlink(missing_ok=True)
            removed = entry.model_copy()
            self._forget_entry(cid, unlink_refs=True)
            logger.info("Removed blob %s (%d bytes)", cid, removed.size_bytes)
            return removed

    def remove_refs(self, predicate: Callable[[RefKey], bool]) -> tuple[list[RefKey], list[CacheEntry]]:
        """Remove refs matching *predicate* and any blob left without refs by it.

        Blobs that were already unreferenced before the call are left alone.

        Returns:
            ``(removed_refs, removed_entries)``.
        """
        with self._lock:
            self._ensure_loaded()
            doomed = [k for k in self._refs if predicate(k)]
            touched: set[str] = set()
            for key in doomed:
                touched.add(self._refs[key])
                self._unlink_snapshot(key)
                self._drop_ref(key)
            removed: list[CacheEntry] = []
            for cid in touched:
                if self._by_content.get(cid) or self._adopt_links_to(cid):
                    continue
                entry = self._entries.get(cid)
                if entry is None:
                    continue
                entry.blob_path.unlink(missing_ok=True)
                removed.append(entry.model_copy())
                self._forget_entry(cid, unlink_refs=False)
            return doomed, removed

    def rescan(self) -> None:
        """Throw away the index and rebuild it from disk."""
        with self._lock:
            self._loaded = False
            self._ensure_loaded()

    # ------------------------------------------------------------------ #
    # Index internals (caller holds self._lock)
    # ------------------------------------------------------------------ #

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self._scan()
            self._loaded = True

    def _scan(self) -> None:
        self.layout.ensure_dirs()
        self._entries.clear()
        self._refs.clear()
        self._by_content.clear()
        self._total_size = 0

        for shard in sorted(self.layout.blobs_dir.iterdir()):
            if not shard.is_dir() or shard.is_symlink():
                continue
            for blob in shard.iterdir():
                if blob.is_symlink() or not blob.is_file():
                    continue
                try:
                    cid = normalize_content_id(blob.name)
                except InvalidArgumentError:
                    logger.warning("Ignoring foreign file in blob store: %s", blob)
                    continue
                self._register_blob(cid, blob, blob.stat())

        for dirpath, _dirnames, filenames in os.walk(self.layout.snapshots_dir):
            for name in filenames:
                link = Path(dirpath) / name
                if name.startswith(".") and name.endswith(".tmp"):
                    link.unlink(missing_ok=True)
                    continue
                if not link.is_symlink():
                    logger.debug("Ignoring non-link file in snapshot tree: %s", link)
                    continue
                try:
                    key = self.layout.parse_snapshot_path(link)
                except InvalidArgumentError:
                    logger.warning("Ignoring unrecognised snapshot path: %s", link)
                    continue
                cid = self._link_target_id(link)
                if cid is None or cid not in self._entries:
                    logger.warning("Removing dangling snapshot link %s", link)
                    link.unlink(missing_ok=True)
                    continue
                self._refs[key] = cid
                self._by_content.setdefault(cid, set()).add(key)

        logger.debug(
            "Scanned %s: %d blobs, %d refs, %d bytes",
            self.layout.root,
            len(self._entries),
            len(self._refs),
            self._total_size,
        )

    def _register_blob(self, cid: str, blob: Path, st: os.stat_result) -> CacheEntry:
        # Map the file's wall-clock access time onto the monotonic clock.
        seen = max(st.st_atime, st.st_mtime)
        last_access = self._clock() - max(0.0, self._wall_clock() - seen)
        entry = CacheEntry(
            content_id=cid,
            size_bytes=st.st_size,
            blob_path=blob,
            last_access=last_access,
        )
        self._entries[cid] = entry
        self._total_size += st.st_size
        return entry

    def _adopt_blob(self, cid: str) -> Optional[CacheEntry]:
        """Return the entry for *cid*, registering a blob another process wrote."""
        entry = self._entries.get(cid)
        blob = self.layout.blob_path(cid)
        if entry is not None:
            if blob.is_file():
                return entry
            logger.warning("Cache index inconsistent: blob %s vanished from disk; dropping it", cid)
            self._forget_entry(cid, unlink_refs=True)
            return None
        try:
            st = blob.stat()
        except FileNotFoundError:
            return None
        logger.debug("Adopting blob %s found on disk", cid)
        return self._register_blob(cid, blob, st)

    def _adopt_from_disk(self, key: RefKey) -> Optional[Path]:
        link = self.layout.snapshot_path_for(key)
        if not link.is_symlink():
            return None
        cid = self._link_target_id(link)
        entry = self._adopt_blob(cid) if cid is not None else None
        if entry is None:
            logger.warning("Removing dangling snapshot link %s", link)
            link.unlink(missing_ok=True)
            self._drop_ref(key)
            return None
        self._set_ref(key, cid)
        return entry.blob_path

    def _adopt_links_to(self, cid: str) -> list[RefKey]:
        """Register snapshot links on disk that point at *cid* but are missing from the index."""
        found: list[RefKey] = []
        for dirpath, _dirnames, filenames in os.walk(self.layout.snapshots_dir):
            for name in filenames:
                if name.startswith(".") and name.endswith(".tmp"):
                    continue
                link = Path(dirpath) / name
                if not link.is_symlink() or self._link_target_id(link) != cid:
                    continue
                try:
                    key = self.layout.parse_snapshot_path(link)
                except InvalidArgumentError:
                    continue
                logger.debug("Adopting snapshot link %s found on disk", link)
                self._set_ref(key, cid)
                found.append(key)
        return found

    def _link_target_id(self, link: Path) -> Optional[str]:
        """Content id named by a snapshot link, if it points into the blob store."""
        try:
            target = os.readlink(link)
        except OSError:
            return None
        resolved = Path(os.path.normpath(os.path.join(link.parent, target)))
        try:
            rel = resolved.relative_to(self.layout.blobs_dir)
        except ValueError:
            return None
        if len(rel.parts) != 2:
            return None
        try:
            return normalize_content_id(rel.parts[1])
        except InvalidArgumentError:
            return None

    def _set_ref(self, key: RefKey, cid: str) -> None:
        self._drop_ref(key)
        self._refs[key] = cid
        self._by_content.setdefault(cid, set()).add(key)

    def _drop_ref(self, key: RefKey) -> None:
        old = self._refs.pop(key, None)
        if old is not None:
            keys = self._by_content.get(old)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._by_content[old]

    def _forget_entry(self, cid: str, unlink_refs: bool) -> None:
        entry = self._entries.pop(cid, None)
        if entry is not None:
            self._total_size -= entry.size_bytes
        for key in list(self._by_content.get(cid, ())):
            if unlink_refs:
                self._unlink_snapshot(key)
            self._drop_ref(key)
        self._by_content.pop(cid, None)

    def _write_snapshot_link(self, key: RefKey, blob: Path) -> None:
        link = self.layout.snapshot_path_for(key)
        link.parent.mkdir(parents=True, exist_ok=True)
        target = os.path.relpath(blob, link.parent)
        staging = link.parent / f".{link.name}.{uuid.uuid4().hex}.tmp"
        os.symlink(target, staging)
        try:
            os.replace(staging, link)
        except BaseException:
            staging.unlink(missing_ok=True)
            raise

    def _unlink_snapshot(self, key: RefKey) -> None:
        link = self.layout.snapshot_path_for(key)
        try:
            link.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove snapshot link %s: %s", link, exc)
            return
        self._prune_empty_dirs(link.parent)

    def _prune_empty_dirs(self, directory: Path) -> None:
        root = self.layout.snapshots_dir
        current = directory
        while current != root and root in current.parents:
            try:
                current.rmdir()
            except OSError:
                return
            current = current.parent
