"""Content hashing and whole-cache integrity verification."""

from __future__ import annotations

import hashlib
import logging
import os
import re
from pathlib import Path
from typing import Optional

from hubcache.cache.store import CacheMetadataStore
from hubcache.exceptions import CacheEntryNotFoundError, InconsistentCacheError
from hubcache.models import IntegrityReport

logger = logging.getLogger(__name__)

_READ_SIZE = 1024 * 1024
_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")
_SHA1_RE = re.compile(r"^[0-9a-f]{40}$")


def sha256_file(path: Path) -> str:
    """Hex sha256 of a file's contents."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_READ_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def git_blob_sha1(path: Path) -> str:
    """Git object id of a file: ``sha1(b"blob <size>\\0" + content)``."""
    size = os.path.getsize(path)
    digest = hashlib.sha1()
    digest.update(f"blob {size}\0".encode("ascii"))
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_READ_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def hash_file(path: Path, algorithm: str) -> str:
    if algorithm == "sha256":
        return sha256_file(path)
    if algorithm == "git-sha1":
        return git_blob_sha1(path)
    raise ValueError(f"Unsupported hash algorithm: {algorithm}")


def infer_algorithm(content_id: str) -> Optional[str]:
    """Guess the digest form of a content id from its shape, or ``None``."""
    if _SHA256_RE.match(content_id):
        return "sha256"
    if _SHA1_RE.match(content_id):
        return "git-sha1"
    return None


def verify_integrity(
    store: CacheMetadataStore,
    repair: bool = False,
    strict: bool = False,
) -> IntegrityReport:
    """Re-hash every blob and look for dangling snapshot links.

    Args:
        store: The store to check. It is rescanned first so the report
            reflects the disk, not a possibly stale index.
        repair: Remove corrupted blobs (and their refs) and dangling links.
        strict: Raise :class:`InconsistentCacheError` if anything is wrong
            and *repair* is not set.
    """
    # Dangling links are counted before the rescan removes them.
    report = IntegrityReport(dangling_refs=_find_dangling_links(store))
    if repair:
        for link in report.dangling_refs:
            Path(link).unlink(missing_ok=True)
    store.rescan()

    for entry in store.entries():
        report.total_blobs += 1
        algorithm = infer_algorithm(entry.content_id)
        if algorithm is None:
            report.unverifiable.append(entry.content_id)
            continue
        actual = hash_file(entry.blob_path, algorithm)
        if actual == entry.content_id:
            report.valid.append(entry.content_id)
            continue
        logger.warning("Blob %s is corrupted (%s hashes to %s)", entry.content_id, algorithm, actual)
        report.corrupted.append(entry.content_id)
        if repair:
            try:
                store.remove(entry.content_id)
            except CacheEntryNotFoundError:
                pass

    problems = bool(report.corrupted or report.dangling_refs)
    report.repaired = repair and problems
    if strict and problems and not repair:
        raise InconsistentCacheError(
            f"Cache at {store.layout.root} has {len(report.corrupted)} corrupted blob(s) "
            f"and {len(report.dangling_refs)} dangling link(s)"
        )
    return report


def _find_dangling_links(store: CacheMetadataStore) -> list[str]:
    root = store.layout.snapshots_dir
    if not root.is_dir():
        return []
    dangling = []
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            link = Path(dirpath) / name
            if link.is_symlink() and not link.exists():
                dangling.append(str(link))
    return sorted(dangling)
