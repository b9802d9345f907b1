"""On-disk layout of the cache root.

Every path the cache touches is derived here from an explicit root
directory, so the tree stays inspectable (and cleanable) by ordinary tools::

    <root>/
      blobs/<content_id[:2]>/<content_id>                       file bytes
      snapshots/<repo_type>/<repo_id>/<revision>/<filename>     symlink -> blob
      tmp/<digest>.incomplete                                   partial download
      tmp/<digest>.json                                         partial's identity
      tmp/<digest>.lock                                         advisory lock sentinel

``/`` inside a repo id (``org/name``) or a revision (``refs/pr/1``) is
encoded as ``--`` so the snapshot tree is always exactly four directory
levels deep above the filename. The hub forbids ``--`` in repo names, which
keeps the encoding reversible.

The functions here have no side effects beyond :meth:`CacheLayout.ensure_dirs`.
"""

from __future__ import annotations

import hashlib
import re
from pathlib import Path, PurePosixPath
from typing import Union

from hubcache.exceptions import InvalidArgumentError
from hubcache.models import RefKey, RepoType

BLOBS_DIR = "blobs"
SNAPSHOTS_DIR = "snapshots"
TMP_DIR = "tmp"

INCOMPLETE_SUFFIX = ".incomplete"
SIDECAR_SUFFIX = ".json"
LOCK_SUFFIX = ".lock"

_SEPARATOR = "--"
_CONTENT_ID_RE = re.compile(r"^[A-Za-z0-9._+=-]+$")


def normalize_content_id(value: str) -> str:
    """Turn an ETag or hash into a filesystem-safe content id.

    Strips the weak-validator prefix ``W/`` and surrounding quotes, as sent
    in ``ETag`` headers.

    Raises:
        InvalidArgumentError: If the result is empty or contains characters
            that are unsafe in a file name.
    """
    cid = (value or "").strip()
    if cid.startswith("W/"):
        cid = cid[2:]
    cid = cid.strip('"')
    if not cid or cid in (".", "..") or not _CONTENT_ID_RE.match(cid):
        raise InvalidArgumentError(f"Invalid content id: {value!r}")
    return cid


def _encode(part: str, what: str) -> str:
    if not part or not part.strip():
        raise InvalidArgumentError(f"{what} must not be empty")
    if part.startswith("/") or part.endswith("/"):
        raise InvalidArgumentError(f"{what} must not start or end with '/': {part!r}")
    if any(seg in ("", ".", "..") for seg in part.split("/")):
        raise InvalidArgumentError(f"Invalid {what}: {part!r}")
    # The encoded form must decode back to the same id.
    if _SEPARATOR in part:
        raise InvalidArgumentError(f"{what} must not contain {_SEPARATOR!r}: {part!r}")
    return part.replace("/", _SEPARATOR)


def _decode(part: str) -> str:
    return part.replace(_SEPARATOR, "/")


def _validate_filename(filename: str) -> PurePosixPath:
    if not filename or not filename.strip():
        raise InvalidArgumentError("filename must not be empty")
    if "\\" in filename:
        raise InvalidArgumentError(f"filename must use '/' separators: {filename!r}")
    path = PurePosixPath(filename)
    if path.is_absolute() or any(p in ("..", ".") for p in path.parts):
        raise InvalidArgumentError(f"Invalid filename: {filename!r}")
    return path


def make_ref_key(
    repo_type: Union[RepoType, str],
    repo_id: str,
    revision: str,
    filename: str,
) -> RefKey:
    """Validate the four coordinates of a file and bundle them into a :class:`RefKey`."""
    try:
        kind = RepoType(repo_type)
    except ValueError as exc:
        raise InvalidArgumentError(f"Unknown repo type: {repo_type!r}") from exc
    _encode(repo_id, "repo id")
    _encode(revision, "revision")
    _validate_filename(filename)
    return RefKey(repo_type=kind, repo_id=repo_id, revision=revision, filename=filename)


class CacheLayout:
    """Maps cache coordinates to paths under one root directory.

    Args:
        root: The cache root. Passed explicitly by whoever builds the cache;
            nothing here reads environment variables.
    """

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)
        self.blobs_dir = self.root / BLOBS_DIR
        self.snapshots_dir = self.root / SNAPSHOTS_DIR
        self.tmp_dir = self.root / TMP_DIR

    def ensure_dirs(self) -> None:
        """Create the three top-level subtrees if they are missing."""
        for d in (self.blobs_dir, self.snapshots_dir, self.tmp_dir):
            d.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------ #
    # Blobs
    # ------------------------------------------------------------------ #

    def blob_path(self, content_id: str) -> Path:
        """Content-addressed location of a blob, sharded by its first two characters."""
        cid = normalize_content_id(content_id)
        return self.blobs_dir / cid[:2] / cid

    # ------------------------------------------------------------------ #
    # Snapshots
    # ------------------------------------------------------------------ #

    def repo_dir(self, repo_type: Union[RepoType, str], repo_id: str) -> Path:
        """Directory holding every cached revision of one repository."""
        try:
            kind = RepoType(repo_type)
        except ValueError as exc:
            raise InvalidArgumentError(f"Unknown repo type: {repo_type!r}") from exc
        return self.snapshots_dir / kind.value / _encode(repo_id, "repo id")

    def revision_dir(self, repo_type: Union[RepoType, str], repo_id: str, revision: str) -> Path:
        """Directory whose tree mirrors one revision of a repository."""
        return self.repo_dir(repo_type, repo_id) / _encode(revision, "revision")

    def snapshot_path(
        self,
        repo_type: Union[RepoType, str],
        repo_id: str,
        revision: str,
        filename: str,
    ) -> Path:
        """Path of the symlink that points a (repo, revision, filename) at its blob."""
        rel = _validate_filename(filename)
        return self.revision_dir(repo_type, repo_id, revision).joinpath(*rel.parts)

    def snapshot_path_for(self, key: RefKey) -> Path:
        return self.snapshot_path(key.repo_type, key.repo_id, key.revision, key.filename)

    def parse_snapshot_path(self, path: Path) -> RefKey:
        """Inverse of :meth:`snapshot_path`, used when rebuilding the index from disk.

        Raises:
            InvalidArgumentError: If *path* is not inside the snapshot tree or
                is too shallow to name a file.
        """
        try:
            rel = Path(path).relative_to(self.snapshots_dir)
        except ValueError as exc:
            raise InvalidArgumentError(f"{path} is not inside {self.snapshots_dir}") from exc
        parts = rel.parts
        if len(parts) < 4:
            raise InvalidArgumentError(f"Not a snapshot file path: {path}")
        return make_ref_key(
            parts[0],
            _decode(parts[1]),
            _decode(parts[2]),
            "/".join(parts[3:]),
        )

    # ------------------------------------------------------------------ #
    # In-flight downloads
    # ------------------------------------------------------------------ #

    @staticmethod
    def key_digest(key: Union[RefKey, str]) -> str:
        """Stable digest naming the temp/lock files of one download key."""
        if isinstance(key, RefKey):
            raw = "|".join((key.repo_type.value, key.repo_id, key.revision, key.filename))
        else:
            raw = key
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def temp_path(self, key: Union[RefKey, str]) -> Path:
        """Deterministic partial-download path, so a retry finds its own partial."""
        return self.tmp_dir / f"{self.key_digest(key)}{INCOMPLETE_SUFFIX}"

    def temp_meta_path(self, key: Union[RefKey, str]) -> Path:
        """JSON sidecar recording which content identity a partial was written for."""
        return self.tmp_dir / f"{self.key_digest(key)}{SIDECAR_SUFFIX}"

    def lock_path(self, key: Union[RefKey, str]) -> Path:
        """Advisory lock sentinel guarding one fetch key."""
        return self.digest_lock_path(self.key_digest(key))

    def digest_lock_path(self, digest: str) -> Path:
        """Lock sentinel for a key already reduced to its digest, e.g. a partial's stem."""
        return self.tmp_dir / f"{digest}{LOCK_SUFFIX}"
