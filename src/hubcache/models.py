"""Canonical Pydantic models shared across all hubcache modules.

This is the single source of truth for data shapes in the project. The models
fall into three groups:

**Configuration models** -- serialised as JSON in the user's config directory:
    :class:`CacheConfig`, :class:`HubConfig`, :class:`MetadataCacheConfig`,
    :class:`OutputConfig` and :class:`GlobalConfig`.

**Cache index records** -- the in-memory view of the on-disk cache:
    :class:`RepoType`, :class:`RefKey`, :class:`CacheEntry`,
    :class:`SnapshotRef`.

**Reports** -- values returned to callers:
    :class:`RemoteFileInfo`, :class:`CacheStats`, :class:`EvictionResult`,
    :class:`IntegrityReport`.
"""

from __future__ import annotations

import enum
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# --- Configuration ---


class CacheConfig(BaseModel):
    """Settings for the on-disk cache and the download engine."""

    cache_dir: Optional[str] = Field(
        default=None, description="Cache root; resolved from env/XDG when unset"
    )
    max_size_bytes: Optional[int] = Field(
        default=10 * 1024 * 1024 * 1024,
        description="Size budget enforced after each publish (None disables)",
    )
    lock_timeout: Optional[float] = Field(
        default=600.0,
        description="Seconds to wait for a concurrent fetch of the same file (None waits forever)",
    )
    chunk_size: int = Field(default=10 * 1024 * 1024, description="Download chunk size in bytes")
    resume_attempts: int = Field(
        default=2, description="In-process resume retries after a transient failure"
    )
    corrupt_retries: int = Field(
        default=1, description="Restarts from scratch after a verification failure"
    )
    max_workers: int = Field(default=8, description="Parallel downloads for snapshot_download")
    offline: bool = Field(default=False, description="Serve from cache only; never hit the network")


class HubConfig(BaseModel):
    """Connection settings for the HTTP collaborator."""

    endpoint: str = Field(default="https://huggingface.co", description="Hub base URL")
    timeout: float = Field(default=10.0, description="Request timeout in seconds")
    max_retries: int = Field(default=3, description="Max retry attempts for metadata requests")
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")
    token_env: str = Field(
        default="HF_TOKEN", description="Environment variable holding an optional bearer token"
    )


class MetadataCacheConfig(BaseModel):
    """TTL cache for repository file listings."""

    enabled: bool = Field(default=True, description="Enable metadata response caching")
    ttl_seconds: int = Field(default=300, description="Metadata cache TTL in seconds")


class OutputConfig(BaseModel):
    """Default output format preferences stored in :class:`GlobalConfig`."""

    format: str = Field(default="auto", description="Output format: auto, json, plain, rich")


class GlobalConfig(BaseModel):
    """User-wide configuration persisted at ``~/.config/hubcache/config.json``.

    Loaded and saved by :func:`~hubcache.config.load_global_config` and
    :func:`~hubcache.config.save_global_config`. Environment variables and
    CLI flags take precedence; see :func:`~hubcache.config.resolve_config`.
    """

    cache: CacheConfig = Field(default_factory=CacheConfig)
    hub: HubConfig = Field(default_factory=HubConfig)
    metadata_cache: MetadataCacheConfig = Field(default_factory=MetadataCacheConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)


# --- Cache index records ---


class RepoType(str, enum.Enum):
    """Kinds of repositories hosted by the hub."""

    MODEL = "model"
    DATASET = "dataset"
    SPACE = "space"

    @property
    def url_prefix(self) -> str:
        """Path prefix used by ``resolve`` URLs (models have none)."""
        if self is RepoType.MODEL:
            return ""
        return f"{self.value}s/"


class RefKey(BaseModel):
    """Identifies one file of one revision of one repository."""

    model_config = ConfigDict(frozen=True)

    repo_type: RepoType
    repo_id: str
    revision: str
    filename: str

    def __str__(self) -> str:
        return f"{self.repo_type.value}:{self.repo_id}@{self.revision}/{self.filename}"


class CacheEntry(BaseModel):
    """One content-addressed blob on disk.

    ``size_bytes`` always equals the blob's size on disk. ``last_access`` is
    expressed on the owning store's monotonic clock and drives LRU ordering.
    """

    content_id: str
    size_bytes: int
    blob_path: Path
    last_access: float


class SnapshotRef(BaseModel):
    """A named pointer from a :class:`RefKey` to a blob's content id."""

    model_config = ConfigDict(frozen=True)

    key: RefKey
    content_id: str


# --- Reports ---


class RemoteFileInfo(BaseModel):
    """What the hub says about one file of a revision.

    ``content_id`` is absent when the hub provides no identity; in that case
    the cache falls back to a locally computed sha256 and never resumes.
    """

    filename: str
    size: int
    content_id: Optional[str] = None
    hash_algorithm: Optional[Literal["sha256", "git-sha1"]] = None


class CacheStats(BaseModel):
    """Aggregate view of the cache returned by ``stats()``."""

    total_size_bytes: int
    entry_count: int
    ref_count: int
    repo_ids: list[str] = Field(default_factory=list)
    max_size_bytes: Optional[int] = None
    cache_dir: Optional[str] = None


class EvictionResult(BaseModel):
    """Outcome of one eviction pass."""

    requested_bytes: int
    freed_bytes: int = 0
    removed: list[str] = Field(default_factory=list)

    @property
    def shortfall_bytes(self) -> int:
        return max(0, self.requested_bytes - self.freed_bytes)

    @property
    def budget_exceeded(self) -> bool:
        return self.shortfall_bytes > 0


class IntegrityReport(BaseModel):
    """Result of re-hashing the blob store."""

    total_blobs: int = 0
    valid: list[str] = Field(default_factory=list)
    corrupted: list[str] = Field(default_factory=list)
    unverifiable: list[str] = Field(default_factory=list)
    dangling_refs: list[str] = Field(default_factory=list)
    repaired: bool = False
