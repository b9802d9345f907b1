"""Shared test fixtures for hubcache.

Provides an in-memory hub (:class:`FakeRemote`), a controllable clock,
ready-made caches, isolated config environments, output state management,
and a CLI runner. These fixtures are automatically discovered by pytest and
available to all test modules without explicit imports.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections import Counter
from pathlib import Path
from typing import Iterator, Optional, Union

import pytest

from hubcache.cache import HubCache
from hubcache.client.remote import RemoteStream
from hubcache.exceptions import NotFoundError, TransientFetchError
from hubcache.models import CacheConfig, RemoteFileInfo, RepoType
from hubcache.output import OutputFormat, OutputManager, reset_output, set_output


# ---------------------------------------------------------------------------
# Hashing helpers
# ---------------------------------------------------------------------------


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def git_sha1_hex(data: bytes) -> str:
    return hashlib.sha1(b"blob %d\0" % len(data) + data).hexdigest()


# ---------------------------------------------------------------------------
# In-memory hub
# ---------------------------------------------------------------------------


class _HostedFile:
    def __init__(self, content: bytes, info: RemoteFileInfo, served_id: Optional[str]) -> None:
        self.content = content
        self.info = info
        self.served_id = served_id


class FakeRemote:
    """In-memory :class:`~hubcache.client.remote.RemoteSource`.

    Records every byte request and can be told to fail, ignore ranges,
    serve corrupted bytes, or go slowly, per file.
    """

    def __init__(self, chunk_size: int = 4) -> None:
        self.chunk_size = chunk_size
        self._files: dict[tuple[str, str, str, str], _HostedFile] = {}
        self._lock = threading.Lock()
        self.metadata_calls = 0
        self.metadata_refreshes = 0
        self.fetch_counts: Counter[str] = Counter()
        self.ranges: list[tuple[str, int]] = []
        self.bytes_served = 0
        # filename -> list of byte counts; each fetch pops one and fails after that many bytes
        self.fail_after: dict[str, list[int]] = {}
        # filename -> number of fetches that serve flipped bytes
        self.corrupt_fetches: dict[str, int] = {}
        self.ignore_range = False
        self.delay = 0.0
        self.closed = False

    def add(
        self,
        repo_id: str,
        filename: str,
        content: bytes,
        revision: str = "main",
        repo_type: str = "model",
        algorithm: Optional[str] = "sha256",
        identity: bool = True,
    ) -> Optional[str]:
        """Host *content*; returns the content id the hub will report."""
        if not identity:
            cid = None
            algorithm = None
        elif algorithm == "git-sha1":
            cid = git_sha1_hex(content)
        else:
            cid = sha256_hex(content)
        info = RemoteFileInfo(
            filename=filename, size=len(content), content_id=cid, hash_algorithm=algorithm
        )
        self._files[(repo_type, repo_id, revision, filename)] = _HostedFile(content, info, cid)
        return cid

    def set_served_id(self, repo_id: str, filename: str, served_id: Optional[str], revision: str = "main") -> None:
        self._files[("model", repo_id, revision, filename)].served_id = served_id

    # -- RemoteSource ------------------------------------------------------

    def fetch_metadata(
        self, repo_type: Union[RepoType, str], repo_id: str, revision: str, refresh: bool = False
    ) -> dict[str, RemoteFileInfo]:
        kind = RepoType(repo_type).value
        with self._lock:
            self.metadata_calls += 1
            if refresh:
                self.metadata_refreshes += 1
        listing = {
            f: hosted.info.model_copy()
            for (t, r, rev, f), hosted in self._files.items()
            if (t, r, rev) == (kind, repo_id, revision)
        }
        if not listing:
            raise NotFoundError(f"{repo_id}@{revision} not found", repo_id=repo_id, revision=revision)
        return listing

    def fetch_bytes(
        self,
        repo_type: Union[RepoType, str],
        repo_id: str,
        revision: str,
        filename: str,
        byte_range: Optional[tuple[int, Optional[int]]] = None,
    ) -> RemoteStream:
        kind = RepoType(repo_type).value
        hosted = self._files.get((kind, repo_id, revision, filename))
        if hosted is None:
            raise NotFoundError(f"{filename} not found", repo_id=repo_id, filename=filename)

        start = 0 if byte_range is None or self.ignore_range else byte_range[0]
        with self._lock:
            self.fetch_counts[filename] += 1
            self.ranges.append((filename, byte_range[0] if byte_range else 0))
            failures = self.fail_after.get(filename)
            fail_at = failures.pop(0) if failures else None
            corrupt = self.corrupt_fetches.get(filename, 0) > 0
            if corrupt:
                self.corrupt_fetches[filename] -= 1

        content = hosted.content
        if corrupt:
            content = bytes(b ^ 0xFF for b in content)

        return RemoteStream(
            total_size=len(content),
            content_id=hosted.served_id,
            start=start,
            chunks=self._chunks(content[start:], fail_at),
        )

    def close(self) -> None:
        self.closed = True

    def _chunks(self, data: bytes, fail_at: Optional[int]) -> Iterator[bytes]:
        sent = 0
        for i in range(0, len(data), self.chunk_size):
            chunk = data[i : i + self.chunk_size]
            if fail_at is not None and sent + len(chunk) > fail_at:
                chunk = chunk[: fail_at - sent]
                if chunk:
                    self._count(len(chunk))
                    yield chunk
                raise TransientFetchError("connection reset by peer")
            if self.delay:
                time.sleep(self.delay)
            sent += len(chunk)
            self._count(len(chunk))
            yield chunk

    def _count(self, n: int) -> None:
        with self._lock:
            self.bytes_served += n


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time. When Typer's CliRunner redirects those streams during
    a test and the test finishes, the cached references become stale
    ("I/O operation on closed file"). Resetting forces a fresh manager
    to be created on next use. The CLI's log handler holds the same
    stale streams, so it is removed too.
    """
    yield
    reset_output()
    logger = logging.getLogger("hubcache")
    for handler in list(logger.handlers):
        if getattr(handler, "_hubcache_cli", False):
            logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


# ---------------------------------------------------------------------------
# Cache fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "hub-cache"


@pytest.fixture
def cache_config() -> CacheConfig:
    """Small chunks, no budget and a short lock timeout."""
    return CacheConfig(max_size_bytes=None, lock_timeout=10.0, chunk_size=4)


@pytest.fixture
def hub_cache(
    cache_dir: Path, fake_remote: FakeRemote, cache_config: CacheConfig, clock: FakeClock
) -> HubCache:
    return HubCache(cache_dir, remote=fake_remote, config=cache_config, clock=clock)


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration to a temporary directory.

    Sets XDG_CONFIG_HOME, XDG_CACHE_HOME, and XDG_DATA_HOME to
    subdirectories of tmp_path so that tests never touch real user
    config. Clears the HUBCACHE_* and HF_* variables that influence
    resolution and changes the working directory to tmp_path.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "cache"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setattr("hubcache.config._is_xdg_platform", lambda: True)

    for var in [
        "HUBCACHE_CACHE_DIR",
        "HUBCACHE_ENDPOINT",
        "HUBCACHE_OFFLINE",
        "HF_HUB_CACHE",
        "HF_HOME",
        "HF_ENDPOINT",
        "HF_HUB_OFFLINE",
        "HF_TOKEN",
    ]:
        monkeypatch.delenv(var, raising=False)

    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
    """Install a PLAIN-format, quiet OutputManager as the global output."""
    output = OutputManager(format=OutputFormat.PLAIN, quiet=True)
    set_output(output)
    yield output
    reset_output()


# ---------------------------------------------------------------------------
# CLI runner fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()
