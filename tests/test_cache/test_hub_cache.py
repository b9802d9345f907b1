"""Tests for the HubCache facade: construction, clear and maintenance calls."""

from __future__ import annotations

from pathlib import Path

import pytest

from hubcache.cache import HubCache
from hubcache.client.hub_client import HubClient
from hubcache.client.metadata_cache import MetadataCache
from hubcache.exceptions import BudgetExceededError, InvalidArgumentError
from hubcache.models import CacheConfig, GlobalConfig, MetadataCacheConfig, RemoteFileInfo


@pytest.fixture()
def populated(hub_cache: HubCache, fake_remote) -> HubCache:
    fake_remote.add("org/a", "w.bin", b"a" * 10)
    fake_remote.add("org/a", "shared.txt", b"shared")
    fake_remote.add("org/b", "shared.txt", b"shared")
    fake_remote.add("squad", "train.json", b"[1, 2]", repo_type="dataset")
    hub_cache.snapshot_download("model", "org/a", "main")
    hub_cache.snapshot_download("model", "org/b", "main")
    hub_cache.snapshot_download("dataset", "squad", "main")
    return hub_cache


class TestConstruction:
    def test_from_config_uses_configured_root(self, isolated_config: Path, fake_remote) -> None:
        root = isolated_config / "explicit-cache"
        config = GlobalConfig(cache=CacheConfig(cache_dir=str(root), max_size_bytes=1234))
        cache = HubCache.from_config(config, remote=fake_remote)
        assert cache.layout.root == root.resolve()
        assert cache.store.max_size_bytes == 1234
        assert cache.remote is fake_remote

    def test_from_config_builds_http_client(self, isolated_config: Path) -> None:
        config = GlobalConfig(cache=CacheConfig(cache_dir=str(isolated_config / "c")))
        with HubCache.from_config(config) as cache:
            assert isinstance(cache.remote, HubClient)
            assert (isolated_config / "c" / "metadata").is_dir()

    def test_from_config_honours_env(self, isolated_config: Path, monkeypatch, fake_remote) -> None:
        monkeypatch.setenv("HF_HOME", str(isolated_config / "hf"))
        cache = HubCache.from_config(remote=fake_remote)
        assert cache.layout.root == (isolated_config / "hf" / "hub").resolve()

    def test_context_manager_closes_remote(self, cache_dir: Path, fake_remote) -> None:
        with HubCache(cache_dir, remote=fake_remote):
            pass
        assert fake_remote.closed

    def test_constructor_touches_nothing(self, cache_dir: Path, fake_remote) -> None:
        HubCache(cache_dir, remote=fake_remote)
        assert not cache_dir.exists()


class TestQueries:
    def test_is_cached_and_cache_path(self, hub_cache: HubCache, fake_remote) -> None:
        cid = fake_remote.add("org/a", "w.bin", b"abc")
        assert not hub_cache.is_cached("model", "org/a", "main", "w.bin")
        assert hub_cache.cache_path("model", "org/a", "main", "w.bin") is None
        hub_cache.ensure_present("model", "org/a", "main", "w.bin")
        assert hub_cache.is_cached("model", "org/a", "main", "w.bin")
        assert hub_cache.cache_path("model", "org/a", "main", "w.bin") == hub_cache.layout.blob_path(cid)

    def test_stats(self, populated: HubCache) -> None:
        stats = populated.stats()
        assert stats.entry_count == 3
        assert stats.ref_count == 4
        assert stats.total_size_bytes == 10 + 6 + 6
        assert stats.repo_ids == ["org/a", "org/b", "squad"]


class TestClear:
    def test_clear_one_repo_keeps_shared_blob(self, populated: HubCache) -> None:
        removed = populated.clear(repo_id="org/a")

        assert removed == 2
        assert not populated.is_cached("model", "org/a", "main", "w.bin")
        assert populated.is_cached("model", "org/b", "main", "shared.txt")
        assert populated.stats().total_size_bytes == 6 + 6
        assert not populated.layout.repo_dir("model", "org/a").exists()

    def test_clear_by_type(self, populated: HubCache) -> None:
        assert populated.clear(repo_type="dataset") == 1
        assert populated.stats().repo_ids == ["org/a", "org/b"]

    def test_clear_everything(self, populated: HubCache) -> None:
        orphan = populated.layout.blob_path("feed")
        orphan.parent.mkdir(parents=True, exist_ok=True)
        orphan.write_bytes(b"orphan")

        assert populated.clear() == 4

        stats = populated.stats()
        assert stats.total_size_bytes == 0
        assert stats.entry_count == 0
        assert not orphan.exists()

    def test_clear_removes_abandoned_partials(self, hub_cache: HubCache) -> None:
        hub_cache.layout.ensure_dirs()
        partial = hub_cache.layout.temp_path("abc")
        sidecar = hub_cache.layout.temp_meta_path("abc")
        partial.write_bytes(b"part")
        sidecar.write_text("{}")

        hub_cache.clear()

        assert not partial.exists()
        assert not sidecar.exists()

    def test_clear_leaves_partials_of_held_fetches(self, hub_cache: HubCache) -> None:
        hub_cache.layout.ensure_dirs()
        partial = hub_cache.layout.temp_path("busy")
        partial.write_bytes(b"part")
        with hub_cache.locks.acquire("busy"):
            hub_cache.clear()
            assert partial.exists()

    def test_clear_leaves_partials_streamed_by_another_process(
        self, hub_cache: HubCache, cache_dir: Path, fake_remote, cache_config, clock
    ) -> None:
        other = HubCache(cache_dir, remote=fake_remote, config=cache_config, clock=clock)
        other.layout.ensure_dirs()
        partial = other.layout.temp_path("busy")
        sidecar = other.layout.temp_meta_path("busy")

        with other.locks.acquire("busy"):
            partial.write_bytes(b"part")
            sidecar.write_text("{}")
            hub_cache.clear()
            assert partial.exists()
            assert sidecar.exists()

        hub_cache.clear()
        assert not partial.exists()
        assert not sidecar.exists()

    def test_clear_everything_drops_cached_listings(
        self, cache_dir: Path, fake_remote, cache_config, clock
    ) -> None:
        listings = MetadataCache(cache_dir, MetadataCacheConfig(ttl_seconds=60))
        cache = HubCache(
            cache_dir, remote=fake_remote, config=cache_config, clock=clock, metadata_cache=listings
        )
        listings.set("model", "org/a", "main", {"w.bin": RemoteFileInfo(filename="w.bin", size=1)})

        cache.clear(repo_id="org/a")
        assert listings.get("model", "org/a", "main") is not None

        cache.clear()
        assert listings.get("model", "org/a", "main") is None
        assert listings.stats()["size"] == 0
        cache.close()

    def test_clear_unknown_type(self, hub_cache: HubCache) -> None:
        with pytest.raises(InvalidArgumentError):
            hub_cache.clear(repo_type="notebook")


class TestEvict:
    def _orphan(self, cache: HubCache, data: bytes) -> Path:
        blob = cache.layout.blob_path("feed")
        blob.parent.mkdir(parents=True, exist_ok=True)
        blob.write_bytes(data)
        assert cache.store.has_blob("feed")
        return blob

    def test_evict_returns_bytes_freed(self, populated: HubCache) -> None:
        orphan = self._orphan(populated, b"12345")
        assert populated.evict(3) == 5
        assert not orphan.exists()
        assert populated.stats().entry_count == 3

    def test_strict_evict_raises_when_all_referenced(self, populated: HubCache) -> None:
        with pytest.raises(BudgetExceededError):
            populated.evict(1, strict=True)

    def test_evict_older_than(self, populated: HubCache, clock) -> None:
        orphan = self._orphan(populated, b"old")
        clock.advance(7200)
        result = populated.evict_older_than(3600)
        assert result.removed == ["feed"]
        assert not orphan.exists()
        assert populated.stats().ref_count == 4

    def test_evict_keeps_blob_another_process_linked(
        self, hub_cache: HubCache, cache_dir: Path, fake_remote, cache_config, clock
    ) -> None:
        cid = fake_remote.add("org/a", "w.bin", b"w" * 20)
        blob = hub_cache.layout.blob_path(cid)
        blob.parent.mkdir(parents=True, exist_ok=True)
        blob.write_bytes(b"w" * 20)
        assert [e.content_id for e in hub_cache.store.unreferenced_entries()] == [cid]

        other = HubCache(cache_dir, remote=fake_remote, config=cache_config, clock=clock)
        other.ensure_present("model", "org/a", "main", "w.bin")
        assert fake_remote.fetch_counts["w.bin"] == 0

        assert hub_cache.evict(10**9) == 0
        assert blob.exists()
        assert other.is_cached("model", "org/a", "main", "w.bin")
        assert hub_cache.is_cached("model", "org/a", "main", "w.bin")

    def test_evict_skips_blob_another_process_is_fetching(
        self, hub_cache: HubCache, cache_dir: Path, fake_remote, cache_config, clock
    ) -> None:
        orphan = self._orphan(hub_cache, b"12345")
        other = HubCache(cache_dir, remote=fake_remote, config=cache_config, clock=clock)

        with other.locks.acquire("feed"):
            assert hub_cache.evict(3) == 0
            assert orphan.exists()
        assert hub_cache.evict(3) == 5
