"""Tests for hubcache.config -- XDG paths, atomic writes, cache root and precedence."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from hubcache.config import (
    _atomic_write,
    get_cache_dir,
    get_config_dir,
    get_data_dir,
    load_global_config,
    resolve_cache_dir,
    resolve_config,
    save_global_config,
)
from hubcache.exceptions import ConfigError
from hubcache.models import CacheConfig, GlobalConfig, HubConfig


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_json(path: Path, data: Any) -> None:
    """Write a dict as JSON to *path*, creating parent dirs."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")


# ---------------------------------------------------------------------------
# XDG path resolution
# ---------------------------------------------------------------------------


class TestXDGPathsLinux:
    """XDG paths on Linux (the default XDG platform)."""

    def test_config_dir_xdg_default(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("hubcache.config._is_xdg_platform", lambda: True)
        monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
        monkeypatch.setattr(Path, "home", classmethod(lambda cls: tmp_path))

        result = get_config_dir()
        assert result == tmp_path / ".config" / "hubcache"
        assert result.is_dir()

    def test_config_dir_xdg_custom(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        custom = tmp_path / "custom_config"
        monkeypatch.setattr("hubcache.config._is_xdg_platform", lambda: True)
        monkeypatch.setenv("XDG_CONFIG_HOME", str(custom))

        assert get_config_dir() == custom / "hubcache"

    def test_cache_dir_xdg(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("hubcache.config._is_xdg_platform", lambda: True)
        monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "xdg-cache"))

        result = get_cache_dir()
        assert result == tmp_path / "xdg-cache" / "hubcache"
        assert result.is_dir()

    def test_data_dir_xdg_default(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("hubcache.config._is_xdg_platform", lambda: True)
        monkeypatch.delenv("XDG_DATA_HOME", raising=False)
        monkeypatch.setattr(Path, "home", classmethod(lambda cls: tmp_path))

        assert get_data_dir() == tmp_path / ".local" / "share" / "hubcache"


class TestFallbackPaths:
    """macOS / Windows keep everything under ~/.hubcache."""

    @pytest.fixture(autouse=True)
    def _non_xdg(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("hubcache.config._is_xdg_platform", lambda: False)
        monkeypatch.setattr(Path, "home", classmethod(lambda cls: tmp_path))

    def test_config_dir(self, tmp_path: Path) -> None:
        assert get_config_dir() == tmp_path / ".hubcache"

    def test_cache_dir(self, tmp_path: Path) -> None:
        assert get_cache_dir() == tmp_path / ".hubcache" / "cache"

    def test_data_dir(self, tmp_path: Path) -> None:
        assert get_data_dir() == tmp_path / ".hubcache" / "logs"


# ---------------------------------------------------------------------------
# Atomic writes
# ---------------------------------------------------------------------------


class TestAtomicWrite:
    def test_writes_content(self, tmp_path: Path) -> None:
        target = tmp_path / "sub" / "file.json"
        _atomic_write(target, '{"a": 1}')
        assert target.read_text(encoding="utf-8") == '{"a": 1}'

    def test_replaces_existing(self, tmp_path: Path) -> None:
        target = tmp_path / "file.json"
        target.write_text("old")
        _atomic_write(target, "new")
        assert target.read_text() == "new"

    def test_no_temp_files_left(self, tmp_path: Path) -> None:
        target = tmp_path / "file.json"
        _atomic_write(target, "data")
        assert os.listdir(tmp_path) == ["file.json"]

    def test_failure_cleans_up_and_keeps_original(self, tmp_path: Path) -> None:
        target = tmp_path / "file.json"
        target.write_text("original")
        with patch("hubcache.config.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError, match="disk full"):
                _atomic_write(target, "new")
        assert target.read_text() == "original"
        assert os.listdir(tmp_path) == ["file.json"]


# ---------------------------------------------------------------------------
# Global config
# ---------------------------------------------------------------------------


class TestGlobalConfig:
    def test_missing_file_gives_defaults(self, isolated_config: Path) -> None:
        config = load_global_config()
        assert config == GlobalConfig()
        assert config.cache.max_size_bytes == 10 * 1024**3

    def test_round_trip(self, isolated_config: Path) -> None:
        config = GlobalConfig(
            cache=CacheConfig(max_size_bytes=1024, lock_timeout=None),
            hub=HubConfig(endpoint="https://mirror.example"),
        )
        save_global_config(config)
        assert load_global_config() == config

    def test_file_location(self, isolated_config: Path) -> None:
        save_global_config(GlobalConfig())
        path = isolated_config / "config" / "hubcache" / "config.json"
        assert json.loads(path.read_text())["cache"]["chunk_size"] == 10 * 1024 * 1024

    def test_invalid_json(self, isolated_config: Path) -> None:
        path = isolated_config / "config" / "hubcache" / "config.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("{not json")
        with pytest.raises(ConfigError, match="Invalid global config"):
            load_global_config()

    def test_invalid_values(self, isolated_config: Path) -> None:
        _write_json(
            isolated_config / "config" / "hubcache" / "config.json",
            {"cache": {"max_size_bytes": "lots"}},
        )
        with pytest.raises(ConfigError):
            load_global_config()


# ---------------------------------------------------------------------------
# Cache root
# ---------------------------------------------------------------------------


class TestResolveCacheDir:
    def test_explicit_wins(self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HUBCACHE_CACHE_DIR", str(isolated_config / "env"))
        assert resolve_cache_dir(str(isolated_config / "flag")) == (isolated_config / "flag").resolve()

    def test_hubcache_env_before_hf_env(self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HUBCACHE_CACHE_DIR", str(isolated_config / "ours"))
        monkeypatch.setenv("HF_HUB_CACHE", str(isolated_config / "theirs"))
        assert resolve_cache_dir() == (isolated_config / "ours").resolve()

    def test_hf_hub_cache(self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HF_HUB_CACHE", str(isolated_config / "hf-cache"))
        monkeypatch.setenv("HF_HOME", str(isolated_config / "hf-home"))
        assert resolve_cache_dir() == (isolated_config / "hf-cache").resolve()

    def test_hf_home_appends_hub(self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HF_HOME", str(isolated_config / "hf-home"))
        assert resolve_cache_dir() == (isolated_config / "hf-home" / "hub").resolve()

    def test_configured_before_default(self, isolated_config: Path) -> None:
        configured = str(isolated_config / "from-config")
        assert resolve_cache_dir(configured=configured) == Path(configured).resolve()

    def test_default_is_xdg_cache(self, isolated_config: Path) -> None:
        assert resolve_cache_dir() == isolated_config / "cache" / "hubcache"

    def test_expands_user(self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HOME", str(isolated_config))
        assert resolve_cache_dir("~/mine") == (isolated_config / "mine").resolve()


# ---------------------------------------------------------------------------
# Precedence
# ---------------------------------------------------------------------------


class TestResolveConfig:
    def test_defaults(self, isolated_config: Path) -> None:
        config = resolve_config()
        assert config.cache.cache_dir == str(isolated_config / "cache" / "hubcache")
        assert config.hub.endpoint == "https://huggingface.co"
        assert config.cache.offline is False

    def test_global_config_is_loaded(self, isolated_config: Path) -> None:
        save_global_config(GlobalConfig(cache=CacheConfig(max_size_bytes=5)))
        assert resolve_config().cache.max_size_bytes == 5

    def test_env_overrides_file(self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        save_global_config(GlobalConfig(hub=HubConfig(endpoint="https://file.example")))
        monkeypatch.setenv("HF_ENDPOINT", "https://hf-env.example/")
        assert resolve_config().hub.endpoint == "https://hf-env.example"
        monkeypatch.setenv("HUBCACHE_ENDPOINT", "https://ours.example")
        assert resolve_config().hub.endpoint == "https://ours.example"

    def test_cli_overrides_env(self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HUBCACHE_ENDPOINT", "https://env.example")
        monkeypatch.setenv("HUBCACHE_CACHE_DIR", str(isolated_config / "env-cache"))
        config = resolve_config(
            cli_cache_dir=str(isolated_config / "cli-cache"),
            cli_endpoint="https://cli.example",
            cli_format="json",
        )
        assert config.hub.endpoint == "https://cli.example"
        assert config.cache.cache_dir == str((isolated_config / "cli-cache").resolve())
        assert config.output.format == "json"

    @pytest.mark.parametrize("value, expected", [("1", True), ("true", True), ("0", False), ("no", False)])
    def test_offline_env(
        self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch, value: str, expected: bool
    ) -> None:
        monkeypatch.setenv("HF_HUB_OFFLINE", value)
        assert resolve_config().cache.offline is expected

    def test_offline_flag_wins(self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HUBCACHE_OFFLINE", "0")
        assert resolve_config(cli_offline=True).cache.offline is True
