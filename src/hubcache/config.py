"""Configuration management with XDG paths, atomic writes, and precedence resolution.

This module handles all persistent configuration for hubcache:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.hubcache/`` on macOS and Windows. See :func:`get_config_dir`,
  :func:`get_cache_dir`, :func:`get_data_dir`.
* **Global config** -- A single :class:`~hubcache.models.GlobalConfig`
  JSON file storing defaults (cache budget, hub endpoint, output format).
* **Cache root resolution** -- :func:`resolve_cache_dir` honours the
  ``HUBCACHE_CACHE_DIR``, ``HF_HUB_CACHE`` and ``HF_HOME`` variables that
  other hub tooling already understands.
* **Precedence resolution** -- :func:`resolve_config` merges CLI flags,
  environment variables and the global config into the effective
  configuration.

All file writes use an atomic temp-file-then-rename strategy
(:func:`_atomic_write`) to prevent data loss on crash or power failure.
"""

from __future__ import annotations

import json
import os
import platform
import tempfile
from pathlib import Path
from typing import Optional

from hubcache.exceptions import ConfigError
from hubcache.models import GlobalConfig

_APP_NAME = "hubcache"
_CONFIG_FILENAME = "config.json"

_TRUTHY = {"1", "true", "yes", "on"}


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform follows the XDG Base Directory layout (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    """Fallback base directory for non-XDG platforms (macOS, Windows)."""
    return Path.home() / f".{_APP_NAME}"


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/hubcache/`` (default ``~/.config/hubcache/``).
    On macOS/Windows: ``~/.hubcache/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_CONFIG_HOME", (".config",)) / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_cache_dir() -> Path:
    """Return the default cache root, creating it if necessary.

    On Linux/BSD: ``$XDG_CACHE_HOME/hubcache/`` (default ``~/.cache/hubcache/``).
    On macOS/Windows: ``~/.hubcache/cache/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_CACHE_HOME", (".cache",)) / _APP_NAME
    else:
        path = _fallback_base_dir() / "cache"
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the data directory (crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/hubcache/`` (default ``~/.local/share/hubcache/``).
    On macOS/Windows: ``~/.hubcache/logs/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_DATA_HOME", (".local", "share")) / _APP_NAME
    else:
        path = _fallback_base_dir() / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- Atomic file writes ---


def _atomic_write(path: Path, data: str) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is guaranteed to be an atomic rename on POSIX systems.
    On any failure the temp file is cleaned up.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None  # prevent double-close in finally
        os.replace(tmp_path, path)
    except BaseException:
        # Clean up the temp file on any error (including KeyboardInterrupt).
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Global config ---


def _global_config_path() -> Path:
    """Path to the global config file."""
    return get_config_dir() / _CONFIG_FILENAME


def load_global_config() -> GlobalConfig:
    """Load the global configuration from the config directory.

    Returns:
        The deserialised :class:`~hubcache.models.GlobalConfig`. If the
        file does not exist, a default instance is returned.

    Raises:
        ConfigError: If the file exists but contains invalid JSON or fails
            Pydantic validation.
    """
    path = _global_config_path()
    if not path.is_file():
        return GlobalConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return GlobalConfig.model_validate(data)
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid global config at {path}: {exc}") from exc


def save_global_config(config: GlobalConfig) -> None:
    """Persist the global configuration atomically to disk."""
    data = config.model_dump(mode="json")
    _atomic_write(_global_config_path(), json.dumps(data, indent=2) + "\n")


# --- Environment lookups ---


def _env_flag(*names: str) -> Optional[bool]:
    """Return the boolean value of the first set variable among *names*."""
    for name in names:
        value = os.environ.get(name)
        if value is not None and value != "":
            return value.strip().lower() in _TRUTHY
    return None


def resolve_cache_dir(explicit: Optional[str] = None, configured: Optional[str] = None) -> Path:
    """Resolve the cache root directory.

    Precedence (high to low):
        1. *explicit* (``--cache-dir`` flag or constructor argument)
        2. ``HUBCACHE_CACHE_DIR``
        3. ``HF_HUB_CACHE``
        4. ``HF_HOME`` + ``/hub``
        5. *configured* (``cache.cache_dir`` in the global config)
        6. :func:`get_cache_dir`

    Returns:
        An absolute, user-expanded path. The directory is not created here;
        :class:`~hubcache.cache.layout.CacheLayout` does that on demand.
    """
    if explicit:
        return Path(explicit).expanduser().resolve()
    for var in ("HUBCACHE_CACHE_DIR", "HF_HUB_CACHE"):
        value = os.environ.get(var)
        if value:
            return Path(value).expanduser().resolve()
    hf_home = os.environ.get("HF_HOME")
    if hf_home:
        return (Path(hf_home).expanduser() / "hub").resolve()
    if configured:
        return Path(configured).expanduser().resolve()
    return get_cache_dir()


# --- Precedence resolution ---


def resolve_config(
    cli_cache_dir: Optional[str] = None,
    cli_endpoint: Optional[str] = None,
    cli_offline: Optional[bool] = None,
    cli_format: Optional[str] = None,
) -> GlobalConfig:
    """Resolve config with the full precedence chain.

    Precedence (high to low):
        1. CLI flags
        2. Environment variables (``HUBCACHE_*`` first, then the ``HF_*``
           equivalents)
        3. User config (``~/.config/hubcache/config.json``)
        4. Defaults

    The returned config always carries an absolute ``cache.cache_dir``.
    """
    config = load_global_config()

    config.cache.cache_dir = str(resolve_cache_dir(cli_cache_dir, config.cache.cache_dir))

    endpoint = cli_endpoint or os.environ.get("HUBCACHE_ENDPOINT") or os.environ.get("HF_ENDPOINT")
    if endpoint:
        config.hub.endpoint = endpoint.rstrip("/")

    if cli_offline:
        config.cache.offline = True
    else:
        env_offline = _env_flag("HUBCACHE_OFFLINE", "HF_HUB_OFFLINE")
        if env_offline is not None:
            config.cache.offline = env_offline

    if cli_format is not None:
        config.output.format = cli_format

    return config
