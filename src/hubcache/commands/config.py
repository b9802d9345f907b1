"""Config commands -- view and modify global configuration.

Provides the ``hubcache config`` sub-command group for reading, updating,
and resetting the user's global configuration file
(:class:`~hubcache.models.GlobalConfig`). Settings are persisted in the
hubcache config directory and control defaults such as the cache budget,
hub endpoint, and output format.
"""

from __future__ import annotations

from typing import Any

import typer

from hubcache.exit_codes import EXIT_INVALID_USAGE
from hubcache.output import error, format_response, info, success


config_app = typer.Typer(no_args_is_help=True)

_NULL_WORDS = ("none", "null", "")


@config_app.command("show")
def config_show() -> None:
    """Show current configuration.

    Loads the global config from disk and prints the config directory
    path followed by the full configuration.

    Example::

        hubcache config show
        hubcache --json config show
    """
    from hubcache.config import get_config_dir, load_global_config
    from hubcache.exceptions import ConfigError

    try:
        config = load_global_config()
    except ConfigError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    info(f"Config directory: {get_config_dir()}")
    format_response(config.model_dump(mode="json"))


def _coerce(key: str, current: Any, value: str) -> Any:
    """Convert *value* to the type of the field's current value."""
    if value.strip().lower() in _NULL_WORDS and current is None:
        return None
    if isinstance(current, bool):
        return value.lower() in ("true", "1", "yes")
    if isinstance(current, int):
        if value.strip().lower() in _NULL_WORDS:
            return None
        try:
            return int(value)
        except ValueError:
            error(f"Expected integer for {key}, got: {value}")
            raise typer.Exit(code=EXIT_INVALID_USAGE) from None
    if isinstance(current, float):
        if value.strip().lower() in _NULL_WORDS:
            return None
        try:
            return float(value)
        except ValueError:
            error(f"Expected number for {key}, got: {value}")
            raise typer.Exit(code=EXIT_INVALID_USAGE) from None
    return value


@config_app.command("set")
def config_set(
    key: str = typer.Argument(
        help="Config key (dot notation, e.g., 'cache.max_size_bytes')."
    ),
    value: str = typer.Argument(help="Value to set ('none' clears optional values)."),
) -> None:
    """Set a configuration value.

    Uses dot notation for nested keys. The value is coerced to match the
    existing field's type (bool, int, float or str) and the updated config
    is validated against :class:`~hubcache.models.GlobalConfig` before
    saving.

    Example::

        hubcache config set cache.max_size_bytes 53687091200
        hubcache config set hub.endpoint https://hf-mirror.example.com
        hubcache config set cache.lock_timeout none
    """
    from hubcache.config import load_global_config, save_global_config
    from hubcache.models import GlobalConfig

    config = load_global_config()
    data = config.model_dump(mode="json")

    keys = key.split(".")
    target = data
    for k in keys[:-1]:
        if k not in target or not isinstance(target[k], dict):
            error(f"Invalid config key: {key}")
            raise typer.Exit(code=EXIT_INVALID_USAGE)
        target = target[k]

    final_key = keys[-1]
    if final_key not in target or isinstance(target[final_key], dict):
        error(f"Unknown config key: {key}")
        raise typer.Exit(code=EXIT_INVALID_USAGE)

    coerced = _coerce(key, target[final_key], value)
    target[final_key] = coerced

    try:
        new_config = GlobalConfig.model_validate(data)
    except ValueError as exc:
        error(f"Validation error: {exc}")
        raise typer.Exit(code=EXIT_INVALID_USAGE) from None

    save_global_config(new_config)
    success(f"Set {key} = {coerced}")


@config_app.command("reset")
def config_reset(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation."),
) -> None:
    """Reset configuration to defaults.

    Replaces the persisted global config with a fresh
    :class:`~hubcache.models.GlobalConfig`. Asks for confirmation unless
    ``--yes`` is given.

    Example::

        hubcache config reset --yes
    """
    from hubcache.config import save_global_config
    from hubcache.models import GlobalConfig

    if not yes:
        confirmed = typer.confirm("Reset all config to defaults?")
        if not confirmed:
            info("Cancelled.")
            raise typer.Exit()

    save_global_config(GlobalConfig())
    success("Configuration reset to defaults.")
