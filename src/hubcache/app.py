"""Typer application and CLI entry point for hubcache.

This module wires together the top-level Typer application and registers the
built-in sub-commands (``download``, ``snapshot``, ``ls``, ``stats``,
``clear``, ``evict``, ``verify`` and the ``config`` group).

The :func:`main` function is the console-script entry point declared in
``pyproject.toml``. It installs signal handlers and invokes the Typer app.
:class:`~hubcache.exceptions.HubCacheError` exits with its ``exit_code``;
any other exception is written to a crash log under the data directory.

See Also:
    :mod:`hubcache.config`: Configuration and cache-root resolution.
    :mod:`hubcache.output`: Output formatting initialised in :func:`main_callback`.
"""

from __future__ import annotations

import signal
import sys
import traceback
from datetime import datetime
from typing import Any, Optional

import typer

from hubcache import __version__
from hubcache.exit_codes import EXIT_GENERIC_FAILURE


app = typer.Typer(
    name="hubcache",
    help="Local content-addressed cache for hub repository files.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    """Print version and exit when --version is passed."""
    if value:
        typer.echo(f"hubcache {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    json_output: bool = typer.Option(
        False, "--json", help="JSON output format."
    ),
    plain_output: bool = typer.Option(
        False, "--plain", help="Plain text output."
    ),
    no_color: bool = typer.Option(
        False, "--no-color", help="Disable color output."
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Suppress non-essential output."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug output."
    ),
    cache_dir: Optional[str] = typer.Option(
        None, "--cache-dir", help="Cache root directory."
    ),
    endpoint: Optional[str] = typer.Option(
        None, "--endpoint", help="Hub base URL."
    ),
    offline: bool = typer.Option(
        False, "--offline", help="Serve from the cache only."
    ),
) -> None:
    """Root callback executed before every sub-command.

    Initialises the global :class:`~hubcache.output.OutputManager` and the
    ``hubcache`` log handler from CLI flags, and stores the cache options in
    the Typer context so that sub-commands can read them via ``ctx.obj``.
    """
    from hubcache.output import OutputFormat, OutputManager, set_output, setup_logging

    fmt = OutputFormat.AUTO
    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN

    output = OutputManager(
        format=fmt,
        no_color=no_color,
        quiet=quiet,
        verbose=verbose,
    )
    set_output(output)
    setup_logging(output)

    ctx.ensure_object(dict)
    ctx.obj["cache_dir"] = cache_dir
    ctx.obj["endpoint"] = endpoint
    ctx.obj["offline"] = offline
    ctx.obj["verbose"] = verbose


# ------------------------------------------------------------------ #
# Built-in commands
# ------------------------------------------------------------------ #

from hubcache.commands.cache import (  # noqa: E402
    clear_command,
    download_command,
    evict_command,
    ls_command,
    snapshot_command,
    stats_command,
    verify_command,
)
from hubcache.commands.config import config_app  # noqa: E402

app.command("download")(download_command)
app.command("snapshot")(snapshot_command)
app.command("ls")(ls_command)
app.command("stats")(stats_command)
app.command("clear")(clear_command)
app.command("evict")(evict_command)
app.command("verify")(verify_command)
app.add_typer(config_app, name="config", help="Configuration management.")


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write a crash traceback to disk and return the log file path."""
    from hubcache.config import get_data_dir

    logs_dir = get_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = logs_dir / f"crash-{timestamp}.log"
    log_path.write_text(traceback.format_exc())
    return str(log_path)


def main() -> None:
    """CLI entry point invoked by the ``hubcache`` console script.

    Unhandled :class:`~hubcache.exceptions.HubCacheError` instances cause a
    clean exit with the error's ``exit_code``. All other exceptions produce
    a crash log and a generic failure exit.

    Raises:
        SystemExit: Always raised (either by Typer or explicitly).
    """
    _setup_signal_handlers()
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)
    except Exception as exc:
        from hubcache.exceptions import HubCacheError
        from hubcache.output import error

        if isinstance(exc, HubCacheError):
            error(str(exc))
            sys.exit(exc.exit_code)
        else:
            log_path = _write_crash_log(exc)
            error(f"Unexpected error. Debug log: {log_path}")
            sys.exit(EXIT_GENERIC_FAILURE)
