"""Tests for the output formatting system.

Covers:
- OutputFormat resolution (auto -> rich/plain based on TTY)
- NO_COLOR / TERM=dumb color disabling
- stdout vs stderr discipline and quiet/verbose rules
- print_table and format_response in each mode
- format_bytes
- setup_logging (RichHandler wiring for the ``hubcache`` logger)
- Global instance management
"""

from __future__ import annotations

import json
import logging

import pytest

from hubcache.output import (
    OutputFormat,
    OutputManager,
    format_bytes,
    get_output,
    reset_output,
    set_output,
    setup_logging,
)


# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture()
def non_tty(monkeypatch):
    """Patch stdout.isatty() to return False."""
    monkeypatch.setattr("hubcache.output._is_tty", lambda: False)


@pytest.fixture()
def tty(monkeypatch):
    """Patch stdout.isatty() to return True."""
    monkeypatch.setattr("hubcache.output._is_tty", lambda: True)


@pytest.fixture()
def hubcache_logger():
    logger = logging.getLogger("hubcache")
    yield logger
    for handler in list(logger.handlers):
        if getattr(handler, "_hubcache_cli", False):
            logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


# ------------------------------------------------------------------ #
# Format resolution and colour
# ------------------------------------------------------------------ #


class TestOutputFormatResolution:
    def test_auto_resolves_to_plain_when_not_tty(self, non_tty):
        assert OutputManager().format == OutputFormat.PLAIN

    def test_auto_resolves_to_rich_when_tty(self, tty, monkeypatch):
        monkeypatch.delenv("NO_COLOR", raising=False)
        monkeypatch.setenv("TERM", "xterm-256color")
        assert OutputManager().format == OutputFormat.RICH

    def test_auto_is_plain_on_tty_without_color(self, tty, monkeypatch):
        monkeypatch.setenv("NO_COLOR", "1")
        assert OutputManager().format == OutputFormat.PLAIN

    def test_explicit_json_stays_json(self, tty):
        assert OutputManager(format=OutputFormat.JSON).format == OutputFormat.JSON

    def test_term_dumb_disables_color(self, tty, monkeypatch):
        monkeypatch.delenv("NO_COLOR", raising=False)
        monkeypatch.setenv("TERM", "dumb")
        assert OutputManager().format == OutputFormat.PLAIN


# ------------------------------------------------------------------ #
# Stream discipline
# ------------------------------------------------------------------ #


class TestStreams:
    def test_data_goes_to_stdout(self, capfd, non_tty):
        OutputManager(no_color=True).print_data("/cache/blobs/ab/abc")
        out, err = capfd.readouterr()
        assert out == "/cache/blobs/ab/abc\n"
        assert err == ""

    def test_diagnostics_go_to_stderr(self, capfd, non_tty):
        output = OutputManager(no_color=True)
        output.info("fetching")
        output.warning("slow")
        output.error("failed")
        out, err = capfd.readouterr()
        assert out == ""
        assert "fetching" in err
        assert "Warning: slow" in err
        assert "Error: failed" in err

    def test_quiet_hides_info_but_not_errors(self, capfd, non_tty):
        output = OutputManager(no_color=True, quiet=True)
        output.info("hidden")
        output.success("hidden too")
        output.error("shown")
        _, err = capfd.readouterr()
        assert "hidden" not in err
        assert "Error: shown" in err

    def test_debug_needs_verbose(self, capfd, non_tty):
        OutputManager(no_color=True).debug("nope")
        OutputManager(no_color=True, verbose=True).debug("yes")
        _, err = capfd.readouterr()
        assert "nope" not in err
        assert "[debug] yes" in err

    def test_progress_only_on_tty(self, capfd, non_tty):
        OutputManager(no_color=True).progress("12 B / 20 B")
        _, err = capfd.readouterr()
        assert err == ""


# ------------------------------------------------------------------ #
# Structured data
# ------------------------------------------------------------------ #


class TestStructuredData:
    def test_table_json(self, capfd, non_tty):
        OutputManager(format=OutputFormat.JSON).print_table(
            ["repo", "size"], [["org/a", "10 B"], ["org/b", "2 B"]]
        )
        out, _ = capfd.readouterr()
        assert json.loads(out) == [
            {"repo": "org/a", "size": "10 B"},
            {"repo": "org/b", "size": "2 B"},
        ]

    def test_table_plain(self, capfd, non_tty):
        OutputManager(format=OutputFormat.PLAIN).print_table(["repo", "size"], [["org/a", "10 B"]])
        out, _ = capfd.readouterr()
        assert out.splitlines() == ["repo\tsize", "org/a\t10 B"]

    def test_table_rich(self, capfd, non_tty):
        OutputManager(format=OutputFormat.RICH).print_table(
            ["repo"], [["organisation/model-name"]], title="Cached files"
        )
        out, _ = capfd.readouterr()
        assert "organisation/model-name" in out
        assert "Cached files" in out

    def test_table_rich_no_color_has_no_escape_codes(self, capfd, non_tty):
        OutputManager(format=OutputFormat.RICH, no_color=True).print_table(
            ["repo"], [["org/a"]], title="Cached files"
        )
        out, _ = capfd.readouterr()
        assert "org/a" in out
        assert "Cached" in out
        assert "\x1b[" not in out

    def test_format_response_json(self, capfd, non_tty):
        OutputManager(format=OutputFormat.JSON).format_response({"total_size_bytes": 3})
        out, _ = capfd.readouterr()
        assert json.loads(out) == {"total_size_bytes": 3}

    def test_format_response_plain_dict(self, capfd, non_tty):
        OutputManager(format=OutputFormat.PLAIN).format_response({"entries": 2, "refs": 3})
        out, _ = capfd.readouterr()
        assert out.splitlines() == ["entries\t2", "refs\t3"]

    def test_format_response_rich_summary(self, capfd, non_tty):
        OutputManager(format=OutputFormat.RICH, no_color=True).format_response(
            {"total_size": "1.5 KiB", "blobs": 3}
        )
        out, _ = capfd.readouterr()
        assert "total_size" in out
        assert "1.5 KiB" in out
        assert "{" not in out


class TestFormatBytes:
    @pytest.mark.parametrize(
        "size, expected",
        [
            (0, "0 B"),
            (1023, "1023 B"),
            (1024, "1.0 KiB"),
            (1536, "1.5 KiB"),
            (10 * 1024**3, "10.0 GiB"),
            (None, "unlimited"),
        ],
    )
    def test_format_bytes(self, size, expected):
        assert format_bytes(size) == expected


# ------------------------------------------------------------------ #
# Logging
# ------------------------------------------------------------------ #


class TestSetupLogging:
    def test_default_level_is_warning(self, hubcache_logger, non_tty):
        setup_logging(OutputManager(no_color=True))
        assert hubcache_logger.level == logging.WARNING

    def test_verbose_enables_debug(self, hubcache_logger, non_tty):
        setup_logging(OutputManager(no_color=True, verbose=True))
        assert hubcache_logger.level == logging.DEBUG

    def test_quiet_shows_errors_only(self, hubcache_logger, non_tty):
        setup_logging(OutputManager(no_color=True, quiet=True))
        assert hubcache_logger.level == logging.ERROR

    def test_repeated_setup_replaces_handler(self, hubcache_logger, non_tty):
        setup_logging(OutputManager(no_color=True))
        setup_logging(OutputManager(no_color=True))
        installed = [h for h in hubcache_logger.handlers if getattr(h, "_hubcache_cli", False)]
        assert len(installed) == 1

    def test_records_reach_stderr(self, hubcache_logger, capfd, non_tty):
        setup_logging(OutputManager(no_color=True))
        logging.getLogger("hubcache.cache.store").warning("Removing dangling snapshot link x")
        out, err = capfd.readouterr()
        assert out == ""
        assert "Removing dangling snapshot link x" in err


# ------------------------------------------------------------------ #
# Global instance
# ------------------------------------------------------------------ #


class TestGlobalInstance:
    def test_get_output_creates_default(self, non_tty):
        reset_output()
        assert isinstance(get_output(), OutputManager)

    def test_set_output_installs_instance(self):
        custom = OutputManager(format=OutputFormat.JSON)
        set_output(custom)
        assert get_output() is custom
        reset_output()
        assert get_output() is not custom
