"""Cache commands -- download files and inspect or prune the local cache.

Every command builds a :class:`~hubcache.cache.HubCache` from the resolved
configuration (CLI flags > environment > config file > defaults) and turns
:class:`~hubcache.exceptions.HubCacheError` into an error message plus the
error's exit code.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Callable, Iterator, Optional

import typer

from hubcache.exceptions import HubCacheError
from hubcache.exit_codes import EXIT_GENERIC_FAILURE, EXIT_INVALID_USAGE
from hubcache.output import (
    OutputFormat,
    debug,
    error,
    format_bytes,
    format_response,
    get_output,
    info,
    print_data,
    print_table,
    progress,
    success,
    suggest,
    warning,
)

if TYPE_CHECKING:
    from hubcache.cache import HubCache


@contextmanager
def _open_cache(ctx: typer.Context) -> Iterator[HubCache]:
    """Yield a configured :class:`HubCache`, mapping library errors to exit codes."""
    from hubcache.cache import HubCache
    from hubcache.config import resolve_config

    obj = ctx.obj or {}
    try:
        config = resolve_config(
            cli_cache_dir=obj.get("cache_dir"),
            cli_endpoint=obj.get("endpoint"),
            cli_offline=obj.get("offline"),
        )
        debug(f"Cache root: {config.cache.cache_dir}")
        with HubCache.from_config(config) as cache:
            yield cache
    except HubCacheError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None


def _progress_reporter(label: str) -> Callable[[int, int], None]:
    """Report download progress on stderr in ten-percent steps."""
    state = {"last": -1}

    def _report(done: int, total: int) -> None:
        if total <= 0:
            return
        step = done * 10 // total
        if step != state["last"]:
            state["last"] = step
            progress(f"{label}: {format_bytes(done)} / {format_bytes(total)}")

    return _report


def download_command(
    ctx: typer.Context,
    repo_id: str = typer.Argument(help="Repository id, e.g. 'org/name'."),
    filename: str = typer.Argument(help="Path of the file inside the repository."),
    revision: str = typer.Option("main", "--revision", "-r", help="Branch, tag or commit."),
    repo_type: str = typer.Option("model", "--repo-type", "-t", help="model, dataset or space."),
    force: bool = typer.Option(False, "--force", help="Re-download even if cached."),
) -> None:
    """Download a file into the cache and print its local path.

    Example::

        hubcache download bert-base-uncased config.json
        hubcache download squad plain_text/train.parquet --repo-type dataset
    """
    with _open_cache(ctx) as cache:
        blob = cache.ensure_present(
            repo_type,
            repo_id,
            revision,
            filename,
            force_download=force,
            progress=_progress_reporter(filename),
        )
        path = cache.layout.snapshot_path(repo_type, repo_id, revision, filename)
        if get_output().format == OutputFormat.JSON:
            format_response({"path": str(path), "blob": str(blob), "size": blob.stat().st_size})
        else:
            print_data(str(path))


def snapshot_command(
    ctx: typer.Context,
    repo_id: str = typer.Argument(help="Repository id."),
    revision: str = typer.Option("main", "--revision", "-r", help="Branch, tag or commit."),
    repo_type: str = typer.Option("model", "--repo-type", "-t", help="model, dataset or space."),
    include: Optional[list[str]] = typer.Option(
        None, "--include", "-i", help="Glob of files to fetch (repeatable)."
    ),
    exclude: Optional[list[str]] = typer.Option(
        None, "--exclude", "-x", help="Glob of files to skip (repeatable)."
    ),
    workers: Optional[int] = typer.Option(None, "--workers", help="Parallel downloads."),
) -> None:
    """Download every matching file of a revision and print the snapshot directory."""
    with _open_cache(ctx) as cache:
        path = cache.snapshot_download(
            repo_type,
            repo_id,
            revision,
            allow_patterns=include,
            ignore_patterns=exclude,
            max_workers=workers,
        )
        print_data(str(path))


def ls_command(
    ctx: typer.Context,
    repo_id: Optional[str] = typer.Argument(None, help="Only list this repository."),
) -> None:
    """List cached files."""
    with _open_cache(ctx) as cache:
        sizes = {e.content_id: e.size_bytes for e in cache.store.entries()}
        rows = []
        for ref in cache.store.refs():
            if repo_id is not None and ref.key.repo_id != repo_id:
                continue
            rows.append(
                [
                    ref.key.repo_type.value,
                    ref.key.repo_id,
                    ref.key.revision,
                    ref.key.filename,
                    str(sizes.get(ref.content_id, 0)),
                    ref.content_id[:12],
                ]
            )
        if not rows:
            info("No cached files.")
            return
        print_table(
            ["type", "repo", "revision", "file", "size", "content"],
            rows,
            title="Cached files",
        )


def stats_command(ctx: typer.Context) -> None:
    """Show cache size, entry counts and the size budget."""
    with _open_cache(ctx) as cache:
        stats = cache.stats()
        listings = cache.metadata_cache.stats() if cache.metadata_cache is not None else None
        if get_output().format == OutputFormat.JSON:
            payload = stats.model_dump(mode="json")
            if listings is not None:
                payload["metadata_cache"] = listings
            format_response(payload)
            return
        summary = {
            "cache_dir": stats.cache_dir,
            "total_size": format_bytes(stats.total_size_bytes),
            "max_size": format_bytes(stats.max_size_bytes),
            "blobs": stats.entry_count,
            "files": stats.ref_count,
            "repos": len(stats.repo_ids),
        }
        if listings is not None and listings["enabled"]:
            summary["cached_listings"] = listings["size"]
        format_response(summary)


def clear_command(
    ctx: typer.Context,
    repo_id: Optional[str] = typer.Argument(None, help="Only clear this repository."),
    repo_type: Optional[str] = typer.Option(None, "--repo-type", "-t", help="Only this repo type."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation."),
) -> None:
    """Remove cached files (everything when no repository is given)."""
    target = repo_id or (f"all {repo_type} repositories" if repo_type else "the entire cache")
    if not yes and not typer.confirm(f"Clear {target}?"):
        info("Cancelled.")
        raise typer.Exit()
    with _open_cache(ctx) as cache:
        removed = cache.clear(repo_id=repo_id, repo_type=repo_type)
        success(f"Removed {removed} cached file(s) from {target}.")


def evict_command(
    ctx: typer.Context,
    target_bytes: Optional[int] = typer.Argument(None, help="Bytes to free."),
    max_age: Optional[float] = typer.Option(
        None, "--max-age", help="Evict unused blobs not accessed for this many seconds."
    ),
    strict: bool = typer.Option(False, "--strict", help="Fail if the target cannot be met."),
) -> None:
    """Evict unreferenced blobs, least recently used first."""
    if (target_bytes is None) == (max_age is None):
        error("Pass either BYTES or --max-age.")
        raise typer.Exit(code=EXIT_INVALID_USAGE)
    with _open_cache(ctx) as cache:
        if max_age is not None:
            result = cache.evict_older_than(max_age)
        else:
            result = cache.eviction.evict(target_bytes, strict=strict)
        if get_output().format == OutputFormat.JSON:
            payload = result.model_dump(mode="json")
            payload["shortfall_bytes"] = result.shortfall_bytes
            format_response(payload)
            return
        success(f"Freed {format_bytes(result.freed_bytes)} ({len(result.removed)} blob(s)).")
        if target_bytes is not None and result.budget_exceeded:
            warning(f"{format_bytes(result.shortfall_bytes)} could not be freed.")


def verify_command(
    ctx: typer.Context,
    repair: bool = typer.Option(False, "--repair", help="Remove corrupted blobs and dangling links."),
) -> None:
    """Re-hash cached blobs and report corruption."""
    with _open_cache(ctx) as cache:
        report = cache.verify(repair=repair)
    if get_output().format == OutputFormat.JSON:
        format_response(report.model_dump(mode="json"))
    else:
        format_response(
            {
                "blobs": report.total_blobs,
                "valid": len(report.valid),
                "corrupted": len(report.corrupted),
                "unverifiable": len(report.unverifiable),
                "dangling_links": len(report.dangling_refs),
                "repaired": report.repaired,
            }
        )
    if (report.corrupted or report.dangling_refs) and not repair:
        suggest("Run 'hubcache verify --repair' to remove damaged entries.")
        raise typer.Exit(code=EXIT_GENERIC_FAILURE)
