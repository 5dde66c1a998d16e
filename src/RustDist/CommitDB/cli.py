# === NAVMAP v1 ===
# {
#   "module": "RustDist.CommitDB.cli",
#   "purpose": "Typer command line for updating and querying the commit database",
#   "sections": [
#     {"id": "clicontext", "name": "CliContext", "anchor": "class-clicontext", "kind": "class"},
#     {"id": "main", "name": "main", "anchor": "function-main", "kind": "function"},
#     {"id": "update", "name": "update", "anchor": "function-update", "kind": "function"},
#     {"id": "list-valid", "name": "list_valid", "anchor": "function-list-valid", "kind": "function"},
#     {"id": "lookup", "name": "lookup", "anchor": "function-lookup", "kind": "function"},
#     {"id": "latest", "name": "latest", "anchor": "function-latest", "kind": "function"},
#     {"id": "show", "name": "show", "anchor": "function-show", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Command line interface for the commit database.

Usage::

    commit-db update [--force]
    commit-db list-valid CHANNEL
    commit-db lookup COMMIT

Query results are printed to stdout, one per line (or as JSON with
``--format json``); diagnostics go to stderr.  Unknown commands and channels
exit with status 2 and a usage message, failed updates and unresolvable
commits with status 1.
"""

import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from .aggregator import CommitDB
from .errors import CommitDBError, CommitResolutionError
from .logging_utils import setup_logging
from .network import close_http_client
from .settings import Channel, CommitDBSettings, get_settings

__all__ = ["app", "main"]


class OutputFormat(str, Enum):
    TEXT = "text"
    JSON = "json"


class CliContext:
    """Per-invocation state shared by the commands."""

    def __init__(self, settings: CommitDBSettings) -> None:
        self.settings = settings

    def open_db(self) -> CommitDB:
        return CommitDB.from_settings(self.settings)


app = typer.Typer(
    name="commit-db",
    help="Map Rust release artifacts to the commits they were built from.",
    no_args_is_help=True,
    add_completion=False,
)


def _emit(values: List[str], fmt: OutputFormat) -> None:
    if fmt is OutputFormat.JSON:
        typer.echo(json.dumps(values))
        return
    for value in values:
        typer.echo(value)


def _context(ctx: typer.Context) -> CliContext:
    context = ctx.find_object(CliContext)
    if context is None:
        raise typer.BadParameter("commit-db was invoked without its global options")
    return context


@app.callback()
def main(
    ctx: typer.Context,
    data_dir: Optional[Path] = typer.Option(
        None, "--data-dir", help="Root directory of the on-disk stores (env: COMMITDB_DATA_DIR)"
    ),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="DEBUG, INFO, WARNING or ERROR (env: COMMITDB_LOG_LEVEL)"
    ),
) -> None:
    """Map Rust release artifacts to the commits they were built from."""

    overrides: Dict[str, Any] = {}
    if data_dir is not None:
        overrides["data_dir"] = data_dir
    if log_level is not None:
        overrides["log_level"] = log_level
    try:
        settings = get_settings(**overrides)
    except CommitDBError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(2) from exc

    setup_logging(
        level=settings.log_level,
        log_dir=settings.resolved_log_dir,
        retention_days=settings.log_retention_days,
    )
    ctx.obj = CliContext(settings)
    ctx.call_on_close(close_http_client)


@app.command()
def update(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Ignore freshness markers and rescan"),
) -> None:
    """Fetch new builds and release manifests for every channel."""

    with _context(ctx).open_db() as db:
        report = db.update(force=force)
    if not report.ok:
        failed = ", ".join(channel.value for channel in report.failed_channels)
        typer.echo(f"Error: update failed for {failed}", err=True)
        raise typer.Exit(1)


@app.command("list-valid")
def list_valid(
    ctx: typer.Context,
    channel: Channel = typer.Argument(..., case_sensitive=False, help="stable, beta or nightly"),
    fmt: OutputFormat = typer.Option(OutputFormat.TEXT, "--format", help="Output format"),
) -> None:
    """Print every commit with a complete artifact on CHANNEL."""

    with _context(ctx).open_db() as db:
        revisions = db.list_valid(channel)
    _emit(revisions, fmt)


@app.command()
def lookup(
    ctx: typer.Context,
    commit: str = typer.Argument(..., help="Full or abbreviated commit hash"),
    fmt: OutputFormat = typer.Option(OutputFormat.TEXT, "--format", help="Output format"),
) -> None:
    """Print the artifacts built from COMMIT, nightly first."""

    error: Optional[CommitResolutionError] = None
    labels: List[str] = []
    with _context(ctx).open_db() as db:
        try:
            labels = db.lookup(commit)
        except CommitResolutionError as exc:
            error = exc
    if error is not None:
        typer.echo(f"Error: {error}", err=True)
        raise typer.Exit(1)
    _emit(labels, fmt)


@app.command()
def latest(
    ctx: typer.Context,
    channel: Channel = typer.Argument(..., case_sensitive=False, help="stable, beta or nightly"),
) -> None:
    """Print the newest artifact label known for CHANNEL."""

    with _context(ctx).open_db() as db:
        label = db.latest(channel)
    if label is None:
        typer.echo(f"No complete {channel.value} artifact found", err=True)
        raise typer.Exit(1)
    typer.echo(label)


@app.command()
def show(
    ctx: typer.Context,
    channel: Channel = typer.Argument(..., case_sensitive=False, help="stable, beta or nightly"),
) -> None:
    """Print the extracted properties of every successful build on CHANNEL as JSON lines."""

    with _context(ctx).open_db() as db:
        rows = list(db.builds(channel).describe())
    for row in rows:
        typer.echo(json.dumps(row, sort_keys=True))
