# src/gridpush/cli.py
"""gridpush Command Line Interface.

Entry point for the gridpush CLI tool.
"""

from __future__ import annotations

import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from types import FrameType
from typing import Any

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from gridpush import __version__
from gridpush.cli_helpers import Embedder, build_embedder
from gridpush.contracts import (
    CheckpointSummary,
    DispatchError,
    NoResumableSessionError,
    ProgressEvent,
    ResumeMode,
    RunSummary,
    StopReason,
)
from gridpush.core.config import GridpushSettings, load_settings
from gridpush.core.logging import configure_logging
from gridpush.core.operations_io import OperationsFileError, center_offset, load_operations, place_at

__all__ = [
    "CliState",
    "app",
]

app = typer.Typer(
    name="gridpush",
    help="gridpush: rate-limited, resumable batch writes to a shared grid.",
    no_args_is_help=True,
)


@dataclass
class CliState:
    """Per-invocation options shared by all commands (stored in ctx.obj)."""

    settings_path: Path | None = None
    verbose: bool = False
    json_logs: bool = False
    build: Callable[..., Embedder] = build_embedder


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"gridpush version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from .env file.

    Args:
        env_file: Explicit path to .env file. If None, searches for .env
                 in current directory and parent directories.

    Returns:
        True if .env was found and loaded, False otherwise.

    Raises:
        typer.Exit: If explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(
                f"Error: .env file not found: {env_file}",
                fg=typer.colors.RED,
                err=True,
            )
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)

    return load_dotenv(override=False)  # Don't override existing env vars


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    settings: Path | None = typer.Option(
        None,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
        exists=False,  # We handle existence check ourselves for better error message
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """gridpush: rate-limited, resumable batch writes to a shared grid."""
    state = ctx.ensure_object(CliState)
    state.settings_path = settings.expanduser() if settings is not None else None
    state.verbose = verbose
    state.json_logs = json_logs

    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "INFO")

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho(
            "Warning: --env-file ignored because --no-dotenv is set.",
            fg=typer.colors.YELLOW,
            err=True,
        )


# =============================================================================
# Helpers
# =============================================================================


def _load_settings(state: CliState) -> GridpushSettings:
    """Load settings and reconfigure logging from them, exiting on config errors."""
    try:
        config = load_settings(state.settings_path)
    except (YamlParserError, YamlScannerError) as e:
        typer.echo(f"YAML syntax error in {state.settings_path}: {e.problem}", err=True)
        raise typer.Exit(1) from None
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {state.settings_path}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None

    configure_logging(
        json_output=state.json_logs or config.logging.json_output,
        level="DEBUG" if state.verbose else config.logging.level,
    )
    return config


def _open_embedder(ctx: typer.Context, **kwargs: Any) -> Embedder:
    state = ctx.ensure_object(CliState)
    return state.build(_load_settings(state), **kwargs)


def _format_progress(event: ProgressEvent) -> None:
    balance = f", balance {event.balance}" if event.balance is not None else ""
    typer.echo(f"  {event.completed} done, {event.remaining} left ({event.per_minute:.1f}/min{balance})")


def _format_checkpoint(summary: CheckpointSummary) -> None:
    typer.echo(f"Session {summary.session_id}")
    typer.echo(f"  Completed: {summary.completed}/{summary.original_count}")
    typer.echo(f"  Remaining: {summary.remaining}")
    typer.echo(f"  Errors: {summary.errors}")
    typer.echo(f"  Last active: {summary.last_active:%Y-%m-%d %H:%M:%S %Z}")


def _format_run_summary(summary: RunSummary) -> None:
    if summary.stop_reason is StopReason.COMPLETED:
        typer.secho(f"Done: {summary.completed} placed", fg=typer.colors.GREEN)
    elif summary.stop_reason is StopReason.INSUFFICIENT_RESOURCE:
        typer.secho("Stopped: out of credits", fg=typer.colors.RED, err=True)
    else:
        typer.secho("Stopped", fg=typer.colors.YELLOW, err=True)

    typer.echo(f"  Completed: {summary.completed}")
    typer.echo(f"  Errors: {summary.errors} ({summary.dropped} dropped)")
    typer.echo(f"  Remaining: {summary.remaining}")
    typer.echo(f"  Elapsed: {summary.elapsed_seconds / 60:.1f} min")
    if summary.balance is not None:
        typer.echo(f"  Credits left: {summary.balance}")
    if summary.resumable:
        typer.echo("Progress saved. Run 'gridpush resume' to continue.")


@contextmanager
def _stop_on_interrupt(embedder: Embedder) -> Iterator[None]:
    """Turn the first Ctrl-C into a cooperative stop; a second one interrupts."""

    def _handler(signum: int, frame: FrameType | None) -> None:
        signal.signal(signal.SIGINT, previous)
        if embedder.dispatcher.stop():
            typer.echo("\nStopping after the current operation...", err=True)

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _run(embedder: Embedder, runner: Callable[[], RunSummary]) -> None:
    """Run a dispatch loop, render its summary and exit with its status."""
    try:
        with _stop_on_interrupt(embedder):
            summary = runner()
    except DispatchError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None

    _format_run_summary(summary)
    if summary.stop_reason is not StopReason.COMPLETED:
        raise typer.Exit(1)


# =============================================================================
# Commands
# =============================================================================


@app.command()
def embed(
    ctx: typer.Context,
    operations_file: Path = typer.Argument(
        ...,
        help="Operations file (.json, .yaml or .csv with x, y, color).",
    ),
    at: tuple[int, int] | None = typer.Option(
        None,
        "--at",
        help="Place the image with its top-left corner at X Y.",
    ),
    center: bool = typer.Option(
        False,
        "--center",
        help="Center the image on the canvas.",
    ),
    resource: str | None = typer.Option(
        None,
        "--resource",
        "-r",
        help="Identity of the target grid (defaults to the remote base URL).",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip confirmation prompts.",
    ),
) -> None:
    """Place every operation in a file, rate limited and resumable."""
    if at is not None and center:
        typer.echo("Error: --at and --center are mutually exclusive.", err=True)
        raise typer.Exit(1)

    try:
        operations = load_operations(operations_file.expanduser())
    except FileNotFoundError:
        typer.echo(f"Error: Operations file not found: {operations_file}", err=True)
        raise typer.Exit(1) from None
    except OperationsFileError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None

    if not operations:
        typer.echo("Nothing to place: the operations file is empty.")
        return

    with _open_embedder(ctx, on_progress=_format_progress) as embedder:
        try:
            if center:
                operations = center_offset(operations, *embedder.canvas_size)
            elif at is not None:
                operations = place_at(operations, at)
        except ValueError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1) from None

        existing = embedder.sessions.announce()
        if existing is not None and not yes:
            _format_checkpoint(existing)
            if not typer.confirm("Starting a new batch discards this saved session. Continue?"):
                typer.echo("Aborted.")
                raise typer.Exit(1)

        report = embedder.dispatcher.preflight(operations)
        if report.sufficient is False and not yes:
            typer.secho(
                f"Only {report.balance} credits for {report.required} pixels ({report.deficit} short).",
                fg=typer.colors.YELLOW,
                err=True,
            )
            if not typer.confirm("Start anyway?"):
                typer.echo("Aborted.")
                raise typer.Exit(1)

        typer.echo(f"Placing {len(operations)} pixels...")
        _run(embedder, lambda: embedder.dispatcher.dispatch(operations, resource or embedder.resource_id))


@app.command()
def resume(
    ctx: typer.Context,
    validate: bool = typer.Option(
        False,
        "--validate",
        help="Check the grid first and only place what is missing.",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip the confirmation prompt.",
    ),
) -> None:
    """Resume the saved session."""
    with _open_embedder(ctx, on_progress=_format_progress) as embedder:
        summary = embedder.sessions.inspect()
        if summary is None:
            typer.echo("No session to resume.", err=True)
            raise typer.Exit(1)

        _format_checkpoint(summary)
        if not yes and not typer.confirm("Resume this session?"):
            typer.echo("Aborted.")
            raise typer.Exit(1)

        mode = ResumeMode.VALIDATE if validate else ResumeMode.CONTINUE
        _run(embedder, lambda: embedder.sessions.resume(mode))


@app.command("validate")
def validate_session(ctx: typer.Context) -> None:
    """Compare the saved session with the grid and queue what is missing.

    Nothing is placed; run 'gridpush resume' afterwards. Only a saved,
    interrupted session can be checked. A run that completes discards its
    checkpoint, so there is nothing left to validate afterwards.
    """
    with _open_embedder(ctx) as embedder:
        try:
            missing = embedder.sessions.validate()
        except NoResumableSessionError as e:
            typer.echo(f"Error: {e}", err=True)
            typer.echo("Completed runs discard their saved session; only interrupted runs can be validated.", err=True)
            raise typer.Exit(1) from None
        except DispatchError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1) from None

    if missing:
        typer.echo(f"{len(missing)} pixels missing from the grid. Run 'gridpush resume' to place them.")
    else:
        typer.secho("Everything is in place.", fg=typer.colors.GREEN)


@app.command()
def status(ctx: typer.Context) -> None:
    """Show limiter settings and any saved session."""
    with _open_embedder(ctx) as embedder:
        embedder.sessions.announce()
        current = embedder.dispatcher.get_status()

    typer.echo(f"State: {current.state.value}")
    typer.echo(f"Burst quota: {current.burst_quota}, min spacing: {current.min_spacing_ms} ms")
    if current.tier is not None:
        typer.echo(f"Tier: {current.tier}")
    typer.echo(f"Resumable session: {'yes' if current.has_resumable_checkpoint else 'no'}")


@app.command()
def session(ctx: typer.Context) -> None:
    """Show the saved session, if any."""
    with _open_embedder(ctx) as embedder:
        summary = embedder.sessions.inspect()

    if summary is None:
        typer.echo("No saved session.")
        return
    _format_checkpoint(summary)


@app.command()
def clear(
    ctx: typer.Context,
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip the confirmation prompt.",
    ),
) -> None:
    """Discard the saved session."""
    with _open_embedder(ctx) as embedder:
        summary = embedder.sessions.inspect()
        if summary is None:
            typer.echo("No saved session.")
            return
        if not yes and not typer.confirm(f"Discard session {summary.session_id} ({summary.remaining} remaining)?"):
            typer.echo("Aborted.")
            raise typer.Exit(1)
        if not embedder.sessions.clear():
            typer.echo("Error: Could not clear the saved session.", err=True)
            raise typer.Exit(1)

    typer.echo("Saved session cleared.")


@app.command()
def credits(ctx: typer.Context) -> None:
    """Show the remaining credit balance."""
    with _open_embedder(ctx) as embedder:
        balance = embedder.balance_probe.fetch_balance() if embedder.balance_probe is not None else None

    if balance is None:
        typer.echo("Error: Could not read the credit balance.", err=True)
        raise typer.Exit(1)
    typer.echo(f"Credits: {balance}")
