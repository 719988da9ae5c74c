"""Command-line interface for wordclip.

Uses Typer for a modern, type-hinted CLI experience.
"""

from __future__ import annotations

import signal
from pathlib import Path
from typing import Annotated, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape

# Load environment variables from .env files
# Priority: local .env > ~/.wordclip/.env
_user_env = Path.home() / ".wordclip" / ".env"
if _user_env.exists():
    load_dotenv(_user_env)
load_dotenv()
from rich.panel import Panel
from rich.table import Table

from wordclip import __version__
from wordclip.cache import StageCacheManager, StageKind
from wordclip.config import (
    WordclipConfig,
    apply_cli_overrides,
    config_summary,
    example_config,
    load_config,
    save_config,
    validate_config,
)
from wordclip.errors import ConfigError, WordclipError, format_error_for_display
from wordclip.ffmpeg_binary import get_dependency_report, verify_ffmpeg
from wordclip.logging import LogConfig, LogLevel, configure_logging
from wordclip.pipeline import ClipStatus, Pipeline, PipelineRun, RunStatus

# Create the main Typer app
app = typer.Typer(
    name="wordclip",
    help="Cut short clips around every spoken occurrence of your keywords.",
    add_completion=False,
    rich_markup_mode="rich",
)

cache_app = typer.Typer(
    name="cache",
    help="Inspect and clear the stage cache.",
)
app.add_typer(cache_app, name="cache")

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"wordclip version {__version__}")
        raise typer.Exit()


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


def _setup_logging(
    verbose: bool,
    debug: bool,
    quiet: bool,
    log_file: Path | None,
    json_logs: bool,
) -> None:
    if debug:
        level = LogLevel.DEBUG
    elif verbose:
        level = LogLevel.VERBOSE
    elif quiet:
        level = LogLevel.QUIET
    else:
        level = LogLevel.NORMAL
    configure_logging(LogConfig(level=level, log_file=log_file, json_format=json_logs))


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Wordclip - keyword-driven video clipping.

    Transcribes the audio of a long recording, finds every spoken
    occurrence of your keywords and cuts a clip around each one.
    Overlapping clips are merged, and every stage is cached so an
    interrupted run picks up where it stopped.
    """
    pass


# =============================================================================
# Run
# =============================================================================


def _print_run_plan(config: WordclipConfig) -> None:
    summary = config_summary(config)
    lines = "\n".join(f"[cyan]{key}:[/cyan] {value}" for key, value in summary.items())
    console.print(Panel(lines, title="wordclip run", expand=False))


def _print_results(result: PipelineRun) -> None:
    if result.outcomes:
        table = Table(title="Clips")
        table.add_column("#", style="cyan", justify="right")
        table.add_column("Time", style="white")
        table.add_column("Keywords", style="green")
        table.add_column("Status")
        table.add_column("Output", style="dim")

        for outcome in result.outcomes:
            clip = outcome.clip
            if outcome.status == ClipStatus.PRODUCED:
                status = "[green]produced[/green]"
            elif outcome.status == ClipStatus.FAILED:
                status = f"[red]failed[/red] {outcome.error_message}"
            else:
                status = "[yellow]cancelled[/yellow]"
            table.add_row(
                str(clip.id),
                f"{clip.start:.1f}s - {clip.end:.1f}s",
                ", ".join(clip.sources),
                status,
                outcome.output_path.name if outcome.output_path else "",
            )
        console.print(table)

    for keyword in result.unmatched_keywords:
        console.print(f"[yellow]Warning:[/yellow] keyword '{keyword}' was not found")

    if result.error is not None and result.status != RunStatus.CANCELLED:
        console.print(f"[red]Error:[/red] {escape(format_error_for_display(result.error))}")

    color = {
        RunStatus.SUCCESS: "green",
        RunStatus.PARTIAL: "yellow",
        RunStatus.FAILED: "red",
        RunStatus.CANCELLED: "yellow",
    }[result.status]
    suffix = " (cancelled)" if result.status == RunStatus.CANCELLED else ""
    console.print(f"[{color}]{result.summary_line()}{suffix}[/{color}]")


@app.command()
def run(
    input_file: Annotated[Path, typer.Argument(help="Video or audio file to clip")],
    output: Annotated[
        Optional[Path], typer.Option("--output", "-o", help="Directory for the clips")
    ] = None,
    config_file: Annotated[
        Optional[Path], typer.Option("--config", help="JSON or TOML config file")
    ] = None,
    model: Annotated[
        Optional[str], typer.Option("--model", "-m", help="Whisper model (tiny, base, small, ...)")
    ] = None,
    track: Annotated[
        Optional[list[int]], typer.Option("--track", "-t", help="Audio track to transcribe (1-based, repeatable)")
    ] = None,
    clip: Annotated[
        Optional[list[str]],
        typer.Option("--clip", "-c", help="Keyword to clip, as KEYWORD[=LEAD[,TRAIL]] (repeatable)"),
    ] = None,
    lead: Annotated[
        Optional[float], typer.Option("--lead", help="Default seconds before each keyword")
    ] = None,
    trail: Annotated[
        Optional[float], typer.Option("--trail", help="Default seconds after each keyword")
    ] = None,
    merge_gap: Annotated[
        Optional[float], typer.Option("--merge-gap", help="Also merge clips closer than this many seconds")
    ] = None,
    jobs: Annotated[
        Optional[int], typer.Option("--jobs", "-j", help="Parallel ffmpeg processes")
    ] = None,
    cache_dir: Annotated[
        Optional[Path], typer.Option("--cache-dir", help="Stage cache directory")
    ] = None,
    no_cleanup: Annotated[
        bool, typer.Option("--no-cleanup", help="Keep this run's cached audio and transcripts")
    ] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show progress details")] = False,
    debug: Annotated[bool, typer.Option("--debug", help="Show debug logging")] = False,
    quiet: Annotated[bool, typer.Option("--quiet", "-q", help="Only show errors")] = False,
    log_file: Annotated[
        Optional[Path], typer.Option("--log-file", help="Also write a debug log to this file")
    ] = None,
    json_logs: Annotated[bool, typer.Option("--json-logs", help="Log as JSON lines")] = False,
) -> None:
    """Transcribe INPUT_FILE and cut a clip around every keyword occurrence.

    Exit codes: 0 all clips produced, 3 some clips failed, 1 nothing
    produced or a fatal error, 130 interrupted.
    """
    _setup_logging(verbose, debug, quiet, log_file, json_logs)

    try:
        config = load_config(config_file) if config_file else WordclipConfig()
        config = apply_cli_overrides(
            config,
            input_file=input_file,
            output_dir=output,
            model=model,
            tracks=track,
            clips=clip,
            lead_seconds=lead,
            trail_seconds=trail,
            merge_gap_seconds=merge_gap,
            max_parallel=jobs,
            cache_dir=cache_dir,
            no_cleanup=no_cleanup,
        )
        validate_config(config)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(format_error_for_display(e))}")
        raise typer.Exit(1)

    def on_progress(stage: str, current: int, total: int, message: str) -> None:
        if verbose or debug:
            console.print(f"[dim]{stage} {current}/{total}[/dim] {message}")

    try:
        pipeline = Pipeline.from_config(config, progress_callback=on_progress)
    except WordclipError as e:
        console.print(f"[red]Error:[/red] {escape(format_error_for_display(e))}")
        raise typer.Exit(1)

    if not quiet:
        _print_run_plan(config)

    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: pipeline.cancel())
    try:
        result = pipeline.run()
    except WordclipError as e:
        console.print(f"[red]Error:[/red] {escape(format_error_for_display(e))}")
        raise typer.Exit(1)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    _print_results(result)
    raise typer.Exit(result.status.exit_code)


# =============================================================================
# Configuration
# =============================================================================


@app.command()
def init_config(
    path: Annotated[Path, typer.Argument(help="Where to write the config file")] = Path("wordclip.json"),
    force: Annotated[bool, typer.Option("--force", "-f", help="Overwrite an existing file")] = False,
) -> None:
    """Write an example config file to edit."""
    if path.exists() and not force:
        console.print(f"[red]Error:[/red] {path} already exists. Use --force to overwrite.")
        raise typer.Exit(1)

    save_config(example_config(), path)
    console.print(f"[green]Config written to {path}[/green]")
    console.print(f"[dim]Run with: wordclip run VIDEO --config {path}[/dim]")


# =============================================================================
# Cache
# =============================================================================


def _cache_manager(cache_dir: Path | None) -> StageCacheManager:
    if cache_dir is not None:
        return StageCacheManager(cache_dir)
    return StageCacheManager(WordclipConfig().cache.resolved_directory())


@cache_app.command("list")
def cache_list(
    cache_dir: Annotated[
        Optional[Path], typer.Option("--cache-dir", help="Stage cache directory")
    ] = None,
    stage: Annotated[
        Optional[StageKind], typer.Option("--stage", help="Only list one stage")
    ] = None,
) -> None:
    """List cached artifacts."""
    cache = _cache_manager(cache_dir)
    artifacts = cache.list_artifacts(stage)

    if not artifacts:
        console.print(f"[green]Cache is empty.[/green] [dim]({cache.root})[/dim]")
        return

    table = Table(title=f"Stage cache ({cache.root})")
    table.add_column("Stage", style="cyan")
    table.add_column("Fingerprint", style="dim")
    table.add_column("Name", style="white")
    table.add_column("Size", justify="right")
    table.add_column("Valid")

    total = 0
    for artifact in artifacts:
        size = cache.artifact_size(artifact)
        total += size
        table.add_row(
            artifact.stage.value,
            artifact.key[:12],
            artifact.label,
            _format_size(size),
            "[green]yes[/green]" if artifact.valid else "[red]no[/red]",
        )

    console.print(table)
    console.print(f"{len(artifacts)} artifact(s), {_format_size(total)}, {len(cache.list_runs())} run(s) recorded")


@cache_app.command("clear")
def cache_clear(
    cache_dir: Annotated[
        Optional[Path], typer.Option("--cache-dir", help="Stage cache directory")
    ] = None,
    include_models: Annotated[
        bool, typer.Option("--include-models", help="Also delete downloaded models")
    ] = False,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
) -> None:
    """Delete cached audio, transcripts and manifests (and optionally models)."""
    cache = _cache_manager(cache_dir)

    if not yes:
        what = "all cached artifacts including models" if include_models else "cached artifacts (models are kept)"
        typer.confirm(f"Delete {what} in {cache.root}?", abort=True)

    report = cache.clear(include_models=include_models)
    console.print(f"[green]Removed {len(report.removed)} item(s).[/green]")

    if not report.ok:
        for path, reason in report.failed:
            console.print(f"[red]Could not remove[/red] {path}: {reason}")
        raise typer.Exit(1)


# =============================================================================
# Dependencies
# =============================================================================


@app.command()
def check() -> None:
    """Check that ffmpeg (and optionally ffprobe) can be found."""
    success, message = verify_ffmpeg()
    report = get_dependency_report()

    table = Table(title="Dependency Status")
    table.add_column("Component", style="cyan")
    table.add_column("Status", style="white")
    table.add_column("Details", style="dim")

    ffmpeg_info = report["ffmpeg"]
    if ffmpeg_info["available"]:
        table.add_row(
            "FFmpeg",
            f"[green]Available[/green] (v{ffmpeg_info['version']})",
            f"Source: {ffmpeg_info['source']}\n{ffmpeg_info['path']}",
        )
    else:
        table.add_row("FFmpeg", "[red]Not Found[/red]", "Install with: pip install imageio-ffmpeg")

    ffprobe_info = report["ffprobe"]
    if ffprobe_info["available"]:
        table.add_row("FFprobe", f"[green]Available[/green] (v{ffprobe_info['version']})", str(ffprobe_info["path"]))
    else:
        table.add_row("FFprobe", "[yellow]Not Found[/yellow]", "Optional - probing falls back to ffmpeg")

    platform_info = report["platform"]
    table.add_row("Platform", str(platform_info["system"]), f"{platform_info['machine']}, Python {platform_info['python']}")

    console.print(table)

    if not success:
        console.print(f"[red]Error:[/red] {message}")
        raise typer.Exit(1)
    console.print(f"[green]{message}[/green]")


if __name__ == "__main__":
    app()
