"""Configuration loading and management for wordclip.

A run is described by a `WordclipConfig`. It can be loaded from a JSON or
TOML file, then overridden from the command line. Validation happens once,
before any stage runs.
"""

from __future__ import annotations

import json
import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from wordclip.cache import default_cache_dir
from wordclip.errors import ConfigError
from wordclip.ffmpeg_binary import FFmpegConfig
from wordclip.model_store import KNOWN_MODELS, is_known_model
from wordclip.models.clip import DEFAULT_LEAD_SECONDS, DEFAULT_TRAIL_SECONDS, KeywordRule
from wordclip.storage import atomic_write_json

MAX_DEFAULT_PARALLELISM = 8


def default_parallelism() -> int:
    """CPU count, capped so a run never floods the disk with ffmpeg processes."""
    return max(1, min(os.cpu_count() or 1, MAX_DEFAULT_PARALLELISM))


class WhisperSettings(BaseModel):
    """Speech engine settings."""

    model: str = "base"  # tiny, base, small, medium, large-v3, ... (.en variants too)
    language: str | None = "en"  # None = auto-detect
    device: str = "auto"  # auto, cpu, cuda
    compute_type: str = "auto"  # auto, int8, float16, float32


class TrackSettings(BaseModel):
    """Which audio tracks to transcribe (1-based)."""

    audio_tracks: list[int] = Field(default_factory=lambda: [1])


class ClipTiming(BaseModel):
    """Per-keyword padding; unset values fall back to the defaults."""

    lead_seconds: float | None = Field(default=None, ge=0.0)
    trail_seconds: float | None = Field(default=None, ge=0.0)


class ClipDefaults(BaseModel):
    """Padding applied to keywords without their own timing."""

    lead_seconds: float = Field(default=DEFAULT_LEAD_SECONDS, ge=0.0)
    trail_seconds: float = Field(default=DEFAULT_TRAIL_SECONDS, ge=0.0)


class OutputSettings(BaseModel):
    """Where clips are written."""

    directory: Path = Path("output")


class CacheSettings(BaseModel):
    """Stage cache settings."""

    directory: Path | None = None  # None = $WORDCLIP_CACHE_DIR or ~/.wordclip/cache
    cleanup: bool = True  # Purge this run's artifacts once clips are written

    def resolved_directory(self) -> Path:
        """Get the cache directory, applying the default."""
        return self.directory.expanduser() if self.directory else default_cache_dir()


class ProcessingSettings(BaseModel):
    """Concurrency and timeouts."""

    max_parallel: int = Field(default_factory=default_parallelism)
    merge_gap_seconds: float = 0.0
    extract_timeout_seconds: float | None = 1800.0
    transcribe_timeout_seconds: float | None = None
    cut_timeout_seconds: float | None = 600.0


class WordclipConfig(BaseModel):
    """Complete configuration for one run."""

    whisper: WhisperSettings = Field(default_factory=WhisperSettings)
    tracks: TrackSettings = Field(default_factory=TrackSettings)
    clips: dict[str, ClipTiming] = Field(default_factory=dict)
    defaults: ClipDefaults = Field(default_factory=ClipDefaults)
    output: OutputSettings = Field(default_factory=OutputSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    processing: ProcessingSettings = Field(default_factory=ProcessingSettings)
    ffmpeg: FFmpegConfig = Field(default_factory=FFmpegConfig)
    input_file: Path | None = None


def load_config(path: Path) -> WordclipConfig:
    """Load configuration from a JSON or TOML file.

    The format follows the file extension; ``.toml`` is parsed as TOML and
    everything else as JSON.

    Args:
        path: Config file to read

    Returns:
        Parsed configuration

    Raises:
        ConfigError: If the file is missing, malformed or has invalid values
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}", context={"path": str(path)})

    try:
        if path.suffix.lower() == ".toml":
            with open(path, "rb") as f:
                data = tomllib.load(f)
        else:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}", context={"path": str(path)}) from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a table/object", context={"path": str(path)})

    try:
        return WordclipConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config in {path}: {e}", context={"path": str(path)}) from e


def save_config(config: WordclipConfig, path: Path) -> Path:
    """Save configuration as JSON with an atomic write.

    The input file is run-specific and is not written.

    Args:
        config: Configuration to save
        path: Target file

    Returns:
        Path to the saved config file
    """
    path = Path(path)
    data = config.model_dump(mode="json", exclude={"input_file"})
    atomic_write_json(path, data)
    return path


def parse_clip_spec(spec: str) -> tuple[str, ClipTiming]:
    """Parse a ``KEYWORD[=LEAD[,TRAIL]]`` command-line clip option.

    Examples:
        "magic"        -> ("magic", default lead and trail)
        "magic=10"     -> ("magic", lead 10, default trail)
        "magic=10,20"  -> ("magic", lead 10, trail 20)
        "magic=,20"    -> ("magic", default lead, trail 20)

    Raises:
        ConfigError: If the timing part is malformed
    """
    keyword, _, timing = spec.partition("=")
    keyword = keyword.strip()
    if not keyword:
        raise ConfigError(f"Clip option '{spec}' has no keyword")
    if not timing:
        return keyword, ClipTiming()

    lead_text, _, trail_text = timing.partition(",")
    try:
        lead = float(lead_text) if lead_text.strip() else None
        trail = float(trail_text) if trail_text.strip() else None
        return keyword, ClipTiming(lead_seconds=lead, trail_seconds=trail)
    except (ValueError, ValidationError) as e:
        raise ConfigError(
            f"Clip option '{spec}' must look like KEYWORD=LEAD,TRAIL with non-negative seconds",
            context={"clip": spec},
        ) from e


def apply_cli_overrides(
    config: WordclipConfig,
    input_file: Path | None = None,
    output_dir: Path | None = None,
    model: str | None = None,
    tracks: list[int] | None = None,
    clips: list[str] | None = None,
    lead_seconds: float | None = None,
    trail_seconds: float | None = None,
    merge_gap_seconds: float | None = None,
    max_parallel: int | None = None,
    cache_dir: Path | None = None,
    no_cleanup: bool = False,
) -> WordclipConfig:
    """Merge command-line values on top of a loaded configuration.

    Keywords given on the command line replace the configured clip table;
    every other value overrides only when it was given.

    Returns:
        A new configuration; the input is not modified
    """
    updated = config.model_copy(deep=True)

    if input_file is not None:
        updated.input_file = Path(input_file)
    if output_dir is not None:
        updated.output.directory = Path(output_dir)
    if model is not None:
        updated.whisper.model = model
    if tracks:
        updated.tracks.audio_tracks = list(tracks)
    if clips:
        updated.clips = dict(parse_clip_spec(spec) for spec in clips)
    if lead_seconds is not None:
        updated.defaults.lead_seconds = lead_seconds
    if trail_seconds is not None:
        updated.defaults.trail_seconds = trail_seconds
    if merge_gap_seconds is not None:
        updated.processing.merge_gap_seconds = merge_gap_seconds
    if max_parallel is not None:
        updated.processing.max_parallel = max_parallel
    if cache_dir is not None:
        updated.cache.directory = Path(cache_dir)
    if no_cleanup:
        updated.cache.cleanup = False

    return updated


def validate_config(config: WordclipConfig, require_input: bool = True) -> None:
    """Check a configuration before any stage runs.

    Args:
        config: Configuration to check
        require_input: Whether an existing input file is required

    Raises:
        ConfigError: On the first problem found
    """
    if require_input:
        if config.input_file is None:
            raise ConfigError("No input file given")
        if not config.input_file.is_file():
            raise ConfigError(
                f"Input file does not exist: {config.input_file}",
                context={"input_file": str(config.input_file)},
            )

    if not is_known_model(config.whisper.model):
        raise ConfigError(
            f"Invalid model name '{config.whisper.model}' (choose from {', '.join(KNOWN_MODELS)})",
            context={"model": config.whisper.model},
        )

    tracks = config.tracks.audio_tracks
    if not tracks:
        raise ConfigError("No audio tracks specified")
    if any(track < 1 for track in tracks):
        raise ConfigError(f"Audio tracks are 1-based, got {tracks}", context={"tracks": tracks})
    if len(set(tracks)) != len(tracks):
        raise ConfigError(f"Duplicate audio tracks in {tracks}", context={"tracks": tracks})

    if not config.clips:
        raise ConfigError("No keywords configured")
    seen: dict[str, str] = {}
    for keyword in config.clips:
        if not keyword.strip():
            raise ConfigError("Keywords must not be blank")
        folded = keyword.strip().casefold()
        if folded in seen:
            raise ConfigError(
                f"Keywords '{seen[folded]}' and '{keyword}' are the same ignoring case",
                context={"keyword": keyword},
            )
        seen[folded] = keyword

    if config.processing.merge_gap_seconds < 0:
        raise ConfigError(
            f"Merge gap must be >= 0, got {config.processing.merge_gap_seconds}",
            context={"merge_gap_seconds": config.processing.merge_gap_seconds},
        )
    if config.processing.max_parallel < 1:
        raise ConfigError(
            f"Parallelism must be at least 1, got {config.processing.max_parallel}",
            context={"max_parallel": config.processing.max_parallel},
        )


def keyword_rules(config: WordclipConfig) -> list[KeywordRule]:
    """Bind the clip table to keyword rules, filling in default padding."""
    rules = []
    for keyword, timing in config.clips.items():
        lead = timing.lead_seconds if timing.lead_seconds is not None else config.defaults.lead_seconds
        trail = timing.trail_seconds if timing.trail_seconds is not None else config.defaults.trail_seconds
        rules.append(KeywordRule(keyword=keyword, lead_seconds=lead, trail_seconds=trail))
    return rules


def example_config() -> WordclipConfig:
    """Configuration written by ``wordclip init-config``."""
    return WordclipConfig(
        clips={
            "magic": ClipTiming(),
            "word": ClipTiming(lead_seconds=10.0, trail_seconds=20.0),
        }
    )


def config_summary(config: WordclipConfig) -> dict[str, Any]:
    """Flatten the settings worth showing before a run starts."""
    return {
        "input": str(config.input_file) if config.input_file else "",
        "model": config.whisper.model,
        "language": config.whisper.language or "auto",
        "tracks": ", ".join(str(track) for track in config.tracks.audio_tracks),
        "keywords": ", ".join(config.clips),
        "output": str(config.output.directory),
        "cache": str(config.cache.resolved_directory()),
        "jobs": config.processing.max_parallel,
    }
