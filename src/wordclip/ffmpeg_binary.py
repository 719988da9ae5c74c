"""Locating the ffmpeg and ffprobe executables.

ffmpeg comes from, in order: an explicit path in the config, the binary
bundled with imageio-ffmpeg, the system PATH. ``prefer_system`` moves the
PATH lookup in front of the bundled binary. imageio-ffmpeg ships no
ffprobe, so ffprobe is looked up by explicit path, on PATH, or beside the
ffmpeg that was found; without it media is probed through ``ffmpeg -i``.
"""

from __future__ import annotations

import platform
import re
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator

import imageio_ffmpeg
from pydantic import BaseModel, Field

from wordclip.logging import get_logger

logger = get_logger(__name__)

_VERSION_RE = re.compile(r"version\s+(\S+)", re.IGNORECASE)


class FFmpegConfig(BaseModel):
    """Where to find the FFmpeg and FFprobe executables."""

    ffmpeg_path: str | None = Field(default=None, description="Explicit path to the ffmpeg executable")
    ffprobe_path: str | None = Field(default=None, description="Explicit path to the ffprobe executable")
    prefer_system: bool = Field(default=False, description="Prefer ffmpeg on PATH over the bundled one")


@dataclass(frozen=True)
class FFmpegInfo:
    """An ffmpeg executable that was found, or the lack of one."""

    path: str = ""
    source: str = "not_found"  # custom, imageio, system or not_found
    version: str = ""

    @property
    def available(self) -> bool:
        return bool(self.path)


def _bundled_ffmpeg() -> str | None:
    try:
        return imageio_ffmpeg.get_ffmpeg_exe()
    except RuntimeError:
        return None


def _explicit(path: str | None, tool: str) -> str | None:
    if not path:
        return None
    if Path(path).exists():
        return path
    logger.warning(f"Configured {tool} path {path} does not exist; searching elsewhere")
    return None


def _ffmpeg_candidates(config: FFmpegConfig) -> Iterator[tuple[str, Callable[[], str | None]]]:
    yield "custom", lambda: _explicit(config.ffmpeg_path, "ffmpeg")
    if config.prefer_system:
        yield "system", lambda: shutil.which("ffmpeg")
        yield "imageio", _bundled_ffmpeg
    else:
        yield "imageio", _bundled_ffmpeg
        yield "system", lambda: shutil.which("ffmpeg")


def locate_ffmpeg(config: FFmpegConfig | None = None) -> FFmpegInfo:
    """Find ffmpeg without running it; `version` is left empty."""
    for source, find in _ffmpeg_candidates(config or FFmpegConfig()):
        path = find()
        if path:
            return FFmpegInfo(path=path, source=source)
    return FFmpegInfo()


def get_ffmpeg_path(config: FFmpegConfig | None = None) -> str | None:
    """Path of the ffmpeg executable to use, or None if there is none."""
    return locate_ffmpeg(config).path or None


def get_ffprobe_path(config: FFmpegConfig | None = None) -> str | None:
    """Path of the ffprobe executable to use, or None if there is none."""
    config = config or FFmpegConfig()
    found = _explicit(config.ffprobe_path, "ffprobe") or shutil.which("ffprobe")
    if found:
        return found

    ffmpeg_path = get_ffmpeg_path(config)
    if ffmpeg_path is None:
        return None
    names = ("ffprobe.exe", "ffprobe") if platform.system() == "Windows" else ("ffprobe",)
    for name in names:
        sibling = Path(ffmpeg_path).parent / name
        if sibling.exists():
            return str(sibling)
    return None


def read_version(executable: str) -> str | None:
    """Run ``<executable> -version`` and pull out the version number.

    Returns:
        Version such as ``6.1.1`` (or the whole first line when it has no
        ``version`` word), None if the executable does not run cleanly
    """
    try:
        result = subprocess.run([executable, "-version"], capture_output=True, text=True, timeout=10)
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.debug(f"{executable} -version failed: {e}")
        return None
    if result.returncode != 0:
        return None

    lines = (result.stdout or "").strip().splitlines()
    first_line = lines[0] if lines else ""
    match = _VERSION_RE.search(first_line)
    if match:
        return match.group(1)
    return first_line or None


def get_ffmpeg_info(config: FFmpegConfig | None = None) -> FFmpegInfo:
    """Find ffmpeg and ask it for its version."""
    info = locate_ffmpeg(config)
    if not info.available:
        return info
    return FFmpegInfo(path=info.path, source=info.source, version=read_version(info.path) or "unknown")


def verify_ffmpeg(config: FFmpegConfig | None = None) -> tuple[bool, str]:
    """Check that ffmpeg exists and runs.

    Returns:
        (ok, message) for the ``check`` command
    """
    info = get_ffmpeg_info(config)
    if not info.available:
        return False, "FFmpeg not found. Install imageio-ffmpeg or add FFmpeg to PATH."
    if info.version == "unknown":
        return False, f"FFmpeg found at {info.path} but did not report a version"
    return True, f"FFmpeg {info.version} available ({info.source}): {info.path}"


def get_dependency_report(config: FFmpegConfig | None = None) -> dict[str, dict[str, str | bool]]:
    """Describe the media tooling a run would use, for ``wordclip check``."""
    ffmpeg = get_ffmpeg_info(config)
    ffprobe_path = get_ffprobe_path(config)
    ffprobe_version = read_version(ffprobe_path) if ffprobe_path else None

    return {
        "ffmpeg": {
            "available": ffmpeg.available,
            "path": ffmpeg.path,
            "version": ffmpeg.version,
            "source": ffmpeg.source,
        },
        "ffprobe": {
            "available": ffprobe_version is not None,
            "path": ffprobe_path or "",
            "version": ffprobe_version or "",
        },
        "imageio_ffmpeg": {
            "available": _bundled_ffmpeg() is not None,
            "version": getattr(imageio_ffmpeg, "__version__", "unknown"),
        },
        "platform": {
            "system": platform.system(),
            "machine": platform.machine(),
            "python": sys.version.split()[0],
        },
    }
