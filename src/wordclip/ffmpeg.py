"""FFmpeg wrapper for probing media, extracting audio and cutting clips.

All subprocesses start in their own session and are tracked while they
run, so a cancelled run can kill every live ffmpeg process group at once.
"""

from __future__ import annotations

import json
import os
import re
import signal
import subprocess
import threading
from pathlib import Path

from wordclip.collaborators import Cutter, Extractor, MediaInfo
from wordclip.errors import ClipCutFailed, ExternalToolError, TrackExtractionFailed
from wordclip.ffmpeg_binary import FFmpegConfig, get_ffmpeg_path, get_ffprobe_path
from wordclip.logging import get_logger

logger = get_logger(__name__)

# Speech models expect 16 kHz mono PCM
AUDIO_SAMPLE_RATE = 16000
AUDIO_CHANNELS = 1

_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
_AUDIO_STREAM_RE = re.compile(r"^\s*Stream #\d+:\d+.*?:\s*Audio:", re.MULTILINE)


class FFmpegError(ExternalToolError):
    """Base exception for FFmpeg-related errors."""


class FFmpegNotFoundError(FFmpegError):
    """Raised when FFmpeg executable is not found."""


class InvalidMediaError(FFmpegError):
    """Raised when the input media file is missing or unreadable."""


def parse_ffprobe_output(stdout: str) -> MediaInfo:
    """Build MediaInfo from ``ffprobe -print_format json`` output.

    Raises:
        InvalidMediaError: If the output is not valid JSON
    """
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError as e:
        raise InvalidMediaError(f"Failed to parse media info: {e}") from e

    streams = data.get("streams", [])
    audio_streams = sum(1 for stream in streams if stream.get("codec_type") == "audio")

    duration = _as_seconds(data.get("format", {}).get("duration"))
    if duration is None:
        # Some containers only report per-stream durations
        stream_durations = [_as_seconds(stream.get("duration")) for stream in streams]
        known = [value for value in stream_durations if value is not None]
        duration = max(known) if known else None

    return MediaInfo(duration=duration, audio_streams=audio_streams)


def parse_ffmpeg_banner(stderr: str) -> MediaInfo:
    """Build MediaInfo from the banner ``ffmpeg -i`` prints.

    Used when ffprobe is not installed.

    Raises:
        InvalidMediaError: If the banner does not describe an input
    """
    if "Input #0" not in stderr:
        raise InvalidMediaError(f"ffmpeg could not read the input: {stderr.strip()[-300:]}")

    duration = None
    match = _DURATION_RE.search(stderr)
    if match:
        hours, minutes, seconds = match.groups()
        duration = int(hours) * 3600 + int(minutes) * 60 + float(seconds)

    return MediaInfo(duration=duration, audio_streams=len(_AUDIO_STREAM_RE.findall(stderr)))


def _as_seconds(value: object) -> float | None:
    try:
        seconds = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return seconds if seconds > 0 else None


def partial_path(output_path: Path) -> Path:
    """Get the hidden file a clip is written to before it is renamed into place."""
    return output_path.with_name(f".{output_path.stem}.partial{output_path.suffix}")


class FFmpegWrapper(Extractor, Cutter):
    """FFmpeg-backed media probing, audio extraction and clip cutting.

    Clips are stream-copied, never re-encoded, so cuts land on the nearest
    keyframe and run at disk speed.
    """

    def __init__(
        self,
        config: FFmpegConfig | None = None,
        extract_timeout: float | None = 1800,
        cut_timeout: float | None = 600,
        probe_timeout: float | None = 60,
    ) -> None:
        """Initialize FFmpeg wrapper.

        Args:
            config: Optional FFmpeg binary configuration.
            extract_timeout: Seconds allowed per track extraction.
            cut_timeout: Seconds allowed per clip.
            probe_timeout: Seconds allowed per probe.

        Raises:
            FFmpegNotFoundError: If FFmpeg is not available.
        """
        self._config = config or FFmpegConfig()
        self._ffmpeg_path = get_ffmpeg_path(self._config)
        self._ffprobe_path = get_ffprobe_path(self._config)
        self.extract_timeout = extract_timeout
        self.cut_timeout = cut_timeout
        self.probe_timeout = probe_timeout

        # Reentrant: terminate_all runs from the SIGINT handler on the main thread
        self._lock = threading.RLock()
        self._processes: set[subprocess.Popen] = set()

        if self._ffmpeg_path is None:
            raise FFmpegNotFoundError("FFmpeg not found. Install imageio-ffmpeg or add FFmpeg to PATH.")

    @property
    def ffmpeg_path(self) -> str:
        """Get path to FFmpeg executable."""
        return self._ffmpeg_path

    @property
    def ffprobe_path(self) -> str | None:
        """Get path to FFprobe executable."""
        return self._ffprobe_path

    def _run(self, cmd: list[str], timeout: float | None) -> subprocess.CompletedProcess:
        """Run a tracked subprocess in its own process group.

        Args:
            cmd: Full command line.
            timeout: Timeout in seconds, or None for no limit.

        Returns:
            CompletedProcess result (non-zero exit codes are not raised).

        Raises:
            FFmpegNotFoundError: If the executable is missing.
            FFmpegError: On timeout or if the process cannot start.
        """
        tool = Path(cmd[0]).name
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                start_new_session=os.name == "posix",
            )
        except FileNotFoundError as e:
            raise FFmpegNotFoundError(f"{tool} not found at {cmd[0]}") from e
        except OSError as e:
            raise FFmpegError(f"Failed to run {tool}: {e}") from e

        with self._lock:
            self._processes.add(proc)
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            self._kill(proc)
            proc.communicate()
            raise FFmpegError(f"{tool} timed out after {timeout} seconds", context={"timeout": timeout}) from e
        finally:
            with self._lock:
                self._processes.discard(proc)

        return subprocess.CompletedProcess(cmd, proc.returncode, stdout, stderr)

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        try:
            if os.name == "posix":
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except (ProcessLookupError, PermissionError):
            pass

    def terminate_all(self) -> None:
        """Kill every live ffmpeg/ffprobe process group."""
        with self._lock:
            live = list(self._processes)
        for proc in live:
            self._kill(proc)
        if live:
            logger.info(f"Terminated {len(live)} ffmpeg process(es)")

    def probe(self, media_path: Path) -> MediaInfo:
        """Get the duration and audio stream count of a media file.

        Uses ffprobe when available, else parses the ``ffmpeg -i`` banner.

        Raises:
            InvalidMediaError: If the file is missing or unreadable.
        """
        media_path = Path(media_path)
        if not media_path.exists():
            raise InvalidMediaError(f"Media file not found: {media_path}")

        if self._ffprobe_path:
            result = self._run(
                [
                    self._ffprobe_path,
                    "-v", "error",
                    "-print_format", "json",
                    "-show_format",
                    "-show_streams",
                    str(media_path),
                ],
                timeout=self.probe_timeout,
            )
            if result.returncode != 0:
                raise InvalidMediaError(f"Failed to read media file: {media_path}\n{result.stderr.strip()}")
            info = parse_ffprobe_output(result.stdout)
        else:
            # ffmpeg exits non-zero without an output file; the banner is still printed
            result = self._run(
                [self._ffmpeg_path, "-hide_banner", "-nostdin", "-i", str(media_path)],
                timeout=self.probe_timeout,
            )
            info = parse_ffmpeg_banner(result.stderr)

        logger.debug(
            f"Probed {media_path.name}: duration={info.duration}, audio_streams={info.audio_streams}",
            extra={"media": str(media_path)},
        )
        return info

    def build_extract_args(self, media_path: Path, track_id: int, output_path: Path) -> list[str]:
        """Build the command extracting one audio track as 16 kHz mono WAV."""
        return [
            self._ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-y",
            "-i", str(media_path),
            "-map", f"0:a:{track_id - 1}",
            "-vn",
            "-acodec", "pcm_s16le",
            "-ar", str(AUDIO_SAMPLE_RATE),
            "-ac", str(AUDIO_CHANNELS),
            "-f", "wav",
            str(output_path),
        ]

    def extract_track(self, media_path: Path, track_id: int, output_path: Path) -> Path:
        """Extract one audio track.

        Args:
            media_path: Input media.
            track_id: 1-based audio track id.
            output_path: WAV file to write.

        Returns:
            output_path

        Raises:
            TrackExtractionFailed: If ffmpeg fails or writes nothing.
        """
        output_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            result = self._run(self.build_extract_args(media_path, track_id, output_path), self.extract_timeout)
        except FFmpegError as e:
            raise TrackExtractionFailed(track_id, e.message) from e

        if result.returncode != 0:
            output_path.unlink(missing_ok=True)
            raise TrackExtractionFailed(track_id, _last_lines(result.stderr))
        if not output_path.exists() or output_path.stat().st_size == 0:
            output_path.unlink(missing_ok=True)
            raise TrackExtractionFailed(track_id, "ffmpeg produced no audio")

        logger.debug(f"Extracted track {track_id} to {output_path.name}", extra={"track_id": track_id})
        return output_path

    def extract(self, media_path: Path, track_ids: list[int], dest_dir: Path) -> dict[int, Path]:
        """Extract audio tracks into `dest_dir`, one WAV per track."""
        media_path = Path(media_path)
        extracted = {}
        for track_id in track_ids:
            output_path = Path(dest_dir) / f"{media_path.stem}_track{track_id}.wav"
            extracted[track_id] = self.extract_track(media_path, track_id, output_path)
        return extracted

    def build_cut_args(self, media_path: Path, start: float, end: float, output_path: Path) -> list[str]:
        """Build the stream-copy command for one clip."""
        return [
            self._ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-y",
            "-ss", f"{start:.3f}",
            "-i", str(media_path),
            "-t", f"{end - start:.3f}",
            "-map", "0:v?",
            "-map", "0:a?",
            "-c:v", "copy",
            "-c:a", "copy",
            "-avoid_negative_ts", "make_zero",
            str(output_path),
        ]

    def cut(self, media_path: Path, start: float, end: float, output_path: Path) -> None:
        """Cut ``[start, end]`` out of the media without re-encoding.

        The clip is written to a hidden partial file and renamed into place
        only when ffmpeg succeeds.

        Raises:
            ClipCutFailed: If ffmpeg fails, times out or writes nothing.
        """
        if end <= start:
            raise ClipCutFailed(f"end ({end}) must be after start ({start})")

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        partial = partial_path(output_path)

        try:
            result = self._run(self.build_cut_args(Path(media_path), start, end, partial), self.cut_timeout)
        except FFmpegError as e:
            partial.unlink(missing_ok=True)
            raise ClipCutFailed(e.message) from e

        if result.returncode != 0 or not partial.exists() or partial.stat().st_size == 0:
            partial.unlink(missing_ok=True)
            raise ClipCutFailed(_last_lines(result.stderr) or "ffmpeg produced no output")

        os.replace(partial, output_path)
        logger.debug(f"Cut {output_path.name} [{start:.2f}s - {end:.2f}s]")


def _last_lines(text: str, count: int = 3) -> str:
    lines = [line for line in (text or "").strip().splitlines() if line.strip()]
    return " | ".join(lines[-count:])
