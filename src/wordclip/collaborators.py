"""Interfaces of the external collaborators the pipeline drives.

The orchestrator only talks to these abstract classes. The concrete
implementations wrap ffmpeg (`wordclip.ffmpeg`), faster-whisper
(`wordclip.transcription`) and the model download (`wordclip.model_store`);
tests substitute in-memory fakes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from wordclip.models.transcript import TranscriptToken


@dataclass(frozen=True)
class MediaInfo:
    """What the pipeline needs to know about an input file.

    Attributes:
        duration: Length in seconds, None when the container does not say
        audio_streams: Number of audio streams (tracks are 1-based)
    """

    duration: float | None
    audio_streams: int


class ModelProvider(ABC):
    """Fetches transcription models."""

    @abstractmethod
    def fetch(self, model_name: str, destination: Path) -> Path:
        """Download a model into `destination`.

        Args:
            model_name: Model to fetch, e.g. "base.en"
            destination: Staging path to write into (does not exist yet)

        Returns:
            Path of the fetched model (normally `destination`)

        Raises:
            TransientError: On a retryable network failure
            AcquisitionError: On a permanent failure
        """


class Extractor(ABC):
    """Inspects media and extracts audio tracks."""

    @abstractmethod
    def probe(self, media_path: Path) -> MediaInfo:
        """Get the duration and audio stream count of a media file."""

    @abstractmethod
    def extract(self, media_path: Path, track_ids: list[int], dest_dir: Path) -> dict[int, Path]:
        """Extract audio tracks as speech-ready WAV files.

        Args:
            media_path: Input media
            track_ids: 1-based audio track ids
            dest_dir: Directory to write the audio files into

        Returns:
            Mapping of track id to extracted file

        Raises:
            TrackExtractionFailed: If any track cannot be extracted
        """


class Transcriber(ABC):
    """Speech-to-text engine."""

    @abstractmethod
    def transcribe(self, audio_path: Path) -> list[TranscriptToken]:
        """Transcribe an audio file into time-stamped tokens.

        Raises:
            TranscriptionFailed: If the engine fails
        """


class Cutter(ABC):
    """Cuts clips out of media."""

    @abstractmethod
    def cut(self, media_path: Path, start: float, end: float, output_path: Path) -> None:
        """Write the `[start, end]` range of the media to `output_path`.

        Raises:
            ClipCutFailed: If the clip cannot be produced
        """

    def terminate_all(self) -> None:
        """Kill any work still running. Called when a run is cancelled."""
