"""Local Whisper transcription through faster-whisper.

The model is loaded once, on first use, and calls are serialised with a
lock: one engine instance is shared by every track of a run.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Iterable

from wordclip.collaborators import Transcriber
from wordclip.errors import TranscriptionFailed
from wordclip.logging import get_logger
from wordclip.models.transcript import TranscriptToken

logger = get_logger(__name__)


def resolve_device(device: str = "auto") -> str:
    """Resolve the device to run on.

    Args:
        device: "auto", "cpu" or "cuda"

    Returns:
        "cuda" when requested or auto-detected, else "cpu"
    """
    if device != "auto":
        return device

    import ctranslate2

    try:
        return "cuda" if ctranslate2.get_cuda_device_count() > 0 else "cpu"
    except RuntimeError:
        return "cpu"


def resolve_compute_type(compute_type: str, device: str) -> str:
    """Pick float16 on CUDA and int8 on CPU unless set explicitly."""
    if compute_type == "auto":
        return "float16" if device == "cuda" else "int8"
    return compute_type


def segments_to_tokens(segments: Iterable[Any]) -> list[TranscriptToken]:
    """Convert faster-whisper segments into transcript tokens.

    Word timings become one token each, keeping the word's raw text and
    leading space. A segment without word timings becomes a single token;
    a segment repeating the previous segment's text is skipped, since
    Whisper sometimes loops on silence.

    Args:
        segments: Segments as yielded by ``WhisperModel.transcribe``

    Returns:
        Tokens in the order the engine produced them
    """
    tokens: list[TranscriptToken] = []
    previous_text: str | None = None

    for segment in segments:
        text = (segment.text or "").strip()
        words = getattr(segment, "words", None) or []

        if words:
            for word in words:
                if not (word.word or "").strip():
                    continue
                start = max(0.0, float(word.start))
                tokens.append(
                    TranscriptToken(
                        text=word.word,
                        start=start,
                        end=max(start, float(word.end)),
                        confidence=float(getattr(word, "probability", 1.0)),
                    )
                )
        elif text and text != previous_text:
            start = max(0.0, float(segment.start))
            tokens.append(
                TranscriptToken(
                    text=" " + text,
                    start=start,
                    end=max(start, float(segment.end)),
                )
            )

        if text:
            previous_text = text

    return tokens


class WhisperTranscriber(Transcriber):
    """Transcriber backed by a faster-whisper `WhisperModel`.

    Example:
        transcriber = WhisperTranscriber(model_dir, language="en")
        tokens = transcriber.transcribe(Path("talk_track1.wav"))
    """

    def __init__(
        self,
        model_path: Path | str,
        language: str | None = "en",
        device: str = "auto",
        compute_type: str = "auto",
        beam_size: int = 5,
    ):
        """Initialize the transcriber.

        Args:
            model_path: Directory holding a CTranslate2 Whisper model, or a model size name
            language: Spoken language code, or None to auto-detect
            device: "auto", "cpu" or "cuda"
            compute_type: "auto", "int8", "float16" or "float32"
            beam_size: Beam width for decoding
        """
        self._model_path = str(model_path)
        self._language = language
        self._device = device
        self._compute_type = compute_type
        self._beam_size = beam_size
        self._model: Any = None
        self._lock = threading.Lock()

    def _get_model(self) -> Any:
        if self._model is not None:
            return self._model

        from faster_whisper import WhisperModel

        device = resolve_device(self._device)
        compute_type = resolve_compute_type(self._compute_type, device)
        logger.info(
            f"Loading Whisper model on {device} ({compute_type})",
            extra={"model": self._model_path},
        )
        self._model = WhisperModel(self._model_path, device=device, compute_type=compute_type)
        return self._model

    def transcribe(self, audio_path: Path) -> list[TranscriptToken]:
        """Transcribe an audio file with word-level timestamps.

        Args:
            audio_path: 16 kHz mono WAV (any format ffmpeg reads works)

        Returns:
            Time-stamped tokens

        Raises:
            TranscriptionFailed: If the file is missing or the engine fails
        """
        audio_path = Path(audio_path)
        if not audio_path.exists():
            raise TranscriptionFailed(f"audio file not found: {audio_path}")

        with self._lock:
            try:
                model = self._get_model()
                segments, info = model.transcribe(
                    str(audio_path),
                    language=self._language,
                    beam_size=self._beam_size,
                    word_timestamps=True,
                )
                # Segments are generated lazily; decoding happens here
                tokens = segments_to_tokens(segments)
            except TranscriptionFailed:
                raise
            except Exception as e:
                raise TranscriptionFailed(f"{type(e).__name__}: {e}") from e

        logger.debug(
            f"Transcribed {audio_path.name}: {len(tokens)} tokens",
            extra={"language": getattr(info, "language", self._language)},
        )
        return tokens
