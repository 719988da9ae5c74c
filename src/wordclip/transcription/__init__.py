"""Speech-to-text for wordclip.

Provides the faster-whisper backed transcriber used by the pipeline.
"""

from wordclip.transcription.whisper import WhisperTranscriber, resolve_compute_type, resolve_device

__all__ = [
    "WhisperTranscriber",
    "resolve_compute_type",
    "resolve_device",
]
