"""Transcript models for wordclip.

Provides the time-stamped token produced by the speech engine and the
per-track transcript that the stage cache persists.
"""

from __future__ import annotations

from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TranscriptToken(BaseModel):
    """A single recognised unit of speech with timing information.

    Depending on the engine a token is a whole word or a sub-word piece.
    The text is kept raw, including any leading whitespace, because the
    keyword matcher uses that whitespace to find word starts.
    """

    model_config = ConfigDict(frozen=True)

    text: str
    start: float = Field(ge=0.0)  # Start time in seconds
    end: float = Field(ge=0.0)  # End time in seconds
    confidence: float = 1.0  # Engine confidence, 0-1

    @model_validator(mode="after")
    def _check_order(self) -> "TranscriptToken":
        if self.end < self.start:
            raise ValueError(f"token end ({self.end}) is before start ({self.start})")
        return self

    @property
    def duration(self) -> float:
        """Get the duration of this token in seconds."""
        return self.end - self.start


class TrackTranscript(BaseModel):
    """Transcript of a single audio track, as stored in the stage cache."""

    track_id: int
    model: str
    language: str = "en"
    tokens: list[TranscriptToken] = Field(default_factory=list)


def combine_transcripts(transcripts: Iterable[Iterable[TranscriptToken]]) -> list[TranscriptToken]:
    """Combine per-track token sequences into one transcript.

    Tracks are concatenated in the order given and then stable-sorted by
    start time, so tokens with equal starts keep their track order.

    Args:
        transcripts: Token sequences, one per track, in track order

    Returns:
        Combined tokens ordered by non-decreasing start
    """
    combined: list[TranscriptToken] = []
    for tokens in transcripts:
        combined.extend(tokens)
    return sorted(combined, key=lambda token: token.start)
