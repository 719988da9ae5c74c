"""Data models for wordclip.

Pydantic models for transcript tokens, keyword rules, candidate windows,
merged clips and the clip manifest.
"""

from __future__ import annotations

from wordclip.models.clip import CandidateWindow, ClipManifest, KeywordRule, MergedClip
from wordclip.models.transcript import TrackTranscript, TranscriptToken, combine_transcripts

__all__ = [
    # Transcript models
    "TranscriptToken",
    "TrackTranscript",
    "combine_transcripts",
    # Clip models
    "KeywordRule",
    "CandidateWindow",
    "MergedClip",
    "ClipManifest",
]
