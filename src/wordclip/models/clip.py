"""Clip models for wordclip.

Keyword rules go in; candidate windows and merged clips come out. The
clip manifest is the cached result of the derivation stage.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_LEAD_SECONDS = 30.0
DEFAULT_TRAIL_SECONDS = 30.0


def _normalize_sources(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        value = (value,)
    return tuple(sorted(set(value)))


class KeywordRule(BaseModel):
    """A keyword to search for and the padding around each occurrence."""

    model_config = ConfigDict(frozen=True)

    keyword: str
    lead_seconds: float = Field(default=DEFAULT_LEAD_SECONDS, ge=0.0)
    trail_seconds: float = Field(default=DEFAULT_TRAIL_SECONDS, ge=0.0)

    @field_validator("keyword")
    @classmethod
    def _keyword_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("keyword must not be blank")
        return value


class CandidateWindow(BaseModel):
    """Time range around one keyword occurrence, before merging.

    `sources` always holds the keywords sorted and de-duplicated, so two
    windows compare equal regardless of how they were built.
    """

    model_config = ConfigDict(frozen=True)

    start: float = Field(ge=0.0)
    end: float
    sources: tuple[str, ...]

    @field_validator("sources", mode="before")
    @classmethod
    def _sorted_sources(cls, value: Any) -> tuple[str, ...]:
        return _normalize_sources(value)

    @model_validator(mode="after")
    def _check_range(self) -> "CandidateWindow":
        if self.end <= self.start:
            raise ValueError(f"window end ({self.end}) must be after start ({self.start})")
        return self

    @property
    def duration(self) -> float:
        """Get the duration of this window in seconds."""
        return self.end - self.start

    def sort_key(self) -> tuple[float, float, tuple[str, ...]]:
        """Key ordering windows by start, then end, then keywords."""
        return (self.start, self.end, self.sources)


class MergedClip(BaseModel):
    """A disjoint output clip covering one or more candidate windows.

    Ids are 1-based and follow start order; output file names derive
    from them.
    """

    model_config = ConfigDict(frozen=True)

    id: int = Field(ge=1)
    start: float = Field(ge=0.0)
    end: float
    sources: tuple[str, ...]

    @field_validator("sources", mode="before")
    @classmethod
    def _sorted_sources(cls, value: Any) -> tuple[str, ...]:
        return _normalize_sources(value)

    @model_validator(mode="after")
    def _check_range(self) -> "MergedClip":
        if self.end <= self.start:
            raise ValueError(f"clip end ({self.end}) must be after start ({self.start})")
        return self

    @property
    def duration(self) -> float:
        """Get the duration of this clip in seconds."""
        return self.end - self.start

    def to_window(self) -> CandidateWindow:
        """View this clip as a window, for re-merging."""
        return CandidateWindow(start=self.start, end=self.end, sources=self.sources)

    def output_name(self, stem: str, suffix: str = ".mp4") -> str:
        """Get the output file name for this clip.

        Args:
            stem: Stem of the input media file
            suffix: Container extension, including the dot

        Returns:
            File name such as ``clip_1_interview.mp4``
        """
        return f"clip_{self.id}_{stem}{suffix}"


class ClipManifest(BaseModel):
    """Result of the derivation stage for one input.

    Holds everything needed to cut clips without re-reading transcripts.
    """

    media_duration: float
    merge_gap_seconds: float = 0.0
    rules: list[KeywordRule] = Field(default_factory=list)
    windows: list[CandidateWindow] = Field(default_factory=list)
    clips: list[MergedClip] = Field(default_factory=list)
    transcript_fingerprints: list[str] = Field(default_factory=list)

    @field_validator("rules")
    @classmethod
    def _sorted_rules(cls, value: list[KeywordRule]) -> list[KeywordRule]:
        return sorted(value, key=lambda rule: (rule.keyword.casefold(), rule.keyword))

    @property
    def unmatched_keywords(self) -> list[str]:
        """Get keywords that produced no window."""
        matched = {source for window in self.windows for source in window.sources}
        return [rule.keyword for rule in self.rules if rule.keyword not in matched]

    def to_json(self) -> str:
        """Serialize deterministically (sorted keys, stable list order)."""
        return json.dumps(self.model_dump(mode="json"), indent=2, sort_keys=True)
