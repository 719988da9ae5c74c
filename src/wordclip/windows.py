"""Keyword window builder.

Finds every spoken occurrence of each keyword in a transcript and turns it
into a candidate clip window padded by the keyword's lead and trail.

Matching runs over a flat, normalized text rebuilt from the tokens, with
a map from each character back to the token it came from. That keeps the
matcher independent of how the speech engine splits words: a keyword may
sit inside one token or span several sub-word or word tokens.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Iterable, Sequence

from wordclip.logging import get_logger
from wordclip.models.clip import CandidateWindow, KeywordRule
from wordclip.models.transcript import TranscriptToken

logger = get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Normalize text for case-insensitive matching.

    Applies NFKC, then Unicode case folding, then collapses whitespace.

    Args:
        text: Text to normalize

    Returns:
        Normalized text
    """
    text = unicodedata.normalize("NFKC", text).casefold()
    return _WHITESPACE.sub(" ", text)


@dataclass
class FlatTranscript:
    """Normalized transcript text with a character to token map.

    Attributes:
        text: Normalized text of all tokens, single-spaced
        owners: Index into the token list for every character of `text`
    """

    text: str
    owners: list[int]

    def token_span(self, start: int, end: int) -> tuple[int, int]:
        """Get the first and last token index covering text[start:end]."""
        return self.owners[start], self.owners[end - 1]


def uses_leading_space_words(tokens: Sequence[TranscriptToken]) -> bool:
    """Check whether tokens mark word starts with leading whitespace.

    Sub-word engines emit pieces like ``" mag"`` + ``"ic"``; word-level
    engines emit bare words that must be joined with spaces.
    """
    return any(token.text[:1].isspace() for token in tokens[1:])


def flatten_tokens(tokens: Sequence[TranscriptToken]) -> FlatTranscript:
    """Rebuild a normalized flat text from transcript tokens.

    Args:
        tokens: Transcript tokens in time order

    Returns:
        Flat text and its character to token map
    """
    raw_join = uses_leading_space_words(tokens)
    chars: list[str] = []
    owners: list[int] = []

    for index, token in enumerate(tokens):
        piece = normalize_text(token.text)
        if not raw_join:
            piece = piece.strip()
            if not piece:
                continue
            if chars:
                piece = " " + piece

        for char in piece:
            if char == " ":
                # Collapse runs and drop leading whitespace
                if not chars or chars[-1] == " ":
                    continue
            chars.append(char)
            owners.append(index)

    while chars and chars[-1] == " ":
        chars.pop()
        owners.pop()

    return FlatTranscript(text="".join(chars), owners=owners)


def keyword_pattern(keyword: str) -> re.Pattern[str]:
    """Compile a whole-word pattern for a keyword.

    Args:
        keyword: Keyword as configured

    Returns:
        Pattern matching the normalized keyword on word boundaries
    """
    normalized = normalize_text(keyword).strip()
    return re.compile(r"(?<!\w)" + re.escape(normalized) + r"(?!\w)")


def find_occurrences(flat: FlatTranscript, keyword: str) -> list[tuple[int, int]]:
    """Find every occurrence of a keyword as token index spans.

    Args:
        flat: Flattened transcript
        keyword: Keyword to search for

    Returns:
        (first_token, last_token) pairs, one per match, in text order
    """
    pattern = keyword_pattern(keyword)
    return [flat.token_span(match.start(), match.end()) for match in pattern.finditer(flat.text)]


def build_candidate_windows(
    tokens: Sequence[TranscriptToken],
    rules: Iterable[KeywordRule],
    media_duration: float | None = None,
) -> list[CandidateWindow]:
    """Build candidate windows for every keyword occurrence.

    Each occurrence yields ``[first.start - lead, last.end + trail]`` clamped
    to ``[0, media_duration]``. Windows that collapse to nothing after
    clamping are dropped.

    Args:
        tokens: Combined transcript tokens ordered by start
        rules: Keyword rules
        media_duration: Length of the media in seconds, if known

    Returns:
        Windows sorted by start, end and keywords
    """
    flat = flatten_tokens(tokens)
    windows: list[CandidateWindow] = []

    for rule in rules:
        occurrences = find_occurrences(flat, rule.keyword)
        if not occurrences:
            logger.warning(
                f"Keyword '{rule.keyword}' not found in transcript",
                extra={"keyword": rule.keyword},
            )
            continue

        kept = 0
        for first, last in occurrences:
            start = max(0.0, tokens[first].start - rule.lead_seconds)
            end = tokens[last].end + rule.trail_seconds
            if media_duration is not None:
                end = min(media_duration, end)
            if start >= end:
                continue
            windows.append(CandidateWindow(start=start, end=end, sources=(rule.keyword,)))
            kept += 1

        logger.debug(
            f"Keyword '{rule.keyword}': {len(occurrences)} occurrence(s), {kept} window(s)",
            extra={"keyword": rule.keyword},
        )

    windows.sort(key=CandidateWindow.sort_key)
    return windows
