"""Interval merger.

Collapses overlapping candidate windows into disjoint output clips while
keeping track of which keywords each clip came from.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from wordclip.models.clip import CandidateWindow, MergedClip


def within_gap(end: float, start: float, gap_seconds: float) -> bool:
    """Whether a span starting at `start` joins one ending at `end`."""
    return start <= end + gap_seconds


def merge_windows(windows: Iterable[CandidateWindow], gap_seconds: float = 0.0) -> list[MergedClip]:
    """Merge candidate windows into strictly disjoint clips.

    Windows are swept in (start, end, keywords) order. A window that starts
    at or before the open clip's end plus ``gap_seconds`` extends it;
    otherwise the open clip is emitted. With the default gap of zero only
    overlapping and exactly touching windows merge.

    Args:
        windows: Candidate windows in any order
        gap_seconds: Extra distance across which windows still merge

    Returns:
        Clips with 1-based ids in start order

    Raises:
        ValueError: If gap_seconds is negative
    """
    if gap_seconds < 0:
        raise ValueError(f"gap_seconds must be >= 0, got {gap_seconds}")

    timeline = sorted(windows, key=CandidateWindow.sort_key)
    if not timeline:
        return []

    spans: list[tuple[float, float, set[str]]] = []
    open_start, open_end = timeline[0].start, timeline[0].end
    open_sources = set(timeline[0].sources)

    for window in timeline[1:]:
        if within_gap(open_end, window.start, gap_seconds):
            open_end = max(open_end, window.end)
            open_sources.update(window.sources)
            continue

        spans.append((open_start, open_end, open_sources))
        open_start, open_end = window.start, window.end
        open_sources = set(window.sources)

    spans.append((open_start, open_end, open_sources))

    return [
        MergedClip(id=index, start=start, end=end, sources=sources)
        for index, (start, end, sources) in enumerate(spans, start=1)
    ]


def check_merge_invariants(
    windows: Sequence[CandidateWindow],
    clips: Sequence[MergedClip],
    gap_seconds: float = 0.0,
) -> list[str]:
    """Check a merge result against its input windows.

    Verifies that clips are numbered and ordered, strictly disjoint, that
    every window lies in exactly one clip, that every clip is covered by
    its own windows and carries exactly their keywords, and (for a zero
    gap) that merging never adds duration.

    Args:
        windows: Input candidate windows
        clips: Output of `merge_windows`
        gap_seconds: Gap the clips were merged with

    Returns:
        Descriptions of every violation found; empty when the result is sound
    """
    problems: list[str] = []

    for position, clip in enumerate(clips, start=1):
        if clip.id != position:
            problems.append(f"clip at position {position} has id {clip.id}")

    for previous, current in zip(clips, clips[1:]):
        if not previous.end < current.start:
            problems.append(
                f"clips {previous.id} and {current.id} are not strictly disjoint "
                f"({previous.end} >= {current.start})"
            )
        elif within_gap(previous.end, current.start, gap_seconds):
            problems.append(f"clips {previous.id} and {current.id} are within the merge gap")

    members: dict[int, list[CandidateWindow]] = {clip.id: [] for clip in clips}
    for window in windows:
        owners = [clip for clip in clips if clip.start <= window.start and window.end <= clip.end]
        if len(owners) != 1:
            problems.append(
                f"window [{window.start}, {window.end}] is contained in {len(owners)} clips"
            )
            continue
        members[owners[0].id].append(window)

    for clip in clips:
        covered = sorted(members[clip.id], key=CandidateWindow.sort_key)
        if not covered:
            problems.append(f"clip {clip.id} covers no window")
            continue

        if covered[0].start != clip.start:
            problems.append(f"clip {clip.id} starts before its first window")

        reach = covered[0].end
        for window in covered[1:]:
            if not within_gap(reach, window.start, gap_seconds):
                problems.append(f"clip {clip.id} has an uncovered hole at {reach}")
            reach = max(reach, window.end)
        if reach != clip.end:
            problems.append(f"clip {clip.id} ends at {clip.end} but its windows reach {reach}")

        sources = {source for window in covered for source in window.sources}
        if set(clip.sources) != sources:
            problems.append(f"clip {clip.id} sources {clip.sources} differ from {sorted(sources)}")

    if gap_seconds == 0:
        merged_total = sum(clip.duration for clip in clips)
        candidate_total = sum(window.duration for window in windows)
        if merged_total > candidate_total + 1e-9:
            problems.append(
                f"merged duration {merged_total:.3f}s exceeds candidate duration {candidate_total:.3f}s"
            )

    return problems
