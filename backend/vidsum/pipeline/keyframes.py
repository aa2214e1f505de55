"""Keyframe interval validation.

AI analysis proposes candidate keyframe timestamps; before any frame is
extracted the candidates are filtered against the video duration and
spaced by a minimum gap. When nothing usable survives, evenly spaced
fallback intervals stand in. This module is pure and shared by every
analysis mode.
"""

import math
from typing import Iterable, Optional

from pydantic import BaseModel, Field

DEFAULT_MIN_GAP_SECONDS = 30.0
FALLBACK_MIN_COUNT = 5
FALLBACK_MAX_COUNT = 10


class KeyframeCandidate(BaseModel):
    """A timestamp proposed by AI analysis as a visual highlight."""

    timestamp: float
    reason: str = ""
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    category: Optional[str] = None


def validate_keyframe_intervals(
    candidates: Iterable[KeyframeCandidate],
    video_duration: Optional[float],
    min_gap_seconds: float = DEFAULT_MIN_GAP_SECONDS,
    max_count: Optional[int] = None,
) -> list[KeyframeCandidate]:
    """Filter candidates to in-range, ascending, gap-separated keyframes.

    1. Drop candidates with timestamp < 0 or timestamp >= video_duration.
       An unknown duration (None) has no upper bound.
    2. Sort ascending by timestamp (stable, so ties keep input order).
    3. Keep the first candidate; keep each later one only if it is at least
       min_gap_seconds after the last *kept* timestamp. Violators are
       dropped, never merged.

    Args:
        candidates: Proposed keyframes in any order
        video_duration: Video length in seconds, or None when unknown
        min_gap_seconds: Minimum spacing between kept keyframes
        max_count: Optional cap applied after spacing (earliest win)

    Returns:
        Filtered keyframes sorted by timestamp

    Examples:
        >>> ts = [-5, 0, 30, 50, 120, 300]
        >>> kept = validate_keyframe_intervals(
        ...     [KeyframeCandidate(timestamp=t) for t in ts], 250, 30)
        >>> [k.timestamp for k in kept]
        [0.0, 30.0, 120.0]
    """
    in_range = [
        c for c in candidates
        if c.timestamp >= 0 and (video_duration is None or c.timestamp < video_duration)
    ]
    in_range.sort(key=lambda c: c.timestamp)

    kept: list[KeyframeCandidate] = []
    for candidate in in_range:
        if kept and candidate.timestamp - kept[-1].timestamp < min_gap_seconds:
            continue
        kept.append(candidate)

    if max_count is not None:
        kept = kept[:max_count]
    return kept


def generate_fallback_intervals(video_duration: float) -> list[KeyframeCandidate]:
    """Evenly spaced keyframes for when analysis yields none.

    One interval per minute of video, clamped to 5..10, placed at
    ``floor(i * duration / (count + 1))`` so neither end of the video is
    picked. The first is tagged ``intro``, the last ``conclusion``.

    Examples:
        >>> [k.timestamp for k in generate_fallback_intervals(120)]
        [20.0, 40.0, 60.0, 80.0, 100.0]
    """
    if video_duration <= 0:
        return []

    count = min(FALLBACK_MAX_COUNT, max(FALLBACK_MIN_COUNT, int(video_duration // 60)))
    step = video_duration / (count + 1)

    intervals = []
    for i in range(1, count + 1):
        if i == 1:
            category = "intro"
        elif i == count:
            category = "conclusion"
        else:
            category = "main_point"
        intervals.append(
            KeyframeCandidate(
                timestamp=math.floor(step * i),
                reason=f"Evenly spaced interval {i}",
                confidence=0.5,
                category=category,
            )
        )
    return intervals
