"""
Series Downsampler — Fixed-stride reduction of a price series for display.
"""

from __future__ import annotations
from typing import List, Sequence, TypeVar

T = TypeVar("T")


def downsample(series: Sequence[T], target_point_count: int) -> List[T]:
    """
    Reduce `series` to roughly `target_point_count` points.

    Series at or under the target come back unchanged. Longer series keep
    every element whose index is a multiple of len(series) // target.
    This is a stride sample, not an average, and it can overshoot the
    target when the length is not a multiple of the stride:
    7 points with a target of 3 gives stride 2 and keeps 4 points.
    """
    if target_point_count <= 0:
        raise ValueError(f"target_point_count must be > 0, got {target_point_count}")

    if len(series) <= target_point_count:
        return list(series)

    step = len(series) // target_point_count
    return [value for i, value in enumerate(series) if i % step == 0]
