"""
Time-based batch planning.
A video longer than one batch (plus tolerance) is split into fixed-length
time ranges that the provider translates independently.
"""

import math
import logging

from subqueue.core.models import BatchRange, BatchSettings

logger = logging.getLogger(__name__)

# Two range edges closer than this are the same edge
_EDGE_EPSILON = 0.5


def plan_batches(duration: float | None, settings: BatchSettings | None = None,
                 range_start: float | None = None,
                 range_end: float | None = None) -> list[BatchRange]:
    """
    Split [range_start, range_end] (default: the whole video) into batches.
    A span no longer than max_video_duration + batch_offset stays one batch.
    """
    settings = settings or BatchSettings()
    start = float(range_start or 0.0)

    end = range_end
    if duration is not None:
        end = min(range_end, duration) if range_end is not None else duration
    if end is None:
        return [BatchRange(start, None)]

    length = end - start
    if length <= 0:
        return []

    chunk = max(1, settings.max_video_duration)
    if length <= chunk + max(0, settings.batch_offset):
        return [BatchRange(start, end)]

    count = math.ceil(length / chunk)
    return [
        BatchRange(start + i * chunk, min(start + (i + 1) * chunk, end))
        for i in range(count)
    ]


def total_batches(duration: float | None, settings: BatchSettings | None = None,
                  range_start: float | None = None, range_end: float | None = None) -> int:
    return len(plan_batches(duration, settings, range_start, range_end))


def batch_bounds(index: int, duration: float | None,
                 settings: BatchSettings | None = None) -> BatchRange:
    """Time range of batch `index` of the whole video."""
    plan = plan_batches(duration, settings)
    if index < 0 or index >= len(plan):
        raise ValueError(f"Batch index {index} out of range (0..{len(plan) - 1})")
    return plan[index]


def completed_ranges_before(index: int, duration: float | None,
                            settings: BatchSettings | None = None) -> list[BatchRange]:
    """Ranges of every batch strictly before `index`, in order."""
    return plan_batches(duration, settings)[:max(0, index)]


def is_covered(batch: BatchRange, ranges: list[BatchRange]) -> bool:
    """True when a single range in `ranges` spans the whole batch."""
    for r in ranges:
        if r.start > batch.start + _EDGE_EPSILON:
            continue
        if r.end is None:
            return True
        if batch.end is not None and r.end >= batch.end - _EDGE_EPSILON:
            return True
    return False


def pending_batches(plan: list[BatchRange],
                    skip_ranges: list[BatchRange] | None = None) -> list[tuple[int, BatchRange]]:
    """(index, range) pairs of the plan that are not covered by skip_ranges."""
    skip_ranges = skip_ranges or []
    return [(i, b) for i, b in enumerate(plan) if not is_covered(b, skip_ranges)]


def sort_ranges(ranges: list[BatchRange]) -> list[BatchRange]:
    """Ordered, de-duplicated copy of `ranges`."""
    result: list[BatchRange] = []
    for r in sorted(ranges, key=lambda r: r.start):
        if result and abs(result[-1].start - r.start) < _EDGE_EPSILON:
            continue
        result.append(BatchRange(r.start, r.end))
    return result
