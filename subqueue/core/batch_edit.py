"""
Batch re-editing: splice a retranslated batch into an existing SRT, or cut
an SRT back to a batch boundary so translation can restart from there.
"""

import logging

from subqueue.core.batch_plan import completed_ranges_before, batch_bounds
from subqueue.core.models import BatchSettings, ResumeData
from subqueue.core.srt_parse import (
    SubtitleEntry, parse_srt, build_srt, shift_entries, clip_entry,
)

logger = logging.getLogger(__name__)

_RELATIVE_TOLERANCE = 0.5


def _looks_relative(entries: list[SubtitleEntry], start: float) -> bool:
    """A batch result is batch-relative if any cue begins before the batch does."""
    if start <= 0 or not entries:
        return False
    return min(e.start for e in entries) < start - _RELATIVE_TOLERANCE


def replace_batch_in_srt(existing_srt: str, batch_srt: str, start: float,
                         end: float | None, duration: float | None = None,
                         relative: bool | None = None) -> str:
    """
    Replace the cues of [start, end) in existing_srt with those of batch_srt.

    Cues entirely outside the range are kept with their original timing
    line and text. Cues crossing a boundary are clipped to it. New cues are
    shifted by `start` when they are batch-relative and clipped to the
    range. Anything past `duration` is dropped.
    """
    kept: list[SubtitleEntry] = []
    for entry in parse_srt(existing_srt):
        if entry.end <= start or (end is not None and entry.start >= end):
            kept.append(entry)
            continue
        if entry.start < start:
            head = clip_entry(entry, None, start)
            if head:
                kept.append(head)
        if end is not None and entry.end > end:
            tail = clip_entry(entry, end, None)
            if tail:
                kept.append(tail)

    new_entries = parse_srt(batch_srt)
    if relative is None:
        relative = _looks_relative(new_entries, start)
    if relative:
        new_entries = shift_entries(new_entries, start)
    for entry in new_entries:
        clipped = clip_entry(entry, start, end)
        if clipped:
            kept.append(clipped)

    if duration is not None:
        kept = [c for c in (clip_entry(e, None, duration) for e in kept if e.start < duration) if c]

    kept.sort(key=lambda e: (e.start, e.end))
    return build_srt(kept)


def truncate_srt(srt: str, until: float) -> str:
    """Keep only the cues that end at or before `until`."""
    return build_srt([e for e in parse_srt(srt) if e.end <= until])


def prepare_from_here(srt: str, batch_index: int, duration: float | None,
                      settings: BatchSettings | None = None) -> ResumeData:
    """
    Resume state for "retranslate from batch N onward": the SRT cut back to
    the start of batch N plus the ranges of every batch before it.
    """
    bounds = batch_bounds(batch_index, duration, settings)
    ranges = completed_ranges_before(batch_index, duration, settings)
    partial = truncate_srt(srt, bounds.start)
    logger.debug("From-here state: batch %d, cut at %.1fs, %d committed ranges",
                 batch_index, bounds.start, len(ranges))
    return ResumeData(partial_srt=partial, completed_ranges=ranges)
