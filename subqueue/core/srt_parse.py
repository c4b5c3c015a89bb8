"""
SRT parsing, repair and formatting.
Entries keep their original timing line so untouched cues can be written
back byte-for-byte.
"""

import re
import logging
from dataclasses import dataclass, replace
from typing import Optional

logger = logging.getLogger(__name__)

_TIMING_RE = re.compile(r'^(.+?)\s*-->\s*(.+?)$')
_VALID_TIME_RE = re.compile(r'^(\d{2}):(\d{2}):(\d{2}),(\d{3})$')
_FENCE_RE = re.compile(r'^```[a-zA-Z]*\s*$')

# (pattern, replacement) pairs for malformed timestamps produced by models
_TIME_FIXES = [
    (re.compile(r'^(\d{2}):(\d{2}):(\d{2})\.(\d{3})$'), lambda m: f"{m[1]}:{m[2]}:{m[3]},{m[4]}"),
    (re.compile(r'^(\d{1,2}):(\d{2}),(\d{3})$'), lambda m: f"00:{m[1].zfill(2)}:{m[2]},{m[3]}"),
    (re.compile(r'^(\d{1,2}):(\d{2})\.(\d{3})$'), lambda m: f"00:{m[1].zfill(2)}:{m[2]},{m[3]}"),
    (re.compile(r'^(\d{1,2}):(\d{2}):(\d{3})$'), lambda m: f"00:{m[1].zfill(2)}:{m[2]},{m[3]}"),
    (re.compile(r'^(\d{2}):0(\d),(\d{3})$'), lambda m: f"{m[1]}:0{m[2]},{m[3]}"),
    (re.compile(r'^(\d{2}):(\d{3}),(\d{3})$'), lambda m: f"{m[1]}:0{m[2][0]}:{m[2][1:]},{m[3]}"),
    (re.compile(r'^(\d{2}):(\d{3}):(\d{3})$'), lambda m: f"{m[1]}:0{m[2][0]}:{m[2][1:]},{m[3]}"),
    (re.compile(r'^(\d):(\d{2}):(\d{2}),(\d{3})$'), lambda m: f"0{m[1]}:{m[2]}:{m[3]},{m[4]}"),
]


@dataclass
class SubtitleEntry:
    index: int
    start: float
    end: float
    text: str
    timing: Optional[str] = None     # original timing line, if unchanged

    @property
    def timing_line(self) -> str:
        return self.timing or f"{seconds_to_time(self.start)} --> {seconds_to_time(self.end)}"


# ── Time conversion ───────────────────────────────────────────────────

def is_valid_time(time_str: str) -> bool:
    m = _VALID_TIME_RE.match(time_str)
    if not m:
        return False
    return int(m[2]) <= 59 and int(m[3]) <= 59


def time_to_seconds(time_str: str) -> float:
    """Convert HH:MM:SS,mmm to seconds."""
    hms, _, ms = time_str.strip().partition(',')
    hours, minutes, seconds = (int(p) for p in hms.split(':'))
    return hours * 3600 + minutes * 60 + seconds + int(ms or 0) / 1000


def seconds_to_time(seconds: float) -> str:
    """Convert seconds to HH:MM:SS,mmm."""
    total_ms = max(0, int(round(seconds * 1000)))
    hours, rem = divmod(total_ms, 3600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, ms = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{ms:03d}"


def fix_time_format(time_str: str) -> str:
    time_str = time_str.strip()
    if is_valid_time(time_str):
        return time_str
    for pattern, repl in _TIME_FIXES:
        m = pattern.match(time_str)
        if m:
            fixed = repl(m)
            if is_valid_time(fixed):
                return fixed
    return time_str


# ── Parsing ───────────────────────────────────────────────────────────

def fix_srt(data: str) -> tuple[str, int]:
    """
    Repair malformed timing lines.
    Returns (fixed_data, number_of_lines_fixed).
    """
    if not data:
        return "", 0

    lines = data.replace('\r\n', '\n').replace('\r', '\n').split('\n')
    fixed_lines = []
    fix_count = 0
    for line in lines:
        m = _TIMING_RE.match(line.strip())
        if m:
            start, end = m[1].strip(), m[2].strip()
            fixed_start, fixed_end = fix_time_format(start), fix_time_format(end)
            if fixed_start != start or fixed_end != end:
                fix_count += 1
                fixed_lines.append(f"{fixed_start} --> {fixed_end}")
                continue
        fixed_lines.append(line)
    return '\n'.join(fixed_lines), fix_count


def strip_code_fences(text: str) -> str:
    """Drop markdown ``` fences that models wrap around SRT output."""
    lines = [l for l in (text or "").splitlines() if not _FENCE_RE.match(l.strip())]
    return '\n'.join(lines).strip()


def parse_srt(data: str) -> list[SubtitleEntry]:
    """Parse SRT text into entries. Blocks without a valid timing line are skipped."""
    if not data:
        return []

    data, fixes = fix_srt(data)
    if fixes:
        logger.debug("Repaired %d SRT timing lines", fixes)

    entries = []
    for block in re.split(r'\n\s*\n', data.strip()):
        lines = block.split('\n')
        timing_idx = next((i for i, l in enumerate(lines) if '-->' in l), None)
        if timing_idx is None:
            continue
        m = _TIMING_RE.match(lines[timing_idx].strip())
        if not m or not (is_valid_time(m[1].strip()) and is_valid_time(m[2].strip())):
            continue

        index = len(entries) + 1
        if timing_idx > 0 and lines[timing_idx - 1].strip().isdigit():
            index = int(lines[timing_idx - 1].strip())

        entries.append(SubtitleEntry(
            index=index,
            start=time_to_seconds(m[1]),
            end=time_to_seconds(m[2]),
            text='\n'.join(lines[timing_idx + 1:]).strip(),
            timing=lines[timing_idx].strip(),
        ))
    return entries


# ── Formatting ────────────────────────────────────────────────────────

def build_srt(entries: list[SubtitleEntry], renumber: bool = True) -> str:
    blocks = []
    for i, entry in enumerate(entries, start=1):
        number = i if renumber else entry.index
        blocks.append(f"{number}\n{entry.timing_line}\n{entry.text}")
    return '\n\n'.join(blocks) + ('\n' if blocks else '')


def shift_entries(entries: list[SubtitleEntry], offset: float) -> list[SubtitleEntry]:
    if not offset:
        return list(entries)
    return [replace(e, start=e.start + offset, end=e.end + offset, timing=None)
            for e in entries]


def clip_entry(entry: SubtitleEntry, lo: float | None, hi: float | None) -> SubtitleEntry | None:
    """Clip an entry to [lo, hi]; None when nothing is left of it."""
    start, end = entry.start, entry.end
    if lo is not None:
        start = max(start, lo)
    if hi is not None:
        end = min(end, hi)
    if end <= start:
        return None
    if start == entry.start and end == entry.end:
        return entry
    return replace(entry, start=start, end=end, timing=None)


def merge_srt(*contents: str) -> str:
    """Merge several SRT documents into one, ordered by start time."""
    entries = []
    for content in contents:
        if content:
            entries.extend(parse_srt(content))
    entries.sort(key=lambda e: (e.start, e.end))
    return build_srt(entries)


def last_end_time(data: str) -> float:
    entries = parse_srt(data)
    return max((e.end for e in entries), default=0.0)
