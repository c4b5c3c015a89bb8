"""
YouTube metadata fetching via yt-dlp.
Only title and duration are needed to plan batches.
"""

import json
import logging
import subprocess

from subqueue.core.security_utils import run_subprocess_capture
from subqueue.core.error_codes import JobError
from subqueue.core.constants import ErrorCode

logger = logging.getLogger(__name__)


def fetch_metadata(video_url: str) -> dict:
    """
    Fetch video metadata using yt-dlp --dump-json.
    Returns the parsed dict (at least 'id', 'title', 'duration').
    """
    args = ["yt-dlp", "--dump-json", "--no-playlist", "--skip-download", video_url]

    try:
        result = run_subprocess_capture(args, timeout=60)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise JobError(ErrorCode.METADATA_FAILED, f"yt-dlp metadata fetch failed: {e}")

    if result.returncode != 0:
        stderr = result.stderr or ""
        if "Video unavailable" in stderr or "is not available" in stderr:
            raise JobError(ErrorCode.VIDEO_UNAVAILABLE, f"Video unavailable: {stderr[:200]}")
        raise JobError(ErrorCode.METADATA_FAILED,
                       f"yt-dlp failed (rc={result.returncode}): {stderr[:300]}")

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise JobError(ErrorCode.METADATA_FAILED, f"Failed to parse yt-dlp JSON: {e}")


def get_video_info(video_url: str) -> tuple[str, float | None]:
    """(title, duration_seconds) for a video; duration is None for live streams."""
    metadata = fetch_metadata(video_url)
    duration = metadata.get('duration')
    title = metadata.get('title') or ""
    logger.info("Metadata for %s: %r, %s s", video_url, title, duration)
    return title, float(duration) if duration else None
