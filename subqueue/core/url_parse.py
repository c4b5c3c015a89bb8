"""
YouTube URL parsing and canonical video identity.
Two URLs that point at the same video map to the same video key.
"""

import hashlib
import re
from urllib.parse import urlparse, parse_qs

from subqueue.core.constants import (
    YOUTUBE_URL_PATTERNS, CANONICAL_WATCH_URL, THUMBNAIL_URL,
)
from subqueue.core.error_codes import JobError, ErrorCode


def extract_video_id(url: str) -> str | None:
    """
    Extract the 11-character video_id from a YouTube URL.
    Returns None if the URL is not a valid YouTube URL.
    """
    url = (url or "").strip()
    if not url:
        return None

    for pattern in YOUTUBE_URL_PATTERNS:
        m = re.search(pattern, url)
        if m:
            return m.group(1)

    # Fallback: parse query string for 'v' parameter
    try:
        parsed = urlparse(url)
        if 'youtube.com' in parsed.netloc or 'youtu.be' in parsed.netloc:
            qs = parse_qs(parsed.query)
            v = qs.get('v', [None])[0]
            if v and re.match(r'^[a-zA-Z0-9_-]{11}$', v):
                return v
    except ValueError:
        pass

    return None


def video_key(url: str) -> str:
    """
    Canonical identity used for dedup and storage keys.
    YouTube URLs collapse to their video id; anything else to a stable hash
    of the stripped URL.
    """
    video_id = extract_video_id(url)
    if video_id:
        return video_id
    cleaned = (url or "").strip()
    if not cleaned:
        raise JobError(ErrorCode.INVALID_URL, "Empty video URL")
    return "url_" + hashlib.sha1(cleaned.encode('utf-8')).hexdigest()[:16]


def same_video(url_a: str | None, url_b: str | None) -> bool:
    if not url_a or not url_b:
        return False
    return video_key(url_a) == video_key(url_b)


def normalize_video_url(url: str) -> str:
    video_id = extract_video_id(url)
    if video_id:
        return CANONICAL_WATCH_URL.format(video_id=video_id)
    return url.strip()


def thumbnail_url(url: str) -> str | None:
    video_id = extract_video_id(url)
    return THUMBNAIL_URL.format(video_id=video_id) if video_id else None


def validate_youtube_url(url: str) -> str:
    """
    Validate a YouTube URL and return the video_id.
    Raises JobError if invalid.
    """
    video_id = extract_video_id(url)
    if not video_id:
        raise JobError(ErrorCode.INVALID_URL, f"Not a valid YouTube URL: {url}")
    return video_id


def is_youtube_url(url: str) -> bool:
    """Quick check if a string looks like a YouTube URL."""
    return extract_video_id(url) is not None


def parse_input_lines(text: str) -> list[str]:
    """
    Parse pasted text into a list of YouTube URLs.
    Empty lines and non-YouTube lines are skipped.
    """
    urls = []
    for line in text.splitlines():
        line = line.strip()
        if line and is_youtube_url(line):
            urls.append(line)
    return urls


def parse_input_file(filepath: str) -> list[str]:
    """Parse a .txt file containing one URL per line."""
    with open(filepath, 'r', encoding='utf-8', errors='replace') as f:
        return parse_input_lines(f.read())
