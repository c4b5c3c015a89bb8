"""
Security utilities for SubtitleQueue.
- Filename sanitization and path traversal protection for exports
- Safe subprocess execution (argument arrays only)
- API key lookup: environment first, then the macOS Keychain
"""

import os
import re
import subprocess
import pathlib
import logging

from subqueue.core.constants import (
    UNSAFE_FILENAME_CHARS,
    MAX_FOLDER_NAME_LEN,
    KEYCHAIN_SERVICE,
    KEYCHAIN_ACCOUNT,
    API_KEY_ENV_VAR,
)

logger = logging.getLogger(__name__)


# ── Filename / path safety ────────────────────────────────────────────

def sanitize_title(title: str) -> str:
    """Sanitize a video title for use as a folder name."""
    if not title:
        return ""
    safe = re.sub(UNSAFE_FILENAME_CHARS, '_', title)
    safe = safe.replace('..', '')
    safe = re.sub(r'[_\s]+', ' ', safe).strip()
    if len(safe) > MAX_FOLDER_NAME_LEN:
        safe = safe[:MAX_FOLDER_NAME_LEN].rstrip()
    # leading dots hide folders on macOS
    return safe.strip('.').strip()


def safe_output_path(export_root: pathlib.Path, title: str, video_id: str) -> pathlib.Path:
    """
    Folder for a video's exports under export_root. Falls back to
    'video_<video_id>' when the title is empty or escapes the root.
    """
    fallback = export_root / f"video_{video_id}"
    sanitized = sanitize_title(title)
    if not sanitized:
        return fallback

    candidate = export_root / sanitized
    real_root = export_root.resolve(strict=False)
    real_candidate = candidate.resolve(strict=False)
    if real_root != real_candidate and real_root not in real_candidate.parents:
        logger.warning("Rejected export folder outside root: %r", title)
        return fallback
    return candidate


# ── Subprocess safety ─────────────────────────────────────────────────

def run_subprocess(args: list[str], **kwargs) -> subprocess.CompletedProcess:
    """
    Execute a subprocess using argument arrays only.
    shell=True is explicitly forbidden.
    """
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")
    kwargs.pop('shell', None)
    logger.debug("Running subprocess: %s", args[0] if args else "")
    return subprocess.run(args, shell=False, **kwargs)


def run_subprocess_capture(args: list[str], timeout: int = 300, **kwargs) -> subprocess.CompletedProcess:
    """Run subprocess and capture stdout/stderr as text."""
    return run_subprocess(args, capture_output=True, text=True, timeout=timeout, **kwargs)


# ── API key storage ───────────────────────────────────────────────────

def _security(action: str, *extra: str) -> subprocess.CompletedProcess:
    return run_subprocess_capture(
        ["security", action, "-s", KEYCHAIN_SERVICE, "-a", KEYCHAIN_ACCOUNT, *extra],
        timeout=10,
    )


def keychain_get_api_key() -> str | None:
    """Retrieve the Gemini API key from the macOS Keychain."""
    try:
        result = _security("find-generic-password", "-w")
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return None
    if result.returncode == 0 and result.stdout.strip():
        return result.stdout.strip()
    return None


def keychain_set_api_key(api_key: str) -> bool:
    """Store or update the Gemini API key in the macOS Keychain."""
    try:
        result = _security("add-generic-password", "-w", api_key, "-U")
    except (subprocess.TimeoutExpired, FileNotFoundError) as e:
        logger.error("Keychain write failed: %s", type(e).__name__)
        return False
    return result.returncode == 0


def keychain_delete_api_key() -> bool:
    try:
        return _security("delete-generic-password").returncode == 0
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return False


def get_api_key() -> str | None:
    """GEMINI_API_KEY from the environment, else the Keychain entry."""
    env_key = os.environ.get(API_KEY_ENV_VAR, "").strip()
    if env_key:
        return env_key
    return keychain_get_api_key()
