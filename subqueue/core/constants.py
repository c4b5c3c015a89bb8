"""
Shared constants for SubtitleQueue.
Single source of truth — imported by every other module.
"""

import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "SubtitleQueue"
APP_BUNDLE_ID = "com.local.subtitlequeue"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

DEFAULT_EXPORT_ROOT = HOME / "Downloads" / "Translated Subtitles"
APP_SUPPORT_DIR = HOME / "Library" / "Application Support" / APP_NAME
DB_PATH = APP_SUPPORT_DIR / "store.db"
CONFIG_PATH = APP_SUPPORT_DIR / "config.json"
LOG_DIR = HOME / "Library" / "Logs" / APP_NAME

# ── Keychain identifiers ─────────────────────────────────────────────
KEYCHAIN_SERVICE = "SubtitleQueue:Gemini"
KEYCHAIN_ACCOUNT = "default"
API_KEY_ENV_VAR = "GEMINI_API_KEY"

# ── Job status values (executor) ──────────────────────────────────────
class JobStatus:
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

# ── Queue item status values (scheduler) ──────────────────────────────
class QueueStatus:
    PENDING = "pending"
    TRANSLATING = "translating"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"

    ALL = (PENDING, TRANSLATING, PAUSED, COMPLETED, ERROR)

# ── Per-batch status ──────────────────────────────────────────────────
class BatchStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"

class RetranslateMode:
    SINGLE = "single"
    FROM_HERE = "fromHere"

# In-flight user action recorded on a queue item
class UserAction:
    STOP = "stop"
    REMOVE = "remove"

# Who started a job; notifications are filtered on this
class JobSource:
    QUEUE = "queue"
    DIRECT = "direct"

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Caller errors
    ALREADY_RUNNING = "ERR_ALREADY_RUNNING"
    CONFIG_NOT_SELECTED = "ERR_CONFIG_NOT_SELECTED"
    INVALID_URL = "ERR_INVALID_URL"
    ITEM_NOT_FOUND = "ERR_ITEM_NOT_FOUND"
    VIDEO_BUSY = "ERR_VIDEO_BUSY"
    INVALID_BATCH = "ERR_INVALID_BATCH"
    API_KEY_MISSING = "ERR_API_KEY_MISSING"
    VIDEO_UNAVAILABLE = "ERR_VIDEO_UNAVAILABLE"

    # Provider, non-retryable
    PROVIDER_FAILED = "ERR_PROVIDER_FAILED"
    EMPTY_RESPONSE = "ERR_EMPTY_RESPONSE"

    # Provider, retryable
    PROVIDER_TIMEOUT = "ERR_PROVIDER_TIMEOUT"
    RATE_LIMITED = "ERR_RATE_LIMITED"
    NETWORK_TRANSIENT = "ERR_NETWORK_TRANSIENT"
    METADATA_FAILED = "ERR_METADATA_FAILED"

    # Anything not raised as a JobError
    UNEXPECTED = "ERR_UNEXPECTED"

    # Special (not failure)
    STOPPED_BY_USER = "STOPPED_BY_USER"

RETRYABLE_ERRORS = {
    ErrorCode.PROVIDER_TIMEOUT,
    ErrorCode.RATE_LIMITED,
    ErrorCode.NETWORK_TRANSIENT,
    ErrorCode.METADATA_FAILED,
    ErrorCode.UNEXPECTED,
}

# Prefix of every error message produced by a user stop
STOPPED_MESSAGE = "Stopped by user"

# ── Batch defaults ────────────────────────────────────────────────────
DEFAULT_MAX_VIDEO_DURATION = 600    # seconds per batch
DEFAULT_MAX_CONCURRENT_BATCHES = 2
DEFAULT_BATCH_OFFSET = 60           # tolerance before a video is split
DEFAULT_STREAMING_MODE = False

# ── Queue ─────────────────────────────────────────────────────────────
MAX_AUTO_RETRIES = 1
QUEUE_PAGE_SIZE = 10
QUEUE_STORAGE_KEY = "translation_queue"
TRANSLATION_KEY_PREFIX = "translations:"

# ── Gemini ────────────────────────────────────────────────────────────
GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
GEMINI_DEFAULT_MODEL = "gemini-2.5-flash"
GEMINI_REQUEST_TIMEOUT_SEC = 600
GEMINI_DEFAULT_PROMPT = (
    "Translate the spoken content of this video into Vietnamese subtitles. "
    "Return only valid SRT with timestamps relative to the start of the clip."
)

# ── Misc ──────────────────────────────────────────────────────────────
YOUTUBE_URL_PATTERNS = [
    r'(?:https?://)?(?:www\.)?youtube\.com/watch\?(?:.*&)?v=([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?youtu\.be/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/embed/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/v/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/shorts/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/live/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?m\.youtube\.com/watch\?(?:.*&)?v=([a-zA-Z0-9_-]{11})',
]
CANONICAL_WATCH_URL = "https://www.youtube.com/watch?v={video_id}"
THUMBNAIL_URL = "https://img.youtube.com/vi/{video_id}/mqdefault.jpg"

# Characters forbidden in folder names (macOS + safety)
UNSAFE_FILENAME_CHARS = r'[<>:"/\\|?*\x00-\x1f]'
MAX_FOLDER_NAME_LEN = 200
