"""
Standardised error handling for SubtitleQueue.
"""

from subqueue.core.constants import ErrorCode, RETRYABLE_ERRORS, STOPPED_MESSAGE


class JobError(Exception):
    """Raised when a job encounters a known error condition."""

    def __init__(self, code: str, message: str, retryable: bool | None = None):
        self.code = code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (code in RETRYABLE_ERRORS)
        super().__init__(f"[{code}] {message}")


class AlreadyRunningError(JobError):
    """A translation is already processing; the running job is untouched."""

    def __init__(self, video_url: str | None = None):
        message = "A translation is already in progress"
        if video_url:
            message = f"{message} ({video_url})"
        super().__init__(ErrorCode.ALREADY_RUNNING, message, retryable=False)


class ConfigNotSelectedError(JobError):
    def __init__(self, message: str = "No translation config selected"):
        super().__init__(ErrorCode.CONFIG_NOT_SELECTED, message, retryable=False)


class TranslationCancelled(JobError):
    """Raised inside a provider once its cancellation token fires."""

    def __init__(self, message: str = STOPPED_MESSAGE):
        super().__init__(ErrorCode.STOPPED_BY_USER, message, retryable=False)


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS


def is_user_stop(error) -> bool:
    """True for a cancellation error or any message carrying the stop marker."""
    if error is None:
        return False
    if isinstance(error, TranslationCancelled):
        return True
    if isinstance(error, JobError):
        return error.code == ErrorCode.STOPPED_BY_USER or error.message.startswith(STOPPED_MESSAGE)
    return str(error).startswith(STOPPED_MESSAGE)


def stopped_message(completed_batches: int = 0) -> str:
    if completed_batches > 0:
        return f"{STOPPED_MESSAGE} ({completed_batches} batches translated)"
    return STOPPED_MESSAGE


def error_message(error: BaseException) -> str:
    """Human-readable message for any exception, without the code prefix."""
    if isinstance(error, JobError):
        return error.message
    return str(error) or type(error).__name__
