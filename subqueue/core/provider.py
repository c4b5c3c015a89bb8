"""
Batch translation provider interface and the cancellation token shared by
the executor and every provider.
"""

import abc
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from subqueue.core.error_codes import TranslationCancelled
from subqueue.core.models import BatchRange, BatchSettings, BatchProgress, TranslationConfig


class CancellationToken:
    """Thread-safe one-shot cancel flag. Provider worker threads may wait on it."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    def cancel(self):
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]):
        """Run callback on cancel (immediately if already cancelled)."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise TranslationCancelled()


# (progress, partial_srt)
BatchProgressCallback = Callable[[BatchProgress, Optional[str]], None]
# (committed_range, partial_srt, progress)
BatchCompleteCallback = Callable[[BatchRange, str, BatchProgress], None]
KeyStatusCallback = Callable[[str], None]


@dataclass
class TranslateOptions:
    duration: Optional[float] = None
    batch_settings: BatchSettings = field(default_factory=BatchSettings)
    range_start: Optional[float] = None
    range_end: Optional[float] = None
    skip_ranges: list[BatchRange] = field(default_factory=list)
    existing_partial_srt: Optional[str] = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    on_batch_progress: Optional[BatchProgressCallback] = None
    on_batch_complete: Optional[BatchCompleteCallback] = None
    on_key_status: Optional[KeyStatusCallback] = None
    # leave timestamps relative to range_start (single-batch retranslation)
    skip_timestamp_adjust: bool = False


class BatchTranslationProvider(abc.ABC):
    """
    Translates a video into SRT, batch by batch.

    Implementations must call the option callbacks on the event loop thread,
    must raise TranslationCancelled once the token is cancelled, and must not
    retranslate any batch covered by skip_ranges.
    """

    @abc.abstractmethod
    async def translate(self, video_url: str, config: TranslationConfig,
                        options: TranslateOptions) -> str:
        ...
