"""
User notifications for translation events.
Every send is filtered by NotificationSettings and tagged with the job
source (queue or direct). Delivery failures are logged, never raised.
"""

import logging
import shutil
import subprocess
import sys
from dataclasses import dataclass

from subqueue.core.constants import APP_NAME, JobSource
from subqueue.core.security_utils import run_subprocess_capture

logger = logging.getLogger(__name__)


@dataclass
class NotificationSettings:
    enabled: bool = True
    from_queue: bool = True
    from_direct: bool = True
    on_complete: bool = True
    on_batch_complete: bool = False
    on_error: bool = True

    @classmethod
    def from_dict(cls, data: dict | None) -> "NotificationSettings":
        data = data or {}
        return cls(**{k: bool(v) for k, v in data.items() if k in cls.__dataclass_fields__})


class NotificationService:
    """Decides whether to notify; subclasses implement _send."""

    def __init__(self, settings: NotificationSettings | None = None):
        self.settings = settings or NotificationSettings()
        self.sent: list[tuple[str, str]] = []

    def _allowed(self, source: str, kind: str) -> bool:
        s = self.settings
        if not s.enabled:
            return False
        if source == JobSource.QUEUE and not s.from_queue:
            return False
        if source == JobSource.DIRECT and not s.from_direct:
            return False
        return getattr(s, kind)

    def _notify(self, source: str, kind: str, title: str, body: str):
        if not self._allowed(source, kind):
            return
        self.sent.append((title, body))
        try:
            self._send(title, body)
        except Exception as e:
            logger.warning("Notification failed: %s", e)

    def _send(self, title: str, body: str):
        pass

    def notify_batch_complete(self, video_title: str, completed: int, total: int,
                              source: str = JobSource.DIRECT):
        self._notify(source, 'on_batch_complete', "Batch translated",
                     f"{video_title}: {completed}/{total} batches")

    def notify_translation_complete(self, video_title: str, source: str = JobSource.DIRECT):
        self._notify(source, 'on_complete', "Translation complete", video_title)

    def notify_translation_error(self, video_title: str, error: str,
                                 source: str = JobSource.DIRECT):
        self._notify(source, 'on_error', "Translation failed", f"{video_title}: {error}")

    def notify_queue_complete(self, completed: int, failed: int = 0):
        body = f"{completed} videos translated"
        if failed:
            body += f", {failed} failed"
        self._notify(JobSource.QUEUE, 'on_complete', "Queue finished", body)


class LogNotifier(NotificationService):
    def _send(self, title: str, body: str):
        logger.info("Notification: %s: %s", title, body)


class DesktopNotifier(LogNotifier):
    """macOS notification centre via osascript, notify-send elsewhere."""

    def _send(self, title: str, body: str):
        super()._send(title, body)
        if sys.platform == "darwin":
            safe_title = title.replace('"', "'")
            safe_body = body.replace('"', "'")[:300]
            args = ["osascript", "-e",
                    f'display notification "{safe_body}" with title "{APP_NAME}" '
                    f'subtitle "{safe_title}"']
        elif shutil.which("notify-send"):
            args = ["notify-send", f"{APP_NAME}: {title}", body[:300]]
        else:
            return
        try:
            run_subprocess_capture(args, timeout=10)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("Desktop notification failed: %s", e)
