"""
Background execution keeper.
Keeps the host process alive and surfaces progress while a translation is
running. Keeper failures are logged and never reach the orchestrator.
"""

import logging
import subprocess
import sys

logger = logging.getLogger(__name__)


class BackgroundKeeper:
    """No-op keeper; subclasses hook into the host platform."""

    def on_start(self, label: str):
        pass

    def update_progress(self, current: int, total: int, label: str = ""):
        pass

    def on_complete(self):
        pass

    def on_stop(self):
        pass


class LoggingBackgroundKeeper(BackgroundKeeper):
    def on_start(self, label: str):
        logger.info("Background work started: %s", label)

    def update_progress(self, current: int, total: int, label: str = ""):
        logger.info("Background progress: %d/%d %s", current, total, label)

    def on_complete(self):
        logger.info("Background work complete")

    def on_stop(self):
        logger.info("Background work stopped")


class CaffeinateKeeper(LoggingBackgroundKeeper):
    """Holds a macOS `caffeinate` assertion so the machine does not sleep mid-run."""

    def __init__(self):
        self._proc = None

    def on_start(self, label: str):
        super().on_start(label)
        if sys.platform != "darwin" or self._proc is not None:
            return
        self._proc = subprocess.Popen(
            ["caffeinate", "-i"], shell=False,
            stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
        )

    def _release(self):
        if self._proc is not None:
            self._proc.terminate()
            self._proc = None

    def on_complete(self):
        super().on_complete()
        self._release()

    def on_stop(self):
        super().on_stop()
        self._release()


class KeeperGuard:
    """Wraps a keeper so none of its calls can raise."""

    def __init__(self, keeper: BackgroundKeeper | None):
        self.keeper = keeper or BackgroundKeeper()

    def _call(self, name: str, *args):
        try:
            getattr(self.keeper, name)(*args)
        except Exception as e:
            logger.warning("Background keeper %s failed: %s", name, e)

    def on_start(self, label: str):
        self._call('on_start', label)

    def update_progress(self, current: int, total: int, label: str = ""):
        self._call('update_progress', current, total, label)

    def on_complete(self):
        self._call('on_complete')

    def on_stop(self):
        self._call('on_stop')
