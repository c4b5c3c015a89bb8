"""
Queue Scheduler.
Keeps the persistent list of queue items, feeds them to the JobExecutor one
at a time and mirrors every job snapshot back onto the matching item.

Advancement to the next item always runs as its own task, and only once no
stop / remove action is still waiting for its run to unwind. A run that was
stopped or removed is detached: when its executor call returns, the outcome
is dropped and the item's pending_user_action tag is cleared.
"""

import asyncio
import logging
import math
import uuid
from dataclasses import replace
from typing import Callable, Optional

from subqueue.core.batch_edit import prepare_from_here
from subqueue.core.batch_plan import batch_bounds, total_batches
from subqueue.core.background import BackgroundKeeper, KeeperGuard
from subqueue.core.config import AppConfig
from subqueue.core.constants import (
    ErrorCode, JobStatus, JobSource, QueueStatus, RetranslateMode, UserAction,
    MAX_AUTO_RETRIES, QUEUE_PAGE_SIZE, QUEUE_STORAGE_KEY,
)
from subqueue.core.db_sqlite import Database
from subqueue.core.error_codes import (
    JobError, AlreadyRunningError, ConfigNotSelectedError,
    error_message, is_user_stop,
)
from subqueue.core.executor import JobExecutor
from subqueue.core.models import (
    Job, QueueItem, QueuePage, StartResult, AddResult, VideoQueueStatus,
    BatchRange, ResumeData, SavedTranslation, TranslationConfig, now_ms,
)
from subqueue.core.notifications import NotificationService
from subqueue.core.translation_store import TranslationStore
from subqueue.core.url_parse import video_key, same_video, thumbnail_url

logger = logging.getLogger(__name__)

QueueListener = Callable[[list[QueueItem]], None]

_SORT_KEYS = {
    QueueStatus.COMPLETED: (lambda i: i.completed_at or 0, True),
    QueueStatus.TRANSLATING: (lambda i: i.started_at or 0, False),
    QueueStatus.PAUSED: (lambda i: i.started_at or 0, True),
}


class QueueScheduler:
    """
    Manages the translation queue and runs items through the executor.
    All methods must be called on the event loop thread.
    """

    def __init__(self, db: Database, executor: JobExecutor, translations: TranslationStore,
                 config: AppConfig, notifier: NotificationService | None = None,
                 keeper: BackgroundKeeper | None = None):
        self.db = db
        self.executor = executor
        self.translations = translations
        self.config = config
        self.notifier = notifier or NotificationService()
        self.keeper = KeeperGuard(keeper)

        self._items: list[QueueItem] = []
        self._listeners: list[QueueListener] = []
        self._initialized = False

        # current run
        self._is_processing = False
        self._current_item_id: Optional[str] = None
        self._current_job_id: Optional[str] = None
        self._active_run = 0
        self._run_counter = 0
        self._detached_runs: dict[int, str] = {}

        # advancement
        self._tasks: set[asyncio.Task] = set()
        self._advance_task: Optional[asyncio.Task] = None
        self._auto_process = False
        self._session_start_completed = 0
        self._user_actions = 0
        self._actions_idle = asyncio.Event()
        self._actions_idle.set()

        self._direct_video_url: Optional[str] = None
        self._last_stamp = 0

        self._unsubscribe = executor.subscribe(self._on_job_update)

    # ── Persistence ───────────────────────────────────────────────────

    def initialize(self):
        """Load the persisted queue. Items interrupted mid-run are recovered."""
        if self._initialized:
            return
        try:
            raw = self.db.get(QUEUE_STORAGE_KEY, []) or []
        except Exception as e:
            logger.error("Failed to load %s: %s", QUEUE_STORAGE_KEY, e)
            raw = []

        items = []
        for data in raw:
            try:
                items.append(QueueItem.from_dict(data))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed queue item: %s", e)

        recovered = 0
        for item in items:
            if item.status == QueueStatus.TRANSLATING:
                item.status = QueueStatus.PAUSED if item.has_partial else QueueStatus.PENDING
                recovered += 1
            item.clear_progress()

        self._items = items
        self._last_stamp = max(
            [t for i in items for t in (i.added_at, i.started_at, i.completed_at) if t] or [0]
        )
        self._initialized = True
        logger.info("Queue loaded: %d items (%d interrupted runs recovered)", len(items), recovered)
        if recovered:
            self._save()
        self._emit()

    def close(self):
        self._unsubscribe()
        if self._advance_task is not None and not self._advance_task.done():
            self._advance_task.cancel()

    def _save(self):
        try:
            self.db.set(QUEUE_STORAGE_KEY, [i.to_dict() for i in self._items])
        except Exception as e:
            logger.error("Failed to persist %s: %s", QUEUE_STORAGE_KEY, e)

    def _emit(self):
        for listener in list(self._listeners):
            try:
                listener([i.snapshot() for i in self._items])
            except Exception:
                logger.exception("Queue listener failed")

    def _commit(self):
        self._save()
        self._emit()

    def _stamp(self) -> int:
        """Strictly increasing epoch-ms timestamp, so FIFO order never ties."""
        self._last_stamp = max(now_ms(), self._last_stamp + 1)
        return self._last_stamp

    def subscribe(self, listener: QueueListener) -> Callable[[], None]:
        """Register a listener; it immediately receives the current items."""
        self._listeners.append(listener)
        try:
            listener([i.snapshot() for i in self._items])
        except Exception:
            logger.exception("Queue listener failed")

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    # ── Lookup helpers ────────────────────────────────────────────────

    def _find(self, item_id: str | None) -> Optional[QueueItem]:
        if item_id is None:
            return None
        return next((i for i in self._items if i.id == item_id), None)

    def _find_by_url(self, video_url: str) -> Optional[QueueItem]:
        key = video_key(video_url)
        return next((i for i in self._items if i.video_key == key), None)

    def _count(self, status: str) -> int:
        return sum(1 for i in self._items if i.status == status)

    def _is_busy(self) -> bool:
        return self._is_processing or self.executor.is_translating()

    def _is_current(self, item: QueueItem) -> bool:
        return self._is_processing and item.id == self._current_item_id

    def _is_active_video(self, video_url: str) -> bool:
        if self.executor.is_translating_video(video_url):
            return True
        current = self._find(self._current_item_id) if self._is_processing else None
        return current is not None and same_video(current.video_url, video_url)

    def _saved_translation(self, video_url: str,
                           translation_id: str | None = None) -> Optional[SavedTranslation]:
        try:
            if translation_id:
                return self.translations.get_translation(video_url, translation_id)
            return self.translations.get_active_translation(video_url)
        except Exception as e:
            logger.error("Failed to read saved translation for %s: %s", video_url, e)
            return None

    # ── Adding ────────────────────────────────────────────────────────

    def add_to_queue(self, video_url: str, title: str = "",
                     duration: float | None = None) -> AddResult:
        """Add a video as pending. A video already in the queue is returned as is."""
        key = video_key(video_url)
        existing = next((i for i in self._items if i.video_key == key), None)
        if existing is not None:
            changed = False
            if duration and not existing.duration:
                existing.duration = duration
                changed = True
            if title and existing.title == f"Video {key}":
                existing.title = title
                changed = True
            if changed:
                self._commit()
            return AddResult(existing.snapshot(), True, self._count(QueueStatus.PENDING))

        item = QueueItem(
            id=str(uuid.uuid4()),
            video_key=key,
            video_url=video_url.strip(),
            title=title or f"Video {key}",
            thumbnail=thumbnail_url(video_url),
            duration=duration,
            added_at=self._stamp(),
        )
        self._items.insert(0, item)
        self._commit()
        logger.info("Queued %s (%s)", key, item.title)
        return AddResult(item.snapshot(), False, self._count(QueueStatus.PENDING))

    # ── Starting ──────────────────────────────────────────────────────

    def start_translation(self, item_id: str, is_resume: bool = False,
                          force_retranslate: bool = False) -> StartResult:
        """
        Run one item now, or mark it waiting when something else is running.
        Completed items are only rerun with force_retranslate, which also
        re-binds the item to the active config.
        """
        item = self._find(item_id)
        if item is None:
            return StartResult(False, 'not_found')
        if item.status == QueueStatus.COMPLETED and not force_retranslate:
            return StartResult(False, 'completed')
        if self._is_current(item) or self.executor.is_translating_video(item.video_url):
            return StartResult(False, 'already_translating')
        if (item.status == QueueStatus.TRANSLATING and not item.has_partial
                and not is_resume and not force_retranslate and self._is_busy()):
            # already waiting in line
            return StartResult(False, 'already_translating')

        if force_retranslate:
            item.clear_partial()
            self._drop_config_snapshot(item)
            item.completed_at = None
        item.user_paused = False
        item.error = None
        item.retry_count = 0

        if self._is_busy():
            item.status = QueueStatus.TRANSLATING
            item.started_at = self._stamp()
            item.clear_progress()
            self._commit()
            logger.info("%s waiting for the current translation", item.video_key)
            return StartResult(True, queued=True)
        return self._launch_or_fail(item)

    def resume_translation(self, item_id: str) -> StartResult:
        return self.start_translation(item_id, is_resume=True)

    def start_auto_process(self) -> StartResult:
        """'Start all': every pending or failed item is queued in FIFO order."""
        for item in self._items:
            item.user_paused = False
        waiting = sorted(
            (i for i in self._items if i.status in (QueueStatus.PENDING, QueueStatus.ERROR)),
            key=lambda i: i.added_at,
        )
        for item in waiting:
            item.status = QueueStatus.TRANSLATING
            item.started_at = self._stamp()
            item.error = None
            item.retry_count = 0
            item.clear_progress()

        self._begin_session()
        self._commit()
        if self._next_candidate() is None and not self._is_processing:
            self._auto_process = False
            return StartResult(False, 'empty')
        if self._is_busy():
            return StartResult(True, queued=True)
        self._process_next()
        return StartResult(True)

    def resume_all_paused(self) -> int:
        paused = sorted((i for i in self._items if i.status == QueueStatus.PAUSED),
                        key=lambda i: i.started_at or 0)
        for item in paused:
            item.status = QueueStatus.TRANSLATING
            item.user_paused = False
            item.error = None
            item.started_at = self._stamp()
        if paused:
            self._begin_session()
            self._commit()
            self._schedule_advance()
        return len(paused)

    def _begin_session(self):
        if not self._auto_process:
            self._auto_process = True
            self._session_start_completed = self._count(QueueStatus.COMPLETED)

    def _drop_config_snapshot(self, item: QueueItem):
        item.config_id = None
        item.config_name = None
        item.preset_id = None
        item.batch_settings = None

    def _resolve_config(self, item: QueueItem) -> TranslationConfig:
        """The item's snapshotted config, else the active one (raises if none)."""
        config = self.config.get_config(item.config_id) if item.config_id else None
        if config is None and item.config_name:
            config = self.config.find_config_by_name(item.config_name)
        if config is None:
            config = self.config.get_active_config()
        return config

    def _launch_or_fail(self, item: QueueItem) -> StartResult:
        try:
            self._launch(item)
        except ConfigNotSelectedError as e:
            item.status = QueueStatus.ERROR
            item.error = e.message
            item.clear_progress()
            self._commit()
            logger.error("Cannot start %s: %s", item.video_key, e.message)
            return StartResult(False, 'config_not_selected')
        return StartResult(True)

    def _launch(self, item: QueueItem):
        config = self._resolve_config(item)
        settings = replace(item.batch_settings or self.config.get_batch_settings(),
                           streaming_mode=True)
        item.config_id = config.id
        item.config_name = config.name
        item.preset_id = config.preset_id
        item.batch_settings = settings
        item.status = QueueStatus.TRANSLATING
        item.started_at = item.started_at or self._stamp()
        item.error = None
        item.user_paused = False
        item.pending_user_action = None
        if item.retranslate_mode == RetranslateMode.SINGLE:
            item.progress_completed, item.progress_total = 0, 1
        else:
            item.progress_completed = len(item.completed_ranges)
            item.progress_total = item.total_batches or total_batches(item.duration, settings)

        self._run_counter += 1
        run_id = self._run_counter
        self._active_run = run_id
        self._is_processing = True
        self._current_item_id = item.id
        self._current_job_id = None
        self.keeper.on_start(item.title or item.video_url)
        self._commit()
        logger.info("Starting %s with config '%s'%s", item.video_key, config.name,
                    " (resume)" if item.has_partial else "")
        self._track(asyncio.ensure_future(self._run(run_id, item.id, config)))

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── Running ───────────────────────────────────────────────────────

    async def _run(self, run_id: int, item_id: str, config: TranslationConfig):
        outcome: Optional[Job] = None
        failure: Optional[Exception] = None
        try:
            if self._active_run != run_id:
                return
            item = self._find(item_id)
            if item is None:
                failure = JobError(ErrorCode.ITEM_NOT_FOUND, "Queue item disappeared")
            else:
                outcome = await self._execute(item, config)
        except Exception as e:
            if not isinstance(e, AlreadyRunningError):
                logger.exception("Queue run for %s failed", item_id)
            failure = e
        finally:
            self._acknowledge(run_id)

        if self._active_run != run_id:
            logger.debug("Dropping outcome of detached run %d", run_id)
            return

        self._release()
        item = self._find(item_id)
        if item is not None:
            if isinstance(failure, AlreadyRunningError):
                # a direct job took the executor; wait for it to finish
                item.status = QueueStatus.TRANSLATING
                item.clear_progress()
                self._commit()
            elif failure is not None:
                self._apply_failure(item, error_message(failure),
                                    retryable=getattr(failure, 'retryable', True))
            else:
                self._apply_outcome(item, outcome)
        if not isinstance(failure, AlreadyRunningError):
            self._schedule_advance()

    async def _execute(self, item: QueueItem, config: TranslationConfig) -> Job:
        settings = item.batch_settings
        if item.retranslate_mode == RetranslateMode.SINGLE and item.retranslate_batch_index is not None:
            saved = self._saved_translation(item.video_url, item.saved_translation_id)
            if saved is None:
                raise JobError(ErrorCode.ITEM_NOT_FOUND,
                               f"No saved translation to edit for {item.video_key}")
            duration = item.duration or saved.video_duration
            bounds = batch_bounds(item.retranslate_batch_index, duration,
                                  saved.batch_settings or settings)
            return await self.executor.translate_single_batch(
                item.video_url, config, saved.srt_content, bounds.start, bounds.end,
                title=item.title, duration=duration, batch_settings=settings,
                existing_translation_id=saved.id, source=JobSource.QUEUE,
            )

        resume = None
        if item.has_partial:
            resume = ResumeData(item.partial_srt,
                                [BatchRange(r.start, r.end) for r in item.completed_ranges],
                                self._resume_translation_id(item))
        elif item.saved_translation_id:
            # from-here at batch 0: overwrite the saved record in place
            resume = ResumeData("", [], item.saved_translation_id)
        return await self.executor.start(
            item.video_url, config, title=item.title, duration=item.duration,
            batch_settings=settings, resume=resume, source=JobSource.QUEUE,
        )

    def _resume_translation_id(self, item: QueueItem) -> Optional[str]:
        if item.saved_translation_id:
            return item.saved_translation_id
        try:
            partial = self.translations.get_partial_translation(item.video_url)
        except Exception as e:
            logger.error("Failed to read partial translation for %s: %s", item.video_url, e)
            return None
        return partial.id if partial else None

    def _release(self):
        self._is_processing = False
        self._current_item_id = None
        self._current_job_id = None
        self._active_run = 0

    def _apply_outcome(self, item: QueueItem, job: Job):
        if job.status == JobStatus.COMPLETED and self._restore_parent_checkpoint(item):
            item.status = QueueStatus.PAUSED
            item.error = None
            item.clear_progress()
            self._commit()
            logger.info("%s batch edited, translation is still partial", item.video_key)
            if not self._auto_process:
                self.keeper.on_complete()
        elif job.status == JobStatus.COMPLETED:
            item.status = QueueStatus.COMPLETED
            item.completed_at = self._stamp()
            item.error = None
            item.retry_count = 0
            item.clear_partial()
            item.clear_progress()
            self._commit()
            logger.info("%s completed", item.video_key)
            self.notifier.notify_translation_complete(item.title or item.video_url,
                                                      JobSource.QUEUE)
            if not self._auto_process:
                self.keeper.on_complete()
        elif job.is_aborted or is_user_stop(job.error):
            self._store_partial(item, job.partial_result, job.completed_ranges,
                                job.translation_id, job.progress.total_batches if job.progress else 0)
            item.status = QueueStatus.PAUSED
            item.user_paused = True
            item.error = None
            item.clear_progress()
            self._commit()
        else:
            self._apply_failure(item, job.error or "Translation failed", job)

    def _apply_failure(self, item: QueueItem, error: str, job: Job | None = None,
                       retryable: bool = True):
        if job is not None:
            self._store_partial(item, job.partial_result, job.completed_ranges,
                                job.translation_id, job.progress.total_batches if job.progress else 0)
            retryable = job.error_retryable
            if job.error_code:
                logger.debug("%s failed with %s", item.video_key, job.error_code)
        item.error = error
        item.clear_progress()

        if item.has_partial and item.retranslate_mode != RetranslateMode.SINGLE:
            if retryable and self._auto_process and item.retry_count < MAX_AUTO_RETRIES:
                item.retry_count += 1
                item.status = QueueStatus.TRANSLATING
                self._commit()
                logger.warning("%s failed after %d batches, retrying (%d/%d): %s",
                               item.video_key, len(item.completed_ranges),
                               item.retry_count, MAX_AUTO_RETRIES, error)
                return
            item.status = QueueStatus.PAUSED
        else:
            item.status = QueueStatus.ERROR
        self._commit()
        logger.error("%s failed: %s", item.video_key, error)
        self.notifier.notify_translation_error(item.title or item.video_url, error,
                                               JobSource.QUEUE)
        if not self._auto_process:
            self.keeper.on_stop()

    def _restore_parent_checkpoint(self, item: QueueItem) -> bool:
        """Point a single-batch edit of a partial translation back at its resume state."""
        if item.retranslate_mode != RetranslateMode.SINGLE:
            return False
        saved = self._saved_translation(item.video_url, item.saved_translation_id)
        if saved is None or not saved.is_partial or not saved.completed_ranges:
            return False
        item.clear_partial()
        self._store_partial(item, saved.srt_content, saved.completed_ranges, saved.id,
                            saved.total_batches)
        return True

    def _store_partial(self, item: QueueItem, partial_srt: str | None,
                       ranges: list[BatchRange] | None, translation_id: str | None = None,
                       total: int = 0):
        if not partial_srt or not ranges:
            return
        item.partial_srt = partial_srt
        item.completed_ranges = [BatchRange(r.start, r.end) for r in ranges]
        item.completed_batches = len(ranges)
        item.total_batches = total or item.total_batches or item.progress_total
        item.saved_translation_id = translation_id or item.saved_translation_id

    # ── Advancement ───────────────────────────────────────────────────

    def _eligible(self, item: QueueItem) -> bool:
        if item.user_paused or item.pending_user_action or self._is_current(item):
            return False
        if self._direct_video_url and same_video(self._direct_video_url, item.video_url):
            return False
        return not self.executor.is_translating_video(item.video_url)

    def _next_candidate(self) -> Optional[QueueItem]:
        """
        Waiting items first (oldest start), then pending ones. Nothing is
        picked while auto-process is off; the caller starts the next item.
        """
        if not self._auto_process:
            return None
        waiting = [i for i in self._items
                   if i.status == QueueStatus.TRANSLATING and self._eligible(i)]
        if waiting:
            return min(waiting, key=lambda i: i.started_at or 0)
        pending = [i for i in self._items
                   if i.status == QueueStatus.PENDING and self._eligible(i)]
        if pending:
            return min(pending, key=lambda i: i.added_at)
        return None

    def _schedule_advance(self):
        if self._advance_task is not None and not self._advance_task.done():
            return
        self._advance_task = self._track(asyncio.ensure_future(self._advance()))

    async def _advance(self):
        await asyncio.sleep(0)
        await self._actions_idle.wait()
        self._process_next()

    def _process_next(self):
        if self._is_busy():
            return
        item = self._next_candidate()
        if item is None:
            if self._auto_process:
                self._finish_session()
            return
        if not self._launch_or_fail(item).success:
            self._schedule_advance()

    def _finish_session(self):
        self._auto_process = False
        completed = max(0, self._count(QueueStatus.COMPLETED) - self._session_start_completed)
        failed = self._count(QueueStatus.ERROR)
        logger.info("Auto-process finished: %d completed, %d failed", completed, failed)
        if completed:
            self.notifier.notify_queue_complete(completed, failed)
        self.keeper.on_complete()

    def _has_waiting_items(self) -> bool:
        return any(i.status == QueueStatus.TRANSLATING and self._eligible(i) for i in self._items)

    # ── User actions in flight ────────────────────────────────────────

    def _begin_user_action(self):
        self._user_actions += 1
        self._actions_idle.clear()

    def _end_user_action(self):
        self._user_actions = max(0, self._user_actions - 1)
        if self._user_actions == 0:
            self._actions_idle.set()

    def _acknowledge(self, run_id: int):
        """A detached run has unwound; clear its item's tag."""
        item_id = self._detached_runs.pop(run_id, None)
        if item_id is None:
            return
        item = self._find(item_id)
        if item is not None and item.pending_user_action:
            item.pending_user_action = None
            self._emit()
        self._end_user_action()

    def _stop_current(self, item: QueueItem, action: str):
        """Detach the running item and abort its executor job."""
        item.pending_user_action = action
        self._begin_user_action()
        self._detached_runs[self._active_run] = item.id
        total = item.progress_total
        self._release()

        if self.executor.is_translating_video(item.video_url):
            result = self.executor.abort(item.video_url)
            if result.aborted:
                self._store_partial(item, result.partial_result, result.completed_ranges,
                                    result.translation_id, total)
        if not self._auto_process:
            self.keeper.on_stop()

    # ── Stopping / removing ───────────────────────────────────────────

    def stop_translation(self, item_id: str) -> bool:
        """Pause a running or waiting item, keeping its committed batches."""
        item = self._find(item_id)
        if item is None or item.status != QueueStatus.TRANSLATING:
            return False

        if self._is_current(item):
            job = self.executor.current_job
            if (self._current_job_id and job is not None and job.id == self._current_job_id
                    and job.status != JobStatus.PROCESSING):
                # the run already finished; its outcome is about to land
                return False
            self._stop_current(item, UserAction.STOP)
        elif self.executor.is_translating_video(item.video_url):
            result = self.executor.abort(item.video_url)
            self._store_partial(item, result.partial_result, result.completed_ranges,
                                result.translation_id)

        item.status = QueueStatus.PAUSED
        item.user_paused = True
        item.error = None
        item.clear_progress()
        self._commit()
        logger.info("%s stopped by user", item.video_key)
        self._schedule_advance()
        return True

    def stop_all(self) -> int:
        """Turn auto-process off, stop the running item and pause every waiting one."""
        self._auto_process = False
        if self._advance_task is not None and not self._advance_task.done():
            self._advance_task.cancel()

        current = self._find(self._current_item_id) if self._is_processing else None
        if current is not None:
            self._stop_current(current, UserAction.STOP)

        stopped = 0
        for item in self._items:
            if item.status == QueueStatus.TRANSLATING:
                item.status = QueueStatus.PAUSED
                item.user_paused = True
                item.error = None
                item.clear_progress()
                stopped += 1
        self.keeper.on_stop()
        self._commit()
        logger.info("Stopped all: %d items paused", stopped)
        return stopped

    def remove_from_queue(self, item_id: str) -> bool:
        item = self._find(item_id)
        if item is None:
            return False
        if self._is_current(item):
            self._stop_current(item, UserAction.REMOVE)
        elif self.executor.is_translating_video(item.video_url):
            self.executor.abort(item.video_url)

        if item in self._items:
            self._items.remove(item)
        self._commit()
        logger.info("Removed %s from queue", item.video_key)
        self._schedule_advance()
        return True

    def remove_from_queue_by_url(self, video_url: str) -> bool:
        item = self._find_by_url(video_url)
        return self.remove_from_queue(item.id) if item else False

    # ── Requeue ───────────────────────────────────────────────────────

    def _reset_to_pending(self, item: QueueItem):
        item.status = QueueStatus.PENDING
        item.clear_partial()
        item.clear_progress()
        self._drop_config_snapshot(item)
        item.error = None
        item.retry_count = 0
        item.started_at = None
        item.completed_at = None
        item.user_paused = False

    def move_to_pending(self, item_id: str) -> bool:
        """Requeue from scratch, dropping the config snapshot and partial data."""
        item = self._find(item_id)
        if item is None or self._is_current(item) or self.executor.is_translating_video(item.video_url):
            return False
        self._reset_to_pending(item)
        self._commit()
        return True

    def move_to_pending_by_user(self, item_id: str) -> bool:
        """
        Move an item back to pending, stopping it first if it is running.
        Committed batches are kept; auto-process skips the item until the
        user starts it again.
        """
        item = self._find(item_id)
        if item is None or item.status == QueueStatus.COMPLETED:
            return False
        if self._is_current(item):
            self._stop_current(item, UserAction.STOP)
        elif self.executor.is_translating_video(item.video_url):
            result = self.executor.abort(item.video_url)
            self._store_partial(item, result.partial_result, result.completed_ranges,
                                result.translation_id)
        item.status = QueueStatus.PENDING
        item.user_paused = True
        item.error = None
        item.retry_count = 0
        item.clear_progress()
        self._commit()
        self._schedule_advance()
        return True

    # ── Batch retranslation ───────────────────────────────────────────

    def retranslate_batch(self, video_url: str, batch_index: int, mode: str,
                          translation_id: str | None = None, title: str | None = None) -> StartResult:
        """
        Rerun one batch of a saved translation (single) or everything from
        that batch onward (fromHere). Raises JobError for caller mistakes.
        """
        if mode not in (RetranslateMode.SINGLE, RetranslateMode.FROM_HERE):
            raise JobError(ErrorCode.INVALID_BATCH, f"Unknown retranslate mode: {mode}")
        if self._is_active_video(video_url):
            raise JobError(ErrorCode.VIDEO_BUSY, "This video is being translated right now")

        saved = self._saved_translation(video_url, translation_id)
        if saved is None:
            raise JobError(ErrorCode.ITEM_NOT_FOUND, "No saved translation for this video")

        item = self._find_by_url(video_url)
        duration = saved.video_duration or (item.duration if item else None)
        settings = saved.batch_settings or self.config.get_batch_settings()
        try:
            batch_bounds(batch_index, duration, settings)
        except ValueError as e:
            raise JobError(ErrorCode.INVALID_BATCH, str(e))

        if item is None:
            record = self.translations.get_video_translations(video_url)
            item = self._find(self.add_to_queue(
                video_url, title or (record.title if record else ""), duration).item.id)

        item.clear_partial()
        config = self.config.find_config_by_name(saved.config_name) if saved.config_name else None
        if config is not None:
            item.config_id, item.config_name, item.preset_id = config.id, config.name, config.preset_id
        else:
            self._drop_config_snapshot(item)
        item.batch_settings = replace(settings)
        item.duration = duration
        item.retranslate_batch_index = batch_index
        item.retranslate_mode = mode
        item.saved_translation_id = saved.id
        if mode == RetranslateMode.FROM_HERE:
            resume = prepare_from_here(saved.srt_content, batch_index, duration, settings)
            if resume.completed_ranges:
                item.partial_srt = resume.partial_srt
                item.completed_ranges = resume.completed_ranges
                item.completed_batches = len(resume.completed_ranges)
            item.total_batches = total_batches(duration, settings)

        item.status = QueueStatus.TRANSLATING
        item.started_at = self._stamp()
        item.completed_at = None
        item.error = None
        item.user_paused = False
        item.retry_count = 0
        item.clear_progress()
        logger.info("Retranslating %s batch %d (%s)", item.video_key, batch_index + 1, mode)

        if self._is_busy():
            self._commit()
            return StartResult(True, queued=True)
        return self._launch_or_fail(item)

    # ── Direct translation mirroring ──────────────────────────────────

    def _on_job_update(self, job: Optional[Job]):
        if job is None:
            return
        if job.source == JobSource.QUEUE:
            self._mirror_queue_job(job)
        else:
            self._mirror_direct_job(job)

    def _mirror_queue_job(self, job: Job):
        if not self._is_processing:
            return
        item = self._find(self._current_item_id)
        if item is None or item.video_key != job.video_key:
            return
        if self._current_job_id is None:
            if job.status != JobStatus.PROCESSING:
                return
            self._current_job_id = job.id
        elif job.id != self._current_job_id:
            return
        if job.status != JobStatus.PROCESSING:
            return

        if job.progress:
            item.progress_completed = job.progress.completed_batches
            item.progress_total = job.progress.total_batches
        if not job.is_batch_retranslation and len(job.completed_ranges) > len(item.completed_ranges):
            self._store_partial(item, job.partial_result, job.completed_ranges,
                                job.translation_id, item.progress_total)
            self._save()
            self.notifier.notify_batch_complete(item.title or item.video_url,
                                                item.completed_batches, item.total_batches,
                                                JobSource.QUEUE)
        self.keeper.update_progress(item.progress_completed, item.progress_total, item.title)
        self._emit()

    def _mirror_direct_job(self, job: Job):
        if job.status == JobStatus.PROCESSING:
            self._direct_video_url = job.video_url
            if job.progress:
                self.update_video_progress(job.video_url, job.progress.completed_batches,
                                           job.progress.total_batches)
            return
        if not same_video(self._direct_video_url, job.video_url):
            return

        self._direct_video_url = None
        if job.status == JobStatus.COMPLETED:
            self.mark_video_completed(job.video_url)
        elif job.is_aborted or is_user_stop(job.error):
            self.mark_video_stopped(job.video_url, job.partial_result,
                                    job.completed_ranges, job.translation_id)
        else:
            self.mark_video_error(job.video_url, job.error or "Translation failed",
                                  job.partial_result, job.completed_ranges, job.translation_id)

        if self._has_waiting_items():
            self._begin_session()
            self._schedule_advance()

    def sync_direct_translation(self, video_url: str, title: str = "",
                                duration: float | None = None, config_name: str | None = None,
                                force_retranslate: bool = False) -> QueueItem:
        """Reflect a direct (non-queue) translation on the video's queue item."""
        key = video_key(video_url)
        config = self.config.find_config_by_name(config_name) if config_name else None
        item = next((i for i in self._items if i.video_key == key), None)

        if item is None:
            stamp = self._stamp()
            item = QueueItem(
                id=str(uuid.uuid4()),
                video_key=key,
                video_url=video_url.strip(),
                title=title or f"Video {key}",
                thumbnail=thumbnail_url(video_url),
                duration=duration,
                status=QueueStatus.TRANSLATING,
                config_id=config.id if config else None,
                config_name=config_name,
                added_at=stamp,
                started_at=stamp,
            )
            self._items.insert(0, item)
            self._commit()
            return item.snapshot()

        if item.status == QueueStatus.COMPLETED:
            if not force_retranslate:
                return item.snapshot()
            item.clear_partial()
            item.completed_at = None
            item.status = QueueStatus.TRANSLATING
            item.started_at = self._stamp()
        elif item.status != QueueStatus.TRANSLATING:
            item.status = QueueStatus.TRANSLATING
            item.started_at = self._stamp()

        if config_name:
            item.config_name = config_name
            item.config_id = config.id if config else None
        if title and item.title == f"Video {key}":
            item.title = title
        if duration and not item.duration:
            item.duration = duration
        item.error = None
        item.user_paused = False
        self._commit()
        return item.snapshot()

    def _direct_target(self, video_url: str) -> Optional[QueueItem]:
        item = self._find_by_url(video_url)
        if item is None or self._is_current(item):
            return None
        return item

    def mark_video_completed(self, video_url: str) -> bool:
        item = self._direct_target(video_url)
        if item is None:
            return False
        item.status = QueueStatus.COMPLETED
        item.completed_at = self._stamp()
        item.error = None
        item.user_paused = False
        item.retry_count = 0
        item.clear_partial()
        item.clear_progress()
        self._commit()
        return True

    def update_video_progress(self, video_url: str, completed: int, total: int) -> bool:
        item = self._direct_target(video_url)
        if item is None or item.status == QueueStatus.COMPLETED:
            return False
        item.progress_completed = completed
        item.progress_total = total
        if item.status != QueueStatus.TRANSLATING:
            item.status = QueueStatus.TRANSLATING
            item.started_at = item.started_at or self._stamp()
            self._commit()
        else:
            self._emit()
        return True

    def mark_video_stopped(self, video_url: str, partial_srt: str | None = None,
                           completed_ranges: list[BatchRange] | None = None,
                           translation_id: str | None = None) -> bool:
        item = self._direct_target(video_url)
        if item is None:
            return False
        self._store_partial(item, partial_srt, completed_ranges, translation_id,
                            item.progress_total)
        item.status = QueueStatus.PAUSED
        item.user_paused = True
        item.error = None
        item.clear_progress()
        self._commit()
        return True

    def mark_video_error(self, video_url: str, error: str, partial_srt: str | None = None,
                         completed_ranges: list[BatchRange] | None = None,
                         translation_id: str | None = None) -> bool:
        item = self._direct_target(video_url)
        if item is None:
            return False
        self._store_partial(item, partial_srt, completed_ranges, translation_id,
                            item.progress_total)
        item.status = QueueStatus.PAUSED if item.has_partial else QueueStatus.ERROR
        item.error = error
        item.clear_progress()
        self._commit()
        return True

    # ── Cleanup ───────────────────────────────────────────────────────

    def remove_completed_video(self, video_url: str) -> bool:
        item = self._find_by_url(video_url)
        if item is None or self._is_current(item):
            return False
        self._items.remove(item)
        self._commit()
        return True

    def delete_saved_translation(self, video_url: str, translation_id: str) -> int:
        """Delete one saved translation; the queue item goes with the last one."""
        try:
            remaining = self.translations.delete_translation(video_url, translation_id)
        except Exception as e:
            logger.error("Failed to delete translation %s: %s", translation_id, e)
            return -1
        if remaining == 0:
            self.remove_completed_video(video_url)
        else:
            item = self._find_by_url(video_url)
            if item is not None and item.saved_translation_id == translation_id:
                item.saved_translation_id = None
                self._commit()
        return remaining

    def clear_by_status(self, status: str) -> int:
        keep, removed = [], 0
        for item in self._items:
            if item.status == status and not self._is_current(item) \
                    and not self.executor.is_translating_video(item.video_url):
                removed += 1
            else:
                keep.append(item)
        if removed:
            self._items = keep
            self._commit()
        return removed

    def clear_pending(self) -> int:
        return self.clear_by_status(QueueStatus.PENDING) + self.clear_by_status(QueueStatus.ERROR)

    # ── Queries ───────────────────────────────────────────────────────

    @property
    def items(self) -> list[QueueItem]:
        return [i.snapshot() for i in self._items]

    def get_item(self, item_id: str) -> Optional[QueueItem]:
        item = self._find(item_id)
        return item.snapshot() if item else None

    def find_by_url(self, video_url: str) -> Optional[QueueItem]:
        item = self._find_by_url(video_url)
        return item.snapshot() if item else None

    def get_items_by_status(self, status: str = 'all', page: int = 1) -> QueuePage:
        """One page (1-based, QUEUE_PAGE_SIZE items) of items with the given status."""
        if status == 'all':
            items = list(self._items)
        else:
            items = [i for i in self._items if i.status == status]
        key, reverse = _SORT_KEYS.get(status, (lambda i: i.added_at, False))
        items.sort(key=key, reverse=reverse)

        total = len(items)
        total_pages = max(1, math.ceil(total / QUEUE_PAGE_SIZE))
        page = min(max(1, page), total_pages)
        start = (page - 1) * QUEUE_PAGE_SIZE
        return QueuePage(
            items=[i.snapshot() for i in items[start:start + QUEUE_PAGE_SIZE]],
            page=page,
            total_pages=total_pages,
            total=total,
        )

    def get_counts(self) -> dict[str, int]:
        counts = {status: self._count(status) for status in QueueStatus.ALL}
        counts['all'] = len(self._items)
        return counts

    def get_video_queue_status(self, video_url: str) -> VideoQueueStatus:
        direct = (self.executor.is_translating_video(video_url)
                  and self.executor.current_job.source == JobSource.DIRECT)
        item = self._find_by_url(video_url)
        if item is None:
            return VideoQueueStatus(in_queue=False, is_direct_translating=direct)
        position = None
        if item.status == QueueStatus.TRANSLATING:
            ordered = sorted((i for i in self._items if i.status == QueueStatus.TRANSLATING),
                             key=lambda i: i.started_at or 0)
            position = ordered.index(item) + 1
        return VideoQueueStatus(in_queue=True, status=item.status, item_id=item.id,
                                position=position, is_direct_translating=direct)

    def get_translating_queue_count(self) -> int:
        return self._count(QueueStatus.TRANSLATING)

    def is_currently_processing(self, item_id: str) -> bool:
        return self._is_processing and self._current_item_id == item_id

    def can_resume(self, item_id: str) -> bool:
        item = self._find(item_id)
        return (item is not None
                and item.status in (QueueStatus.TRANSLATING, QueueStatus.PAUSED)
                and item.has_partial
                and not self.is_currently_processing(item_id))

    def get_partial_srt(self, item_id: str) -> Optional[str]:
        item = self._find(item_id)
        return item.partial_srt if item and item.has_partial else None

    def is_auto_processing(self) -> bool:
        return self._auto_process

    async def wait_idle(self):
        """Wait until no run or advancement task is left."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.wait(pending)
