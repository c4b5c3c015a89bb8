"""
Job Executor.
Drives exactly one provider call at a time and publishes the lifecycle of
that job to subscribers as Job snapshots.
"""

import logging
import uuid
from dataclasses import replace
from typing import Callable, Optional

from subqueue.core.batch_edit import replace_batch_in_srt
from subqueue.core.batch_plan import total_batches, sort_ranges
from subqueue.core.background import BackgroundKeeper, KeeperGuard
from subqueue.core.constants import ErrorCode, JobStatus, JobSource
from subqueue.core.error_codes import (
    JobError, AlreadyRunningError, TranslationCancelled, is_retryable,
    error_message, stopped_message,
)
from subqueue.core.models import (
    Job, BatchProgress, BatchRange, BatchSettings, TranslationConfig,
    ResumeData, AbortResult, now_ms,
)
from subqueue.core.notifications import NotificationService
from subqueue.core.provider import (
    BatchTranslationProvider, CancellationToken, TranslateOptions,
)
from subqueue.core.translation_store import TranslationStore
from subqueue.core.url_parse import video_key, same_video

logger = logging.getLogger(__name__)

JobListener = Callable[[Optional[Job]], None]


class JobExecutor:
    """
    Owns the single current Job.

    Provider callbacks are accepted only while the job they were issued for
    is still the current, processing, uncancelled job; anything later is
    dropped so abort-time state cannot be overwritten.
    """

    def __init__(self, provider: BatchTranslationProvider, translations: TranslationStore,
                 notifier: NotificationService | None = None,
                 keeper: BackgroundKeeper | None = None):
        self.provider = provider
        self.translations = translations
        self.notifier = notifier or NotificationService()
        self.keeper = KeeperGuard(keeper)
        self._job: Optional[Job] = None
        self._token: Optional[CancellationToken] = None
        self._listeners: list[JobListener] = []

    # ── Subscription ──────────────────────────────────────────────────

    def subscribe(self, listener: JobListener) -> Callable[[], None]:
        """Register a listener; it immediately receives the current job, if any."""
        self._listeners.append(listener)
        if self._job is not None:
            self._deliver(listener, self._job.snapshot())

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _deliver(self, listener: JobListener, job: Optional[Job]):
        try:
            listener(job)
        except Exception:
            logger.exception("Job listener failed")

    def _notify_job_updated(self):
        for listener in list(self._listeners):
            self._deliver(listener, self._job.snapshot() if self._job else None)

    # ── Queries ───────────────────────────────────────────────────────

    @property
    def current_job(self) -> Optional[Job]:
        return self._job.snapshot() if self._job else None

    def is_translating(self) -> bool:
        return self._job is not None and self._job.status == JobStatus.PROCESSING

    def is_translating_video(self, video_url: str) -> bool:
        return self.is_translating() and same_video(self._job.video_url, video_url)

    def get_job_for_video(self, video_url: str) -> Optional[Job]:
        if self._job and same_video(self._job.video_url, video_url):
            return self._job.snapshot()
        return None

    def can_abort(self, video_url: str | None = None) -> bool:
        if not self.is_translating():
            return False
        return video_url is None or same_video(self._job.video_url, video_url)

    def get_partial_result(self, video_url: str) -> tuple[str, list[BatchRange]] | None:
        job = self._job
        if job is None or not same_video(job.video_url, video_url) or not job.partial_result:
            return None
        return job.partial_result, list(job.completed_ranges)

    # ── Start ─────────────────────────────────────────────────────────

    def _claim(self, video_url: str, config: TranslationConfig, **fields) -> Job:
        """Create the new current job; refuses while another one is processing."""
        if self.is_translating():
            raise AlreadyRunningError(self._job.video_url)
        job = Job(
            id=str(uuid.uuid4()),
            video_key=video_key(video_url),
            video_url=video_url,
            config_id=config.id,
            config_name=config.name,
            preset_id=config.preset_id,
            started_at=now_ms(),
            **fields,
        )
        self._job = job
        self._token = CancellationToken()
        return job

    async def start(self, video_url: str, config: TranslationConfig, *,
                    title: str = "", duration: float | None = None,
                    batch_settings: BatchSettings | None = None,
                    range_start: float | None = None, range_end: float | None = None,
                    resume: ResumeData | None = None,
                    source: str = JobSource.DIRECT) -> Job:
        """
        Translate a video (or a sub-range of it) and save the result.
        Returns the final job snapshot; provider failures and aborts are
        reported through its status, never raised.
        """
        settings = replace(batch_settings) if batch_settings else BatchSettings()
        total = total_batches(duration, settings, range_start, range_end)
        ranges = sort_ranges(resume.completed_ranges) if resume else []

        job = self._claim(
            video_url, config,
            title=title,
            duration=duration,
            batch_settings=settings,
            range_start=range_start,
            range_end=range_end,
            source=source,
            partial_result=resume.partial_srt if resume else None,
            completed_ranges=ranges,
            existing_translation_id=resume.existing_translation_id if resume else None,
            progress=BatchProgress(completed_batches=len(ranges), total_batches=total),
        )
        token = self._token
        logger.info("Job %s started for %s (%s, %d/%d batches done)",
                    job.id, video_url, source, len(ranges), total)
        self._notify_job_updated()
        if source == JobSource.DIRECT:
            self.keeper.on_start(title or video_url)

        options = TranslateOptions(
            duration=duration,
            batch_settings=settings,
            range_start=range_start,
            range_end=range_end,
            skip_ranges=[BatchRange(r.start, r.end) for r in ranges],
            existing_partial_srt=job.partial_result,
            cancel_token=token,
            on_batch_progress=lambda p, s: self._on_batch_progress(job, token, p),
            on_batch_complete=lambda r, s, p: self._on_batch_complete(job, token, r, s, p),
            on_key_status=lambda msg: self._on_key_status(job, token, msg),
        )
        await self._run(job, token, config, options, self._finish_translation)
        return job.snapshot()

    async def translate_single_batch(self, video_url: str, config: TranslationConfig,
                                     existing_srt: str, batch_start: float,
                                     batch_end: float | None, *, title: str = "",
                                     duration: float | None = None,
                                     batch_settings: BatchSettings | None = None,
                                     existing_translation_id: str | None = None,
                                     source: str = JobSource.DIRECT) -> Job:
        """
        Retranslate one batch and splice it into existing_srt. Every cue
        outside [batch_start, batch_end) is written back unchanged.
        """
        settings = replace(batch_settings or BatchSettings(), streaming_mode=False)
        job = self._claim(
            video_url, config,
            title=title,
            duration=duration,
            batch_settings=settings,
            range_start=batch_start,
            range_end=batch_end,
            source=source,
            existing_translation_id=existing_translation_id,
            is_batch_retranslation=True,
            progress=BatchProgress(completed_batches=0, total_batches=1, current_batch=1),
        )
        token = self._token
        logger.info("Job %s retranslating %s [%s, %s)", job.id, video_url, batch_start, batch_end)
        self._notify_job_updated()
        if source == JobSource.DIRECT:
            self.keeper.on_start(title or video_url)

        options = TranslateOptions(
            duration=duration,
            batch_settings=settings,
            range_start=batch_start,
            range_end=batch_end,
            cancel_token=token,
            skip_timestamp_adjust=True,
            on_batch_progress=lambda p, s: self._on_batch_progress(job, token, p),
            on_key_status=lambda msg: self._on_key_status(job, token, msg),
        )

        def finish(result: str):
            merged = replace_batch_in_srt(existing_srt, result, batch_start, batch_end, duration)
            self._finish_translation(merged)

        await self._run(job, token, config, options, finish)
        return job.snapshot()

    async def _run(self, job: Job, token: CancellationToken, config: TranslationConfig,
                   options: TranslateOptions, finish: Callable[[str], None]):
        try:
            result = await self.provider.translate(job.video_url, config, options)
        except TranslationCancelled:
            if self._job is job and job.status == JobStatus.PROCESSING:
                # cancelled without going through abort()
                self.abort(job.video_url)
        except Exception as e:
            if token.is_cancelled or self._job is not job:
                logger.debug("Ignoring failure of cancelled job %s: %s", job.id, e)
            else:
                self._fail(e)
        else:
            if token.is_cancelled or self._job is not job:
                logger.info("Discarding result of cancelled job %s", job.id)
            else:
                try:
                    finish(result)
                except Exception as e:
                    logger.exception("Job %s failed while finishing", job.id)
                    self._fail(e)
        finally:
            if self._token is token:
                self._token = None

    # ── Provider callbacks ────────────────────────────────────────────

    def _accepts(self, job: Job, token: CancellationToken) -> bool:
        return (self._job is job and not token.is_cancelled
                and job.status == JobStatus.PROCESSING and not job.is_aborted)

    def _on_batch_progress(self, job: Job, token: CancellationToken, progress: BatchProgress):
        if not self._accepts(job, token):
            return
        job.progress = BatchProgress(
            completed_batches=len(job.completed_ranges),
            total_batches=progress.total_batches or job.progress.total_batches,
            current_batch=progress.current_batch,
            batch_statuses=list(progress.batch_statuses),
        )
        self._notify_job_updated()
        if job.source == JobSource.DIRECT:
            self.keeper.update_progress(progress.current_batch, job.progress.total_batches,
                                        job.title)

    def _on_batch_complete(self, job: Job, token: CancellationToken, batch: BatchRange,
                           partial_srt: str, progress: BatchProgress):
        if not self._accepts(job, token):
            return
        job.completed_ranges = sort_ranges(job.completed_ranges + [batch])
        job.partial_result = partial_srt
        job.progress = BatchProgress(
            completed_batches=len(job.completed_ranges),
            total_batches=progress.total_batches or job.progress.total_batches,
            current_batch=progress.current_batch,
            batch_statuses=list(progress.batch_statuses),
        )
        self._notify_job_updated()
        if job.source == JobSource.DIRECT:
            self.keeper.update_progress(job.progress.completed_batches,
                                        job.progress.total_batches, job.title)
            self.notifier.notify_batch_complete(job.title or job.video_url,
                                                job.progress.completed_batches,
                                                job.progress.total_batches, JobSource.DIRECT)

    def _on_key_status(self, job: Job, token: CancellationToken, message: str):
        if not self._accepts(job, token):
            return
        job.key_status = message
        self._notify_job_updated()

    # ── Terminal transitions ──────────────────────────────────────────

    def _finish_translation(self, result: str):
        job = self._job
        try:
            saved = None
            if job.is_batch_retranslation and job.existing_translation_id:
                # the parent's batch bookkeeping is left untouched
                saved = self.translations.replace_content(
                    job.video_url, job.existing_translation_id, result)
            if saved is None and job.is_batch_retranslation:
                saved = self.translations.save_translation(
                    job.video_url, result, job.config_name,
                    preset_id=job.preset_id, title=job.title,
                    video_duration=job.duration,
                )
            elif saved is None:
                saved = self.translations.save_translation(
                    job.video_url, result, job.config_name,
                    preset_id=job.preset_id,
                    title=job.title,
                    translation_id=job.existing_translation_id,
                    video_duration=job.duration,
                    batch_settings=job.batch_settings,
                    batch_statuses=job.progress.batch_statuses if job.progress else None,
                    total_batches=job.progress.total_batches if job.progress else 0,
                    range_start=job.range_start,
                    range_end=job.range_end,
                )
            job.translation_id = saved.id
        except Exception as e:
            logger.error("Failed to save translation for %s: %s", job.video_url, e)

        job.status = JobStatus.COMPLETED
        job.result = result
        job.completed_at = now_ms()
        if job.progress and not job.is_batch_retranslation:
            job.progress.completed_batches = job.progress.total_batches
        elif job.progress:
            job.progress.completed_batches = 1
        logger.info("Job %s completed", job.id)
        self._notify_job_updated()

        if job.source == JobSource.DIRECT:
            self.keeper.on_complete()
            self.notifier.notify_translation_complete(job.title or job.video_url, JobSource.DIRECT)

    def _persist_partial(self, job: Job):
        """Save committed batches as a resumable partial translation."""
        if job.is_batch_retranslation or not job.partial_result or not job.completed_ranges:
            return
        try:
            saved = self.translations.save_partial_translation(
                job.video_url, job.partial_result,
                completed_batches=len(job.completed_ranges),
                total_batches=job.progress.total_batches if job.progress else 0,
                completed_ranges=job.completed_ranges,
                config_name=job.config_name,
                preset_id=job.preset_id,
                title=job.title,
                translation_id=job.existing_translation_id,
                video_duration=job.duration,
                batch_settings=job.batch_settings,
                batch_statuses=job.progress.batch_statuses if job.progress else None,
            )
            job.translation_id = saved.id
        except Exception as e:
            logger.error("Failed to save partial translation for %s: %s", job.video_url, e)

    def _fail(self, error: Exception):
        job = self._job
        job.status = JobStatus.ERROR
        job.error = error_message(error)
        if isinstance(error, JobError):
            job.error_code = error.code
            job.error_retryable = error.retryable
        else:
            job.error_code = ErrorCode.UNEXPECTED
            job.error_retryable = is_retryable(ErrorCode.UNEXPECTED)
        job.completed_at = now_ms()
        self._persist_partial(job)
        logger.error("Job %s failed after %d batches: %s",
                     job.id, len(job.completed_ranges), job.error)
        self._notify_job_updated()

        if job.source == JobSource.DIRECT:
            self.keeper.on_stop()
            self.notifier.notify_translation_error(job.title or job.video_url, job.error,
                                                   JobSource.DIRECT)

    # ── Abort / clear ─────────────────────────────────────────────────

    def abort(self, video_url: str | None = None) -> AbortResult:
        """
        Stop the processing job. Partial results are persisted before the
        provider is told to stop; the job flips to error immediately.
        """
        job = self._job
        if job is None or job.status != JobStatus.PROCESSING:
            return AbortResult(aborted=False)
        if video_url is not None and not same_video(job.video_url, video_url):
            return AbortResult(aborted=False)

        # commit
        job.is_aborted = True
        self._persist_partial(job)

        # propagate
        if self._token is not None:
            self._token.cancel()
        job.status = JobStatus.ERROR
        job.error = stopped_message(len(job.completed_ranges))
        job.completed_at = now_ms()
        logger.info("Job %s stopped by user (%d batches kept)", job.id, len(job.completed_ranges))
        self._notify_job_updated()

        if job.source == JobSource.DIRECT:
            self.keeper.on_stop()

        return AbortResult(
            aborted=True,
            partial_result=job.partial_result,
            completed_ranges=[BatchRange(r.start, r.end) for r in job.completed_ranges],
            translation_id=job.translation_id,
        )

    def clear_completed_job(self, video_url: str | None = None) -> bool:
        job = self._job
        if job is None or job.status == JobStatus.PROCESSING:
            return False
        if video_url is not None and not same_video(job.video_url, video_url):
            return False
        self._job = None
        self._notify_job_updated()
        return True
