#!/usr/bin/env python3
"""
Tests for the JobExecutor: single-flight, abort-then-resume, failure
handling and single-batch retranslation.
"""

import sys
import asyncio
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from subqueue.core.constants import ErrorCode, JobStatus, JobSource
from subqueue.core.db_sqlite import Database
from subqueue.core.error_codes import JobError, AlreadyRunningError
from subqueue.core.executor import JobExecutor
from subqueue.core.models import (
    BatchRange, BatchSettings, BatchProgress, ResumeData, TranslationConfig,
)
from subqueue.core.notifications import NotificationService
from subqueue.core.srt_parse import parse_srt
from subqueue.core.translation_store import TranslationStore

from fakes import ScriptedProvider, cue, until

URL = "https://www.youtube.com/watch?v=aaaaaaaaaaa"
OTHER_URL = "https://www.youtube.com/watch?v=bbbbbbbbbbb"
STREAMING = BatchSettings(streaming_mode=True)


class ExecutorTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.db = Database(":memory:")
        self.store = TranslationStore(self.db)
        self.provider = ScriptedProvider()
        self.notifier = NotificationService()
        self.executor = JobExecutor(self.provider, self.store, self.notifier)
        self.config = TranslationConfig(id="cfg-a", name="Alpha")
        self.snapshots = []
        self.executor.subscribe(self.snapshots.append)

    def tearDown(self):
        self.db.close()

    def start(self, url=URL, **kwargs):
        kwargs.setdefault('duration', 1800)
        kwargs.setdefault('batch_settings', STREAMING)
        return asyncio.ensure_future(self.executor.start(url, self.config, **kwargs))


class TestJobLifecycle(ExecutorTestCase):

    async def test_completed_job_is_saved(self):
        job = await self.start()
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(len(parse_srt(job.result)), 3)
        self.assertEqual(job.progress.completed_batches, 3)

        saved = self.store.get_active_translation(URL)
        self.assertIsNotNone(saved)
        self.assertFalse(saved.is_partial)
        self.assertEqual(saved.id, job.translation_id)
        self.assertEqual(saved.config_name, "Alpha")

    async def test_listeners_see_processing_then_completed(self):
        await self.start()
        statuses = [s.status for s in self.snapshots if s is not None]
        self.assertEqual(statuses[0], JobStatus.PROCESSING)
        self.assertEqual(statuses[-1], JobStatus.COMPLETED)

    async def test_unsubscribe_stops_delivery(self):
        seen = []
        unsubscribe = self.executor.subscribe(seen.append)
        unsubscribe()
        await self.start()
        self.assertEqual(seen, [])

    async def test_direct_job_notifies(self):
        await self.start(title="My video")
        self.assertIn(("Translation complete", "My video"), self.notifier.sent)

    async def test_queue_job_leaves_notifications_to_the_queue(self):
        await self.start(title="My video", source=JobSource.QUEUE)
        self.assertEqual(self.notifier.sent, [])

    async def test_clear_completed_job(self):
        await self.start()
        self.assertTrue(self.executor.clear_completed_job(URL))
        self.assertIsNone(self.executor.current_job)
        self.assertIsNone(self.snapshots[-1])


class TestSingleFlight(ExecutorTestCase):

    async def test_second_start_is_refused(self):
        self.provider.gated = True
        task = self.start()
        await until(lambda: self.executor.is_translating())

        with self.assertRaises(AlreadyRunningError) as ctx:
            await self.executor.start(OTHER_URL, self.config, duration=60)
        self.assertEqual(ctx.exception.code, ErrorCode.ALREADY_RUNNING)
        self.assertTrue(self.executor.is_translating_video(URL))

        self.provider.open()
        job = await task
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(len(self.provider.calls), 1)


class TestAbortAndResume(ExecutorTestCase):

    async def _abort_after_first_batch(self):
        self.provider.gated = True
        task = self.start()
        self.provider.release(1)
        await until(lambda: self.executor.current_job is not None and len(self.executor.current_job.completed_ranges) == 1)
        result = self.executor.abort(URL)
        job = await task
        return result, job

    async def test_abort_commits_partial_before_cancelling(self):
        result, job = await self._abort_after_first_batch()

        self.assertTrue(result.aborted)
        self.assertEqual([(r.start, r.end) for r in result.completed_ranges], [(0, 600)])
        self.assertEqual(len(parse_srt(result.partial_result)), 1)

        self.assertEqual(job.status, JobStatus.ERROR)
        self.assertTrue(job.is_aborted)
        self.assertTrue(job.error.startswith("Stopped by user"))

        saved = self.store.get_partial_translation(URL)
        self.assertIsNotNone(saved)
        self.assertEqual(saved.completed_batches, 1)
        self.assertEqual(saved.id, result.translation_id)
        self.assertEqual(self.notifier.sent, [])

    async def test_abort_without_job_is_a_no_op(self):
        self.assertFalse(self.executor.abort().aborted)

    async def test_late_callbacks_are_ignored(self):
        result, _ = await self._abort_after_first_batch()
        options = self.provider.calls[0].options
        options.on_batch_complete(BatchRange(600, 1200), "late", BatchProgress(2, 3, 2))
        job = self.executor.current_job
        self.assertEqual(len(job.completed_ranges), 1)
        self.assertEqual(job.partial_result, result.partial_result)

    async def test_resume_skips_committed_batches(self):
        result, _ = await self._abort_after_first_batch()
        self.provider.open()

        resume = ResumeData(result.partial_result, result.completed_ranges, result.translation_id)
        job = await self.start(resume=resume)

        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(self.provider.batches_for(URL), [0, 600, 600, 1200])
        texts = [e.text for e in parse_srt(job.result)]
        self.assertEqual(texts, ["Alpha call1 b1", "Alpha call2 b2", "Alpha call2 b3"])

        record = self.store.get_video_translations(URL)
        self.assertEqual(len(record.translations), 1)
        self.assertFalse(record.translations[0].is_partial)


class TestFailure(ExecutorTestCase):

    async def test_failure_keeps_committed_batches(self):
        self.provider.fail_at(URL, 1, JobError(ErrorCode.PROVIDER_FAILED, "boom"))
        job = await self.start()

        self.assertEqual(job.status, JobStatus.ERROR)
        self.assertEqual(job.error, "boom")
        self.assertEqual(job.error_code, ErrorCode.PROVIDER_FAILED)
        self.assertFalse(job.error_retryable)
        self.assertEqual(len(job.completed_ranges), 1)
        self.assertTrue(self.store.get_partial_translation(URL).is_partial)

    async def test_unexpected_exception_becomes_error(self):
        self.provider.fail_at(URL, 0, RuntimeError("kaput"))
        job = await self.start()
        self.assertEqual(job.status, JobStatus.ERROR)
        self.assertEqual(job.error, "kaput")
        self.assertEqual(job.error_code, ErrorCode.UNEXPECTED)
        self.assertTrue(job.error_retryable)
        self.assertIsNone(self.store.get_video_translations(URL))
        self.assertIn(("Translation failed", f"{URL}: kaput"), self.notifier.sent)


class TestSingleBatch(ExecutorTestCase):

    async def test_only_the_target_batch_changes(self):
        existing = "\n".join([
            cue(10, 12, "first", 1),
            cue(610, 612, "second", 2),
            cue(1210, 1212, "third", 3),
        ])
        saved = self.store.save_translation(URL, existing, "Alpha", video_duration=1800)

        job = await self.executor.translate_single_batch(
            URL, self.config, existing, 600, 1200, duration=1800,
            existing_translation_id=saved.id,
        )
        self.assertEqual(job.status, JobStatus.COMPLETED)

        entries = parse_srt(job.result)
        self.assertEqual([e.text for e in entries], ["first", "Alpha call1 b1", "third"])
        self.assertEqual(entries[0].timing, "00:00:10,000 --> 00:00:12,000")
        self.assertEqual(entries[2].timing, "00:20:10,000 --> 00:20:12,000")
        self.assertEqual(entries[1].start, 601)

        record = self.store.get_video_translations(URL)
        self.assertEqual(len(record.translations), 1)
        self.assertEqual(record.translations[0].srt_content, job.result)

    async def test_partial_parent_keeps_its_checkpoint(self):
        existing = "\n".join([cue(10, 12, "first", 1), cue(610, 612, "second", 2)])
        parent = self.store.save_partial_translation(
            URL, existing, 2, 3, [BatchRange(0, 600), BatchRange(600, 1200)], "Alpha",
            video_duration=1800, batch_settings=STREAMING)

        job = await self.executor.translate_single_batch(
            URL, self.config, existing, 0, 600, duration=1800,
            batch_settings=STREAMING, existing_translation_id=parent.id,
        )
        self.assertEqual(job.status, JobStatus.COMPLETED)

        saved = self.store.get_translation(URL, parent.id)
        self.assertEqual(saved.srt_content, job.result)
        self.assertTrue(saved.is_partial)
        self.assertEqual((saved.completed_batches, saved.total_batches), (2, 3))
        self.assertEqual(len(saved.completed_ranges), 2)
        self.assertTrue(saved.batch_settings.streaming_mode)


if __name__ == "__main__":
    unittest.main()
