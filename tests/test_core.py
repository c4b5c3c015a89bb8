#!/usr/bin/env python3
"""
Unit tests for SubtitleQueue core modules.
Tests cover: URL parsing, security utils, errors, SRT parsing, batch planning,
batch editing, database, translation store, config, notifications, output.
"""

import sys
import tempfile
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from subqueue.core.constants import ErrorCode, JobSource, QueueStatus, RETRYABLE_ERRORS
from subqueue.core.url_parse import (
    extract_video_id, video_key, same_video, normalize_video_url,
    thumbnail_url, validate_youtube_url, parse_input_lines,
)
from subqueue.core.security_utils import sanitize_title, safe_output_path
from subqueue.core.error_codes import (
    JobError, AlreadyRunningError, TranslationCancelled,
    is_retryable, is_user_stop, stopped_message, error_message,
)
from subqueue.core.srt_parse import (
    parse_srt, build_srt, fix_time_format, fix_srt, strip_code_fences,
    merge_srt, shift_entries, time_to_seconds, seconds_to_time, last_end_time,
)
from subqueue.core.batch_plan import (
    plan_batches, total_batches, batch_bounds, pending_batches, sort_ranges,
)
from subqueue.core.batch_edit import replace_batch_in_srt, truncate_srt, prepare_from_here
from subqueue.core.config import AppConfig
from subqueue.core.db_sqlite import Database
from subqueue.core.models import BatchRange, BatchSettings, QueueItem
from subqueue.core.notifications import NotificationService, NotificationSettings
from subqueue.core.output_writer import write_srt, srt_exists
from subqueue.core.translation_store import TranslationStore

URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


def srt(*cues) -> str:
    """cues: (start_sec, end_sec, text)"""
    return "\n".join(
        f"{i}\n{seconds_to_time(s)} --> {seconds_to_time(e)}\n{t}\n"
        for i, (s, e, t) in enumerate(cues, start=1)
    )


class TestURLParsing(unittest.TestCase):
    """Test YouTube URL parsing and video identity."""

    def test_standard_url(self):
        self.assertEqual(extract_video_id(URL), "dQw4w9WgXcQ")

    def test_short_url(self):
        self.assertEqual(extract_video_id("https://youtu.be/dQw4w9WgXcQ"), "dQw4w9WgXcQ")

    def test_shorts_and_live_urls(self):
        self.assertEqual(extract_video_id("https://www.youtube.com/shorts/dQw4w9WgXcQ"),
                         "dQw4w9WgXcQ")
        self.assertEqual(extract_video_id("https://www.youtube.com/live/dQw4w9WgXcQ"),
                         "dQw4w9WgXcQ")

    def test_url_with_params(self):
        self.assertEqual(
            extract_video_id("https://www.youtube.com/watch?list=PL1&v=dQw4w9WgXcQ&t=120"),
            "dQw4w9WgXcQ",
        )

    def test_invalid_url(self):
        self.assertIsNone(extract_video_id("https://www.google.com"))
        self.assertIsNone(extract_video_id(""))

    def test_video_key_dedups_url_forms(self):
        self.assertEqual(video_key("https://youtu.be/dQw4w9WgXcQ"), video_key(URL))
        self.assertTrue(same_video(URL, "https://m.youtube.com/watch?v=dQw4w9WgXcQ"))
        self.assertFalse(same_video(URL, None))

    def test_video_key_for_other_urls(self):
        key = video_key("https://vimeo.com/12345")
        self.assertTrue(key.startswith("url_"))
        self.assertEqual(key, video_key("  https://vimeo.com/12345  "))

    def test_video_key_empty_raises(self):
        with self.assertRaises(JobError) as ctx:
            video_key("  ")
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_URL)

    def test_normalize_and_thumbnail(self):
        self.assertEqual(normalize_video_url("https://youtu.be/dQw4w9WgXcQ"), URL)
        self.assertIn("dQw4w9WgXcQ", thumbnail_url(URL))
        self.assertIsNone(thumbnail_url("https://vimeo.com/12345"))

    def test_validate_raises_on_invalid(self):
        with self.assertRaises(JobError):
            validate_youtube_url("https://example.com/video")

    def test_parse_input_lines(self):
        text = f"{URL}\n\nnot a url\nhttps://youtu.be/abcdefghijk\n"
        self.assertEqual(parse_input_lines(text), [URL, "https://youtu.be/abcdefghijk"])


class TestSecurityUtils(unittest.TestCase):
    """Test export path safety."""

    def test_sanitize_title_special_chars(self):
        self.assertEqual(sanitize_title('My: Video/Title?'), "My Video Title")

    def test_sanitize_title_path_traversal(self):
        self.assertNotIn("..", sanitize_title("../../etc/passwd"))

    def test_sanitize_title_empty(self):
        self.assertEqual(sanitize_title(""), "")

    def test_safe_output_path_normal(self):
        root = Path("/tmp/subs")
        self.assertEqual(safe_output_path(root, "Lecture 1", "abc"), root / "Lecture 1")

    def test_safe_output_path_empty_title(self):
        root = Path("/tmp/subs")
        self.assertEqual(safe_output_path(root, "...", "abc"), root / "video_abc")


class TestErrorCodes(unittest.TestCase):
    """Test error classification and stop detection."""

    def test_retryable_errors(self):
        for code in RETRYABLE_ERRORS:
            self.assertTrue(is_retryable(code))
        self.assertFalse(is_retryable(ErrorCode.PROVIDER_FAILED))

    def test_job_error_auto_retryable(self):
        self.assertTrue(JobError(ErrorCode.RATE_LIMITED, "429").retryable)
        self.assertFalse(JobError(ErrorCode.PROVIDER_FAILED, "bad").retryable)
        self.assertTrue(JobError(ErrorCode.EMPTY_RESPONSE, "x", retryable=True).retryable)

    def test_already_running(self):
        err = AlreadyRunningError(URL)
        self.assertEqual(err.code, ErrorCode.ALREADY_RUNNING)
        self.assertIn(URL, err.message)

    def test_user_stop_detection(self):
        self.assertTrue(is_user_stop(TranslationCancelled()))
        self.assertTrue(is_user_stop(stopped_message(2)))
        self.assertTrue(is_user_stop(JobError(ErrorCode.PROVIDER_FAILED, stopped_message())))
        self.assertFalse(is_user_stop("Gemini returned 500"))
        self.assertFalse(is_user_stop(None))

    def test_stopped_message(self):
        self.assertEqual(stopped_message(0), "Stopped by user")
        self.assertEqual(stopped_message(3), "Stopped by user (3 batches translated)")

    def test_error_message_drops_code(self):
        self.assertEqual(error_message(JobError(ErrorCode.PROVIDER_FAILED, "bad")), "bad")
        self.assertEqual(error_message(KeyError()), "KeyError")


class TestSrtParsing(unittest.TestCase):
    """Test SRT parsing, repair and merging."""

    def test_time_conversion(self):
        self.assertAlmostEqual(time_to_seconds("01:02:03,450"), 3723.45)
        self.assertEqual(seconds_to_time(3723.45), "01:02:03,450")
        self.assertEqual(seconds_to_time(-1), "00:00:00,000")

    def test_fix_time_format(self):
        self.assertEqual(fix_time_format("00:01:02.500"), "00:01:02,500")
        self.assertEqual(fix_time_format("1:02,500"), "00:01:02,500")
        self.assertEqual(fix_time_format("00:01:02,500"), "00:01:02,500")

    def test_fix_srt_counts_repairs(self):
        fixed, count = fix_srt("1\n00:00:01.000 --> 00:00:02.000\nHi\n")
        self.assertEqual(count, 1)
        self.assertIn("00:00:01,000 --> 00:00:02,000", fixed)

    def test_parse_keeps_timing_line(self):
        entries = parse_srt("7\n00:00:01,000 --> 00:00:02,500\nHello\nworld\n")
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].index, 7)
        self.assertEqual(entries[0].end, 2.5)
        self.assertEqual(entries[0].text, "Hello\nworld")
        self.assertEqual(entries[0].timing, "00:00:01,000 --> 00:00:02,500")

    def test_parse_skips_invalid_blocks(self):
        data = "1\nnot a timing\nx\n\n2\n00:00:03,000 --> 00:00:04,000\nok\n"
        self.assertEqual([e.text for e in parse_srt(data)], ["ok"])

    def test_strip_code_fences(self):
        self.assertEqual(strip_code_fences("```srt\n1\n```"), "1")

    def test_merge_orders_and_renumbers(self):
        merged = merge_srt(srt((10, 11, "b")), srt((1, 2, "a")))
        entries = parse_srt(merged)
        self.assertEqual([e.text for e in entries], ["a", "b"])
        self.assertEqual([e.index for e in entries], [1, 2])

    def test_shift_entries_drops_original_timing(self):
        shifted = shift_entries(parse_srt(srt((1, 2, "a"))), 600)
        self.assertEqual(shifted[0].start, 601)
        self.assertIn("00:10:01,000", build_srt(shifted))

    def test_last_end_time(self):
        self.assertEqual(last_end_time(srt((1, 2, "a"), (5, 9, "b"))), 9)
        self.assertEqual(last_end_time(""), 0.0)


class TestBatchPlan(unittest.TestCase):
    """Test time-based batch planning."""

    def test_short_video_is_one_batch(self):
        self.assertEqual(total_batches(660), 1)

    def test_split_past_tolerance(self):
        plan = plan_batches(661)
        self.assertEqual([(b.start, b.end) for b in plan], [(0, 600), (600, 661)])

    def test_three_batches(self):
        self.assertEqual(total_batches(1800), 3)

    def test_unknown_duration(self):
        self.assertEqual([(b.start, b.end) for b in plan_batches(None)], [(0, None)])

    def test_sub_range(self):
        plan = plan_batches(1800, BatchSettings(), 600, 1200)
        self.assertEqual([(b.start, b.end) for b in plan], [(600, 1200)])

    def test_custom_batch_length(self):
        settings = BatchSettings(max_video_duration=300, batch_offset=0)
        self.assertEqual(total_batches(900, settings), 3)

    def test_batch_bounds(self):
        bounds = batch_bounds(2, 1800)
        self.assertEqual((bounds.start, bounds.end), (1200, 1800))
        with self.assertRaises(ValueError):
            batch_bounds(3, 1800)

    def test_pending_batches_skip_committed(self):
        plan = plan_batches(1800)
        todo = pending_batches(plan, [BatchRange(0, 600), BatchRange(1200, 1800)])
        self.assertEqual([i for i, _ in todo], [1])

    def test_sort_ranges_dedups(self):
        ranges = sort_ranges([BatchRange(600, 1200), BatchRange(0, 600), BatchRange(0.2, 600)])
        self.assertEqual([(r.start, r.end) for r in ranges], [(0, 600), (600, 1200)])


class TestBatchEdit(unittest.TestCase):
    """Test splicing retranslated batches into an SRT."""

    def setUp(self):
        self.existing = srt((10, 12, "first"), (590, 610, "cross"), (1210, 1212, "third"))

    def test_outside_cues_are_untouched(self):
        result = replace_batch_in_srt(self.existing, srt((1, 2, "new")), 600, 1200)
        entries = parse_srt(result)
        self.assertEqual([e.text for e in entries], ["first", "cross", "new", "third"])
        self.assertEqual(entries[0].timing, "00:00:10,000 --> 00:00:12,000")
        self.assertEqual(entries[3].timing, "00:20:10,000 --> 00:20:12,000")

    def test_boundary_cue_is_clipped(self):
        entries = parse_srt(replace_batch_in_srt(self.existing, srt((1, 2, "new")), 600, 1200))
        self.assertEqual((entries[1].start, entries[1].end), (590, 600))
        self.assertEqual(entries[2].start, 601)

    def test_absolute_batch_is_not_shifted(self):
        entries = parse_srt(replace_batch_in_srt(self.existing, srt((700, 702, "abs")), 600, 1200))
        self.assertIn(700, [e.start for e in entries])

    def test_cues_past_duration_are_dropped(self):
        result = replace_batch_in_srt(self.existing, srt((1, 2, "new")), 600, 1200, duration=1205)
        self.assertNotIn("third", [e.text for e in parse_srt(result)])

    def test_truncate(self):
        self.assertEqual([e.text for e in parse_srt(truncate_srt(self.existing, 600))], ["first"])

    def test_prepare_from_here(self):
        resume = prepare_from_here(self.existing, 2, 1800)
        self.assertEqual([(r.start, r.end) for r in resume.completed_ranges],
                         [(0, 600), (600, 1200)])
        self.assertEqual([e.text for e in parse_srt(resume.partial_srt)], ["first", "cross"])

    def test_prepare_from_first_batch(self):
        resume = prepare_from_here(self.existing, 0, 1800)
        self.assertEqual(resume.completed_ranges, [])
        self.assertEqual(resume.partial_srt, "")


class TestDatabase(unittest.TestCase):
    """Test the SQLite key-value store."""

    def setUp(self):
        self.db_path = Path(tempfile.mktemp(suffix='.db'))
        self.db = Database(self.db_path)

    def tearDown(self):
        self.db.close()
        if self.db_path.exists():
            self.db_path.unlink()

    def test_get_default(self):
        self.assertIsNone(self.db.get("missing"))
        self.assertEqual(self.db.get("missing", []), [])

    def test_set_and_overwrite(self):
        self.db.set("k", {'a': 1})
        self.db.set("k", {'a': 2, 'name': "Tiếng Việt"})
        self.assertEqual(self.db.get("k"), {'a': 2, 'name': "Tiếng Việt"})

    def test_survives_reopen(self):
        self.db.set("k", [1, 2])
        self.db.close()
        self.db = Database(self.db_path)
        self.assertEqual(self.db.get("k"), [1, 2])

    def test_delete(self):
        self.db.set("k", 1)
        self.db.delete("k")
        self.assertIsNone(self.db.get("k"))

    def test_keys_prefix_is_literal(self):
        self.db.set("translations:a", 1)
        self.db.set("translations:b", 2)
        self.db.set("translationsXc", 3)
        self.db.set("queue", 4)
        self.assertEqual(self.db.keys("translations:"), ["translations:a", "translations:b"])


class TestTranslationStore(unittest.TestCase):
    """Test saved translations per video."""

    def setUp(self):
        self.db = Database(":memory:")
        self.store = TranslationStore(self.db)

    def tearDown(self):
        self.db.close()

    def test_new_translation_becomes_active(self):
        first = self.store.save_translation(URL, srt((1, 2, "a")), "Alpha")
        second = self.store.save_translation("https://youtu.be/dQw4w9WgXcQ", srt((1, 2, "b")), "Beta")
        record = self.store.get_video_translations(URL)
        self.assertEqual(len(record.translations), 2)
        self.assertEqual(self.store.get_active_translation(URL).id, second.id)
        self.assertTrue(self.store.set_active_translation(URL, first.id))
        self.assertEqual(self.store.get_active_translation(URL).config_name, "Alpha")

    def test_partial_then_final_keeps_one_record(self):
        partial = self.store.save_partial_translation(
            URL, srt((1, 2, "a")), 1, 3, [BatchRange(0, 600)], "Alpha")
        self.assertTrue(self.store.get_partial_translation(URL).is_partial)
        self.assertEqual(self.store.partial_only_video_keys(), {"dQw4w9WgXcQ"})

        final = self.store.save_translation(URL, srt((1, 2, "a"), (601, 602, "b")), "Alpha",
                                            translation_id=partial.id, total_batches=3)
        self.assertEqual(final.id, partial.id)
        record = self.store.get_video_translations(URL)
        self.assertEqual(len(record.translations), 1)
        self.assertFalse(record.translations[0].is_partial)
        self.assertEqual(record.translations[0].completed_ranges, [])
        self.assertEqual(self.store.fully_translated_video_keys(), {"dQw4w9WgXcQ"})

    def test_replace_content_keeps_bookkeeping(self):
        partial = self.store.save_partial_translation(
            URL, srt((1, 2, "a")), 1, 3, [BatchRange(0, 600)], "Alpha",
            batch_settings=BatchSettings(streaming_mode=True))
        updated = self.store.replace_content(URL, partial.id, srt((1, 2, "edited")))

        self.assertEqual(updated.srt_content, srt((1, 2, "edited")))
        self.assertTrue(updated.is_partial)
        self.assertEqual((updated.completed_batches, updated.total_batches), (1, 3))
        self.assertEqual(updated.completed_ranges, [BatchRange(0, 600)])
        self.assertTrue(updated.batch_settings.streaming_mode)
        self.assertIsNone(self.store.replace_content(URL, "missing", "x"))

    def test_delete_returns_remaining(self):
        a = self.store.save_translation(URL, srt((1, 2, "a")), "Alpha")
        b = self.store.save_translation(URL, srt((1, 2, "b")), "Beta")
        self.assertEqual(self.store.delete_translation(URL, b.id), 1)
        self.assertEqual(self.store.get_active_translation(URL).id, a.id)
        self.assertEqual(self.store.delete_translation(URL, a.id), 0)
        self.assertFalse(self.store.has_translation(URL))
        self.assertEqual(self.store.all_videos(), [])


class TestAppConfig(unittest.TestCase):
    """Test JSON config persistence and validation."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "config.json"
        self.config = AppConfig(self.path)

    def tearDown(self):
        self.tmp.cleanup()

    def test_batch_settings_are_clamped(self):
        self.config.set('batch_settings', {
            'max_video_duration': 10, 'max_concurrent_batches': 9,
            'batch_offset': "oops", 'streaming_mode': 1,
        })
        settings = AppConfig(self.path).get_batch_settings()
        self.assertEqual(settings.max_video_duration, 60)
        self.assertEqual(settings.max_concurrent_batches, 5)
        self.assertEqual(settings.batch_offset, 60)
        self.assertTrue(settings.streaming_mode)

    def test_no_active_config_raises(self):
        with self.assertRaises(JobError) as ctx:
            self.config.get_active_config()
        self.assertEqual(ctx.exception.code, ErrorCode.CONFIG_NOT_SELECTED)

    def test_add_and_remove_configs(self):
        alpha = self.config.add_translation_config("Alpha", temperature=0.3)
        beta = self.config.add_translation_config("Beta", make_active=False)
        reloaded = AppConfig(self.path)
        self.assertEqual(reloaded.get_active_config().id, alpha.id)
        self.assertEqual(reloaded.find_config_by_name("Alpha").temperature, 0.3)

        self.assertTrue(self.config.remove_translation_config(alpha.id))
        self.assertEqual(self.config.active_config_id, beta.id)
        self.assertFalse(self.config.remove_translation_config(alpha.id))

    def test_unknown_active_config_rejected(self):
        with self.assertRaises(JobError):
            self.config.active_config_id = "nope"

    def test_notifications_merge_defaults(self):
        self.config.set('notifications', {'on_error': False, 'bogus': True})
        prefs = self.config.notifications
        self.assertFalse(prefs['on_error'])
        self.assertTrue(prefs['on_complete'])
        self.assertNotIn('bogus', prefs)

    def test_corrupt_file_falls_back_to_defaults(self):
        self.path.write_text("{not json", encoding='utf-8')
        config = AppConfig(self.path)
        self.assertEqual(config.translation_configs, [])


class TestNotifications(unittest.TestCase):
    """Test notification filtering by kind and source."""

    def test_defaults(self):
        svc = NotificationService()
        svc.notify_batch_complete("Video", 1, 3)
        svc.notify_translation_complete("Video")
        self.assertEqual(svc.sent, [("Translation complete", "Video")])

    def test_source_filter(self):
        svc = NotificationService(NotificationSettings(from_queue=False))
        svc.notify_translation_complete("Q", JobSource.QUEUE)
        svc.notify_translation_error("D", "bad", JobSource.DIRECT)
        self.assertEqual(svc.sent, [("Translation failed", "D: bad")])

    def test_disabled(self):
        svc = NotificationService(NotificationSettings.from_dict({'enabled': False}))
        svc.notify_queue_complete(3)
        self.assertEqual(svc.sent, [])

    def test_queue_complete_body(self):
        svc = NotificationService()
        svc.notify_queue_complete(2, 1)
        self.assertEqual(svc.sent, [("Queue finished", "2 videos translated, 1 failed")])

    def test_send_failure_is_swallowed(self):
        class Broken(NotificationService):
            def _send(self, title, body):
                raise OSError("no display")
        svc = Broken()
        svc.notify_translation_complete("Video")
        self.assertEqual(len(svc.sent), 1)


class TestQueueItemModel(unittest.TestCase):
    """Test queue item persistence."""

    def test_in_flight_tag_is_not_persisted(self):
        item = QueueItem(id="1", video_key="dQw4w9WgXcQ", video_url=URL,
                         status=QueueStatus.PAUSED, pending_user_action="stop",
                         partial_srt=srt((1, 2, "a")), completed_ranges=[BatchRange(0, 600)],
                         batch_settings=BatchSettings(streaming_mode=True))
        data = item.to_dict()
        self.assertNotIn('pending_user_action', data)

        restored = QueueItem.from_dict(data)
        self.assertIsNone(restored.pending_user_action)
        self.assertTrue(restored.has_partial)
        self.assertEqual(restored.completed_ranges[0].end, 600)
        self.assertTrue(restored.batch_settings.streaming_mode)

    def test_unknown_fields_are_ignored(self):
        item = QueueItem.from_dict({'id': "1", 'video_key': "k", 'video_url': URL,
                                    'legacy': True})
        self.assertEqual(item.status, QueueStatus.PENDING)


class TestOutputWriter(unittest.TestCase):
    """Test SRT export."""

    def test_write_and_detect(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            path = write_srt(srt((1, 2, "a")), root, "Test Video", "dQw4w9WgXcQ")
            self.assertEqual(path, root / "Test Video" / "dQw4w9WgXcQ.srt")
            self.assertIn("00:00:01,000", path.read_text(encoding='utf-8'))

            self.assertTrue(srt_exists(root, "dQw4w9WgXcQ"))
            self.assertFalse(srt_exists(root, "xyz789abc12"))


if __name__ == "__main__":
    unittest.main()
