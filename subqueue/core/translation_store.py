"""
Saved translations per video, stored as one JSON document per video key.
A video can hold several translations; one of them is active.
"""

import uuid
import logging

from subqueue.core.constants import TRANSLATION_KEY_PREFIX
from subqueue.core.db_sqlite import Database
from subqueue.core.models import (
    SavedTranslation, VideoTranslations, BatchSettings, BatchRange, now_ms,
)
from subqueue.core.url_parse import video_key

logger = logging.getLogger(__name__)


class TranslationStore:
    """Reads and writes SavedTranslation records through the key-value store."""

    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _key(vkey: str) -> str:
        return f"{TRANSLATION_KEY_PREFIX}{vkey}"

    def _load(self, video_url: str) -> VideoTranslations | None:
        data = self.db.get(self._key(video_key(video_url)))
        return VideoTranslations.from_dict(data) if data else None

    def _load_or_new(self, video_url: str, title: str = "") -> VideoTranslations:
        record = self._load(video_url)
        if record is None:
            record = VideoTranslations(video_key=video_key(video_url), video_url=video_url)
        if title and not record.title:
            record.title = title
        return record

    def _store(self, record: VideoTranslations):
        if record.translations:
            self.db.set(self._key(record.video_key), record.to_dict())
        else:
            self.db.delete(self._key(record.video_key))

    # ── Writes ────────────────────────────────────────────────────────

    def save_translation(self, video_url: str, srt_content: str, config_name: str,
                         preset_id: str | None = None, title: str = "",
                         translation_id: str | None = None,
                         video_duration: float | None = None,
                         batch_settings: BatchSettings | None = None,
                         batch_statuses: list[str] | None = None,
                         total_batches: int = 0,
                         range_start: float | None = None,
                         range_end: float | None = None) -> SavedTranslation:
        """
        Save a finished translation. With translation_id, the existing record
        is overwritten in place (resume or batch retranslation); otherwise a
        new translation is added and made active.
        """
        record = self._load_or_new(video_url, title)
        now = now_ms()
        saved = record.find(translation_id) if translation_id else None

        if saved is None:
            saved = SavedTranslation(id=translation_id or str(uuid.uuid4()),
                                     srt_content="", created_at=now)
            record.translations.insert(0, saved)

        saved.srt_content = srt_content
        saved.updated_at = now
        saved.config_name = config_name or saved.config_name
        saved.preset_id = preset_id if preset_id is not None else saved.preset_id
        saved.is_partial = False
        saved.completed_batches = total_batches or saved.total_batches
        saved.total_batches = total_batches or saved.total_batches
        saved.completed_ranges = []
        saved.range_start = range_start
        saved.range_end = range_end
        if video_duration is not None:
            saved.video_duration = video_duration
        if batch_settings is not None:
            saved.batch_settings = batch_settings
        if batch_statuses is not None:
            saved.batch_statuses = list(batch_statuses)

        record.active_translation_id = saved.id
        self._store(record)
        logger.info("Saved translation %s for %s", saved.id, record.video_key)
        return saved

    def replace_content(self, video_url: str, translation_id: str,
                        srt_content: str) -> SavedTranslation | None:
        """
        Swap the text of an existing translation after a single-batch edit.
        Batch counts, ranges, settings and the partial flag stay as they were.
        Returns None when the translation does not exist.
        """
        record = self._load(video_url)
        saved = record.find(translation_id) if record else None
        if saved is None:
            return None
        saved.srt_content = srt_content
        saved.updated_at = now_ms()
        record.active_translation_id = saved.id
        self._store(record)
        logger.info("Updated content of translation %s for %s", saved.id, record.video_key)
        return saved

    def save_partial_translation(self, video_url: str, srt_content: str,
                                 completed_batches: int, total_batches: int,
                                 completed_ranges: list[BatchRange],
                                 config_name: str, preset_id: str | None = None,
                                 title: str = "", translation_id: str | None = None,
                                 video_duration: float | None = None,
                                 batch_settings: BatchSettings | None = None,
                                 batch_statuses: list[str] | None = None) -> SavedTranslation:
        """
        Save an interrupted translation so it can be resumed.
        Updates translation_id when given, else the video's existing partial.
        """
        record = self._load_or_new(video_url, title)
        now = now_ms()
        saved = record.find(translation_id) if translation_id else None
        if saved is None:
            saved = next((t for t in record.translations if t.is_partial), None)
        if saved is None:
            saved = SavedTranslation(id=translation_id or str(uuid.uuid4()),
                                     srt_content="", created_at=now)
            record.translations.insert(0, saved)

        saved.srt_content = srt_content
        saved.updated_at = now
        saved.config_name = config_name or saved.config_name
        saved.preset_id = preset_id if preset_id is not None else saved.preset_id
        saved.is_partial = True
        saved.completed_batches = completed_batches
        saved.total_batches = total_batches
        saved.completed_ranges = [BatchRange(r.start, r.end) for r in completed_ranges]
        if video_duration is not None:
            saved.video_duration = video_duration
        if batch_settings is not None:
            saved.batch_settings = batch_settings
        if batch_statuses is not None:
            saved.batch_statuses = list(batch_statuses)

        record.active_translation_id = saved.id
        self._store(record)
        logger.info("Saved partial translation %s for %s (%d/%d batches)",
                    saved.id, record.video_key, completed_batches, total_batches)
        return saved

    def set_active_translation(self, video_url: str, translation_id: str) -> bool:
        record = self._load(video_url)
        if record is None or record.find(translation_id) is None:
            return False
        record.active_translation_id = translation_id
        self._store(record)
        return True

    def delete_translation(self, video_url: str, translation_id: str) -> int:
        """Delete one translation. Returns how many remain for the video."""
        record = self._load(video_url)
        if record is None:
            return 0
        record.translations = [t for t in record.translations if t.id != translation_id]
        if record.active_translation_id == translation_id:
            record.active_translation_id = record.translations[0].id if record.translations else None
        self._store(record)
        return len(record.translations)

    def delete_video(self, video_url: str):
        self.db.delete(self._key(video_key(video_url)))

    # ── Reads ─────────────────────────────────────────────────────────

    def get_video_translations(self, video_url: str) -> VideoTranslations | None:
        return self._load(video_url)

    def get_translation(self, video_url: str, translation_id: str) -> SavedTranslation | None:
        record = self._load(video_url)
        return record.find(translation_id) if record else None

    def get_active_translation(self, video_url: str) -> SavedTranslation | None:
        record = self._load(video_url)
        return record.active if record else None

    def get_partial_translation(self, video_url: str) -> SavedTranslation | None:
        record = self._load(video_url)
        if record is None:
            return None
        return next((t for t in record.translations if t.is_partial), None)

    def has_translation(self, video_url: str) -> bool:
        record = self._load(video_url)
        return bool(record and record.translations)

    def all_videos(self) -> list[VideoTranslations]:
        records = []
        for key in self.db.keys(TRANSLATION_KEY_PREFIX):
            data = self.db.get(key)
            if data:
                records.append(VideoTranslations.from_dict(data))
        return records

    def fully_translated_video_keys(self) -> set[str]:
        return {r.video_key for r in self.all_videos()
                if any(not t.is_partial for t in r.translations)}

    def partial_only_video_keys(self) -> set[str]:
        return {r.video_key for r in self.all_videos()
                if r.translations and all(t.is_partial for t in r.translations)}
