"""
Data models (plain dataclasses) for SubtitleQueue.
Everything persisted goes through to_dict / from_dict so the store only
ever sees JSON-compatible values.
"""

import copy
import time
from dataclasses import dataclass, field, fields, asdict
from typing import Optional

from subqueue.core.constants import (
    JobStatus, QueueStatus, JobSource,
    DEFAULT_MAX_VIDEO_DURATION, DEFAULT_MAX_CONCURRENT_BATCHES,
    DEFAULT_BATCH_OFFSET, DEFAULT_STREAMING_MODE,
    GEMINI_DEFAULT_MODEL, GEMINI_DEFAULT_PROMPT,
)


def now_ms() -> int:
    return int(time.time() * 1000)


def _known(cls, data: dict) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class BatchRange:
    start: float
    end: Optional[float] = None      # None when the video duration is unknown

    def to_dict(self) -> dict:
        return {'start': self.start, 'end': self.end}

    @classmethod
    def from_dict(cls, data) -> "BatchRange":
        if isinstance(data, BatchRange):
            return BatchRange(data.start, data.end)
        return cls(start=data['start'], end=data.get('end'))


def ranges_from_list(items) -> list[BatchRange]:
    return [BatchRange.from_dict(r) for r in (items or [])]


def ranges_to_list(ranges) -> list[dict]:
    return [r.to_dict() for r in (ranges or [])]


@dataclass
class BatchSettings:
    max_video_duration: int = DEFAULT_MAX_VIDEO_DURATION
    max_concurrent_batches: int = DEFAULT_MAX_CONCURRENT_BATCHES
    batch_offset: int = DEFAULT_BATCH_OFFSET
    streaming_mode: bool = DEFAULT_STREAMING_MODE

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data) -> Optional["BatchSettings"]:
        if data is None:
            return None
        if isinstance(data, BatchSettings):
            return copy.copy(data)
        return cls(**_known(cls, data))


@dataclass
class TranslationConfig:
    """A named, user-editable set of provider parameters."""
    id: str
    name: str
    model: str = GEMINI_DEFAULT_MODEL
    temperature: float = 1.0
    system_prompt: str = GEMINI_DEFAULT_PROMPT
    preset_id: Optional[str] = None
    thinking_budget: Optional[int] = None
    media_resolution: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TranslationConfig":
        return cls(**_known(cls, data))


@dataclass
class BatchProgress:
    completed_batches: int = 0
    total_batches: int = 0
    current_batch: int = 0
    batch_statuses: list[str] = field(default_factory=list)


# ── Executor state ────────────────────────────────────────────────────

@dataclass
class Job:
    """The single in-flight (or last finished) translation job."""
    id: str
    video_key: str
    video_url: str
    title: str = ""
    config_id: Optional[str] = None
    config_name: str = ""
    preset_id: Optional[str] = None
    status: str = JobStatus.PROCESSING
    progress: Optional[BatchProgress] = None
    key_status: Optional[str] = None
    result: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    error_retryable: bool = False
    started_at: int = 0              # epoch ms
    completed_at: Optional[int] = None
    partial_result: Optional[str] = None
    completed_ranges: list[BatchRange] = field(default_factory=list)
    range_start: Optional[float] = None
    range_end: Optional[float] = None
    duration: Optional[float] = None
    batch_settings: Optional[BatchSettings] = None
    existing_translation_id: Optional[str] = None
    translation_id: Optional[str] = None     # saved record written by this job
    is_aborted: bool = False
    is_batch_retranslation: bool = False
    source: str = JobSource.DIRECT

    def snapshot(self) -> "Job":
        return copy.deepcopy(self)


@dataclass
class ResumeData:
    partial_srt: str
    completed_ranges: list[BatchRange]
    existing_translation_id: Optional[str] = None


@dataclass
class AbortResult:
    aborted: bool
    partial_result: Optional[str] = None
    completed_ranges: list[BatchRange] = field(default_factory=list)
    translation_id: Optional[str] = None


# ── Queue state ───────────────────────────────────────────────────────

@dataclass
class QueueItem:
    id: str
    video_key: str
    video_url: str
    title: str = ""
    thumbnail: Optional[str] = None
    duration: Optional[float] = None
    status: str = QueueStatus.PENDING
    config_id: Optional[str] = None
    config_name: Optional[str] = None
    preset_id: Optional[str] = None
    batch_settings: Optional[BatchSettings] = None
    progress_completed: int = 0
    progress_total: int = 0
    error: Optional[str] = None
    added_at: int = 0                # epoch ms
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    partial_srt: Optional[str] = None
    completed_ranges: list[BatchRange] = field(default_factory=list)
    completed_batches: int = 0
    total_batches: int = 0
    saved_translation_id: Optional[str] = None
    retranslate_batch_index: Optional[int] = None
    retranslate_mode: Optional[str] = None
    pending_user_action: Optional[str] = None
    user_paused: bool = False
    retry_count: int = 0

    @property
    def has_partial(self) -> bool:
        return bool(self.partial_srt) and bool(self.completed_ranges)

    def snapshot(self) -> "QueueItem":
        return copy.deepcopy(self)

    def clear_progress(self):
        self.progress_completed = 0
        self.progress_total = 0

    def clear_partial(self):
        self.partial_srt = None
        self.completed_ranges = []
        self.completed_batches = 0
        self.total_batches = 0
        self.saved_translation_id = None
        self.retranslate_batch_index = None
        self.retranslate_mode = None

    def to_dict(self) -> dict:
        data = asdict(self)
        # in-flight tags never survive a restart
        data.pop('pending_user_action', None)
        data['batch_settings'] = self.batch_settings.to_dict() if self.batch_settings else None
        data['completed_ranges'] = ranges_to_list(self.completed_ranges)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "QueueItem":
        values = _known(cls, data)
        values.pop('pending_user_action', None)
        values['batch_settings'] = BatchSettings.from_dict(values.get('batch_settings'))
        values['completed_ranges'] = ranges_from_list(values.get('completed_ranges'))
        return cls(**values)


@dataclass
class QueuePage:
    items: list[QueueItem]
    page: int
    total_pages: int
    total: int


@dataclass
class StartResult:
    success: bool
    reason: Optional[str] = None
    queued: bool = False


@dataclass
class AddResult:
    item: QueueItem
    is_existing: bool
    pending_count: int


@dataclass
class VideoQueueStatus:
    in_queue: bool
    status: Optional[str] = None
    item_id: Optional[str] = None
    position: Optional[int] = None
    is_direct_translating: bool = False


# ── Saved translations ────────────────────────────────────────────────

@dataclass
class SavedTranslation:
    id: str
    srt_content: str
    created_at: int = 0              # epoch ms
    updated_at: int = 0
    config_name: str = ""
    preset_id: Optional[str] = None
    is_partial: bool = False
    completed_batches: int = 0
    total_batches: int = 0
    range_start: Optional[float] = None
    range_end: Optional[float] = None
    video_duration: Optional[float] = None
    batch_settings: Optional[BatchSettings] = None
    batch_statuses: list[str] = field(default_factory=list)
    completed_ranges: list[BatchRange] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data['batch_settings'] = self.batch_settings.to_dict() if self.batch_settings else None
        data['completed_ranges'] = ranges_to_list(self.completed_ranges)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "SavedTranslation":
        values = _known(cls, data)
        values['batch_settings'] = BatchSettings.from_dict(values.get('batch_settings'))
        values['completed_ranges'] = ranges_from_list(values.get('completed_ranges'))
        return cls(**values)


@dataclass
class VideoTranslations:
    video_key: str
    video_url: str
    title: str = ""
    translations: list[SavedTranslation] = field(default_factory=list)
    active_translation_id: Optional[str] = None

    def find(self, translation_id: str | None) -> Optional[SavedTranslation]:
        for t in self.translations:
            if t.id == translation_id:
                return t
        return None

    @property
    def active(self) -> Optional[SavedTranslation]:
        return self.find(self.active_translation_id) or (
            self.translations[0] if self.translations else None
        )

    def to_dict(self) -> dict:
        return {
            'video_key': self.video_key,
            'video_url': self.video_url,
            'title': self.title,
            'translations': [t.to_dict() for t in self.translations],
            'active_translation_id': self.active_translation_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "VideoTranslations":
        return cls(
            video_key=data['video_key'],
            video_url=data.get('video_url', ''),
            title=data.get('title', ''),
            translations=[SavedTranslation.from_dict(t) for t in data.get('translations', [])],
            active_translation_id=data.get('active_translation_id'),
        )
