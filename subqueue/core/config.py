"""
Application configuration manager.
Stores settings in a JSON file under Application Support.
"""

import json
import uuid
import logging
from pathlib import Path

from subqueue.core.constants import (
    CONFIG_PATH, DEFAULT_EXPORT_ROOT, GEMINI_API_BASE, GEMINI_REQUEST_TIMEOUT_SEC,
    DEFAULT_MAX_VIDEO_DURATION, DEFAULT_MAX_CONCURRENT_BATCHES,
    DEFAULT_BATCH_OFFSET, DEFAULT_STREAMING_MODE,
)
from subqueue.core.error_codes import ConfigNotSelectedError
from subqueue.core.models import BatchSettings, TranslationConfig

# Validation bounds
_BATCH_DURATION_MIN = 60         # 1 minute
_BATCH_DURATION_MAX = 3600       # 1 hour
_CONCURRENCY_MIN = 1
_CONCURRENCY_MAX = 5
_BATCH_OFFSET_MIN = 0
_BATCH_OFFSET_MAX = 300
_TIMEOUT_MIN = 30
_TIMEOUT_MAX = 3600

logger = logging.getLogger(__name__)

_DEFAULT_NOTIFICATIONS = {
    'enabled': True,
    'from_queue': True,
    'from_direct': True,
    'on_complete': True,
    'on_batch_complete': False,
    'on_error': True,
}

_DEFAULTS = {
    'translation_configs': [],
    'active_config_id': None,
    'batch_settings': {
        'max_video_duration': DEFAULT_MAX_VIDEO_DURATION,
        'max_concurrent_batches': DEFAULT_MAX_CONCURRENT_BATCHES,
        'batch_offset': DEFAULT_BATCH_OFFSET,
        'streaming_mode': DEFAULT_STREAMING_MODE,
    },
    'notifications': dict(_DEFAULT_NOTIFICATIONS),
    'export_root': str(DEFAULT_EXPORT_ROOT),
    'gemini_api_base': GEMINI_API_BASE,
    'request_timeout_sec': GEMINI_REQUEST_TIMEOUT_SEC,
}


def _clamp_int(value, lo: int, hi: int, default: int, name: str) -> int:
    try:
        value = int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid %s %r, using default", name, value)
        return default
    return max(lo, min(hi, value))


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None):
        self.path = Path(config_path) if config_path else CONFIG_PATH
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = json.loads(json.dumps(_DEFAULTS))
        if self.path.exists():
            try:
                with open(self.path, 'r', encoding='utf-8') as f:
                    saved = json.load(f)
                self._data.update(saved)
            except (OSError, ValueError) as e:
                logger.warning("Failed to load config: %s", e)

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump(self._data, f, indent=2, ensure_ascii=False)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key == 'batch_settings':
            value = dict(value or {})
            return {
                'max_video_duration': _clamp_int(
                    value.get('max_video_duration', DEFAULT_MAX_VIDEO_DURATION),
                    _BATCH_DURATION_MIN, _BATCH_DURATION_MAX,
                    DEFAULT_MAX_VIDEO_DURATION, 'max_video_duration'),
                'max_concurrent_batches': _clamp_int(
                    value.get('max_concurrent_batches', DEFAULT_MAX_CONCURRENT_BATCHES),
                    _CONCURRENCY_MIN, _CONCURRENCY_MAX,
                    DEFAULT_MAX_CONCURRENT_BATCHES, 'max_concurrent_batches'),
                'batch_offset': _clamp_int(
                    value.get('batch_offset', DEFAULT_BATCH_OFFSET),
                    _BATCH_OFFSET_MIN, _BATCH_OFFSET_MAX,
                    DEFAULT_BATCH_OFFSET, 'batch_offset'),
                'streaming_mode': bool(value.get('streaming_mode', DEFAULT_STREAMING_MODE)),
            }

        if key == 'notifications':
            merged = dict(_DEFAULT_NOTIFICATIONS)
            merged.update({k: bool(v) for k, v in (value or {}).items()
                           if k in _DEFAULT_NOTIFICATIONS})
            return merged

        if key == 'request_timeout_sec':
            return _clamp_int(value, _TIMEOUT_MIN, _TIMEOUT_MAX,
                              GEMINI_REQUEST_TIMEOUT_SEC, 'request_timeout_sec')

        return value

    def as_dict(self) -> dict:
        return dict(self._data)

    # ── Translation configs ───────────────────────────────────────────

    @property
    def translation_configs(self) -> list[TranslationConfig]:
        return [TranslationConfig.from_dict(c) for c in self._data.get('translation_configs', [])]

    def add_translation_config(self, name: str, make_active: bool = True,
                               **params) -> TranslationConfig:
        config = TranslationConfig(id=str(uuid.uuid4()), name=name, **params)
        configs = self._data.setdefault('translation_configs', [])
        configs.append(config.to_dict())
        if make_active or not self._data.get('active_config_id'):
            self._data['active_config_id'] = config.id
        self.save()
        return config

    def remove_translation_config(self, config_id: str) -> bool:
        configs = self._data.get('translation_configs', [])
        kept = [c for c in configs if c.get('id') != config_id]
        if len(kept) == len(configs):
            return False
        self._data['translation_configs'] = kept
        if self._data.get('active_config_id') == config_id:
            self._data['active_config_id'] = kept[0]['id'] if kept else None
        self.save()
        return True

    def get_config(self, config_id: str | None) -> TranslationConfig | None:
        if not config_id:
            return None
        return next((c for c in self.translation_configs if c.id == config_id), None)

    def find_config_by_name(self, name: str) -> TranslationConfig | None:
        return next((c for c in self.translation_configs if c.name == name), None)

    def get_active_config(self) -> TranslationConfig:
        """The selected config; raises ConfigNotSelectedError when there is none."""
        config = self.get_config(self._data.get('active_config_id'))
        if config is None:
            raise ConfigNotSelectedError()
        return config

    @property
    def active_config_id(self) -> str | None:
        return self._data.get('active_config_id')

    @active_config_id.setter
    def active_config_id(self, value: str | None):
        if value is not None and self.get_config(value) is None:
            raise ConfigNotSelectedError(f"Unknown translation config: {value}")
        self._data['active_config_id'] = value
        self.save()

    # ── Batch and notification settings ───────────────────────────────

    def get_batch_settings(self) -> BatchSettings:
        return BatchSettings.from_dict(self._validate('batch_settings', self._data.get('batch_settings')))

    @property
    def notifications(self) -> dict:
        return self._validate('notifications', self._data.get('notifications'))

    @property
    def export_root(self) -> str:
        return self._data.get('export_root', str(DEFAULT_EXPORT_ROOT))

    @export_root.setter
    def export_root(self, value: str):
        self._data['export_root'] = value
        self.save()

    @property
    def gemini_api_base(self) -> str:
        return self._data.get('gemini_api_base', GEMINI_API_BASE)

    @property
    def request_timeout_sec(self) -> int:
        return self._validate('request_timeout_sec',
                              self._data.get('request_timeout_sec', GEMINI_REQUEST_TIMEOUT_SEC))
