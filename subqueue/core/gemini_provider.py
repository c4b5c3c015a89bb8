"""
Gemini video translation provider.
Sends one generateContent request per time batch, with the YouTube URL as
file data clipped through videoMetadata offsets. Includes exponential
backoff for rate-limit (429) responses.
"""

import asyncio
import json
import logging
import random
import requests

from subqueue.core.batch_plan import plan_batches, pending_batches
from subqueue.core.constants import (
    ErrorCode, BatchStatus, GEMINI_API_BASE, GEMINI_REQUEST_TIMEOUT_SEC,
)
from subqueue.core.error_codes import JobError, TranslationCancelled
from subqueue.core.models import BatchRange, BatchProgress, TranslationConfig
from subqueue.core.provider import (
    BatchTranslationProvider, CancellationToken, TranslateOptions,
)
from subqueue.core.security_utils import get_api_key
from subqueue.core.srt_parse import (
    parse_srt, build_srt, shift_entries, strip_code_fences, merge_srt,
)
from subqueue.core.url_parse import normalize_video_url

logger = logging.getLogger(__name__)

_MAX_RATE_LIMIT_RETRIES = 4
_RATE_LIMIT_BASE_DELAY = 2.0   # seconds, doubled per retry plus jitter

_USER_PROMPT = "Create SRT subtitles for this video."

_MEDIA_RESOLUTIONS = {
    'low': "MEDIA_RESOLUTION_LOW",
    'medium': "MEDIA_RESOLUTION_MEDIUM",
    'high': "MEDIA_RESOLUTION_HIGH",
}


def _offset(seconds: float) -> str:
    return f"{int(seconds)}s"


def build_request_body(video_url: str, config: TranslationConfig,
                       batch: BatchRange | None = None) -> dict:
    """generateContent body for one batch (or the whole video when batch is None)."""
    video_part = {
        'fileData': {
            'fileUri': normalize_video_url(video_url),
            'mimeType': "video/*",
        },
    }
    if batch is not None:
        metadata = {'startOffset': _offset(batch.start)}
        if batch.end is not None:
            metadata['endOffset'] = _offset(batch.end)
        video_part['videoMetadata'] = metadata

    generation_config = {'temperature': config.temperature}
    if config.thinking_budget is not None:
        generation_config['thinkingConfig'] = {'thinkingBudget': config.thinking_budget}
    if config.media_resolution:
        generation_config['mediaResolution'] = _MEDIA_RESOLUTIONS.get(
            config.media_resolution.lower(), config.media_resolution)

    body = {
        'contents': [{
            'role': "user",
            'parts': [video_part, {'text': _USER_PROMPT}],
        }],
        'generationConfig': generation_config,
    }
    if config.system_prompt:
        body['systemInstruction'] = {'parts': [{'text': config.system_prompt}]}
    return body


def extract_response_text(response: dict) -> str:
    """Concatenate the text parts of the first candidate."""
    block_reason = (response.get('promptFeedback') or {}).get('blockReason')
    if block_reason:
        raise JobError(ErrorCode.PROVIDER_FAILED, f"Gemini blocked the request: {block_reason}")
    try:
        parts = response['candidates'][0]['content']['parts']
    except (KeyError, IndexError, TypeError):
        return ""
    # thought parts carry reasoning, not output
    return ''.join(p.get('text', '') for p in parts if not p.get('thought'))


class GeminiProvider(BatchTranslationProvider):
    """Translates YouTube videos to SRT through the Gemini REST API."""

    def __init__(self, api_key: str | None = None, api_base: str = GEMINI_API_BASE,
                 timeout_sec: int = GEMINI_REQUEST_TIMEOUT_SEC):
        self._api_key = api_key
        self.api_base = api_base.rstrip('/')
        self.timeout_sec = timeout_sec

    def _resolve_api_key(self) -> str:
        api_key = self._api_key or get_api_key()
        if not api_key:
            raise JobError(ErrorCode.API_KEY_MISSING,
                           "Gemini API key not found (set GEMINI_API_KEY or run set-key)")
        return api_key

    async def translate(self, video_url: str, config: TranslationConfig,
                        options: TranslateOptions) -> str:
        token = options.cancel_token
        token.raise_if_cancelled()
        api_key = self._resolve_api_key()
        loop = asyncio.get_running_loop()

        settings = options.batch_settings
        plan = plan_batches(options.duration, settings, options.range_start, options.range_end)
        todo = pending_batches(plan, options.skip_ranges)
        clip = len(plan) > 1 or options.range_start is not None or options.range_end is not None

        statuses = [BatchStatus.PENDING] * len(plan)
        todo_indices = {i for i, _ in todo}
        for i in range(len(plan)):
            if i not in todo_indices:
                statuses[i] = BatchStatus.DONE
        state = {
            'completed': len(plan) - len(todo),
            'partial': options.existing_partial_srt or "",
        }
        results: dict[int, str] = {}

        logger.info("Translating %s: %d batches (%d already done), model %s",
                    video_url, len(plan), state['completed'], config.model)

        def progress(current: int) -> BatchProgress:
            return BatchProgress(completed_batches=state['completed'],
                                 total_batches=len(plan),
                                 current_batch=current,
                                 batch_statuses=list(statuses))

        def key_status(message: str):
            if options.on_key_status:
                loop.call_soon_threadsafe(options.on_key_status, message)

        semaphore = asyncio.Semaphore(max(1, settings.max_concurrent_batches))
        cancelled = loop.create_future()

        def on_cancel():
            if not cancelled.done():
                cancelled.set_result(None)
        token.add_callback(lambda: loop.call_soon_threadsafe(on_cancel))

        async def request(batch: BatchRange | None) -> str:
            # the HTTP call cannot be interrupted; stop waiting for it on cancel
            work = asyncio.ensure_future(asyncio.to_thread(
                self._request_batch, api_key, video_url, config, batch, token, key_status,
            ))
            work.add_done_callback(lambda f: f.cancelled() or f.exception())
            await asyncio.wait({work, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            if not work.done():
                raise TranslationCancelled()
            return work.result()

        async def run_batch(idx: int, batch: BatchRange):
            async with semaphore:
                token.raise_if_cancelled()
                statuses[idx] = BatchStatus.PROCESSING
                if options.on_batch_progress:
                    options.on_batch_progress(progress(idx + 1), None)

                try:
                    text = await request(batch if clip else None)
                except JobError:
                    statuses[idx] = BatchStatus.ERROR
                    raise
                token.raise_if_cancelled()

                entries = parse_srt(strip_code_fences(text))
                if not entries:
                    statuses[idx] = BatchStatus.ERROR
                    raise JobError(ErrorCode.EMPTY_RESPONSE,
                                   f"Gemini returned no subtitles for batch {idx + 1}",
                                   retryable=True)
                if clip and not options.skip_timestamp_adjust:
                    entries = shift_entries(entries, batch.start)
                results[idx] = build_srt(entries)

                statuses[idx] = BatchStatus.DONE
                state['completed'] += 1
                if not options.skip_timestamp_adjust:
                    state['partial'] = merge_srt(state['partial'], results[idx])

                if settings.streaming_mode and options.on_batch_complete:
                    options.on_batch_complete(BatchRange(batch.start, batch.end),
                                              state['partial'], progress(idx + 1))
                elif options.on_batch_progress:
                    options.on_batch_progress(progress(idx + 1), None)

        tasks = [asyncio.ensure_future(run_batch(i, b)) for i, b in todo]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        if options.skip_timestamp_adjust:
            return merge_srt(*(results[i] for i in sorted(results)))
        return state['partial']

    # ── HTTP ──────────────────────────────────────────────────────────

    def _request_batch(self, api_key: str, video_url: str, config: TranslationConfig,
                       batch: BatchRange | None, token: CancellationToken,
                       on_key_status=None) -> str:
        """
        One blocking generateContent call. Runs in a worker thread.
        Retries up to 4 times with exponential backoff on 429 responses.
        """
        url = f"{self.api_base}/models/{config.model}:generateContent"
        headers = {
            "x-goog-api-key": api_key,
            "Content-Type": "application/json",
        }
        body = build_request_body(video_url, config, batch)

        for attempt in range(_MAX_RATE_LIMIT_RETRIES + 1):
            if token.is_cancelled:
                raise TranslationCancelled()
            try:
                resp = requests.post(url, headers=headers, json=body, timeout=self.timeout_sec)
            except requests.exceptions.Timeout:
                raise JobError(ErrorCode.PROVIDER_TIMEOUT,
                               "Gemini request timed out", retryable=True)
            except requests.exceptions.ConnectionError:
                raise JobError(ErrorCode.NETWORK_TRANSIENT,
                               "Network error connecting to Gemini", retryable=True)
            except requests.exceptions.RequestException as e:
                raise JobError(ErrorCode.PROVIDER_FAILED,
                               f"Gemini request failed: {e}", retryable=True)

            if resp.status_code in (500, 503, 504):
                raise JobError(ErrorCode.PROVIDER_TIMEOUT,
                               f"Gemini returned {resp.status_code}", retryable=True)

            if resp.status_code == 429:
                if attempt < _MAX_RATE_LIMIT_RETRIES:
                    # Exponential backoff with jitter: 2s, 4s, 8s, 16s (+/- 10%)
                    delay = _RATE_LIMIT_BASE_DELAY * (2 ** attempt)
                    delay *= 1 + random.uniform(-0.1, 0.1)
                    logger.warning(
                        "Gemini rate limited (429), retrying in %.1fs (attempt %d/%d)",
                        delay, attempt + 1, _MAX_RATE_LIMIT_RETRIES,
                    )
                    if on_key_status:
                        on_key_status(f"Rate limited, retrying in {delay:.0f}s "
                                      f"({attempt + 1}/{_MAX_RATE_LIMIT_RETRIES})")
                    if token.wait(delay):
                        raise TranslationCancelled()
                    continue
                raise JobError(ErrorCode.RATE_LIMITED,
                               f"Gemini rate limited (429) after {_MAX_RATE_LIMIT_RETRIES} retries",
                               retryable=True)

            if resp.status_code in (401, 403):
                raise JobError(ErrorCode.API_KEY_MISSING,
                               f"Gemini rejected the API key ({resp.status_code})")

            if resp.status_code != 200:
                # Sanitize error message (never log API key)
                error_body = resp.text[:300] if resp.text else "No response body"
                raise JobError(ErrorCode.PROVIDER_FAILED,
                               f"Gemini returned {resp.status_code}: {error_body}")

            try:
                data = resp.json()
            except (json.JSONDecodeError, ValueError):
                raise JobError(ErrorCode.PROVIDER_FAILED,
                               "Failed to parse Gemini response JSON")

            text = extract_response_text(data)
            if not text.strip():
                raise JobError(ErrorCode.EMPTY_RESPONSE, "Gemini returned an empty response",
                               retryable=True)
            return text

        # Should never reach here
        raise JobError(ErrorCode.RATE_LIMITED, "Gemini request exhausted retries", retryable=True)
