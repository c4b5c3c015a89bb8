"""
Test doubles for the orchestration tests.
ScriptedProvider produces one cue per batch and can hold every batch until
the test releases it.
"""

import asyncio
from dataclasses import dataclass

from subqueue.core.batch_plan import plan_batches, pending_batches
from subqueue.core.error_codes import TranslationCancelled
from subqueue.core.models import BatchProgress, BatchRange, TranslationConfig
from subqueue.core.provider import BatchTranslationProvider, TranslateOptions
from subqueue.core.srt_parse import seconds_to_time, merge_srt
from subqueue.core.url_parse import video_key


@dataclass
class ProviderCall:
    video_url: str
    config: TranslationConfig
    options: TranslateOptions


def cue(start: float, end: float, text: str, number: int = 1) -> str:
    return f"{number}\n{seconds_to_time(start)} --> {seconds_to_time(end)}\n{text}\n"


class ScriptedProvider(BatchTranslationProvider):
    """
    Batch i of call n yields one cue "<config> call<n> b<i+1>" one second
    into the batch. Batches run one after another.
    """

    def __init__(self, gated: bool = False):
        self.gated = gated
        self.calls: list[ProviderCall] = []
        self.started: list[tuple[str, float]] = []
        self._permits = 0
        self._failures: dict[tuple[str, int], list] = {}

    # ── Test controls ─────────────────────────────────────────────────

    def release(self, count: int = 1):
        self._permits += count

    def open(self):
        """Stop gating; every waiting and future batch runs immediately."""
        self.gated = False

    def fail_at(self, video_url: str, batch_index: int, error: Exception, times: int = 1):
        self._failures[(video_key(video_url), batch_index)] = [error, times]

    def batches_for(self, video_url: str) -> list[float]:
        key = video_key(video_url)
        return [start for url, start in self.started if video_key(url) == key]

    # ── Provider ──────────────────────────────────────────────────────

    async def _gate(self, token):
        while self.gated and self._permits == 0:
            if token.is_cancelled:
                raise TranslationCancelled()
            await asyncio.sleep(0.001)
        if self.gated:
            self._permits -= 1
        await asyncio.sleep(0)

    def _failure(self, video_url: str, index: int):
        entry = self._failures.get((video_key(video_url), index))
        if not entry or entry[1] <= 0:
            return None
        entry[1] -= 1
        return entry[0]

    async def translate(self, video_url: str, config: TranslationConfig,
                        options: TranslateOptions) -> str:
        token = options.cancel_token
        token.raise_if_cancelled()
        self.calls.append(ProviderCall(video_url, config, options))
        call_no = len(self.calls)

        plan = plan_batches(options.duration, options.batch_settings,
                            options.range_start, options.range_end)
        todo = pending_batches(plan, options.skip_ranges)
        completed = len(plan) - len(todo)
        partial = options.existing_partial_srt or ""
        relative = []

        for idx, batch in todo:
            if options.on_batch_progress:
                options.on_batch_progress(BatchProgress(completed, len(plan), idx + 1), None)
            self.started.append((video_url, batch.start))
            await self._gate(token)
            token.raise_if_cancelled()

            error = self._failure(video_url, idx)
            if error is not None:
                raise error

            text = f"{config.name} call{call_no} b{idx + 1}"
            completed += 1
            if options.skip_timestamp_adjust:
                relative.append(cue(1, 2, text))
                if options.on_batch_progress:
                    options.on_batch_progress(BatchProgress(completed, len(plan), idx + 1), None)
                continue

            partial = merge_srt(partial, cue(batch.start + 1, batch.start + 2, text))
            progress = BatchProgress(completed, len(plan), idx + 1)
            if options.batch_settings.streaming_mode and options.on_batch_complete:
                options.on_batch_complete(BatchRange(batch.start, batch.end), partial, progress)
            elif options.on_batch_progress:
                options.on_batch_progress(progress, None)

        if options.skip_timestamp_adjust:
            return merge_srt(*relative)
        return partial


async def until(predicate, timeout: float = 2.0):
    """Poll the event loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not reached in time")
        await asyncio.sleep(0.001)
