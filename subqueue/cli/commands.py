"""
SubtitleQueue command-line interface.
Builds the service graph (store, executor, scheduler) and maps each
subcommand onto a scheduler or executor operation. Commands that start work
wait until the queue is idle; Ctrl-C stops everything and keeps the
committed batches for a later resume.
"""

import argparse
import asyncio
import getpass
import logging
import signal
import sys
from pathlib import Path
from typing import Optional, Sequence

from subqueue.core.background import BackgroundKeeper, CaffeinateKeeper
from subqueue.core.config import AppConfig
from subqueue.core.constants import (
    APP_NAME, APP_VERSION, LOG_DIR, ErrorCode, JobSource, JobStatus, QueueStatus,
    RetranslateMode,
)
from subqueue.core.db_sqlite import Database
from subqueue.core.error_codes import JobError, ConfigNotSelectedError
from subqueue.core.executor import JobExecutor
from subqueue.core.gemini_provider import GeminiProvider
from subqueue.core.models import Job, QueueItem, ResumeData
from subqueue.core.notifications import (
    NotificationService, NotificationSettings, DesktopNotifier,
)
from subqueue.core.output_writer import write_srt
from subqueue.core.provider import BatchTranslationProvider
from subqueue.core.scheduler import QueueScheduler
from subqueue.core.security_utils import keychain_delete_api_key, keychain_set_api_key
from subqueue.core.translation_store import TranslationStore
from subqueue.core.url_parse import parse_input_file, validate_youtube_url, video_key
from subqueue.core.yt_metadata import get_video_info

logger = logging.getLogger(__name__)


# ── Logging ───────────────────────────────────────────────────────────

def configure_logging(verbose: bool = False, log_dir: Path = LOG_DIR):
    """File log under ~/Library/Logs/SubtitleQueue; --verbose mirrors it to stderr."""
    log_dir.mkdir(parents=True, exist_ok=True)
    handlers: list[logging.Handler] = [
        logging.FileHandler(log_dir / "app.log", encoding="utf-8"),
    ]
    if verbose:
        handlers.append(logging.StreamHandler(sys.stderr))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


# ── Composition root ──────────────────────────────────────────────────

class App:
    """Owns every service; tests pass a fake provider and in-memory paths."""

    def __init__(self, db_path: Path | str | None = None, config_path: Path | None = None,
                 provider: BatchTranslationProvider | None = None,
                 notifier: NotificationService | None = None,
                 keeper: BackgroundKeeper | None = None):
        self.config = AppConfig(config_path)
        self.db = Database(db_path)
        self.translations = TranslationStore(self.db)
        self.notifier = notifier or DesktopNotifier(
            NotificationSettings.from_dict(self.config.notifications))
        self.keeper = keeper or CaffeinateKeeper()
        self.provider = provider or GeminiProvider(
            api_base=self.config.gemini_api_base,
            timeout_sec=self.config.request_timeout_sec,
        )
        self.executor = JobExecutor(self.provider, self.translations, self.notifier, self.keeper)
        self.scheduler = QueueScheduler(self.db, self.executor, self.translations, self.config,
                                        self.notifier, self.keeper)

    def close(self):
        self.scheduler.close()
        self.db.close()


# ── Argument parsing ──────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="subqueue",
        description=f"{APP_NAME}: queue and translate YouTube videos into SRT subtitles.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log to stderr as well.")
    parser.add_argument("--db", help="Override the store path.")
    parser.add_argument("--config", help="Override the config file path.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("add", help="Add videos to the queue")
    p.add_argument("urls", nargs="*", help="YouTube URLs")
    p.add_argument("--file", help="Text file with one URL per line")
    p.add_argument("--title", default="", help="Title (single URL only)")
    p.add_argument("--duration", type=float, help="Duration in seconds (single URL only)")
    p.add_argument("--probe", action="store_true", help="Fetch title and duration with yt-dlp")

    p = sub.add_parser("list", help="Show the queue")
    p.add_argument("--status", default="all", choices=("all",) + QueueStatus.ALL)
    p.add_argument("--page", type=int, default=1)

    for name, help_text in (("start", "Translate one queue item now"),
                            ("resume", "Resume a paused item from its last batch"),
                            ("requeue", "Move an item back to pending, dropping partial data"),
                            ("remove", "Remove an item, stopping it if running")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("item", help="Item id, id prefix or video URL")
        if name == "start":
            p.add_argument("--force", action="store_true",
                           help="Retranslate a completed item with the active config")

    sub.add_parser("start-all", help="Translate every pending and failed item in order")
    sub.add_parser("resume-all", help="Resume every paused item")

    p = sub.add_parser("translate", help="Translate a video directly, outside the queue")
    p.add_argument("url")
    p.add_argument("--title", default="")
    p.add_argument("--duration", type=float)
    p.add_argument("--probe", action="store_true")
    p.add_argument("--force", action="store_true", help="Ignore any saved partial result")

    p = sub.add_parser("retranslate", help="Retranslate one batch of a saved translation")
    p.add_argument("url")
    p.add_argument("batch", type=int, help="Batch number, starting at 1")
    p.add_argument("--mode", default=RetranslateMode.SINGLE,
                   choices=(RetranslateMode.SINGLE, RetranslateMode.FROM_HERE))
    p.add_argument("--translation-id")

    p = sub.add_parser("translations", help="List or manage saved translations of a video")
    p.add_argument("url")
    p.add_argument("--activate", metavar="ID")
    p.add_argument("--delete", metavar="ID")

    p = sub.add_parser("export", help="Write a saved translation to an .srt file")
    p.add_argument("url")
    p.add_argument("--translation-id")
    p.add_argument("--out", help="Export root (default from config)")

    p = sub.add_parser("config-add", help="Create a translation config")
    p.add_argument("name")
    p.add_argument("--model")
    p.add_argument("--temperature", type=float)
    p.add_argument("--prompt", help="System prompt text")
    p.add_argument("--prompt-file", help="Read the system prompt from a file")
    p.add_argument("--thinking-budget", type=int)
    p.add_argument("--media-resolution", choices=("low", "medium", "high"))
    p.add_argument("--preset")
    p.add_argument("--no-activate", action="store_true")

    p = sub.add_parser("config-use", help="Select the active translation config")
    p.add_argument("config", help="Config name or id")

    p = sub.add_parser("set-key", help="Store or remove the Gemini API key in the Keychain")
    p.add_argument("key", nargs="?", help="API key (prompted when omitted)")
    p.add_argument("--delete", action="store_true", help="Remove the stored key instead")
    return parser


# ── Output helpers ────────────────────────────────────────────────────

def _print_item(item: QueueItem):
    progress = ""
    if item.progress_total:
        progress = f" [{item.progress_completed}/{item.progress_total}]"
    elif item.completed_batches:
        progress = f" [{item.completed_batches}/{item.total_batches} kept]"
    flags = " (paused by user)" if item.user_paused and item.status != QueueStatus.COMPLETED else ""
    print(f"{item.id[:8]}  {item.status:<11} {item.title}{progress}{flags}")
    if item.error:
        print(f"          {item.error}")


def _resolve_item(scheduler: QueueScheduler, ref: str) -> QueueItem:
    item = scheduler.get_item(ref)
    if item is None:
        matches = [i for i in scheduler.items if i.id.startswith(ref)]
        if len(matches) == 1:
            item = matches[0]
    if item is None:
        try:
            item = scheduler.find_by_url(ref)
        except JobError:
            item = None
    if item is None:
        raise JobError(ErrorCode.ITEM_NOT_FOUND, f"No queue item matches {ref!r}")
    return item


def _progress_printer():
    last = {}

    def on_job(job: Optional[Job]):
        if job is None or job.progress is None:
            return
        state = (job.id, job.status, job.progress.completed_batches, job.key_status)
        if last.get('state') == state:
            return
        last['state'] = state
        label = job.title or job.video_url
        if job.status == JobStatus.PROCESSING:
            extra = f" ({job.key_status})" if job.key_status else ""
            print(f"  {label}: {job.progress.completed_batches}/{job.progress.total_batches} "
                  f"batches{extra}")
        elif job.status == JobStatus.COMPLETED:
            print(f"  {label}: done")
        else:
            print(f"  {label}: {job.error}")
    return on_job


async def _wait(app: App):
    """Wait for the queue to drain; Ctrl-C stops all work."""
    loop = asyncio.get_running_loop()

    def interrupt():
        print("\nStopping, committed batches are kept...")
        app.scheduler.stop_all()
        app.executor.abort()

    try:
        loop.add_signal_handler(signal.SIGINT, interrupt)
    except (NotImplementedError, RuntimeError):
        pass
    unsubscribe = app.executor.subscribe(_progress_printer())
    try:
        await app.scheduler.wait_idle()
    finally:
        unsubscribe()
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def _report(result, item: QueueItem) -> int:
    if not result.success:
        print(f"Not started ({result.reason}): {item.title}")
        return 1
    if result.queued:
        print(f"Waiting for the current translation: {item.title}")
    return 0


# ── Commands ──────────────────────────────────────────────────────────

async def cmd_add(app: App, args) -> int:
    urls = list(args.urls)
    if args.file:
        urls.extend(parse_input_file(args.file))
    if not urls:
        print("No URLs given")
        return 1
    for url in urls:
        title, duration = (args.title, args.duration) if len(urls) == 1 else ("", None)
        if args.probe:
            title, duration = get_video_info(url)
        result = app.scheduler.add_to_queue(url, title, duration)
        state = "already queued" if result.is_existing else "added"
        print(f"{result.item.id[:8]}  {state}: {result.item.title}")
    return 0


async def cmd_list(app: App, args) -> int:
    page = app.scheduler.get_items_by_status(args.status, args.page)
    for item in page.items:
        _print_item(item)
    counts = app.scheduler.get_counts()
    print(f"-- page {page.page}/{page.total_pages}, {page.total} items  "
          + " ".join(f"{s}={counts[s]}" for s in QueueStatus.ALL))
    return 0


async def cmd_start(app: App, args) -> int:
    item = _resolve_item(app.scheduler, args.item)
    code = _report(app.scheduler.start_translation(item.id, force_retranslate=args.force), item)
    await _wait(app)
    return code


async def cmd_resume(app: App, args) -> int:
    item = _resolve_item(app.scheduler, args.item)
    code = _report(app.scheduler.resume_translation(item.id), item)
    await _wait(app)
    return code


async def cmd_start_all(app: App, args) -> int:
    result = app.scheduler.start_auto_process()
    if not result.success:
        print("Nothing to translate")
        return 0
    await _wait(app)
    return 0


async def cmd_resume_all(app: App, args) -> int:
    count = app.scheduler.resume_all_paused()
    print(f"Resuming {count} items")
    await _wait(app)
    return 0


async def cmd_requeue(app: App, args) -> int:
    item = _resolve_item(app.scheduler, args.item)
    if not app.scheduler.move_to_pending(item.id):
        print(f"Cannot requeue a running item: {item.title}")
        return 1
    print(f"Requeued: {item.title}")
    return 0


async def cmd_remove(app: App, args) -> int:
    item = _resolve_item(app.scheduler, args.item)
    app.scheduler.remove_from_queue(item.id)
    await app.scheduler.wait_idle()
    print(f"Removed: {item.title}")
    return 0


async def cmd_translate(app: App, args) -> int:
    url = args.url
    validate_youtube_url(url)
    title, duration = args.title, args.duration
    if args.probe:
        title, duration = get_video_info(url)
    config = app.config.get_active_config()

    resume = None
    if not args.force:
        partial = app.translations.get_partial_translation(url)
        if partial is not None and partial.completed_ranges:
            resume = ResumeData(partial.srt_content, partial.completed_ranges, partial.id)
            duration = duration or partial.video_duration
            print(f"Resuming from {len(partial.completed_ranges)} saved batches")

    app.scheduler.sync_direct_translation(url, title, duration, config.name,
                                          force_retranslate=args.force)
    unsubscribe = app.executor.subscribe(_progress_printer())
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, lambda: app.executor.abort(url))
    except (NotImplementedError, RuntimeError):
        pass
    try:
        job = await app.executor.start(url, config, title=title, duration=duration,
                                       batch_settings=app.config.get_batch_settings(),
                                       resume=resume, source=JobSource.DIRECT)
    finally:
        unsubscribe()
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
    await _wait(app)
    return 0 if job.status == JobStatus.COMPLETED else 1


async def cmd_retranslate(app: App, args) -> int:
    result = app.scheduler.retranslate_batch(args.url, args.batch - 1, args.mode,
                                             translation_id=args.translation_id)
    if not result.success:
        print(f"Not started ({result.reason})")
        return 1
    await _wait(app)
    return 0


async def cmd_translations(app: App, args) -> int:
    if args.activate:
        if not app.translations.set_active_translation(args.url, args.activate):
            print(f"No translation {args.activate}")
            return 1
    if args.delete:
        remaining = app.scheduler.delete_saved_translation(args.url, args.delete)
        print(f"Deleted, {remaining} remaining")

    record = app.translations.get_video_translations(args.url)
    if record is None or not record.translations:
        print("No saved translations")
        return 0
    active = record.active
    for t in record.translations:
        marker = "*" if active and t.id == active.id else " "
        kind = f"partial {t.completed_batches}/{t.total_batches}" if t.is_partial else "complete"
        print(f"{marker} {t.id}  {t.config_name:<16} {kind}")
    return 0


async def cmd_export(app: App, args) -> int:
    if args.translation_id:
        saved = app.translations.get_translation(args.url, args.translation_id)
    else:
        saved = app.translations.get_active_translation(args.url)
    if saved is None:
        print("No saved translation")
        return 1
    record = app.translations.get_video_translations(args.url)
    root = Path(args.out or app.config.export_root).expanduser()
    suffix = ".partial" if saved.is_partial else ""
    path = write_srt(saved.srt_content, root, record.title if record else "",
                     video_key(args.url), suffix)
    print(path)
    return 0


async def cmd_config_add(app: App, args) -> int:
    params = {}
    if args.model:
        params['model'] = args.model
    if args.temperature is not None:
        params['temperature'] = args.temperature
    if args.prompt_file:
        params['system_prompt'] = Path(args.prompt_file).read_text(encoding='utf-8')
    elif args.prompt:
        params['system_prompt'] = args.prompt
    if args.thinking_budget is not None:
        params['thinking_budget'] = args.thinking_budget
    if args.media_resolution:
        params['media_resolution'] = args.media_resolution
    if args.preset:
        params['preset_id'] = args.preset
    config = app.config.add_translation_config(args.name, make_active=not args.no_activate,
                                               **params)
    print(f"Created config {config.name} ({config.id})")
    return 0


async def cmd_config_use(app: App, args) -> int:
    config = app.config.find_config_by_name(args.config) or app.config.get_config(args.config)
    if config is None:
        raise ConfigNotSelectedError(f"Unknown translation config: {args.config}")
    app.config.active_config_id = config.id
    print(f"Active config: {config.name}")
    return 0


async def cmd_set_key(app: App, args) -> int:
    if args.delete:
        if not keychain_delete_api_key():
            print("No Keychain entry removed")
            return 1
        print("API key removed")
        return 0
    key = args.key or getpass.getpass("Gemini API key: ")
    if not key.strip():
        print("Empty key")
        return 1
    if not keychain_set_api_key(key.strip()):
        print("Could not write the Keychain entry")
        return 1
    print("API key saved")
    return 0


COMMANDS = {
    'add': cmd_add,
    'list': cmd_list,
    'start': cmd_start,
    'resume': cmd_resume,
    'start-all': cmd_start_all,
    'resume-all': cmd_resume_all,
    'requeue': cmd_requeue,
    'remove': cmd_remove,
    'translate': cmd_translate,
    'retranslate': cmd_retranslate,
    'translations': cmd_translations,
    'export': cmd_export,
    'config-add': cmd_config_add,
    'config-use': cmd_config_use,
    'set-key': cmd_set_key,
}


async def run_command(app: App, args) -> int:
    app.scheduler.initialize()
    return await COMMANDS[args.command](app, args)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    logger.info("%s %s: %s", APP_NAME, APP_VERSION, args.command)

    app = App(db_path=args.db, config_path=Path(args.config) if args.config else None)
    try:
        return asyncio.run(run_command(app, args))
    except JobError as e:
        logger.error("Command %s failed: %s", args.command, e)
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    finally:
        app.close()


if __name__ == "__main__":
    sys.exit(main())
