#!/usr/bin/env python3
"""
SubtitleQueue: main entry point.
Same as the `subqueue` console script, runnable straight from a checkout.
"""

import sys
import os
import logging
import traceback
from pathlib import Path

# ── Ensure Homebrew paths are in PATH ────────────────────────────────
# yt-dlp is usually installed through Homebrew, which a GUI-launched
# shell does not put on PATH.
HOMEBREW_PATHS = [
    "/opt/homebrew/bin",          # Apple Silicon default
    "/usr/local/bin",             # Intel Mac default
]

current_path = os.environ.get("PATH", "")
for p in HOMEBREW_PATHS:
    if os.path.isdir(p) and p not in current_path.split(os.pathsep):
        current_path = p + os.pathsep + current_path
os.environ["PATH"] = current_path

PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

logger = logging.getLogger("subqueue")


def main():
    from subqueue.cli.commands import main as run_cli
    try:
        return run_cli()
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        error_msg = f"{type(e).__name__}: {e}"
        logger.critical("Fatal error: %s\n%s", error_msg, traceback.format_exc())
        print(f"Fatal error: {error_msg}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
