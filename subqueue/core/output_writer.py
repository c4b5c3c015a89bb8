"""
Output writer: exports saved translations as .srt files.
"""

import logging
from pathlib import Path

from subqueue.core.security_utils import safe_output_path

logger = logging.getLogger(__name__)


def write_srt(srt_content: str, export_root: Path, title: str, video_key: str,
              suffix: str = "") -> Path:
    """
    Write subtitles to <ExportRoot>/<SanitizedTitle>/<video_key><suffix>.srt
    Returns the path to the written file.
    """
    folder = safe_output_path(export_root, title, video_key)
    folder.mkdir(parents=True, exist_ok=True)

    output_file = folder / f"{video_key}{suffix}.srt"
    output_file.write_text(srt_content, encoding='utf-8')

    logger.info("Wrote subtitles: %s", output_file)
    return output_file


def srt_exists(export_root: Path, video_key: str) -> bool:
    """Check <ExportRoot>/**/<video_key>.srt for a previous export."""
    return any(export_root.glob(f"**/{video_key}.srt"))
