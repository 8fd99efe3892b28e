"""
Scene-change detection through ffmpeg's scene score and showinfo filters.
"""

import re
import threading
from pathlib import Path
from typing import List, Optional

from ..system.system_utils import run_cancellable
from ...errors import SceneDetectionUnavailable
from ....utils.logging import get_logger

logger = get_logger("scene_detector")

DEFAULT_SCENE_THRESHOLD = 0.4

_PTS_TIME_RE = re.compile(r"pts_time:\s*([0-9]+(?:\.[0-9]+)?)")


def parse_scene_times(lines: List[str]) -> List[float]:
    """Extract cut timestamps from showinfo output, sorted and de-duplicated."""
    times = set()
    for line in lines:
        if "Parsed_showinfo" not in line and "pts_time:" not in line:
            continue
        match = _PTS_TIME_RE.search(line)
        if match:
            times.add(float(match.group(1)))
    return sorted(t for t in times if t > 0)


def detect_scene_changes(input_file: Path, threshold: float = DEFAULT_SCENE_THRESHOLD,
                         cancel_event: Optional[threading.Event] = None) -> List[float]:
    """Return the timestamps (seconds) where the content cuts."""
    cmd = [
        "ffmpeg", "-hide_banner", "-nostdin",
        "-i", str(input_file),
        "-map", "0:v:0",
        "-vf", f"select='gt(scene,{threshold})',showinfo",
        "-f", "null", "-"
    ]
    try:
        result = run_cancellable(cmd, cancel_event=cancel_event, stream="stderr")
    except FileNotFoundError as e:
        raise SceneDetectionUnavailable(f"ffmpeg not available: {e}", command=cmd) from e

    if result.returncode != 0:
        raise SceneDetectionUnavailable(
            f"Scene detection failed for {input_file.name} (exit {result.returncode})",
            command=cmd, output=result.stderr)

    times = parse_scene_times((result.stderr or "").splitlines())
    logger.debug(f"Detected {len(times)} scene changes in {input_file.name}")
    return times
