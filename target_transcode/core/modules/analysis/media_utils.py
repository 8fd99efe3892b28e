"""
Media utilities for target_transcode.

This module provides media-specific utilities including:
- FFprobe operations for video metadata
- Frame-count probing with fallbacks
- Frame-accurate segment extraction for chunks
- Stream-copy clip extraction for search samples
"""

import subprocess
import threading
from pathlib import Path
from typing import Optional

from ..system.system_utils import run_cancellable, run_command, remove_path
from ...errors import EncodeFailed
from ....utils.logging import get_logger

logger = get_logger("media_utils")


def ffprobe_field(file: Path, key: str, section: str = "stream") -> Optional[str]:
    """Get a specific field from the first video stream (or the format) using ffprobe."""
    cmd = [
        "ffprobe", "-v", "error",
        "-select_streams", "v:0",
        "-show_entries", f"{section}={key}",
        "-of", "default=nk=1:nw=1",
        "-i", str(file)
    ]
    try:
        out = subprocess.check_output(cmd, stderr=subprocess.DEVNULL, text=True).strip()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None
    # Several lines come back for multi-stream containers; first one wins
    out = out.splitlines()[0].strip() if out else ""
    return out if out and out.lower() not in ("unknown", "n/a") else None


def get_duration_sec(file: Path) -> float:
    """Container duration in seconds, 0.0 when unknown."""
    value = ffprobe_field(file, "duration", section="format")
    try:
        return float(value) if value else 0.0
    except ValueError:
        return 0.0


def _parse_rate(rate: Optional[str]) -> float:
    if not rate:
        return 0.0
    try:
        if "/" in rate:
            num, den = rate.split("/", 1)
            return float(num) / float(den) if float(den) else 0.0
        return float(rate)
    except ValueError:
        return 0.0


def get_fps(file: Path) -> float:
    """Frames per second of the first video stream, 0.0 when unknown."""
    return _parse_rate(ffprobe_field(file, "r_frame_rate"))


def get_frame_count(file: Path) -> int:
    """
    Total frame count, trying the cheapest sources first:
    stream nb_frames, the NUMBER_OF_FRAMES container tag, then duration * fps.
    Returns 0 when nothing is known.
    """
    for key, section in (("nb_frames", "stream"), ("NUMBER_OF_FRAMES", "stream_tags")):
        value = ffprobe_field(file, key, section=section)
        if value and value.isdigit() and int(value) > 0:
            return int(value)

    duration = get_duration_sec(file)
    fps = get_fps(file)
    return int(round(duration * fps)) if duration > 0 and fps > 0 else 0


def get_video_codec(file: Path) -> Optional[str]:
    """Codec name of the first video stream, None when it cannot be probed."""
    cmd = [
        "ffprobe", "-v", "quiet", "-select_streams", "v:0",
        "-show_entries", "stream=codec_name", "-of", "csv=p=0",
        str(file)
    ]
    try:
        result = run_command(cmd)
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    codec = result.stdout.strip().splitlines()[0].strip() if result.stdout.strip() else ""
    return codec.lower() or None


def get_bitrate_kbps(file: Path) -> float:
    """Overall bitrate in kbit/s (container first, then video stream), 0.0 when unknown."""
    for section in ("format", "stream"):
        value = ffprobe_field(file, "bit_rate", section=section)
        try:
            if value and float(value) > 0:
                return float(value) / 1000.0
        except ValueError:
            continue
    return 0.0


def get_file_size(file: Path) -> int:
    try:
        return file.stat().st_size
    except OSError:
        return 0


def extract_segment(input_file: Path, output_file: Path, start: float, end: float,
                    cancel_event: Optional[threading.Event] = None) -> Path:
    """
    Cut [start, end) out of the source as a lossless, frame-accurate video-only file.

    Chunks are re-encoded from these segments, so the cut must not snap to
    keyframes; FFV1 keeps it lossless.
    """
    cmd = [
        "ffmpeg", "-hide_banner", "-y", "-loglevel", "error",
        "-ss", f"{start:.6f}",
        "-i", str(input_file),
        "-t", f"{end - start:.6f}",
        "-map", "0:v:0",
        "-c:v", "ffv1", "-level", "3",
        "-an", "-sn", "-dn",
        str(output_file)
    ]
    try:
        result = run_cancellable(cmd, cancel_event=cancel_event, stream="stderr")
    except OSError as e:
        remove_path(output_file)
        raise EncodeFailed(f"Cannot run ffmpeg to extract {input_file.name}: {e}", command=cmd) from e
    except BaseException:
        remove_path(output_file)
        raise
    if result.returncode != 0 or not output_file.exists():
        remove_path(output_file)
        raise EncodeFailed(f"Segment extraction failed for {input_file.name} "
                           f"[{start:.3f}-{end:.3f}]", command=cmd, output=result.stderr)
    return output_file


def extract_clip(input_file: Path, output_file: Path, start: float, duration: float,
                 cancel_event: Optional[threading.Event] = None) -> Optional[Path]:
    """Stream-copy a clip (keyframe aligned); returns None on failure."""
    cmd = [
        "ffmpeg", "-hide_banner", "-y", "-loglevel", "error",
        "-ss", str(start),
        "-i", str(input_file),
        "-t", str(duration),
        "-map", "0:v:0",
        "-c", "copy",
        str(output_file)
    ]
    try:
        result = run_cancellable(cmd, cancel_event=cancel_event, stream="stderr")
    except OSError as e:
        logger.warn(f"Cannot run ffmpeg for clip extraction: {e}")
        remove_path(output_file)
        return None
    except BaseException:
        remove_path(output_file)
        raise
    if result.returncode != 0 or not output_file.exists():
        logger.debug(f"clip extract stderr:\n{result.stderr}")
        remove_path(output_file)
        return None
    return output_file
