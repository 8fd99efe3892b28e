"""
Representative sample selection for the CRF search.

Short inputs are searched on the full input. Longer inputs are searched on a
sample made of fixed-length clips taken once every ``sample_every`` seconds,
stream-copied and joined into one reference file.
"""

import threading
from pathlib import Path
from typing import List, Optional

from ..analysis.media_utils import extract_clip, get_duration_sec
from ..processing.concatenator import concat_files
from ..system.system_utils import remove_files
from ...errors import TaskCancelled
from ....utils.logging import get_logger

logger = get_logger("sampling")

SAMPLE_CLIP_DURATION = 20.0
# Sampling only pays off when the clips cover at most this share of the input
MAX_SAMPLE_COVERAGE = 0.5


def sample_positions(duration: float, sample_every: float,
                     clip_duration: float = SAMPLE_CLIP_DURATION) -> List[float]:
    """
    Clip start times, one centred in each ``sample_every`` window.

    Returns an empty list when sampling would cover too much of the input to
    be worth it; the caller then uses the whole input.
    """
    if duration <= 0 or sample_every <= 0:
        return []
    windows = int(duration // sample_every)
    if windows < 1 or windows * clip_duration > duration * MAX_SAMPLE_COVERAGE:
        return []
    offset = max(0.0, (sample_every - clip_duration) / 2)
    return [i * sample_every + offset for i in range(windows)]


class Sampler:
    """Capability interface: produce the reference the search encodes and measures."""

    def prepare(self, input_path: Path, workdir: Path, sample_every: float,
                cancel_event: Optional[threading.Event] = None) -> Path:
        raise NotImplementedError


class FullInputSampler(Sampler):
    """Always search on the complete input."""

    def prepare(self, input_path: Path, workdir: Path, sample_every: float,
                cancel_event: Optional[threading.Event] = None) -> Path:
        return input_path


class FFmpegSampler(Sampler):
    """Stream-copy clips at the sampling interval and join them into one sample."""

    def __init__(self, clip_duration: float = SAMPLE_CLIP_DURATION):
        self.clip_duration = clip_duration

    def prepare(self, input_path: Path, workdir: Path, sample_every: float,
                cancel_event: Optional[threading.Event] = None) -> Path:
        positions = sample_positions(get_duration_sec(input_path), sample_every, self.clip_duration)
        if not positions:
            return input_path

        clips: List[Path] = []
        try:
            for i, start in enumerate(positions):
                if cancel_event is not None and cancel_event.is_set():
                    raise TaskCancelled("Cancelled during sample extraction")
                clip = extract_clip(input_path, workdir / f"sample_clip_{i:03d}.mkv",
                                    start, self.clip_duration, cancel_event=cancel_event)
                if clip is not None:
                    clips.append(clip)

            if not clips:
                logger.warn(f"Sample extraction failed for {input_path.name}; using full input")
                return input_path

            sample = workdir / f"sample{input_path.suffix or '.mkv'}"
            concat_files(clips, sample, cancel_event=cancel_event)
            logger.search(f"{input_path.name}: searching on {len(clips)} x "
                          f"{self.clip_duration:.0f}s sample clips")
            return sample
        finally:
            remove_files(clips)
