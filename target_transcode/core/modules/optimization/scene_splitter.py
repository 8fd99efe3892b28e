"""
Scene Splitter

Turns scene-change timestamps into a ChunkPlan: contiguous, non-overlapping
chunks covering the whole source, each at least ``min_chunk_duration`` long
except possibly the last one. Falls back to fixed-duration chunks when no
scene information is available.
"""

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from ..analysis.media_utils import get_duration_sec
from ..analysis.scene_detector import detect_scene_changes
from ...errors import EncodeFailed, SceneDetectionUnavailable
from ....utils.logging import get_logger

logger = get_logger("scene_splitter")


@dataclass(frozen=True)
class ChunkDescriptor:
    index: int
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class ChunkPlan:
    chunks: tuple
    source_duration: float
    from_scenes: bool = True

    def __len__(self):
        return len(self.chunks)

    def __iter__(self):
        return iter(self.chunks)

    @property
    def total_duration(self) -> float:
        return sum(c.duration for c in self.chunks)


def merge_boundaries(cuts: Sequence[float], duration: float, min_chunk_duration: float) -> List[float]:
    """
    Boundaries [0, ..., duration] with micro-scenes merged into their predecessor.

    A cut is kept only if it lies at least ``min_chunk_duration`` after the
    previous kept boundary.
    """
    boundaries = [0.0]
    for cut in sorted(cuts):
        if cut <= 0 or cut >= duration:
            continue
        if cut - boundaries[-1] >= min_chunk_duration:
            boundaries.append(cut)
    boundaries.append(duration)
    return boundaries


def fixed_boundaries(duration: float, chunk_duration: float) -> List[float]:
    boundaries = [0.0]
    step = 1
    while step * chunk_duration < duration:
        boundaries.append(step * chunk_duration)
        step += 1
    boundaries.append(duration)
    return boundaries


def plan_from_boundaries(boundaries: Sequence[float], from_scenes: bool = True) -> ChunkPlan:
    chunks = tuple(ChunkDescriptor(index=i, start=start, end=end)
                   for i, (start, end) in enumerate(zip(boundaries, boundaries[1:])))
    return ChunkPlan(chunks=chunks, source_duration=boundaries[-1], from_scenes=from_scenes)


class SceneSplitter:
    """Plans chunk boundaries for the chunk pipeline."""

    def __init__(self, detector: Callable[..., List[float]] = detect_scene_changes,
                 duration_probe: Callable[[Path], float] = get_duration_sec):
        self.detector = detector
        self.duration_probe = duration_probe

    def plan(self, input_path: Path, min_chunk_duration: float,
             cancel_event: Optional[threading.Event] = None) -> ChunkPlan:
        if min_chunk_duration <= 0:
            raise ValueError("min_chunk_duration must be > 0")

        duration = self.duration_probe(input_path)
        if duration <= 0:
            raise EncodeFailed(f"Cannot determine duration of {input_path.name}")

        try:
            cuts = self.detector(input_path, cancel_event=cancel_event)
        except SceneDetectionUnavailable as e:
            logger.warn(f"Scene detection unavailable for {input_path.name} ({e.message}); "
                        f"using fixed {min_chunk_duration:g}s chunks")
            cuts = []

        if cuts:
            plan = plan_from_boundaries(merge_boundaries(cuts, duration, min_chunk_duration))
        else:
            plan = plan_from_boundaries(fixed_boundaries(duration, min_chunk_duration), from_scenes=False)

        logger.chunk(f"{input_path.name}: {len(plan)} chunks "
                     f"({'scene-aligned' if plan.from_scenes else 'fixed-duration'}, "
                     f"min {min_chunk_duration:g}s)")
        return plan
