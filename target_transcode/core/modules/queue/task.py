"""
Task model for the queue: configuration, lifecycle status and progress snapshot.
"""

import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import psutil

from ..analysis.quality_prober import POOL_METHODS
from ..encoder_config import ENCODER_PARAMS, ENCODER_PRESETS, ENCODERS
from ..optimization.crf_search import SearchParams
from ...errors import TaskConfigError
from ....utils.logging import format_duration

MODES = ("default", "chunked")
MAX_CRF_LIMIT = 63
MAX_SUBSAMPLE = 100


class TaskStatus(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


def default_output_path(input_path: Path, encoder: str, target: float, pool: str,
                        subsample: int, output_dir: Optional[Path] = None) -> Path:
    """<stem>.<encoder>.vmaf<target>.<pool>.subsample<n>.<ext> next to the input or in output_dir."""
    ext = input_path.suffix.lstrip(".") or "mkv"
    name = f"{input_path.stem}.{encoder}.vmaf{target:g}.{pool}.subsample{subsample}.{ext}"
    return (output_dir or input_path.parent) / name


@dataclass
class TaskConfig:
    """Per-task configuration record."""
    input_path: Path
    output_path: Optional[Path] = None
    output_dir: Optional[Path] = None
    encoder: str = "libx265"
    mode: str = "default"
    vmaf_target: float = 97.0
    max_crf: int = 28
    vmaf_pool: str = "mean"
    vmaf_threads: int = 2
    vmaf_subsample: int = 1
    pix_fmt: str = "yuv420p10le"
    preset: Optional[str] = None
    params: Optional[str] = None
    scene_split_min: float = 2.0
    sample_every: float = 180.0
    fixed_quality: Optional[int] = None

    def __post_init__(self):
        self.input_path = Path(self.input_path)
        if self.output_dir is not None:
            self.output_dir = Path(self.output_dir)
        if self.preset is None:
            self.preset = ENCODER_PRESETS.get(self.encoder, "")
        if self.params is None:
            self.params = ENCODER_PARAMS.get(self.encoder, "")
        if self.output_path is None:
            self.output_path = default_output_path(self.input_path, self.encoder, self.vmaf_target,
                                                   self.vmaf_pool, self.vmaf_subsample, self.output_dir)
        else:
            self.output_path = Path(self.output_path)

    @property
    def min_crf(self) -> int:
        return 0

    def validate(self) -> "TaskConfig":
        if self.encoder not in ENCODERS:
            raise TaskConfigError(f"Unknown encoder '{self.encoder}', expected one of {', '.join(ENCODERS)}")
        if self.mode not in MODES:
            raise TaskConfigError(f"Unknown mode '{self.mode}', expected one of {', '.join(MODES)}")
        if self.vmaf_pool not in POOL_METHODS:
            raise TaskConfigError(f"Unknown pool method '{self.vmaf_pool}'")
        if not 0 < self.vmaf_target <= 100:
            raise TaskConfigError(f"Target score must be in (0, 100], got {self.vmaf_target}")
        if not self.min_crf <= self.max_crf <= MAX_CRF_LIMIT:
            raise TaskConfigError(f"max_crf must be in [{self.min_crf}, {MAX_CRF_LIMIT}], got {self.max_crf}")
        cores = psutil.cpu_count(logical=True) or 1
        if not 1 <= self.vmaf_threads <= cores:
            raise TaskConfigError(f"vmaf_threads must be in [1, {cores}], got {self.vmaf_threads}")
        if not 1 <= self.vmaf_subsample <= MAX_SUBSAMPLE:
            raise TaskConfigError(f"vmaf_subsample must be in [1, {MAX_SUBSAMPLE}], got {self.vmaf_subsample}")
        if self.scene_split_min <= 0:
            raise TaskConfigError("scene_split_min must be > 0")
        if self.sample_every <= 0:
            raise TaskConfigError("sample_every must be > 0")
        if self.fixed_quality is not None and not 0 <= self.fixed_quality <= MAX_CRF_LIMIT:
            raise TaskConfigError(f"fixed_quality must be in [0, {MAX_CRF_LIMIT}]")
        if self.output_path.resolve() == self.input_path.resolve():
            raise TaskConfigError("Output path must differ from the input path")
        return self

    @classmethod
    def from_config(cls, config: Dict[str, Any], input_path: Path, **overrides) -> "TaskConfig":
        """Build a validated task configuration from get_config() values plus overrides."""
        values = {
            "encoder": config.get("encoder", "libx265"),
            "mode": config.get("mode", "default"),
            "vmaf_target": float(config.get("vmaf_target", 97.0)),
            "max_crf": int(config.get("max_crf", 28)),
            "vmaf_pool": config.get("vmaf_pool", "mean"),
            "vmaf_threads": int(config.get("vmaf_threads", 2)),
            "vmaf_subsample": int(config.get("vmaf_subsample", 1)),
            "pix_fmt": config.get("pix_fmt", "yuv420p10le"),
            "scene_split_min": float(config.get("scene_split_min", 2.0)),
            "sample_every": float(config.get("sample_every", 180.0)),
        }
        values.update(overrides)
        return cls(input_path=Path(input_path), **values).validate()

    def search_params(self) -> SearchParams:
        return SearchParams(
            target=self.vmaf_target,
            min_bound=self.min_crf,
            max_bound=self.max_crf,
            encoder=self.encoder,
            preset=self.preset,
            extra_params=self.params,
            pix_fmt=self.pix_fmt,
            pool_method=self.vmaf_pool,
            thread_count=self.vmaf_threads,
            subsample_stride=self.vmaf_subsample,
            sample_every=self.sample_every,
        )


@dataclass(frozen=True)
class ProgressSnapshot:
    """Immutable progress view of one task; replaced wholesale on every update."""
    task_id: str
    fps: float = 0.0
    frame: int = 0
    frames: Optional[int] = None
    percentage: float = 0.0
    eta: Optional[float] = None
    size: int = 0
    expected_size: Optional[int] = None
    current_file_count: int = 0
    total_files: int = 0
    current_file_name: str = ""
    stage: str = "queued"

    def advance(self, frame: int, fps: float, size: int) -> "ProgressSnapshot":
        """New snapshot for an encode report; derives percentage, ETA and expected size."""
        percentage, eta, expected = self.percentage, None, None
        if self.frames:
            percentage = min(100.0, frame * 100.0 / self.frames)
            if fps > 0:
                eta = max(0.0, (self.frames - frame) / fps)
            if frame > 0:
                expected = int(size * self.frames / frame)
        return replace(self, frame=frame, fps=fps, size=size, percentage=percentage,
                       eta=eta, expected_size=expected)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.task_id,
            "fps": self.fps,
            "frame": self.frame,
            "frames": self.frames or 0,
            "percentage": round(self.percentage, 2),
            "eta": format_duration(self.eta) if self.eta is not None else "",
            "size": self.size,
            "expected_size": self.expected_size or 0,
            "current_file_count": self.current_file_count,
            "total_files": self.total_files,
            "current_file_name": self.current_file_name,
            "stage": self.stage,
        }


@dataclass(frozen=True)
class TaskSummary:
    id: str
    input_path: Path
    output_path: Path
    mode: str
    encoder: str
    status: TaskStatus
    error: Optional[str] = None
    quality_param: Optional[int] = None
    warning: Optional[str] = None


def new_task_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class Task:
    """One unit of queued work. Mutated only by the Scheduler and the runner it drives."""
    config: TaskConfig
    id: str = field(default_factory=new_task_id)
    status: TaskStatus = TaskStatus.QUEUED
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None
    warning: Optional[str] = None
    quality_param: Optional[int] = None
    current_file_count: int = 0
    total_files: int = 0
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    done_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def initial_snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(task_id=self.id, current_file_count=self.current_file_count,
                                total_files=self.total_files,
                                current_file_name=self.config.input_path.name)

    def summary(self) -> TaskSummary:
        return TaskSummary(
            id=self.id,
            input_path=self.config.input_path,
            output_path=self.config.output_path,
            mode=self.config.mode,
            encoder=self.config.encoder,
            status=self.status,
            error=self.error,
            quality_param=self.quality_param,
            warning=self.warning,
        )
