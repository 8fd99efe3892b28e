"""
Runs one Task through its execution path.

Default mode searches the quality parameter on the input (or a sample of it)
and then encodes the whole input once, keeping audio and subtitle streams.
Chunked mode hands the task to the Chunk Pipeline. Every temp file lives in
the task's namespaced workdir, which is removed before ``run`` returns on
every path, including cancellation.
"""

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Optional

from .progress_board import ProgressBoard
from .task import Task
from ..analysis.media_utils import get_frame_count
from ..analysis.quality_prober import QualityProber
from ..optimization.crf_search import CrfSearchEngine, DEFAULT_MAX_ITERATIONS
from ..optimization.sampling import FFmpegSampler, Sampler
from ..optimization.scene_splitter import SceneSplitter
from ..processing.chunk_pipeline import ChunkPipeline
from ..processing.encode_runner import EncodeProgress, EncodeRunner
from ..system.system_utils import make_task_workdir, remove_path
from ...errors import TargetUnreachable
from ....utils.logging import get_logger

logger = get_logger("task_runner")


@dataclass
class RunOutcome:
    output: Path
    quality_param: Optional[int]
    warning: Optional[TargetUnreachable] = None


class TaskRunner:

    def __init__(self, encoder: EncodeRunner, prober: QualityProber,
                 sampler: Optional[Sampler] = None, splitter: Optional[SceneSplitter] = None,
                 max_search_iterations: int = DEFAULT_MAX_ITERATIONS, max_chunk_workers: int = 2,
                 frame_probe: Callable[[Path], int] = get_frame_count,
                 temp_root: Optional[Path] = None, show_progress: bool = False,
                 pipeline_factory: Optional[Callable[..., ChunkPipeline]] = None):
        self.encoder = encoder
        self.prober = prober
        self.search_engine = CrfSearchEngine(encoder, prober, sampler=sampler or FFmpegSampler(),
                                             max_iterations=max_search_iterations)
        self.splitter = splitter or SceneSplitter()
        self.max_chunk_workers = max_chunk_workers
        self.frame_probe = frame_probe
        self.temp_root = temp_root
        self.show_progress = show_progress
        self.pipeline_factory = pipeline_factory or ChunkPipeline

    def workdir_for(self, task: Task) -> Path:
        return make_task_workdir(task.id, self.temp_root)

    def run(self, task: Task, board: ProgressBoard) -> RunOutcome:
        config = task.config
        workdir = self.workdir_for(task)

        def on_encode(report: EncodeProgress):
            board.update(task.id, lambda s: s.advance(report.frame, report.fps, report.size))

        try:
            frames = self.frame_probe(config.input_path) or None
            board.update(task.id, lambda s: replace(s, frames=frames, stage="starting"))
            if config.mode == "chunked":
                return self._run_chunked(task, board, workdir, on_encode)
            return self._run_default(task, board, workdir, on_encode)
        finally:
            remove_path(workdir)

    def _run_default(self, task: Task, board: ProgressBoard, workdir: Path,
                     on_encode: Callable[[EncodeProgress], None]) -> RunOutcome:
        config = task.config
        params = config.search_params()
        warning = None

        if config.fixed_quality is not None:
            quality = config.fixed_quality
        else:
            board.update(task.id, lambda s: replace(s, stage="searching"))
            result = self.search_engine.search(
                config.input_path, params, workdir / "search", cancel_event=task.cancel_event,
                on_iteration=lambda state: board.update(
                    task.id, lambda s: replace(s, stage=f"searching q={state.candidate}")))
            quality, warning = result.quality_param, result.warning

        board.update(task.id, lambda s: replace(s, stage="encoding", frame=0, size=0, percentage=0.0))
        logger.encode(f"{config.input_path.name}: encoding with {config.encoder} at q={quality}")

        output = config.output_path
        part = output.with_name(f"{output.stem}.part{output.suffix}")
        try:
            self.encoder.encode(config.input_path, part, config.encoder, quality, config.preset,
                                config.params, config.pix_fmt, progress_callback=on_encode,
                                cancel_event=task.cancel_event, copy_streams=True)
            part.replace(output)
        except BaseException:
            remove_path(part)
            raise

        return RunOutcome(output=output, quality_param=quality, warning=warning)

    def _run_chunked(self, task: Task, board: ProgressBoard, workdir: Path,
                     on_encode: Callable[[EncodeProgress], None]) -> RunOutcome:
        config = task.config
        board.update(task.id, lambda s: replace(s, stage="chunking"))
        pipeline = self.pipeline_factory(
            self.encoder,
            search_engine=self.search_engine,
            splitter=self.splitter,
            max_workers=self.max_chunk_workers,
            show_progress=self.show_progress,
        )
        result = pipeline.run(config.input_path, config.output_path, config.search_params(), workdir,
                              min_chunk_duration=config.scene_split_min,
                              fixed_quality=config.fixed_quality,
                              cancel_event=task.cancel_event,
                              progress_callback=on_encode)
        qualities = sorted(result.qualities.values())
        quality = qualities[len(qualities) // 2] if qualities else None
        warning = result.warnings[0] if result.warnings else None
        return RunOutcome(output=result.output, quality_param=quality, warning=warning)
