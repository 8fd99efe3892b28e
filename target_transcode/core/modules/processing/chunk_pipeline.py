"""
Chunk Pipeline

Chunked mode for one task:
- Plan scene-aligned chunks with the Scene Splitter
- Per chunk, cut a lossless segment, search its quality parameter (or use a
  fixed one) and encode it, on a bounded worker pool, shortest chunks first
- Concatenate chunk outputs in sequence order with stream copy, keeping the
  source's audio and subtitle streams
- Any fatal chunk error cancels the siblings, deletes every intermediate and
  fails the whole task without a final artifact
"""

import concurrent.futures
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .concatenator import concat_files, order_by_sequence
from .encode_runner import EncodeProgress, EncodeRunner
from ..analysis.media_utils import extract_segment, get_fps
from ..optimization.crf_search import CrfSearchEngine, SearchParams
from ..optimization.scene_splitter import ChunkDescriptor, ChunkPlan, SceneSplitter
from ..system.system_utils import remove_path
from ...errors import PartialChunkFailure, TargetUnreachable, TaskCancelled
from ....utils.logging import create_progress_bar, get_logger

logger = get_logger("chunk_pipeline")

GOP_SECONDS = 10
WAIT_INTERVAL = 0.1


@dataclass
class ChunkOutcome:
    index: int
    output: Path
    quality_param: int
    warning: Optional[TargetUnreachable] = None


@dataclass
class ChunkPipelineResult:
    output: Path
    plan: ChunkPlan
    qualities: Dict[int, int] = field(default_factory=dict)
    warnings: List[TargetUnreachable] = field(default_factory=list)


class _ProgressAggregator:
    """Sums the latest per-chunk encode reports into one task-level report."""

    def __init__(self, callback: Optional[Callable[[EncodeProgress], None]]):
        self._callback = callback
        self._lock = threading.Lock()
        self._per_chunk: Dict[int, EncodeProgress] = {}
        self._finished: Dict[int, EncodeProgress] = {}

    def update(self, index: int, report: EncodeProgress):
        if self._callback is None:
            return
        with self._lock:
            self._per_chunk[index] = report
            running = [r for i, r in self._per_chunk.items() if i not in self._finished]
            total = EncodeProgress(
                frame=sum(r.frame for r in self._per_chunk.values()),
                fps=sum(r.fps for r in running),
                size=sum(r.size for r in self._per_chunk.values()),
            )
        self._callback(total)

    def finish(self, index: int):
        with self._lock:
            if index in self._per_chunk:
                self._finished[index] = self._per_chunk[index]


class ChunkPipeline:
    """Runs one chunked task end to end."""

    def __init__(self, encoder: EncodeRunner, search_engine: Optional[CrfSearchEngine] = None,
                 splitter: Optional[SceneSplitter] = None, max_workers: int = 2,
                 segment_extractor: Callable[..., Path] = extract_segment,
                 concatenate: Callable[..., Path] = concat_files,
                 fps_probe: Callable[[Path], float] = get_fps,
                 show_progress: bool = False):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.encoder = encoder
        self.search_engine = search_engine
        self.splitter = splitter or SceneSplitter()
        self.max_workers = max_workers
        self.segment_extractor = segment_extractor
        self.concatenate = concatenate
        self.fps_probe = fps_probe
        self.show_progress = show_progress

    def run(self, input_path: Path, output_path: Path, params: SearchParams, workdir: Path,
            min_chunk_duration: float, fixed_quality: Optional[int] = None,
            cancel_event: Optional[threading.Event] = None,
            progress_callback: Optional[Callable[[EncodeProgress], None]] = None,
            copy_streams: bool = True) -> ChunkPipelineResult:
        if fixed_quality is None and self.search_engine is None:
            raise ValueError("A search engine is required unless a fixed quality is given")

        workdir.mkdir(parents=True, exist_ok=True)
        plan = self.splitter.plan(input_path, min_chunk_duration, cancel_event=cancel_event)
        fps = self.fps_probe(input_path)
        gop = int(round(fps * GOP_SECONDS)) if fps > 0 else None

        abort = threading.Event()
        aggregator = _ProgressAggregator(progress_callback)
        outcomes: Dict[int, ChunkOutcome] = {}
        failure: Optional[PartialChunkFailure] = None

        # Shortest chunks first; output order is restored at concatenation
        ordered = sorted(plan.chunks, key=lambda c: (c.duration, c.index))
        pbar = create_progress_bar(total=len(plan), desc=f"[CHUNK] {input_path.name[:30]}",
                                   unit="chunk", disable=not self.show_progress)
        try:
            with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers,
                                                       thread_name_prefix="chunk") as executor:
                pending = {
                    executor.submit(self._run_chunk, input_path, chunk, params, workdir,
                                    fixed_quality, gop, abort, aggregator): chunk
                    for chunk in ordered
                }
                while pending:
                    done, _ = concurrent.futures.wait(pending, timeout=WAIT_INTERVAL,
                                                      return_when=concurrent.futures.FIRST_COMPLETED)
                    if cancel_event is not None and cancel_event.is_set():
                        abort.set()
                    for future in done:
                        chunk = pending.pop(future)
                        try:
                            outcome = future.result()
                        except (TaskCancelled, concurrent.futures.CancelledError):
                            continue
                        except Exception as e:
                            if failure is None:
                                failure = PartialChunkFailure(
                                    f"Chunk {chunk.index} failed: {e}", chunk_index=chunk.index, cause=e)
                                logger.error(f"{input_path.name}: {failure.message}; cancelling remaining chunks")
                            abort.set()
                            continue
                        outcomes[outcome.index] = outcome
                        pbar.update(1)
                    if abort.is_set():
                        for future in pending:
                            future.cancel()
        finally:
            pbar.close()

        if failure is not None or abort.is_set():
            self._discard(workdir, plan, outcomes)
            if failure is not None:
                raise failure
            raise TaskCancelled(f"Chunked encode of {input_path.name} cancelled")

        try:
            chunk_outputs = order_by_sequence({i: o.output for i, o in outcomes.items()})
            part = output_path.with_name(f"{output_path.stem}.part{output_path.suffix}")
            self.concatenate(chunk_outputs, part,
                             streams_source=input_path if copy_streams else None,
                             cancel_event=cancel_event)
            part.replace(output_path)
        finally:
            self._discard(workdir, plan, outcomes)

        logger.chunk(f"{input_path.name}: {len(plan)} chunks joined into {output_path.name}")
        return ChunkPipelineResult(
            output=output_path, plan=plan,
            qualities={i: o.quality_param for i, o in sorted(outcomes.items())},
            warnings=[o.warning for _, o in sorted(outcomes.items()) if o.warning is not None],
        )

    def _run_chunk(self, input_path: Path, chunk: ChunkDescriptor, params: SearchParams,
                   workdir: Path, fixed_quality: Optional[int], gop: Optional[int],
                   abort: threading.Event, aggregator: _ProgressAggregator) -> ChunkOutcome:
        if abort.is_set():
            raise TaskCancelled(f"Chunk {chunk.index} cancelled before start")

        source = workdir / f"chunk_{chunk.index:04d}.src.mkv"
        output = workdir / f"chunk_{chunk.index:04d}{input_path.suffix or '.mkv'}"
        try:
            self.segment_extractor(input_path, source, chunk.start, chunk.end, cancel_event=abort)

            warning = None
            if fixed_quality is not None:
                quality = fixed_quality
            else:
                result = self.search_engine.search(source, params, workdir / f"chunk_{chunk.index:04d}",
                                                   cancel_event=abort)
                quality, warning = result.quality_param, result.warning

            self.encoder.encode(source, output, params.encoder, quality, params.preset,
                                params.extra_params, params.pix_fmt,
                                progress_callback=lambda r: aggregator.update(chunk.index, r),
                                cancel_event=abort, gop=gop)
            aggregator.finish(chunk.index)
            logger.chunk(f"chunk {chunk.index} [{chunk.start:.2f}-{chunk.end:.2f}] encoded at q={quality}")
            return ChunkOutcome(index=chunk.index, output=output, quality_param=quality, warning=warning)
        except BaseException:
            remove_path(output)
            raise
        finally:
            remove_path(source)
            remove_path(workdir / f"chunk_{chunk.index:04d}")

    def _discard(self, workdir: Path, plan: ChunkPlan, outcomes: Dict[int, ChunkOutcome]):
        for outcome in outcomes.values():
            remove_path(outcome.output)
        for chunk in plan.chunks:
            remove_path(workdir / f"chunk_{chunk.index:04d}.src.mkv")
            remove_path(workdir / f"chunk_{chunk.index:04d}")
