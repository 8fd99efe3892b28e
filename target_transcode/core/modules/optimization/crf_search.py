"""
CRF Search Engine

Binary search over the integer quality-parameter interval [min_bound, max_bound]
for the largest (cheapest) parameter whose measured score still meets the target.

Each iteration is one encode + measure cycle on a representative sample. The
score-vs-parameter relation is treated as monotone: the first crossing found is
accepted, and measurement noise near the boundary is not retried.
"""

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from ..analysis.quality_prober import POOL_METHODS, QualityProber
from ..processing.encode_runner import EncodeRunner, ProgressCallback
from ..system.system_utils import remove_path
from .sampling import FullInputSampler, Sampler
from ...errors import TargetUnreachable, TaskCancelled
from ....utils.logging import get_logger

logger = get_logger("crf_search")

DEFAULT_MAX_ITERATIONS = 10


@dataclass
class SearchParams:
    """Everything one search needs to know about the encode and the measurement."""
    target: float
    max_bound: int
    encoder: str
    preset: str
    extra_params: str
    pix_fmt: str
    min_bound: int = 0
    pool_method: str = "mean"
    thread_count: int = 1
    subsample_stride: int = 1
    sample_every: float = 180.0
    tolerance: float = 0.0

    def validate(self):
        if not 0 < self.target <= 100:
            raise ValueError(f"Target score must be in (0, 100], got {self.target}")
        if self.min_bound > self.max_bound:
            raise ValueError(f"Invalid bounds [{self.min_bound}, {self.max_bound}]")
        if self.pool_method not in POOL_METHODS:
            raise ValueError(f"Unknown pool method: {self.pool_method}")
        if self.thread_count < 1:
            raise ValueError("thread_count must be >= 1")
        if self.subsample_stride < 1:
            raise ValueError("subsample_stride must be >= 1")
        if self.tolerance < 0:
            raise ValueError("tolerance must be >= 0")


@dataclass
class SearchState:
    """Live state of one search; discarded when the search ends."""
    lower: int
    upper: int
    max_iterations: int
    tolerance: float = 0.0
    candidate: Optional[int] = None
    last_score: Optional[float] = None
    iterations: int = 0
    best: Optional[int] = None
    best_score: Optional[float] = None
    history: List[tuple] = field(default_factory=list)

    def next_candidate(self) -> int:
        # Midpoint rounded toward the upper bound
        return (self.lower + self.upper + 1) // 2

    def record(self, candidate: int, score: float, target: float) -> bool:
        self.iterations += 1
        self.candidate = candidate
        self.last_score = score
        self.history.append((candidate, score))
        accepted = score >= target - self.tolerance
        if accepted and (self.best is None or candidate > self.best):
            self.best = candidate
            self.best_score = score
        return accepted

    @property
    def budget_left(self) -> bool:
        return self.iterations < self.max_iterations


@dataclass
class SearchResult:
    quality_param: int
    score: Optional[float]
    iterations: int
    target_reached: bool
    history: List[tuple] = field(default_factory=list)
    warning: Optional[TargetUnreachable] = None


IterationCallback = Callable[[SearchState], None]


class CrfSearchEngine:
    """Finds the cheapest quality parameter that meets a target score."""

    def __init__(self, encoder: EncodeRunner, prober: QualityProber,
                 sampler: Optional[Sampler] = None,
                 max_iterations: int = DEFAULT_MAX_ITERATIONS):
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self.encoder = encoder
        self.prober = prober
        self.sampler = sampler or FullInputSampler()
        self.max_iterations = max_iterations

    def search(self, input_path: Path, params: SearchParams, workdir: Path,
               cancel_event: Optional[threading.Event] = None,
               on_iteration: Optional[IterationCallback] = None,
               encode_progress: Optional[ProgressCallback] = None) -> SearchResult:
        params.validate()
        workdir.mkdir(parents=True, exist_ok=True)

        state = SearchState(lower=params.min_bound, upper=params.max_bound,
                            max_iterations=self.max_iterations, tolerance=params.tolerance)
        logger.search(f"{input_path.name}: target {params.target} ({params.pool_method}), "
                      f"bounds [{params.min_bound}, {params.max_bound}]")

        reference = self.sampler.prepare(input_path, workdir, params.sample_every, cancel_event)
        try:
            while state.lower < state.upper and state.budget_left:
                candidate = state.next_candidate()
                score = self._probe(reference, candidate, params, workdir, cancel_event, encode_progress)
                if state.record(candidate, score, params.target):
                    state.lower = candidate
                else:
                    state.upper = candidate - 1
                logger.search_debug(f"  q={candidate} -> {score:.2f}, range now "
                                    f"[{state.lower}, {state.upper}]")
                if on_iteration is not None:
                    on_iteration(state)

            # Nothing accepted yet: min_bound is the last chance
            if state.best is None and state.budget_left:
                candidate = params.min_bound
                score = self._probe(reference, candidate, params, workdir, cancel_event, encode_progress)
                state.record(candidate, score, params.target)
                if on_iteration is not None:
                    on_iteration(state)
        finally:
            if reference != input_path:
                remove_path(reference)

        return self._result(input_path, state, params)

    def _probe(self, reference: Path, candidate: int, params: SearchParams, workdir: Path,
               cancel_event: Optional[threading.Event],
               encode_progress: Optional[ProgressCallback]) -> float:
        if cancel_event is not None and cancel_event.is_set():
            raise TaskCancelled("Search cancelled")

        encoded = workdir / f"candidate_q{candidate}{reference.suffix or '.mkv'}"
        try:
            self.encoder.encode(reference, encoded, params.encoder, candidate, params.preset,
                                params.extra_params, params.pix_fmt,
                                progress_callback=encode_progress, cancel_event=cancel_event)
            return self.prober.measure(reference, encoded, pool_method=params.pool_method,
                                       thread_count=params.thread_count,
                                       subsample_stride=params.subsample_stride,
                                       cancel_event=cancel_event)
        finally:
            remove_path(encoded)

    def _result(self, input_path: Path, state: SearchState, params: SearchParams) -> SearchResult:
        if state.best is not None:
            logger.search(f"{input_path.name}: q={state.best} scores {state.best_score:.2f} "
                          f"after {state.iterations} iterations")
            return SearchResult(quality_param=state.best, score=state.best_score,
                                iterations=state.iterations, target_reached=True,
                                history=list(state.history))

        min_score = next((s for q, s in state.history if q == params.min_bound), None)
        warning = TargetUnreachable(
            f"Target {params.target} not reached within [{params.min_bound}, {params.max_bound}]; "
            f"falling back to {params.min_bound}",
            target=params.target, fallback=params.min_bound, best_score=min_score)
        logger.warn(f"{input_path.name}: {warning.message}")
        return SearchResult(quality_param=params.min_bound, score=min_score,
                            iterations=state.iterations, target_reached=False,
                            history=list(state.history), warning=warning)
