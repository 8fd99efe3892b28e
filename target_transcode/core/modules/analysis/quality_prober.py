"""
Quality Prober

Measures a pooled perceptual-quality score for a candidate encode against its
reference:
- Per-frame VMAF via ffmpeg's libvmaf filter (JSON frame log)
- Pooling of per-frame scores (mean, min, harmonic_mean)
- Thread count and frame subsampling pass-through
- Cancellation of the running measurement

Failures raise MeasurementFailed and are never retried here.
"""

import json
import threading
from pathlib import Path
from typing import List, Optional, Sequence

from ..system.system_utils import remove_path, run_cancellable
from ...errors import MeasurementFailed
from ....utils.logging import get_logger

logger = get_logger("quality_prober")

POOL_METHODS = ("min", "harmonic_mean", "mean")


def pool_scores(scores: Sequence[float], method: str) -> float:
    """
    Combine per-frame scores into one number.

    ``harmonic_mean`` follows libvmaf's definition, n / sum(1 / (s + 1)) - 1,
    which stays finite for zero-score frames and weighs low outliers more
    heavily than the arithmetic mean.
    """
    if not scores:
        raise MeasurementFailed("No per-frame scores to pool")
    if method == "mean":
        return sum(scores) / len(scores)
    if method == "min":
        return min(scores)
    if method == "harmonic_mean":
        return len(scores) / sum(1.0 / (s + 1.0) for s in scores) - 1.0
    raise ValueError(f"Unknown pool method: {method}")


class QualityProber:
    """Capability interface: measure(reference, candidate, ...) -> pooled score."""

    def measure(self, reference: Path, candidate: Path, pool_method: str = "mean",
                thread_count: int = 1, subsample_stride: int = 1,
                cancel_event: Optional[threading.Event] = None) -> float:
        raise NotImplementedError


def _escape_filter_value(value: str) -> str:
    # libavfilter option escaping for paths inside a filtergraph
    return value.replace("\\", "/").replace(":", "\\\\:").replace("'", "\\\\'")


def _parse_frame_scores(log_path: Path) -> List[float]:
    try:
        data = json.loads(log_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return []
    scores = []
    for frame in data.get("frames", []):
        value = frame.get("metrics", {}).get("vmaf")
        if isinstance(value, (int, float)):
            scores.append(float(value))
    return scores


def _parse_pooled_score(stderr: str) -> Optional[float]:
    """Fallback: the pooled score libvmaf prints as 'VMAF score: 95.12'."""
    for line in stderr.splitlines():
        if 'VMAF score:' in line:
            try:
                return float(line.split('VMAF score:')[1].strip())
            except (IndexError, ValueError):
                continue
    return None


class FFmpegVmafProber(QualityProber):
    """VMAF measurement through ffmpeg's libvmaf filter."""

    def __init__(self, ffmpeg: str = "ffmpeg"):
        self.ffmpeg = ffmpeg

    def build_command(self, reference: Path, candidate: Path, log_path: Path,
                      pool_method: str, thread_count: int, subsample_stride: int) -> List[str]:
        opts = [
            "log_fmt=json",
            f"log_path={_escape_filter_value(str(log_path))}",
            f"n_threads={thread_count}",
            f"n_subsample={subsample_stride}",
            f"pool={pool_method}",
        ]
        filter_graph = (
            "[0:v]setpts=PTS-STARTPTS[distorted];"
            "[1:v]setpts=PTS-STARTPTS[reference];"
            f"[distorted][reference]libvmaf={':'.join(opts)}"
        )
        return [
            self.ffmpeg, "-hide_banner", "-loglevel", "info", "-y",
            "-i", str(candidate),   # distorted first
            "-i", str(reference),   # reference second
            "-lavfi", filter_graph,
            "-f", "null", "-"
        ]

    def measure(self, reference: Path, candidate: Path, pool_method: str = "mean",
                thread_count: int = 1, subsample_stride: int = 1,
                cancel_event: Optional[threading.Event] = None) -> float:
        if pool_method not in POOL_METHODS:
            raise ValueError(f"Unknown pool method: {pool_method}")
        if thread_count < 1:
            raise ValueError("thread_count must be >= 1")
        if subsample_stride < 1:
            raise ValueError("subsample_stride must be >= 1")

        for label, path in (("reference", reference), ("candidate", candidate)):
            if not path.exists() or path.stat().st_size == 0:
                raise MeasurementFailed(f"VMAF {label} file missing or empty: {path}")

        log_path = candidate.with_name(f"{candidate.stem}.vmaf.json")
        cmd = self.build_command(reference, candidate, log_path, pool_method,
                                 thread_count, subsample_stride)
        logger.vmaf_cmd(" ".join(cmd))

        try:
            try:
                result = run_cancellable(cmd, cancel_event=cancel_event, stream="stderr")
            except OSError as e:
                raise MeasurementFailed(f"Cannot run {self.ffmpeg} for VMAF: {e}", command=cmd) from e
            if result.returncode != 0:
                tail = (result.stderr or "").strip().splitlines()[-1:] or [""]
                raise MeasurementFailed(
                    f"VMAF measurement failed for {candidate.name} (exit {result.returncode}): {tail[0]}",
                    command=cmd, output=result.stderr)

            frame_scores = _parse_frame_scores(log_path)
            if frame_scores:
                score = pool_scores(frame_scores, pool_method)
            else:
                score = _parse_pooled_score(result.stderr or "")
            if score is None:
                raise MeasurementFailed(f"Unparsable VMAF output for {candidate.name}",
                                        command=cmd, output=result.stderr)
        finally:
            remove_path(log_path)

        logger.debug(f"VMAF {candidate.name}: {score:.2f} ({pool_method})")
        return score
