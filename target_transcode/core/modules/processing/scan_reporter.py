"""
Scan Reporter

Discovers candidate media files under a folder:
- Extension filtering against a fixed set of recognised media extensions
- Hidden files and directories skipped, as are this tool's own outputs,
  unfinished ``.part`` files and scratch directories
- Symbolic links followed, each real directory visited once (no cycles)
- A process-wide ScanProgress counter observers can read while a scan runs
- SourceFilter: skips sources not worth re-encoding (efficient codec, low bitrate)
"""

import os
import re
import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from ..analysis.media_utils import get_bitrate_kbps, get_video_codec
from ..analysis.quality_prober import POOL_METHODS
from ..encoder_config import ENCODERS
from ..system.system_utils import WORKDIR_PREFIX
from ....utils.logging import get_logger

logger = get_logger("scan_reporter")

VIDEO_EXTENSIONS = frozenset({
    "mkv", "avi", "mp4", "divx", "flv", "m4v", "mov", "ogv", "ts", "webm", "wmv",
})

# <stem>.<encoder>.vmaf<target>.<pool>.subsample<n>, see default_output_path
_OUTPUT_STEM_RE = re.compile(
    r"\.(?:%s)\.vmaf\d+(?:\.\d+)?\.(?:%s)\.subsample\d+$"
    % ("|".join(map(re.escape, ENCODERS)), "|".join(map(re.escape, POOL_METHODS))),
    re.IGNORECASE,
)
_SCRATCH_STEM_RE = re.compile(r"^(?:candidate_q\d+|chunk_\d{4}(?:\.src)?|sample_clip_\d{3}|sample)$")

EFFICIENT_CODECS = frozenset({"hevc", "h265", "av1"})
MIN_SOURCE_BITRATE_KBPS = 3000.0


class ScanProgress:
    """Discovered-file counter; reset at scan start, only ever increases during a scan."""

    def __init__(self):
        self._lock = threading.Lock()
        self._total = 0

    def reset(self):
        with self._lock:
            self._total = 0

    def increment(self) -> int:
        with self._lock:
            self._total += 1
            return self._total

    @property
    def total(self) -> int:
        with self._lock:
            return self._total

    def as_dict(self) -> Dict[str, int]:
        total = self.total
        return {"count": total, "total": total}


_SCAN_PROGRESS = ScanProgress()


def get_scan_progress() -> ScanProgress:
    return _SCAN_PROGRESS




def is_transcode_artifact(path: Path) -> bool:
    """Outputs, unfinished ``.part`` files and scratch files written by this tool."""
    stem = path.stem
    return (stem.lower().endswith(".part")
            or bool(_OUTPUT_STEM_RE.search(stem))
            or bool(_SCRATCH_STEM_RE.match(stem)))


def is_media_file(path: Path, extensions=VIDEO_EXTENSIONS) -> bool:
    if path.name.startswith("."):
        return False
    if path.suffix.lower().lstrip(".") not in extensions:
        return False
    return not is_transcode_artifact(path)


def _skip_dir(name: str) -> bool:
    return name.startswith(".") or name.startswith(WORKDIR_PREFIX)


class ScanReporter:
    """
    Enumerates media files under a root.

    ``scan()`` returns a lazy, restartable iterable: every fresh iteration
    resets the shared counter and walks the tree again.
    """

    def __init__(self, progress: Optional[ScanProgress] = None, extensions=VIDEO_EXTENSIONS):
        self.progress = progress or get_scan_progress()
        self.extensions = frozenset(e.lower().lstrip(".") for e in extensions)

    def scan(self, root_path: Path) -> "_Scan":
        return _Scan(self, Path(root_path))

    def _walk(self, root: Path) -> Iterator[Path]:
        if not root.exists():
            raise ValueError(f"Path not found: {root}")

        self.progress.reset()
        if root.is_file():
            if is_media_file(root, self.extensions):
                self.progress.increment()
                yield root
            return

        visited_dirs: Set[str] = set()
        seen_files: Set[str] = set()
        for dirpath, dirnames, filenames in os.walk(root, followlinks=True):
            real_dir = os.path.realpath(dirpath)
            if real_dir in visited_dirs:
                # Reached again through a link: do not descend further
                dirnames[:] = []
                continue
            visited_dirs.add(real_dir)
            dirnames[:] = sorted(d for d in dirnames if not _skip_dir(d))

            for name in sorted(filenames):
                path = Path(dirpath) / name
                if not is_media_file(path, self.extensions):
                    continue
                real_file = os.path.realpath(path)
                if real_file in seen_files:
                    continue
                seen_files.add(real_file)
                count = self.progress.increment()
                logger.debug(f"[{count}] found {path}")
                yield path

        logger.scan(f"Found {self.progress.total} media files under {root}")


class _Scan:
    def __init__(self, reporter: ScanReporter, root: Path):
        self._reporter = reporter
        self._root = root

    def __iter__(self) -> Iterator[Path]:
        return self._reporter._walk(self._root)


class SourceFilter:
    """
    Decides whether a discovered source is worth re-encoding.

    Sources already in an efficient codec are skipped, as are sources whose
    bitrate is below ``min_bitrate_kbps``. Unknown codec or bitrate never
    causes a skip.
    """

    def __init__(self, min_bitrate_kbps: float = MIN_SOURCE_BITRATE_KBPS,
                 skip_codecs: Iterable[str] = EFFICIENT_CODECS,
                 codec_of: Callable[[Path], Optional[str]] = get_video_codec,
                 bitrate_of: Callable[[Path], float] = get_bitrate_kbps):
        self.min_bitrate_kbps = min_bitrate_kbps
        self.skip_codecs = frozenset(c.lower() for c in skip_codecs)
        self.codec_of = codec_of
        self.bitrate_of = bitrate_of

    def skip_reason(self, path: Path) -> Optional[str]:
        if self.skip_codecs:
            codec = self.codec_of(path)
            if codec and codec.lower() in self.skip_codecs:
                return f"already {codec}"
        if self.min_bitrate_kbps > 0:
            bitrate = self.bitrate_of(path)
            if 0 < bitrate < self.min_bitrate_kbps:
                return f"bitrate {bitrate:.0f} kbps below {self.min_bitrate_kbps:.0f}"
        return None

    def split(self, paths: Iterable[Path]) -> Tuple[List[Path], List[Tuple[Path, str]]]:
        """Partition ``paths`` into (to transcode, skipped with reasons)."""
        keep: List[Path] = []
        skipped: List[Tuple[Path, str]] = []
        for path in paths:
            reason = self.skip_reason(path)
            if reason:
                logger.scan(f"SKIP: {path.name} ({reason})")
                skipped.append((path, reason))
            else:
                keep.append(path)
        return keep, skipped
