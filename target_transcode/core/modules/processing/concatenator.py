"""
Lossless concatenation of independently encoded pieces.

Pieces are joined with ffmpeg's concat demuxer and stream copy, strictly in
sequence-index order. Optionally the non-video streams of the original source
are muxed next to the joined video.
"""

import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ..system.system_utils import remove_path, run_cancellable
from ...errors import EncodeFailed
from ....utils.logging import get_logger

logger = get_logger("concatenator")


def order_by_sequence(outputs: Dict[int, Path]) -> List[Path]:
    """
    Order chunk outputs by sequence index, whatever order they completed in.

    Raises ValueError when the indices are not exactly 0..n-1.
    """
    indices = sorted(outputs)
    if indices != list(range(len(indices))):
        raise ValueError(f"Chunk outputs are not contiguous: {indices}")
    return [outputs[i] for i in indices]


def _escape_concat_path(path: Path) -> str:
    # concat demuxer quoting: close quote, escaped quote, reopen
    return str(path.resolve()).replace("'", "'\\''")


def build_concat_list(paths: Sequence[Path]) -> str:
    return "".join(f"file '{_escape_concat_path(p)}'\n" for p in paths)


def build_concat_command(list_file: Path, output_file: Path,
                         streams_source: Optional[Path] = None) -> List[str]:
    cmd = [
        "ffmpeg", "-hide_banner", "-y", "-loglevel", "error",
        "-f", "concat", "-safe", "0", "-i", str(list_file),
    ]
    if streams_source is not None:
        cmd.extend(["-i", str(streams_source),
                    "-map", "0:v", "-map", "1:a?", "-map", "1:s?",
                    "-map_metadata", "1", "-map_chapters", "1"])
    cmd.extend(["-c", "copy", str(output_file)])
    return cmd


def concat_files(paths: Sequence[Path], output_file: Path, streams_source: Optional[Path] = None,
                 cancel_event: Optional[threading.Event] = None) -> Path:
    """Join ``paths`` in the given order into ``output_file`` without re-encoding."""
    if not paths:
        raise EncodeFailed("Nothing to concatenate")

    list_file = output_file.with_name(f"{output_file.name}.concat.txt")
    list_file.write_text(build_concat_list(paths), encoding="utf-8")
    cmd = build_concat_command(list_file, output_file, streams_source)
    try:
        result = run_cancellable(cmd, cancel_event=cancel_event, stream="stderr")
        if result.returncode != 0 or not output_file.exists():
            remove_path(output_file)
            raise EncodeFailed(f"Concatenation into {output_file.name} failed "
                               f"(exit {result.returncode})", command=cmd, output=result.stderr)
    except OSError as e:
        remove_path(output_file)
        raise EncodeFailed(f"Cannot run ffmpeg to concatenate {output_file.name}: {e}",
                           command=cmd) from e
    except BaseException:
        remove_path(output_file)
        raise
    finally:
        remove_path(list_file)

    logger.debug(f"Concatenated {len(paths)} pieces into {output_file.name}")
    return output_file
