"""
Encode Runner

Runs one encode of an input at a fixed quality parameter:
- FFmpeg command building through encoder_config
- Streaming progress (frame, fps, size) from ffmpeg's -progress pipe
- Cooperative cancellation that terminates the process
- Partial outputs removed on failure or cancellation before returning
"""

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..encoder_config import build_encode_cmd, is_hardware_encoder
from ..system.system_utils import remove_path, run_cancellable
from ...errors import EncodeFailed
from ....utils.logging import get_logger

logger = get_logger("encode_runner")


@dataclass(frozen=True)
class EncodeProgress:
    """One progress report from a running encode."""
    frame: int
    fps: float
    size: int  # bytes written so far


ProgressCallback = Callable[[EncodeProgress], None]


class EncodeRunner:
    """Capability interface: encode an input at one quality parameter."""

    def encode(self, input_path: Path, output_path: Path, encoder: str, quality_param: int,
               preset: str, extra_params: str, pix_fmt: str,
               progress_callback: Optional[ProgressCallback] = None,
               cancel_event: Optional[threading.Event] = None,
               gop: Optional[int] = None, copy_streams: bool = False) -> None:
        raise NotImplementedError


class ProgressParser:
    """Accumulates ffmpeg ``-progress`` key=value lines into EncodeProgress reports."""

    def __init__(self):
        self._fields: Dict[str, str] = {}

    def feed(self, line: str) -> Optional[EncodeProgress]:
        if "=" not in line:
            return None
        key, value = line.split("=", 1)
        key, value = key.strip(), value.strip()
        if key != "progress":
            self._fields[key] = value
            return None
        # A "progress=continue|end" line closes one block
        report = EncodeProgress(
            frame=_to_int(self._fields.get("frame")),
            fps=_to_float(self._fields.get("fps")),
            size=_to_int(self._fields.get("total_size")),
        )
        self._fields = {}
        return report


def _to_int(value: Optional[str]) -> int:
    try:
        return int(value) if value not in (None, "", "N/A") else 0
    except ValueError:
        return 0


def _to_float(value: Optional[str]) -> float:
    try:
        return float(value) if value not in (None, "", "N/A") else 0.0
    except ValueError:
        return 0.0


def _last_error_line(stderr: str) -> str:
    lines = [ln for ln in (stderr or "").strip().splitlines() if ln.strip()]
    return lines[-1] if lines else ""


class FFmpegEncodeRunner(EncodeRunner):
    """Encode Runner backed by an ffmpeg subprocess."""

    def build_command(self, input_path: Path, output_path: Path, encoder: str, quality_param: int,
                      preset: str, extra_params: str, pix_fmt: str,
                      gop: Optional[int] = None, copy_streams: bool = False) -> List[str]:
        return build_encode_cmd(input_path, output_path, encoder, quality_param, preset,
                                extra_params, pix_fmt, gop=gop, copy_streams=copy_streams)

    def encode(self, input_path: Path, output_path: Path, encoder: str, quality_param: int,
               preset: str, extra_params: str, pix_fmt: str,
               progress_callback: Optional[ProgressCallback] = None,
               cancel_event: Optional[threading.Event] = None,
               gop: Optional[int] = None, copy_streams: bool = False) -> None:
        try:
            cmd = self.build_command(input_path, output_path, encoder, quality_param, preset,
                                     extra_params, pix_fmt, gop=gop, copy_streams=copy_streams)
        except ValueError as e:
            raise EncodeFailed(str(e)) from e

        parser = ProgressParser()

        def _on_line(line: str):
            report = parser.feed(line)
            if report is not None and progress_callback is not None:
                progress_callback(report)

        try:
            result = run_cancellable(cmd, cancel_event=cancel_event, on_line=_on_line)
        except OSError as e:
            remove_path(output_path)
            raise EncodeFailed(f"Cannot run encoder for {input_path.name}: {e}", command=cmd) from e
        except BaseException:
            remove_path(output_path)
            raise

        if result.returncode != 0 or not output_path.exists():
            remove_path(output_path)
            reason = _last_error_line(result.stderr)
            message = (f"Encoding failed for {input_path.name} with {encoder} "
                       f"at quality {quality_param}: {reason or f'exit {result.returncode}'}")
            if is_hardware_encoder(encoder):
                message += " (check hardware encoder availability)"
            raise EncodeFailed(message, command=cmd, output=result.stderr)

        logger.debug(f"Encoded {input_path.name} -> {output_path.name} at {quality_param}")
