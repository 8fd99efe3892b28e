"""
Encoder configuration: the supported encoder set, their default presets and
parameter strings, and FFmpeg command construction for one encode.

Preset and parameter strings are opaque pass-through values; only the
quality flag depends on the encoder.
"""

import shlex
from pathlib import Path
from typing import Dict, List, Optional

ENCODERS = ("libx265", "av1", "libsvtav1", "hevc_nvenc", "hevc_qsv", "av1_qsv")

# "av1" is the libaom encoder under its short name
FFMPEG_ENCODER_NAMES = {"av1": "libaom-av1"}

ENCODER_PRESETS: Dict[str, str] = {
    "libx265": "slow",
    "av1": "4",
    "libsvtav1": "5",
    "hevc_nvenc": "p7",
    "hevc_qsv": "veryslow",
    "av1_qsv": "1",
}

ENCODER_PARAMS: Dict[str, str] = {
    "libx265": "-x265-params limit-sao:bframes=8:psy-rd=1:aq-mode=3",
    "av1": "",
    "libsvtav1": "",
    "hevc_nvenc": "-rc-lookahead 100 -b_ref_mode each -tune hq",
    "hevc_qsv": "-init_hw_device qsv=intel,child_device=0 -b_strategy 1 -look_ahead 1 -async_depth 100",
    "av1_qsv": "-init_hw_device qsv=intel,child_device=0 -b_strategy 1 -look_ahead 1 -async_depth 100",
}

HARDWARE_ENCODERS = frozenset({"hevc_nvenc", "hevc_qsv", "av1_qsv"})


def is_hardware_encoder(encoder: str) -> bool:
    return encoder in HARDWARE_ENCODERS


def quality_args(encoder: str, quality: int) -> List[str]:
    """Encoder-specific flags that pin the quality parameter."""
    q = str(quality)
    if encoder == "hevc_nvenc":
        return ["-rc:v", "vbr", "-cq:v", q, "-qmin", q, "-qmax", q]
    if encoder in ("hevc_qsv", "av1_qsv"):
        return ["-global_quality", q]
    if encoder == "av1":
        # libaom needs an unconstrained bitrate for constant-quality mode
        return ["-crf", q, "-b:v", "0"]
    return ["-crf", q]


def split_params(params: str) -> List[str]:
    return shlex.split(params) if params and params.strip() else []


def build_encode_cmd(input_file: Path, output_file: Path, encoder: str, quality: int,
                     preset: str, extra_params: str, pix_fmt: str,
                     gop: Optional[int] = None, copy_streams: bool = False,
                     progress_pipe: bool = True) -> List[str]:
    """
    Build the FFmpeg command for one encode.

    With ``copy_streams`` the audio and subtitle streams of the input are
    carried over untouched; otherwise the output is video only (samples and
    chunks). ``progress_pipe`` emits key=value progress on stdout.
    """
    if encoder not in ENCODERS:
        raise ValueError(f"Unsupported encoder: {encoder}")

    cmd = ["ffmpeg", "-hide_banner", "-y", "-loglevel", "error", "-i", str(input_file)]

    if copy_streams:
        cmd.extend(["-map", "0:v:0", "-map", "0:a?", "-map", "0:s?",
                    "-c:a", "copy", "-c:s", "copy", "-map_metadata", "0"])
    else:
        cmd.extend(["-map", "0:v:0", "-an", "-sn", "-dn", "-map_metadata", "-1"])

    cmd.extend(["-c:v", FFMPEG_ENCODER_NAMES.get(encoder, encoder)])
    if preset:
        cmd.extend(["-preset", preset])
    cmd.extend(split_params(extra_params))
    if gop:
        cmd.extend(["-g", str(gop)])
    cmd.extend(quality_args(encoder, quality))
    if pix_fmt:
        cmd.extend(["-pix_fmt", pix_fmt])

    if progress_pipe:
        cmd.extend(["-progress", "pipe:1", "-nostats"])

    cmd.append(str(output_file))
    return cmd
