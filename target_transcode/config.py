"""Configuration management for target-transcode."""

import os
import re
from pathlib import Path
from typing import Optional, Dict, Any

_DURATION_RE = re.compile(r"^\s*([0-9]+(?:\.[0-9]+)?)\s*([smh]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600}


def load_env_file(env_path: Optional[Path] = None) -> Dict[str, str]:
    """Load environment variables from .env file."""
    if env_path is None:
        # Look for .env in current directory, then in package directory
        candidates = [
            Path.cwd() / ".env",
            Path(__file__).parent.parent / ".env",
        ]

        for candidate in candidates:
            if candidate.exists():
                env_path = candidate
                break

    env_vars = {}

    if env_path and env_path.exists():
        with open(env_path, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#'):
                    if '=' in line:
                        key, value = line.split('=', 1)
                        env_vars[key.strip()] = value.strip()

    return env_vars


def parse_duration(value) -> float:
    """Parse '180', '45s', '3m' or '1.5h' into seconds."""
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2).lower()]


def _setting(env_vars: Dict[str, str], key: str, default: str) -> str:
    return env_vars.get(key, os.getenv(key.upper(), default))


def get_config(env_path: Optional[Path] = None) -> Dict[str, Any]:
    """Get configuration from environment variables and .env file."""
    env_vars = load_env_file(env_path)

    config = {
        'vmaf_target': float(_setting(env_vars, 'vmaf_target', '97')),
        'encoder': _setting(env_vars, 'encoder', 'libx265'),
        'mode': _setting(env_vars, 'mode', 'default'),
        'vmaf_pool': _setting(env_vars, 'vmaf_pool', 'mean'),
        'vmaf_threads': int(_setting(env_vars, 'vmaf_threads', '2')),
        'vmaf_subsample': int(_setting(env_vars, 'vmaf_subsample', '1')),
        'pix_fmt': _setting(env_vars, 'pix_fmt', 'yuv420p10le'),
        'max_crf': int(_setting(env_vars, 'max_crf', '28')),
        'sample_every': parse_duration(_setting(env_vars, 'sample_every', '3m')),
        'scene_split_min': float(_setting(env_vars, 'scene_split_min', '2.0')),
        'max_concurrent_tasks': int(_setting(env_vars, 'max_concurrent_tasks', '1')),
        'max_chunk_workers': int(_setting(env_vars, 'max_chunk_workers', '2')),
        'max_search_iterations': int(_setting(env_vars, 'max_search_iterations', '10')),
        'skip_efficient_codecs': _setting(env_vars, 'skip_efficient_codecs', 'true').lower() in ('true', '1', 'yes'),
        'min_source_bitrate': float(_setting(env_vars, 'min_source_bitrate', '3000')),
        'temp_dir': _setting(env_vars, 'temp_dir', '') or None,
        'debug': _setting(env_vars, 'debug', 'false').lower() in ('true', '1', 'yes'),
    }

    return config
