"""
Target Transcode - quality-targeted video transcoding with a job queue.
"""

__version__ = "1.0.0"

# Import configuration utilities
from .config import get_config, load_env_file, parse_duration


def create_scheduler(config=None, show_progress: bool = False):
    """Build a Scheduler wired to the ffmpeg-backed runners (imported on-demand)."""
    from pathlib import Path

    from .core.modules.analysis.quality_prober import FFmpegVmafProber
    from .core.modules.processing.encode_runner import FFmpegEncodeRunner
    from .core.modules.processing.scan_reporter import EFFICIENT_CODECS, SourceFilter
    from .core.modules.queue.scheduler import Scheduler
    from .core.modules.queue.task_runner import TaskRunner
    from .utils.logging import set_debug_mode

    config = config or get_config()
    if config.get('debug'):
        set_debug_mode(True)

    runner = TaskRunner(
        FFmpegEncodeRunner(),
        FFmpegVmafProber(),
        max_search_iterations=config.get('max_search_iterations', 10),
        max_chunk_workers=config.get('max_chunk_workers', 2),
        temp_root=Path(config['temp_dir']) if config.get('temp_dir') else None,
        show_progress=show_progress,
    )
    source_filter = SourceFilter(
        min_bitrate_kbps=config.get('min_source_bitrate', 3000.0),
        skip_codecs=EFFICIENT_CODECS if config.get('skip_efficient_codecs', True) else (),
    )
    return Scheduler(runner, max_concurrent=config.get('max_concurrent_tasks', 1),
                     source_filter=source_filter)


__all__ = [
    "get_config",
    "load_env_file",
    "parse_duration",
    "create_scheduler",
]
