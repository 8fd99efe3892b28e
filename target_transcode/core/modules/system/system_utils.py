"""
System utilities for target_transcode.

This module provides system-level utilities including:
- Temporary file registry with exit-time cleanup
- Per-task scratch directories
- Subprocess execution (blocking and cancellable)
- Process-tree termination
"""

import atexit
import os
import shlex
import shutil
import subprocess
import tempfile
import threading
import contextlib
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

import psutil

from ...errors import TaskCancelled
from ....utils.logging import get_logger

logger = get_logger("system_utils")

CANCEL_POLL_INTERVAL = 0.1
TERMINATE_TIMEOUT = 5.0
WORKDIR_PREFIX = "target_transcode_"


class _TempFileRegistry:
    """Thread-safe set of temp paths removed at interpreter exit."""

    def __init__(self):
        self._paths: set[str] = set()
        self._lock = threading.Lock()

    def add(self, path: Union[str, Path]):
        with self._lock:
            self._paths.add(str(path))

    def discard(self, path: Union[str, Path]):
        with self._lock:
            self._paths.discard(str(path))

    def snapshot(self) -> List[str]:
        with self._lock:
            return list(self._paths)

    def clear(self):
        with self._lock:
            self._paths.clear()

    def __contains__(self, path) -> bool:
        with self._lock:
            return str(path) in self._paths

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)


TEMP_FILES = _TempFileRegistry()


def remove_path(path: Union[str, Path]) -> bool:
    """Remove a file or directory tree and drop it from the registry."""
    p = Path(path)
    removed = False
    try:
        if p.is_dir():
            shutil.rmtree(p)
            removed = True
        elif p.exists():
            p.unlink()
            removed = True
    except OSError as e:
        logger.warn(f"Failed to remove {p}: {e}")
    finally:
        TEMP_FILES.discard(p)
    return removed


def remove_files(paths: Iterable[Union[str, Path]]) -> int:
    """Remove several temp paths; returns how many existed."""
    return sum(1 for p in paths if remove_path(p))


def _cleanup():
    """Cleanup temporary files on exit"""
    for path in TEMP_FILES.snapshot():
        if remove_path(path):
            logger.cleanup(f"removed {path}")


atexit.register(_cleanup)


def cleanup_temp_files():
    """Public cleanup function (wrapper around _cleanup)."""
    _cleanup()


def make_task_workdir(task_id: str, root: Optional[Union[str, Path]] = None) -> Path:
    """Create the scratch directory owning every temp file of one task.

    The directory name is namespaced by task id so concurrent tasks never
    collide; removing it reclaims everything the task produced.
    """
    base = Path(root) if root else Path(tempfile.gettempdir())
    safe_id = "".join(c if c.isalnum() or c in "-_" else "_" for c in task_id)
    workdir = base / f"{WORKDIR_PREFIX}{safe_id}"
    workdir.mkdir(parents=True, exist_ok=True)
    TEMP_FILES.add(workdir)
    return workdir


@contextlib.contextmanager
def temporary_file(suffix: str = ".tmp", prefix: str = "target_transcode_",
                   directory: Optional[Path] = None):
    """
    Context manager for temporary files with automatic cleanup.

    Args:
        suffix: File extension (default: .tmp)
        prefix: Filename prefix
        directory: Parent directory (default: system temp dir)

    Yields:
        Path: Path to the temporary file
    """
    fd, temp_path = tempfile.mkstemp(suffix=suffix, prefix=prefix,
                                     dir=str(directory) if directory else None)
    os.close(fd)
    temp_file = Path(temp_path)
    TEMP_FILES.add(temp_file)
    try:
        yield temp_file
    finally:
        remove_path(temp_file)


def quote_cmd(cmd: List[str]) -> str:
    return " ".join(shlex.quote(c) for c in cmd)


def run_command(cmd: List[str], timeout: Optional[float] = 30, capture_output: bool = True,
                text: bool = True, check: bool = False) -> subprocess.CompletedProcess:
    """
    Standardized subprocess command runner with consistent error handling.

    Args:
        cmd: Command as list of strings
        timeout: Timeout in seconds (None for no timeout)
        capture_output: Whether to capture stdout/stderr (default: True)
        text: Whether to use text mode (default: True)
        check: Whether to raise exception on non-zero exit (default: False)

    Returns:
        CompletedProcess object
    """
    logger.cmd(quote_cmd(cmd))
    try:
        return subprocess.run(
            cmd,
            capture_output=capture_output,
            text=text,
            timeout=timeout,
            check=check
        )
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout}s: {' '.join(cmd[:3])}...")
        raise


def terminate_process_tree(proc: subprocess.Popen, timeout: float = TERMINATE_TIMEOUT):
    """Terminate a process and its children, killing whatever ignores SIGTERM."""
    try:
        parent = psutil.Process(proc.pid)
        procs = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        return
    for p in procs:
        try:
            p.terminate()
        except psutil.NoSuchProcess:
            pass
    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for p in alive:
        try:
            p.kill()
        except psutil.NoSuchProcess:
            pass


def _drain(stream, sink: List[str]):
    for line in iter(stream.readline, ''):
        sink.append(line)
    stream.close()


def run_cancellable(cmd: List[str], cancel_event: Optional[threading.Event] = None,
                    on_line: Optional[Callable[[str], None]] = None,
                    stream: str = "stdout") -> subprocess.CompletedProcess:
    """
    Run a long external process without a wall-clock timeout.

    Lines of the chosen ``stream`` are handed to ``on_line`` as they arrive,
    the other pipe is drained in the background. When ``cancel_event`` is set
    the process tree is terminated and TaskCancelled is raised once it has
    exited, so callers can reclaim partial outputs before returning.
    """
    logger.cmd(quote_cmd(cmd))
    proc = subprocess.Popen(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        text=True,
        errors="replace",
        bufsize=1,
    )
    streamed, other = (proc.stdout, proc.stderr) if stream == "stdout" else (proc.stderr, proc.stdout)
    streamed_lines: List[str] = []
    other_lines: List[str] = []

    drainer = threading.Thread(target=_drain, args=(other, other_lines), daemon=True)
    drainer.start()

    finished = threading.Event()
    watcher = None
    if cancel_event is not None:
        def _watch():
            while not finished.wait(CANCEL_POLL_INTERVAL):
                if cancel_event.is_set():
                    terminate_process_tree(proc)
                    return
        watcher = threading.Thread(target=_watch, daemon=True)
        watcher.start()

    try:
        for line in iter(streamed.readline, ''):
            streamed_lines.append(line)
            if on_line is not None:
                on_line(line.rstrip("\n"))
        streamed.close()
        returncode = proc.wait()
    finally:
        finished.set()
        if proc.poll() is None:
            terminate_process_tree(proc)
            proc.wait()
        drainer.join()
        if watcher is not None:
            watcher.join()

    if cancel_event is not None and cancel_event.is_set():
        raise TaskCancelled(f"Cancelled: {' '.join(cmd[:2])}...", command=cmd)

    out, err = "".join(streamed_lines), "".join(other_lines)
    if stream != "stdout":
        out, err = err, out
    return subprocess.CompletedProcess(cmd, returncode, out, err)
