"""
Scheduler / Queue

Owns the task table and dispatches tasks onto a bounded worker pool:
- Queued -> Running -> {Completed | Failed | Cancelled}
- At most ``max_concurrent`` tasks run at once; starts beyond the bound are
  accepted and stay Queued until a slot frees
- Progress is served from the ProgressBoard; nothing here waits on an
  encode or a measurement except the explicitly synchronous cancel()
"""

import concurrent.futures
import threading
import time
from collections import OrderedDict, deque
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

from .progress_board import ProgressBoard
from .task import ProgressSnapshot, Task, TaskConfig, TaskStatus, TaskSummary
from .task_runner import TaskRunner
from ..processing.scan_reporter import ScanReporter, SourceFilter
from ...errors import TaskCancelled, TaskStateError, UnknownTask
from ....utils.logging import get_logger

logger = get_logger("scheduler")


class Scheduler:
    """Bounded task queue with progress reporting."""

    def __init__(self, runner: TaskRunner, max_concurrent: int = 1,
                 board: Optional[ProgressBoard] = None,
                 scan_reporter: Optional[ScanReporter] = None,
                 source_filter: Optional[SourceFilter] = None):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.runner = runner
        self.max_concurrent = max_concurrent
        self.board = board or ProgressBoard()
        self.scan_reporter = scan_reporter or ScanReporter()
        self.source_filter = source_filter

        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._tasks: "OrderedDict[str, Task]" = OrderedDict()
        self._pending: Deque[str] = deque()
        self._running: set = set()
        self._closed = False
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=max_concurrent,
                                                               thread_name_prefix="task")

    # -- submission ---------------------------------------------------------

    def enqueue(self, task: Task) -> Task:
        with self._lock:
            if self._closed:
                raise TaskStateError("Scheduler is shut down")
            if task.id in self._tasks:
                raise TaskStateError(f"Duplicate task id: {task.id}")
            if task.status is not TaskStatus.QUEUED:
                raise TaskStateError(f"Task {task.id} is {task.status.value}, expected queued")
            self._tasks[task.id] = task
            snapshot = task.initial_snapshot()
            self.board.publish(snapshot, notify=False)
        # Subscribers run outside the lock so they may call back into the scheduler
        self.board.notify(snapshot)
        logger.queue(f"queued {task.id}: {task.config.input_path.name} ({task.config.mode})")
        return task

    def submit(self, config: TaskConfig, task_id: Optional[str] = None, start: bool = True) -> Task:
        """Create, enqueue and (by default) start a task for ``config``."""
        config.validate()
        task = Task(config=config, id=task_id) if task_id else Task(config=config)
        self.enqueue(task)
        if start:
            self.start(task.id)
        return task

    def submit_folder(self, root: Path, base_config: Dict[str, Any], start: bool = True,
                      **overrides) -> List[Task]:
        """
        Scan ``root`` and enqueue one task per discovered media file.

        The scan already leaves out this tool's own outputs and ``.part`` files;
        with a ``source_filter`` configured, sources not worth re-encoding are
        skipped as well.
        """
        files = list(self.scan_reporter.scan(Path(root)))
        if self.source_filter is not None:
            files, skipped = self.source_filter.split(files)
            if skipped:
                logger.queue(f"skipped {len(skipped)} of {len(files) + len(skipped)} files under {root}")
        tasks = []
        for i, path in enumerate(files, 1):
            config = TaskConfig.from_config(base_config, path, **overrides)
            task = self.enqueue(Task(config=config, current_file_count=i, total_files=len(files)))
            tasks.append(task)
        if start:
            for task in tasks:
                self.start(task.id)
        logger.queue(f"{len(tasks)} tasks queued from {root}")
        return tasks

    def remove(self, task_id: str) -> Task:
        """Drop a queued or finished task; running tasks must be cancelled instead."""
        with self._lock:
            task = self._get(task_id)
            if task.status is TaskStatus.RUNNING:
                raise TaskStateError(f"Task {task_id} is running; cancel it instead of removing it")
            if task_id in self._pending:
                self._pending.remove(task_id)
            del self._tasks[task_id]
            self.board.discard(task_id)
            self._changed.notify_all()
        logger.queue(f"removed {task_id}")
        return task

    # -- lifecycle ----------------------------------------------------------

    def start(self, task_id: str):
        """Request a Queued task to run; deferred while the pool is at capacity."""
        with self._lock:
            task = self._get(task_id)
            if task.status is not TaskStatus.QUEUED:
                raise TaskStateError(f"Task {task_id} is {task.status.value}, only queued tasks can start")
            if task_id not in self._pending:
                self._pending.append(task_id)
            self._dispatch()

    def cancel(self, task_id: str, timeout: Optional[float] = None) -> TaskStatus:
        """
        Cancel a task and wait until its processes and temp files are gone.

        Queued tasks are cancelled immediately; running tasks are signalled and
        waited for. Cancelling a finished task is a no-op.
        """
        with self._lock:
            task = self._get(task_id)
            if task.status.is_terminal:
                return task.status
            was_queued = task.status is TaskStatus.QUEUED
            if was_queued:
                if task_id in self._pending:
                    self._pending.remove(task_id)
                final = self._finish(task, TaskStatus.CANCELLED)
            else:
                task.cancel_event.set()

        if was_queued:
            self._release(task, final)
            return task.status

        logger.queue(f"cancelling {task_id}")
        task.done_event.wait(timeout)
        return task.status

    def wait(self, task_id: Optional[str] = None, timeout: Optional[float] = None) -> bool:
        """Block until one task (or every started task) has finished."""
        if task_id is not None:
            with self._lock:
                task = self._get(task_id)
            return task.done_event.wait(timeout)
        with self._changed:
            return self._changed.wait_for(lambda: not self._pending and not self._running, timeout)

    def shutdown(self, cancel_running: bool = True, wait: bool = True):
        with self._lock:
            self._closed = True
            self._pending.clear()
            running = [self._tasks[t] for t in self._running]
        if cancel_running:
            for task in running:
                task.cancel_event.set()
        self._executor.shutdown(wait=wait)

    # -- queries ------------------------------------------------------------

    def list(self) -> List[TaskSummary]:
        with self._lock:
            return [task.summary() for task in self._tasks.values()]

    def get(self, task_id: str) -> TaskSummary:
        with self._lock:
            return self._get(task_id).summary()

    def progress(self, task_id: str) -> ProgressSnapshot:
        with self._lock:
            self._get(task_id)
        return self.board.get(task_id)

    def poll_progress(self) -> List[ProgressSnapshot]:
        return self.board.poll()

    def subscribe(self, callback: Callable[[ProgressSnapshot], None]) -> Callable[[], None]:
        return self.board.subscribe(callback)

    def scan_progress(self) -> Dict[str, int]:
        return self.scan_reporter.progress.as_dict()

    @property
    def running_count(self) -> int:
        with self._lock:
            return len(self._running)

    # -- internals ----------------------------------------------------------

    def _get(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise UnknownTask(f"Unknown task: {task_id}") from None

    def _dispatch(self):
        # Caller holds the lock
        while self._pending and len(self._running) < self.max_concurrent and not self._closed:
            task = self._tasks[self._pending.popleft()]
            task.status = TaskStatus.RUNNING
            task.started_at = time.time()
            self._running.add(task.id)
            logger.queue(f"started {task.id} ({len(self._running)}/{self.max_concurrent} running)")
            self._executor.submit(self._execute, task)

    def _execute(self, task: Task):
        status, error, outcome = TaskStatus.COMPLETED, None, None
        try:
            outcome = self.runner.run(task, self.board)
        except TaskCancelled:
            status = TaskStatus.CANCELLED
        except Exception as e:
            if task.cancel_event.is_set():
                status = TaskStatus.CANCELLED
            else:
                status, error = TaskStatus.FAILED, str(e)
                logger.error(f"task {task.id} failed: {e}")

        with self._lock:
            if outcome is not None:
                task.quality_param = outcome.quality_param
                if outcome.warning is not None:
                    task.warning = outcome.warning.message
            task.error = error
            self._running.discard(task.id)
            final = self._finish(task, status)
            self._dispatch()
        self._release(task, final)

    def _finish(self, task: Task, status: TaskStatus) -> Optional[ProgressSnapshot]:
        """Record the terminal state; the caller passes the returned snapshot to _release() once unlocked."""
        # Caller holds the lock
        task.status = status
        task.finished_at = time.time()
        final = None
        if self.board.find(task.id) is not None:
            fields = {"stage": status.value}
            if status is TaskStatus.COMPLETED:
                fields["percentage"] = 100.0
                fields["eta"] = 0.0
            final = self.board.update(task.id, lambda s: replace(s, **fields), notify=False)
        logger.queue(f"{task.id} {status.value}" + (f": {task.error}" if task.error else ""))
        self._changed.notify_all()
        return final

    def _release(self, task: Task, final: Optional[ProgressSnapshot]):
        # Called without the lock: subscribers see the final snapshot before waiters wake
        if final is not None:
            self.board.notify(final)
        task.done_event.set()
