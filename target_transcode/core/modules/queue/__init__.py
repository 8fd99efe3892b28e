"""Task queue, scheduler and progress reporting."""

from .task import ProgressSnapshot, Task, TaskConfig, TaskStatus, TaskSummary
from .progress_board import ProgressBoard
from .task_runner import TaskRunner
from .scheduler import Scheduler

__all__ = [
    "ProgressSnapshot",
    "Task",
    "TaskConfig",
    "TaskStatus",
    "TaskSummary",
    "ProgressBoard",
    "TaskRunner",
    "Scheduler",
]
