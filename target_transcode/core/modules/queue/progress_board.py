"""
Process-wide progress table.

Each task owns exactly one current ProgressSnapshot, replaced wholesale under
a lock (last write wins). Observers either poll() the whole table or
subscribe() to be pushed every replacement; both are read-only views.
"""

import threading
from typing import Callable, Dict, List, Optional

from .task import ProgressSnapshot
from ...errors import UnknownTask
from ....utils.logging import get_logger

logger = get_logger("progress_board")

Subscriber = Callable[[ProgressSnapshot], None]


class ProgressBoard:

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshots: Dict[str, ProgressSnapshot] = {}
        self._subscribers: List[Subscriber] = []

    def publish(self, snapshot: ProgressSnapshot, notify: bool = True):
        """Store ``snapshot``; with ``notify=False`` the caller pushes it later via notify()."""
        with self._lock:
            self._snapshots[snapshot.task_id] = snapshot
        if notify:
            self.notify(snapshot)

    def update(self, task_id: str, transform: Callable[[ProgressSnapshot], ProgressSnapshot],
               notify: bool = True) -> ProgressSnapshot:
        """Atomically derive a new snapshot from the current one and publish it."""
        with self._lock:
            current = self._snapshots.get(task_id)
            if current is None:
                raise UnknownTask(f"No progress for task {task_id}")
            snapshot = transform(current)
            self._snapshots[task_id] = snapshot
        if notify:
            self.notify(snapshot)
        return snapshot

    def notify(self, snapshot: ProgressSnapshot):
        """Push ``snapshot`` to every subscriber; never call while holding a caller-side lock."""
        with self._lock:
            subscribers = list(self._subscribers)
        # Observer errors never reach the publishing task
        for callback in subscribers:
            try:
                callback(snapshot)
            except Exception as e:
                logger.warn(f"Progress subscriber failed: {e}")

    def get(self, task_id: str) -> ProgressSnapshot:
        with self._lock:
            try:
                return self._snapshots[task_id]
            except KeyError:
                raise UnknownTask(f"No progress for task {task_id}") from None

    def find(self, task_id: str) -> Optional[ProgressSnapshot]:
        with self._lock:
            return self._snapshots.get(task_id)

    def discard(self, task_id: str):
        with self._lock:
            self._snapshots.pop(task_id, None)

    def poll(self) -> List[ProgressSnapshot]:
        with self._lock:
            return list(self._snapshots.values())

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a push observer; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe
