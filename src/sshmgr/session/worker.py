"""
Background worker for blocking work (network sync, pushes, sessions).

One worker thread; completion comes back as a TaskResult on a queue.
While waiting, the first Ctrl-C sets the task's cancel event so
cooperative tasks can roll back; a second Ctrl-C stops waiting.
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..errors import SyncCancelled

logger = logging.getLogger("sshmgr.session.worker")

_task_ids = itertools.count(1)


class TaskHandle(BaseModel):
    """A submitted task: its id and cancel event."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    task_id: int
    name: str
    cancel: threading.Event = Field(default_factory=threading.Event)


class TaskResult(BaseModel):
    """Completion message for one background task."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    task_id: int
    name: str
    value: Any = None
    error: Optional[BaseException] = None
    cancelled: bool = False
    abandoned: bool = False


class BackgroundWorker:
    """Runs one task at a time off the interface thread."""

    def __init__(self, poll_interval: float = 0.1):
        self.poll_interval = poll_interval
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sshmgr-worker")
        self._results: "queue.Queue[TaskResult]" = queue.Queue()

    def submit(self, name: str, fn: Callable[..., Any], *args: Any) -> TaskHandle:
        """Queue fn(*args, cancel=event)."""
        handle = TaskHandle(task_id=next(_task_ids), name=name)

        def _task() -> None:
            try:
                value = fn(*args, cancel=handle.cancel)
            except BaseException as exc:  # forwarded to the waiting thread
                self._results.put(TaskResult(task_id=handle.task_id, name=name, error=exc))
                return
            self._results.put(TaskResult(
                task_id=handle.task_id, name=name, value=value, cancelled=handle.cancel.is_set(),
            ))

        self._executor.submit(_task)
        return handle

    def wait(self, handle: TaskHandle) -> TaskResult:
        """Block until the task reports back (results of abandoned tasks are dropped)."""
        interrupts = 0
        while True:
            try:
                result = self._results.get(timeout=self.poll_interval)
            except queue.Empty:
                continue
            except KeyboardInterrupt:
                interrupts += 1
                handle.cancel.set()
                if interrupts == 1:
                    logger.info("Interrupt received, cancelling %s", handle.name)
                    continue
                logger.warning("Second interrupt, no longer waiting for %s", handle.name)
                return TaskResult(task_id=handle.task_id, name=handle.name, cancelled=True, abandoned=True)

            if result.task_id == handle.task_id:
                return result
            logger.debug("Dropping late result of abandoned task %s", result.name)

    def run(self, name: str, fn: Callable[..., Any], *args: Any) -> Any:
        """submit() + wait(); re-raise the task's exception.

        Raises:
            SyncCancelled: The wait was abandoned.
        """
        result = self.wait(self.submit(name, fn, *args))
        if result.error is not None:
            raise result.error
        if result.abandoned:
            raise SyncCancelled(f"{name} abandoned")
        return result.value

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
