from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from cronkeeper.cron import check_expression
from cronkeeper.errors import RegistryStateError
from cronkeeper.models import JobDefinition

logger = logging.getLogger(__name__)


@dataclass
class ScheduledTask:
    """
    Live timer bound to one job definition snapshot.

    Never mutated in place after arming: a changed definition gets a new
    task. `lock` guards `armed` and `running_count`.
    """

    job: JobDefinition
    cron_expression: str
    handle: Any = None
    armed: bool = False
    running_count: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def job_id(self) -> int:
        return self.job.id

    @property
    def command(self) -> str:
        return self.job.command

    @property
    def running(self) -> bool:
        return self.running_count > 0


FireHandler = Callable[[ScheduledTask, datetime], None]


class JobRegistry:
    """
    Map of job id to its armed ScheduledTask.

    `timers` provides `arm(expression, callback, name=...) -> handle` and
    `disarm(handle)`. All mutations hold one map-wide lock, so a restart's
    stop-then-schedule pair is never interleaved with another mutation.
    """

    def __init__(self, timers: Any, on_fire: Optional[FireHandler] = None):
        self.timers = timers
        self._on_fire = on_fire
        self._lock = threading.RLock()
        self._tasks: Dict[int, ScheduledTask] = {}

    def bind(self, on_fire: FireHandler) -> None:
        if self._on_fire is not None and self._on_fire != on_fire:
            raise RegistryStateError("Registry is already bound to another fire handler.")
        self._on_fire = on_fire

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._tasks

    def get(self, job_id: int) -> Optional[ScheduledTask]:
        with self._lock:
            return self._tasks.get(job_id)

    def job_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._tasks)

    def schedule(self, job: JobDefinition) -> ScheduledTask:
        """
        Arm a task for `job`, replacing any task already held for its id.

        Raises CronValidationError without touching the map when the
        expression is invalid.
        """
        check_expression(job.schedule)
        if self._on_fire is None:
            raise RegistryStateError("Registry has no fire handler bound; cannot arm jobs.")

        with self._lock:
            existing = self._tasks.pop(job.id, None)
            if existing is not None:
                self._release(existing)

            task = ScheduledTask(job=job, cron_expression=job.schedule)
            on_fire = self._on_fire

            def fire(scheduled_for: datetime) -> None:
                on_fire(task, scheduled_for)

            task.handle = self.timers.arm(job.schedule, fire, name=f"cronkeeper-job-{job.id}")
            task.armed = True
            self._tasks[job.id] = task

        logger.info("Scheduled job %s (id=%s) with schedule %s", job.name, job.id, job.schedule)
        return task

    def stop(self, job_id: int) -> bool:
        """Disarm and evict `job_id`; returns False when nothing was scheduled."""
        with self._lock:
            task = self._tasks.pop(job_id, None)
            if task is None:
                return False
            self._release(task)
        logger.info("Stopped job id=%s", job_id)
        return True

    def restart(self, job: JobDefinition) -> Optional[ScheduledTask]:
        with self._lock:
            self.stop(job.id)
            if not job.enabled:
                return None
            return self.schedule(job)

    def stop_all(self) -> int:
        with self._lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()
            for task in tasks:
                self._release(task)
        if tasks:
            logger.info("Stopped %s scheduled job(s)", len(tasks))
        return len(tasks)

    def _release(self, task: ScheduledTask) -> None:
        with task.lock:
            handle = task.handle
            if not task.armed or handle is None:
                raise RegistryStateError(f"Task for job id={task.job_id} was already released.")
            task.armed = False
            task.handle = None
        self.timers.disarm(handle)
