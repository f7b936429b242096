"""
Job definition CRUD wired to the scheduler.

Mirrors what an HTTP API layer does around each mutation: persist the
definition, then tell the scheduler so the registry converges.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional

from cronkeeper.errors import CronValidationError
from cronkeeper.models import ExecutionRecord, JobDefinition
from cronkeeper.scheduler import Scheduler
from cronkeeper.store import DEFAULT_HISTORY_LIMIT, DatabaseJobStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobChange:
    job: JobDefinition
    scheduled: bool
    error: Optional[str] = None


class JobService:
    def __init__(self, store: DatabaseJobStore, scheduler: Scheduler):
        self.store = store
        self.scheduler = scheduler

    def list(self) -> List[JobDefinition]:
        return self.store.list_jobs()

    def get(self, job_id: int) -> Optional[JobDefinition]:
        return self.store.get_job(job_id)

    def history(self, job_id: int, limit: int = DEFAULT_HISTORY_LIMIT) -> List[ExecutionRecord]:
        return self.store.execution_history(job_id, limit)

    def create(self, name: str, schedule: str, command: str, enabled: bool = True) -> JobChange:
        # The definition is kept even when its schedule cannot be armed.
        job = self.store.create_job(name, schedule, command, enabled)
        try:
            task = self.scheduler.on_create(job)
        except CronValidationError as exc:
            return JobChange(job=job, scheduled=False, error=str(exc))
        return JobChange(job=job, scheduled=task is not None)

    def update(self, job_id: int, **updates: Any) -> Optional[JobChange]:
        job = self.store.update_job(job_id, **updates)
        if job is None:
            return None
        try:
            task = self.scheduler.on_update(job)
        except CronValidationError as exc:
            return JobChange(job=job, scheduled=False, error=str(exc))
        return JobChange(job=job, scheduled=task is not None)

    def delete(self, job_id: int) -> bool:
        self.scheduler.on_delete(job_id)
        deleted = self.store.delete_job(job_id)
        if deleted:
            logger.info("Deleted job id=%s", job_id)
        return deleted
