from __future__ import annotations

import logging
from typing import Optional

from cronkeeper.models import STATUS_COMPLETED, STATUS_FAILED, STATUS_RUNNING, ExecutionRecord
from cronkeeper.store import JobStore

SKIPPED_MESSAGE = "skipped: previous run still in progress"

logger = logging.getLogger(__name__)


class ExecutionRecorder:
    """
    Writes execution lifecycle events to the job store.

    Each method is one synchronous store call. Store failures surface as
    PersistenceError; deciding whether to swallow them is the caller's job.
    """

    def __init__(self, store: JobStore):
        self.store = store

    def started(self, job_id: int) -> ExecutionRecord:
        record = self.store.record_execution(job_id, STATUS_RUNNING)
        logger.debug("Recorded start of execution %s for job %s", record.id, job_id)
        return record

    def completed(self, job_id: int, output: str, execution_id: Optional[int] = None) -> ExecutionRecord:
        return self.store.record_execution(
            job_id,
            STATUS_COMPLETED,
            output=output,
            execution_id=execution_id,
        )

    def failed(self, job_id: int, error_message: str, execution_id: Optional[int] = None) -> ExecutionRecord:
        return self.store.record_execution(
            job_id,
            STATUS_FAILED,
            error_message=error_message,
            execution_id=execution_id,
        )

    def skipped(self, job_id: int) -> ExecutionRecord:
        return self.failed(job_id, SKIPPED_MESSAGE)
