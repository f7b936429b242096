from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
VALID_STATUSES = {STATUS_RUNNING, STATUS_COMPLETED, STATUS_FAILED}


@dataclass(frozen=True)
class JobDefinition:
    """Read-only snapshot of a persisted job definition."""

    id: int
    name: str
    schedule: str
    command: str
    enabled: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class ExecutionRecord:
    id: int
    cronjob_id: int
    status: str
    output: Optional[str]
    error_message: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]

    @property
    def finished(self) -> bool:
        return self.status != STATUS_RUNNING
