from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from cronkeeper.db import Base, CronJob, CronJobExecution, database_url, make_engine, utcnow
from cronkeeper.errors import JobDefinitionError, PersistenceError
from cronkeeper.models import STATUS_RUNNING, VALID_STATUSES, ExecutionRecord, JobDefinition

UTC = timezone.utc
DEFAULT_HISTORY_LIMIT = 50
UPDATABLE_FIELDS = ("name", "schedule", "command", "enabled")


class JobStore(Protocol):
    """What the scheduling core needs from persistence."""

    def list_enabled_jobs(self) -> List[JobDefinition]:
        ...

    def record_execution(
        self,
        job_id: int,
        status: str,
        output: Optional[str] = None,
        error_message: Optional[str] = None,
        execution_id: Optional[int] = None,
    ) -> ExecutionRecord:
        ...


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise JobDefinitionError(f"{field_name} must be a non-empty string.")
    return value.strip()


def _to_job(row: CronJob) -> JobDefinition:
    return JobDefinition(
        id=row.id,
        name=row.name,
        schedule=row.schedule,
        command=row.command,
        enabled=bool(row.enabled),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _to_execution(row: CronJobExecution) -> ExecutionRecord:
    return ExecutionRecord(
        id=row.id,
        cronjob_id=row.cronjob_id,
        status=row.status,
        output=row.output,
        error_message=row.error_message,
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
    )


class DatabaseJobStore:
    """
    Job definitions and execution records behind a SQLAlchemy engine.

    `url` is any SQLAlchemy database URL; a bare filesystem path means a
    SQLite file. Tables are created on open. Sessions are serialized by one
    lock, so concurrent firings may record freely.
    """

    def __init__(self, url: Union[str, Path] = ":memory:"):
        self.url = database_url(url)
        self._lock = threading.Lock()
        try:
            self._engine = make_engine(self.url)
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to open job store {self.url}: {exc}") from exc
        self._sessionmaker = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False,
            future=True,
        )

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self._lock, self._sessionmaker() as session:
            try:
                yield session
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError(f"Job store query failed: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            self._engine.dispose()

    # Job definitions

    def create_job(self, name: str, schedule: str, command: str, enabled: bool = True) -> JobDefinition:
        now = utcnow()
        row = CronJob(
            name=_require_text(name, "name"),
            schedule=_require_text(schedule, "schedule"),
            command=_require_text(command, "command"),
            enabled=bool(enabled),
            created_at=now,
            updated_at=now,
        )
        with self._session() as session:
            session.add(row)
            session.flush()
            if row.id is None:
                raise PersistenceError(f"Job {row.name!r} was not assigned an id.")
            return _to_job(row)

    def get_job(self, job_id: int) -> Optional[JobDefinition]:
        with self._session() as session:
            row = session.get(CronJob, job_id)
            return _to_job(row) if row else None

    def list_jobs(self) -> List[JobDefinition]:
        query = select(CronJob).order_by(CronJob.created_at.desc(), CronJob.id.desc())
        with self._session() as session:
            return [_to_job(row) for row in session.execute(query).scalars().all()]

    def list_enabled_jobs(self) -> List[JobDefinition]:
        query = (
            select(CronJob)
            .where(CronJob.enabled.is_(True))
            .order_by(CronJob.created_at.desc(), CronJob.id.desc())
        )
        with self._session() as session:
            return [_to_job(row) for row in session.execute(query).scalars().all()]

    def update_job(self, job_id: int, **updates: Any) -> Optional[JobDefinition]:
        """Apply the allowed fields of `updates`; returns None for an unknown id."""
        changes: Dict[str, Any] = {}
        for key, value in updates.items():
            if key not in UPDATABLE_FIELDS or value is None:
                continue
            changes[key] = bool(value) if key == "enabled" else _require_text(value, key)

        if not changes:
            raise JobDefinitionError("No valid fields to update.")

        with self._session() as session:
            row = session.get(CronJob, job_id)
            if row is None:
                return None
            for key, value in changes.items():
                setattr(row, key, value)
            row.updated_at = utcnow()
            session.flush()
            return _to_job(row)

    def delete_job(self, job_id: int) -> bool:
        with self._session() as session:
            row = session.get(CronJob, job_id)
            if row is None:
                return False
            session.delete(row)
            return True

    # Execution records

    def record_execution(
        self,
        job_id: int,
        status: str,
        output: Optional[str] = None,
        error_message: Optional[str] = None,
        execution_id: Optional[int] = None,
    ) -> ExecutionRecord:
        """
        Insert an execution record, or finalize `execution_id` when given.

        started_at is stamped on insert; completed_at is stamped whenever the
        status is terminal.
        """
        if status not in VALID_STATUSES:
            raise PersistenceError(f'Unknown execution status "{status}".')
        now = utcnow()
        completed_at = None if status == STATUS_RUNNING else now

        with self._session() as session:
            if execution_id is None:
                row = CronJobExecution(
                    cronjob_id=job_id,
                    status=status,
                    output=output,
                    error_message=error_message,
                    started_at=now,
                    completed_at=completed_at,
                )
                session.add(row)
            else:
                row = session.get(CronJobExecution, execution_id)
                if row is None or row.cronjob_id != job_id:
                    raise PersistenceError(
                        f"Execution record {execution_id} for job {job_id} no longer exists."
                    )
                row.status = status
                row.output = output
                row.error_message = error_message
                row.completed_at = completed_at
            session.flush()
            return _to_execution(row)

    def execution_history(self, job_id: int, limit: int = DEFAULT_HISTORY_LIMIT) -> List[ExecutionRecord]:
        query = (
            select(CronJobExecution)
            .where(CronJobExecution.cronjob_id == job_id)
            .order_by(CronJobExecution.started_at.desc(), CronJobExecution.id.desc())
            .limit(int(limit))
        )
        with self._session() as session:
            return [_to_execution(row) for row in session.execute(query).scalars().all()]
