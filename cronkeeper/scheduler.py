"""
Scheduler orchestration.

Loads enabled job definitions into the registry at startup, reacts to
definition changes pushed by the API layer, and drives every firing through

    triggered -> recording_start -> running_process -> recording_result -> idle

on its own worker thread.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Set

from cronkeeper.errors import CronkeeperError, CronValidationError, ExecutionError, PersistenceError
from cronkeeper.models import ExecutionRecord, JobDefinition
from cronkeeper.recorder import ExecutionRecorder
from cronkeeper.registry import JobRegistry, ScheduledTask
from cronkeeper.runner import DEFAULT_MAX_OUTPUT_BYTES, DEFAULT_TIMEOUT_SECONDS, run_command
from cronkeeper.store import JobStore

UTC = timezone.utc
OVERLAP_SKIP = "skip"
OVERLAP_PARALLEL = "parallel"
VALID_OVERLAPS = {OVERLAP_SKIP, OVERLAP_PARALLEL}
DEFAULT_SHUTDOWN_TIMEOUT_SECONDS = 30

logger = logging.getLogger(__name__)


class Scheduler:
    def __init__(
        self,
        store: JobStore,
        registry: JobRegistry,
        recorder: Optional[ExecutionRecorder] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        overlap: str = OVERLAP_SKIP,
        shutdown_wait: bool = False,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT_SECONDS,
        runner: Callable[..., Any] = run_command,
    ):
        if overlap not in VALID_OVERLAPS:
            raise CronkeeperError(f'overlap must be one of {sorted(VALID_OVERLAPS)}, got "{overlap}".')
        self.store = store
        self.registry = registry
        self.recorder = recorder or ExecutionRecorder(store)
        self.timeout_seconds = timeout_seconds
        self.max_output_bytes = max_output_bytes
        self.overlap = overlap
        self.shutdown_wait = shutdown_wait
        self.shutdown_timeout = shutdown_timeout
        self.runner = runner
        self._inflight: Set[threading.Thread] = set()
        self._inflight_lock = threading.Lock()
        self.registry.bind(self._dispatch)

    # Orchestration boundary

    def initialize(self) -> int:
        """Arm every enabled job; a job that cannot be armed does not stop the rest."""
        logger.info("Initializing cron scheduler...")
        for job in self.store.list_enabled_jobs():
            if not job.enabled:
                continue
            try:
                self.schedule(job)
            except CronkeeperError as exc:
                logger.warning("Job %s (id=%s) not scheduled: %s", job.name, job.id, exc)
        active = len(self.registry)
        logger.info("Scheduler initialized with %s active jobs", active)
        return active

    def schedule(self, job: JobDefinition) -> ScheduledTask:
        try:
            return self.registry.schedule(job)
        except CronValidationError as exc:
            self._reject(job, exc)
            raise

    def restart(self, job: JobDefinition) -> Optional[ScheduledTask]:
        try:
            return self.registry.restart(job)
        except CronValidationError as exc:
            self._reject(job, exc)
            raise

    def stop(self, job_id: int) -> bool:
        return self.registry.stop(job_id)

    def on_create(self, job: JobDefinition) -> Optional[ScheduledTask]:
        if not job.enabled:
            return None
        return self.schedule(job)

    def on_update(self, job: JobDefinition) -> Optional[ScheduledTask]:
        return self.restart(job)

    def on_delete(self, job_id: int) -> bool:
        return self.stop(job_id)

    def shutdown(self, wait: Optional[bool] = None) -> int:
        """
        Disarm every job. Returns how many executions were still in flight.

        In-flight executions are abandoned unless `wait` (or the configured
        shutdown_wait) asks to wait up to shutdown_timeout for them.
        """
        stopped = self.registry.stop_all()
        logger.info("Scheduler shut down; %s job(s) disarmed", stopped)
        if self.shutdown_wait if wait is None else wait:
            self.wait_idle(self.shutdown_timeout)
        remaining = self.inflight_count
        if remaining:
            logger.warning("Abandoning %s in-flight execution(s) at shutdown", remaining)
        return remaining

    @property
    def inflight_count(self) -> int:
        with self._inflight_lock:
            return sum(1 for thread in self._inflight if thread.is_alive())

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no execution is in flight; False if `timeout` ran out first."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._inflight_lock:
                threads = list(self._inflight)
            if not threads:
                return True
            for thread in threads:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                thread.join(remaining)
                if thread.is_alive():
                    return False

    def run_now(self, job: JobDefinition) -> Optional[ExecutionRecord]:
        """Run one execution cycle of `job` on the calling thread, outside its schedule."""
        execution = self._record(self.recorder.started, job.id)
        return self._run_cycle(job, execution.id if execution else None)

    # Firing

    def _dispatch(self, task: ScheduledTask, scheduled_for: datetime) -> None:
        thread = threading.Thread(
            target=self._worker,
            args=(task, scheduled_for),
            daemon=True,
            name=f"cronkeeper-run-{task.job_id}",
        )
        logger.info(
            "Dispatching %s (id=%s, overlap=%s, running=%s)",
            task.job.name,
            task.job_id,
            self.overlap,
            task.running_count,
        )
        with self._inflight_lock:
            self._inflight.add(thread)
            thread.start()

    def _worker(self, task: ScheduledTask, scheduled_for: datetime) -> None:
        try:
            self._execute(task, scheduled_for)
        except Exception:  # pragma: no cover
            logger.exception("Unexpected error while executing job id=%s", task.job_id)
        finally:
            with self._inflight_lock:
                self._inflight.discard(threading.current_thread())

    def _execute(self, task: ScheduledTask, scheduled_for: datetime) -> Optional[ExecutionRecord]:
        job = task.job
        with task.lock:
            if not task.armed:
                logger.info("Dropping firing for %s (id=%s): task was stopped", job.name, job.id)
                return None
            if task.running and self.overlap == OVERLAP_SKIP:
                logger.info(
                    "Skipping overlapping run for %s at %s",
                    job.name,
                    scheduled_for.astimezone(UTC).isoformat(),
                )
                return self._record(self.recorder.skipped, job.id)
            if task.running:
                logger.warning(
                    "Starting overlapping run for %s (running=%s)",
                    job.name,
                    task.running_count,
                )
            # Recorded under the task lock so a concurrent stop() cannot
            # return before this firing's record exists.
            execution = self._record(self.recorder.started, job.id)
            task.running_count += 1

        try:
            return self._run_cycle(job, execution.id if execution else None)
        finally:
            with task.lock:
                task.running_count -= 1

    def _run_cycle(self, job: JobDefinition, execution_id: Optional[int]) -> Optional[ExecutionRecord]:
        run_id = f"{job.id}:{execution_id}" if execution_id is not None else f"{job.id}:-"
        logger.info("[%s] Executing cronjob: %s", run_id, job.name)
        try:
            result = self.runner(
                job.command,
                timeout_seconds=self.timeout_seconds,
                max_output_bytes=self.max_output_bytes,
            )
        except ExecutionError as exc:
            logger.error("[%s] Cronjob %s failed: %s", run_id, job.name, exc)
            return self._record(self.recorder.failed, job.id, str(exc), execution_id)

        logger.info(
            "[%s] Cronjob %s completed successfully (%.2fs)",
            run_id,
            job.name,
            result.duration_seconds,
        )
        return self._record(self.recorder.completed, job.id, result.output, execution_id)

    def _reject(self, job: JobDefinition, exc: CronValidationError) -> None:
        logger.error("Invalid cron schedule for job %s (id=%s): %s", job.name, job.id, exc.expression)
        self._record(self.recorder.failed, job.id, str(exc))

    def _record(self, write: Callable[..., ExecutionRecord], *args: Any) -> Optional[ExecutionRecord]:
        try:
            return write(*args)
        except PersistenceError as exc:
            logger.error("Failed to record execution for job id=%s: %s", args[0], exc)
            return None
