"""
cronkeeper command line.

Manages job definitions in the job store and runs the scheduler daemon.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from cronkeeper.config import DEFAULT_CONFIG, Settings, load_settings
from cronkeeper.cron import check_expression, next_fire_times
from cronkeeper.errors import CronkeeperError, CronValidationError
from cronkeeper.models import STATUS_COMPLETED, JobDefinition
from cronkeeper.registry import JobRegistry
from cronkeeper.scheduler import Scheduler
from cronkeeper.service import JobChange, JobService
from cronkeeper.store import DEFAULT_HISTORY_LIMIT, DatabaseJobStore
from cronkeeper.timers import IdleTimers, ThreadedTimers

DEFAULT_PREVIEW_COUNT = 5
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"

logger = logging.getLogger("cronkeeper")


def setup_logging(log_file: Optional[Path]) -> logging.Logger:
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    return logger


def open_service(settings: Settings, timers: Any) -> JobService:
    store = DatabaseJobStore(settings.database)
    registry = JobRegistry(timers)
    scheduler = Scheduler(
        store,
        registry,
        timeout_seconds=settings.execution.timeout_seconds,
        max_output_bytes=settings.execution.max_output_bytes,
        overlap=settings.execution.overlap,
        shutdown_wait=settings.shutdown.wait,
        shutdown_timeout=settings.shutdown.timeout_seconds,
    )
    return JobService(store, scheduler)


def close_service(service: JobService) -> None:
    service.scheduler.shutdown(wait=False)
    service.store.close()


def _format_job(job: JobDefinition) -> str:
    state = "enabled" if job.enabled else "disabled"
    return f"{job.id:>4}  {state:<8}  {job.schedule:<20}  {job.name}  ->  {job.command}"


def _report_change(change: JobChange, verb: str) -> int:
    print(f"{verb} job {change.job.id}: {change.job.name}")
    if change.error:
        print(f"Warning: job is not scheduled. {change.error}")
        return 1
    print("Scheduled." if change.scheduled else "Not scheduled (disabled).")
    return 0


def command_validate_cron(settings: Settings, expression: str, count: int) -> int:
    try:
        parsed = check_expression(expression)
    except CronValidationError as exc:
        print(str(exc))
        return 1
    kind = "6-field (with seconds)" if parsed.has_seconds else "5-field"
    print(f"Valid {kind} cron expression: {expression}")
    runs = next_fire_times(expression, count, tz=settings.timezone)
    print(f"Next {count} run(s) ({settings.timezone_name}):")
    if not runs:
        print("- none")
    for run_dt in runs:
        print(f"- {run_dt.astimezone(settings.timezone).isoformat()}")
    return 0


def command_list(service: JobService) -> int:
    jobs = service.list()
    if not jobs:
        print("No jobs defined.")
        return 0
    for job in jobs:
        print(_format_job(job))
    return 0


def command_add(service: JobService, name: str, schedule: str, command: str, enabled: bool) -> int:
    change = service.create(name, schedule, command, enabled)
    return _report_change(change, "Created")


def command_update(service: JobService, job_id: int, updates: Dict[str, Any]) -> int:
    change = service.update(job_id, **updates)
    if change is None:
        raise CronkeeperError(f"Job {job_id} not found.")
    return _report_change(change, "Updated")


def command_remove(service: JobService, job_id: int) -> int:
    if not service.delete(job_id):
        raise CronkeeperError(f"Job {job_id} not found.")
    print(f"Deleted job {job_id}")
    return 0


def command_history(service: JobService, job_id: int, limit: int) -> int:
    records = service.history(job_id, limit)
    if not records:
        print(f"No executions recorded for job {job_id}.")
        return 0
    for record in records:
        completed = record.completed_at.isoformat() if record.completed_at else "-"
        print(f"#{record.id} {record.status:<9} started={record.started_at.isoformat()} completed={completed}")
        detail = record.output if record.output is not None else record.error_message
        if detail:
            for line in detail.strip().splitlines():
                print(f"    {line}")
    return 0


def command_run(service: JobService, job_id: int) -> int:
    job = service.get(job_id)
    if job is None:
        raise CronkeeperError(f"Job {job_id} not found.")
    record = service.scheduler.run_now(job)
    if record is None:
        raise CronkeeperError(f"Job {job_id} ran but its result could not be recorded.")
    print(f"Execution #{record.id}: {record.status}")
    detail = record.output if record.output is not None else record.error_message
    if detail:
        print(detail.rstrip())
    return 0 if record.status == STATUS_COMPLETED else 1


def command_daemon(settings: Settings) -> int:
    service = open_service(settings, ThreadedTimers(tz=settings.timezone))
    stop_event = threading.Event()
    received: List[int] = []

    def handle_signal(signum: int, _frame: Any) -> None:
        logger.info("%s received, shutting down gracefully...", signal.Signals(signum).name)
        received.append(signum)
        stop_event.set()

    previous = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        service.scheduler.initialize()
        logger.info("Daemon running (timezone=%s, overlap=%s)", settings.timezone_name, settings.execution.overlap)
        while not stop_event.is_set():
            stop_event.wait(1.0)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        service.scheduler.shutdown()
        service.store.close()
    return 130 if signal.SIGINT in received else 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="cronkeeper",
        description="cronkeeper cron job scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to cronkeeper YAML config (default: {DEFAULT_CONFIG}, optional)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate-cron", help="Validate a cron expression")
    validate_parser.add_argument("expression", help='Cron expression, quoted (e.g. "*/5 * * * *")')
    validate_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    subparsers.add_parser("list", help="List job definitions")

    add_parser = subparsers.add_parser("add", help="Create a job definition")
    add_parser.add_argument("--name", required=True)
    add_parser.add_argument("--schedule", required=True, help="Cron expression")
    add_parser.add_argument("--command", dest="job_command", required=True, help="Shell command to run")
    add_parser.add_argument("--disabled", action="store_true", help="Create the job disabled")

    update_parser = subparsers.add_parser("update", help="Update a job definition")
    update_parser.add_argument("job_id", type=int)
    update_parser.add_argument("--name")
    update_parser.add_argument("--schedule")
    update_parser.add_argument("--command", dest="job_command")
    toggle = update_parser.add_mutually_exclusive_group()
    toggle.add_argument("--enable", dest="enabled", action="store_true", default=None)
    toggle.add_argument("--disable", dest="enabled", action="store_false", default=None)

    remove_parser = subparsers.add_parser("remove", help="Delete a job definition")
    remove_parser.add_argument("job_id", type=int)

    history_parser = subparsers.add_parser("history", help="Show execution history of a job")
    history_parser.add_argument("job_id", type=int)
    history_parser.add_argument("--limit", type=int, default=DEFAULT_HISTORY_LIMIT)

    run_parser = subparsers.add_parser("run", help="Run a job once now")
    run_parser.add_argument("job_id", type=int)

    subparsers.add_parser("daemon", help="Run the scheduler until SIGINT/SIGTERM")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        settings = load_settings(args.config or DEFAULT_CONFIG, required=args.config is not None)
        setup_logging(settings.log_file)

        if args.command == "validate-cron":
            if args.count <= 0:
                raise CronkeeperError("--count must be >= 1")
            return command_validate_cron(settings, args.expression, args.count)
        if args.command == "daemon":
            return command_daemon(settings)
        if args.command == "history" and args.limit <= 0:
            raise CronkeeperError("--limit must be >= 1")

        service = open_service(settings, IdleTimers())
        try:
            if args.command == "list":
                return command_list(service)
            if args.command == "add":
                return command_add(service, args.name, args.schedule, args.job_command, not args.disabled)
            if args.command == "update":
                updates = {
                    "name": args.name,
                    "schedule": args.schedule,
                    "command": args.job_command,
                    "enabled": args.enabled,
                }
                return command_update(service, args.job_id, updates)
            if args.command == "remove":
                return command_remove(service, args.job_id)
            if args.command == "history":
                return command_history(service, args.job_id, args.limit)
            if args.command == "run":
                return command_run(service, args.job_id)
            raise CronkeeperError(f"Unsupported command: {args.command}")
        finally:
            close_service(service)
    except CronkeeperError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
