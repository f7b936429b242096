"""cronkeeper: cron job scheduling and bounded command execution."""

from cronkeeper.cron import validate
from cronkeeper.errors import (
    ConfigError,
    CronkeeperError,
    CronValidationError,
    ExecutionError,
    JobDefinitionError,
    OutputOverflowError,
    PersistenceError,
    ProcessExecutionError,
    ProcessTimeoutError,
    RegistryStateError,
)
from cronkeeper.models import ExecutionRecord, JobDefinition
from cronkeeper.recorder import ExecutionRecorder
from cronkeeper.registry import JobRegistry, ScheduledTask
from cronkeeper.runner import CommandResult, run_command
from cronkeeper.scheduler import Scheduler
from cronkeeper.store import DatabaseJobStore
from cronkeeper.timers import ThreadedTimers

__version__ = "0.1.0"

__all__ = [
    "CommandResult",
    "ConfigError",
    "CronValidationError",
    "CronkeeperError",
    "DatabaseJobStore",
    "ExecutionError",
    "ExecutionRecord",
    "ExecutionRecorder",
    "JobDefinition",
    "JobDefinitionError",
    "JobRegistry",
    "OutputOverflowError",
    "PersistenceError",
    "ProcessExecutionError",
    "ProcessTimeoutError",
    "RegistryStateError",
    "ScheduledTask",
    "Scheduler",
    "ThreadedTimers",
    "run_command",
    "validate",
]
