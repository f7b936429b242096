from __future__ import annotations

from typing import Optional


class CronkeeperError(Exception):
    """Base error for cronkeeper."""


class ConfigError(CronkeeperError):
    """Config validation error."""


class CronValidationError(CronkeeperError):
    """Cron expression rejected before a job could be armed."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f'Invalid cron schedule "{expression}": {reason}')


class JobDefinitionError(CronkeeperError):
    """Job definition fields are missing or malformed."""


class PersistenceError(CronkeeperError):
    """The job store could not complete a read or write."""


class RegistryStateError(CronkeeperError):
    """The registry holds a task in a state that cannot be acted on."""


class ExecutionError(CronkeeperError):
    """A single firing failed; future firings are unaffected."""

    def __init__(
        self,
        message: str,
        return_code: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message)
        self.return_code = return_code
        self.stdout = stdout
        self.stderr = stderr


class ProcessTimeoutError(ExecutionError):
    def __init__(self, stdout: str = "", stderr: str = ""):
        super().__init__("execution timed out", stdout=stdout, stderr=stderr)


class OutputOverflowError(ExecutionError):
    def __init__(self, stdout: str = "", stderr: str = ""):
        super().__init__("output exceeded buffer limit", stdout=stdout, stderr=stderr)


class ProcessExecutionError(ExecutionError):
    """Non-zero exit status or a process that could not be spawned."""
