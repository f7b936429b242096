"""
Bounded execution of a job's shell command.

One call spawns one process, captures both streams, and enforces two
ceilings: wall-clock duration and combined captured output size. Breaching
either kills the whole process group.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import IO, Dict, List, Optional

from cronkeeper.errors import OutputOverflowError, ProcessExecutionError, ProcessTimeoutError

DEFAULT_TIMEOUT_SECONDS = 300
DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024
SUCCESS_OUTPUT = "Command executed successfully"

READ_CHUNK_BYTES = 64 * 1024
POLL_INTERVAL_SECONDS = 0.05
READER_JOIN_SECONDS = 5.0
ORPHAN_GRACE_SECONDS = 0.5

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    command: str
    return_code: int
    stdout: str
    stderr: str
    duration_seconds: float

    @property
    def output(self) -> str:
        return self.stdout or self.stderr or SUCCESS_OUTPUT


class _OutputCollector:
    """Drains stdout/stderr on background threads under a shared byte ceiling."""

    def __init__(self, max_bytes: int):
        self.max_bytes = max_bytes
        self.overflowed = threading.Event()
        self._lock = threading.Lock()
        self._total = 0
        self._chunks: Dict[str, List[bytes]] = {"stdout": [], "stderr": []}
        self._threads: List[threading.Thread] = []

    def attach(self, name: str, stream: IO[bytes]) -> None:
        thread = threading.Thread(
            target=self._drain,
            args=(name, stream),
            daemon=True,
            name=f"cronkeeper-{name}-reader",
        )
        self._threads.append(thread)
        thread.start()

    def _drain(self, name: str, stream: IO[bytes]) -> None:
        try:
            while True:
                chunk = stream.read1(READ_CHUNK_BYTES)  # type: ignore[attr-defined]
                if not chunk:
                    break
                with self._lock:
                    if self.overflowed.is_set():
                        continue
                    self._total += len(chunk)
                    if self._total > self.max_bytes:
                        self.overflowed.set()
                        continue
                    self._chunks[name].append(chunk)
        except (OSError, ValueError):
            # Stream closed underneath us after the process was killed.
            pass
        finally:
            stream.close()

    def join(self, timeout: float) -> None:
        for thread in self._threads:
            thread.join(timeout=timeout)

    @property
    def alive(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def text(self, name: str) -> str:
        with self._lock:
            data = b"".join(self._chunks[name])
        return data.decode("utf-8", errors="replace")


def _kill(proc: subprocess.Popen) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:  # pragma: no cover - non-POSIX
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass
    proc.wait()


def run_command(
    command: str,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> CommandResult:
    """
    Run `command` through the shell and wait for it.

    Raises ProcessTimeoutError, OutputOverflowError or ProcessExecutionError;
    returns a CommandResult only when the process exits zero within both
    ceilings.
    """
    started = time.monotonic()
    try:
        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=cwd,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=hasattr(os, "killpg"),
        )
    except OSError as exc:
        raise ProcessExecutionError(f"Failed to start command: {exc}") from exc

    collector = _OutputCollector(max_output_bytes)
    collector.attach("stdout", proc.stdout)
    collector.attach("stderr", proc.stderr)

    deadline = started + timeout_seconds
    timed_out = False
    while True:
        if collector.overflowed.is_set():
            break
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            timed_out = True
            break
        try:
            proc.wait(timeout=min(POLL_INTERVAL_SECONDS, remaining))
            break
        except subprocess.TimeoutExpired:
            continue

    if timed_out or collector.overflowed.is_set():
        _kill(proc)
        collector.join(READER_JOIN_SECONDS)
    else:
        collector.join(ORPHAN_GRACE_SECONDS)
        if collector.alive:
            # Background children still hold the pipes open after the shell exited.
            logger.warning("Killing leftover background processes of: %s", command)
            _kill(proc)
            collector.join(READER_JOIN_SECONDS)

    stdout = collector.text("stdout")
    stderr = collector.text("stderr")
    duration = time.monotonic() - started

    if collector.overflowed.is_set():
        raise OutputOverflowError(stdout=stdout, stderr=stderr)
    if timed_out:
        raise ProcessTimeoutError(stdout=stdout, stderr=stderr)
    if proc.returncode != 0:
        message = f"Command failed with exit code {proc.returncode}: {command}"
        if stderr.strip():
            message += f"\n{stderr.strip()}"
        raise ProcessExecutionError(
            message,
            return_code=proc.returncode,
            stdout=stdout,
            stderr=stderr,
        )

    logger.debug("Command exited 0 in %.2fs: %s", duration, command)
    return CommandResult(
        command=command,
        return_code=proc.returncode,
        stdout=stdout,
        stderr=stderr,
        duration_seconds=duration,
    )
