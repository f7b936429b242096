from __future__ import annotations

import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, List, Optional

import pytest

from cronkeeper.registry import JobRegistry
from cronkeeper.scheduler import Scheduler
from cronkeeper.store import DatabaseJobStore

UTC = timezone.utc


class FakeHandle:
    def __init__(self, expression: str, callback: Callable[[datetime], None], name: Optional[str]):
        self.expression = expression
        self.callback = callback
        self.name = name
        self.active = True

    def fire(self, when: Optional[datetime] = None) -> None:
        self.callback(when or datetime.now(tz=UTC))


class FakeTimers:
    """arm/disarm double; tests advance the clock by ticking a job's handle."""

    def __init__(self) -> None:
        self.handles: List[FakeHandle] = []

    @property
    def active_count(self) -> int:
        return sum(1 for handle in self.handles if handle.active)

    def arm(self, expression: str, callback: Callable[[datetime], None], name: Optional[str] = None) -> FakeHandle:
        handle = FakeHandle(expression, callback, name)
        self.handles.append(handle)
        return handle

    def disarm(self, handle: FakeHandle) -> None:
        assert handle.active, "handle released twice"
        handle.active = False

    def tick(self, job_id: int, when: Optional[datetime] = None) -> bool:
        for handle in self.handles:
            if handle.active and handle.name == f"cronkeeper-job-{job_id}":
                handle.fire(when)
                return True
        return False


def wait_for(predicate: Callable[[], bool], timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def store(tmp_path: Path) -> Iterator[DatabaseJobStore]:
    job_store = DatabaseJobStore(tmp_path / "cronkeeper.db")
    yield job_store
    job_store.close()


@pytest.fixture
def timers() -> FakeTimers:
    return FakeTimers()


@pytest.fixture
def make_scheduler(store: DatabaseJobStore, timers: FakeTimers) -> Iterator[Callable[..., Scheduler]]:
    created: List[Scheduler] = []

    def factory(**kwargs: object) -> Scheduler:
        scheduler = Scheduler(store, JobRegistry(timers), **kwargs)
        created.append(scheduler)
        return scheduler

    yield factory
    for scheduler in created:
        scheduler.shutdown(wait=True)
