from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import List, Tuple

import pytest

from conftest import FakeTimers
from cronkeeper.errors import CronValidationError, RegistryStateError
from cronkeeper.models import JobDefinition
from cronkeeper.registry import JobRegistry, ScheduledTask
from cronkeeper.timers import ThreadedTimers

UTC = timezone.utc


def _job(job_id: int = 1, schedule: str = "* * * * *", enabled: bool = True, command: str = "echo hi") -> JobDefinition:
    return JobDefinition(id=job_id, name=f"job-{job_id}", schedule=schedule, command=command, enabled=enabled)


def _registry(timers: FakeTimers) -> Tuple[JobRegistry, List[Tuple[ScheduledTask, datetime]]]:
    fired: List[Tuple[ScheduledTask, datetime]] = []
    registry = JobRegistry(timers, on_fire=lambda task, when: fired.append((task, when)))
    return registry, fired


def test_schedule_arms_and_fires_with_task(timers: FakeTimers) -> None:
    registry, fired = _registry(timers)

    task = registry.schedule(_job())

    assert 1 in registry
    assert len(registry) == 1
    assert task.armed
    assert task.command == "echo hi"
    assert timers.active_count == 1

    when = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
    assert timers.tick(1, when)
    assert fired == [(task, when)]


def test_invalid_expression_leaves_registry_untouched(timers: FakeTimers) -> None:
    registry, _ = _registry(timers)
    original = registry.schedule(_job())

    with pytest.raises(CronValidationError):
        registry.schedule(_job(schedule="not-a-cron"))

    assert registry.get(1) is original
    assert original.armed
    assert timers.active_count == 1


def test_unbound_registry_refuses_to_arm(timers: FakeTimers) -> None:
    registry = JobRegistry(timers)

    with pytest.raises(RegistryStateError, match="no fire handler"):
        registry.schedule(_job())
    assert len(registry) == 0
    assert timers.active_count == 0


def test_bind_rejects_a_second_handler(timers: FakeTimers) -> None:
    registry, _ = _registry(timers)

    with pytest.raises(RegistryStateError):
        registry.bind(lambda task, when: None)


def test_rescheduling_replaces_previous_timer(timers: FakeTimers) -> None:
    registry, _ = _registry(timers)
    first = registry.schedule(_job())

    second = registry.schedule(_job(command="echo again"))

    assert registry.get(1) is second
    assert not first.armed
    assert first.handle is None
    assert timers.active_count == 1
    assert registry.job_ids() == [1]


def test_stop_and_stop_unknown(timers: FakeTimers) -> None:
    registry, _ = _registry(timers)
    task = registry.schedule(_job())

    assert registry.stop(1) is True
    assert registry.stop(1) is False
    assert registry.stop(42) is False
    assert not task.armed
    assert timers.active_count == 0
    assert timers.tick(1) is False


def test_restart_follows_enabled_flag(timers: FakeTimers) -> None:
    registry, _ = _registry(timers)
    registry.schedule(_job())

    assert registry.restart(_job(enabled=False)) is None
    assert 1 not in registry

    task = registry.restart(_job(command="echo back"))
    assert task is not None
    assert registry.get(1).command == "echo back"
    assert timers.active_count == 1


def test_restart_with_invalid_schedule_leaves_job_unscheduled(timers: FakeTimers) -> None:
    registry, _ = _registry(timers)
    registry.schedule(_job())

    with pytest.raises(CronValidationError):
        registry.restart(_job(schedule="61 * * * *"))

    assert 1 not in registry
    assert timers.active_count == 0


def test_stop_all(timers: FakeTimers) -> None:
    registry, _ = _registry(timers)
    for job_id in (3, 1, 2):
        registry.schedule(_job(job_id))
    assert registry.job_ids() == [1, 2, 3]

    assert registry.stop_all() == 3
    assert len(registry) == 0
    assert timers.active_count == 0
    assert registry.stop_all() == 0


def test_concurrent_mutations_never_leak_timers() -> None:
    timers = ThreadedTimers()
    registry = JobRegistry(timers, on_fire=lambda task, when: None)
    barrier = threading.Barrier(16)
    errors: List[BaseException] = []

    def worker(seed: int) -> None:
        barrier.wait()
        try:
            for step in range(20):
                choice = (seed + step) % 3
                if choice == 0:
                    registry.schedule(_job(schedule="0 0 1 1 *"))
                elif choice == 1:
                    registry.restart(_job(schedule="0 0 1 1 *", enabled=step % 2 == 0))
                else:
                    registry.stop(1)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(seed,)) for seed in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(30)

    assert errors == []
    assert len(registry) == timers.active_count
    assert timers.active_count <= 1

    registry.stop_all()
    assert len(registry) == 0
    assert timers.active_count == 0
