"""
Cron-driven timers.

`ThreadedTimers` is the arm/disarm capability the registry depends on: one
background thread per armed expression, sleeping until the next fire time
and then handing that time to the callback. Any object with the same
`arm(expression, callback)` / `disarm(handle)` pair can stand in for it.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone, tzinfo
from typing import Callable, Optional, Set

from cronkeeper.cron import next_fire_after

UTC = timezone.utc
DEFAULT_JOIN_SECONDS = 5.0

FireCallback = Callable[[datetime], None]

logger = logging.getLogger(__name__)


class CronTimer(threading.Thread):
    def __init__(self, expression: str, callback: FireCallback, tz: tzinfo = UTC, name: Optional[str] = None):
        super().__init__(daemon=True, name=name or f"cronkeeper-timer[{expression}]")
        self.expression = expression
        self.callback = callback
        self.tz = tz
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def run(self) -> None:
        after = datetime.now(tz=UTC)
        while not self._cancelled.is_set():
            nxt = next_fire_after(self.expression, after, self.tz)
            if nxt is None:
                logger.warning("No future fire time for %r; timer going idle.", self.expression)
                return
            delay = (nxt - datetime.now(tz=UTC)).total_seconds()
            if delay > 0 and self._cancelled.wait(delay):
                return
            if self._cancelled.is_set():
                return
            try:
                self.callback(nxt)
            except Exception:  # pragma: no cover - callbacks handle their own errors
                logger.exception("Timer callback failed for %r", self.expression)
            after = self._resume_after(nxt)

    def _resume_after(self, fired: datetime) -> datetime:
        # Slots that passed while the thread was delayed are dropped, not replayed.
        now = datetime.now(tz=UTC)
        following = next_fire_after(self.expression, fired, self.tz)
        if following is not None and following <= now:
            logger.warning(
                "Timer for %r fell behind by %.1fs; skipping missed runs since %s",
                self.expression,
                (now - fired).total_seconds(),
                following.isoformat(),
            )
        return max(fired, now)


class ThreadedTimers:
    """Arms one CronTimer thread per call and tracks the live ones."""

    def __init__(self, tz: tzinfo = UTC, join_seconds: float = DEFAULT_JOIN_SECONDS):
        self.tz = tz
        self.join_seconds = join_seconds
        self._lock = threading.Lock()
        self._active: Set[CronTimer] = set()

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def arm(self, expression: str, callback: FireCallback, name: Optional[str] = None) -> CronTimer:
        timer = CronTimer(expression, callback, tz=self.tz, name=name)
        with self._lock:
            self._active.add(timer)
        timer.start()
        return timer

    def disarm(self, handle: CronTimer) -> None:
        handle.cancel()
        if handle is not threading.current_thread():
            handle.join(timeout=self.join_seconds)
        with self._lock:
            self._active.discard(handle)


class IdleTimers:
    """
    Accepts arm/disarm but never fires.

    Used by short-lived admin commands that validate and persist definitions
    while the daemon process owns the real timers.
    """

    def __init__(self) -> None:
        self._active: Set[str] = set()

    @property
    def active_count(self) -> int:
        return len(self._active)

    def arm(self, expression: str, callback: FireCallback, name: Optional[str] = None) -> str:
        handle = name or expression
        self._active.add(handle)
        return handle

    def disarm(self, handle: str) -> None:
        self._active.discard(handle)
