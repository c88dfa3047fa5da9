"""Periodic background work: the daily queue reset and estimate refresh.

Both jobs run as independent asyncio tasks so either can be stopped
without touching the other.  The job bodies are plain synchronous
functions executed in a worker thread; they are safe to call at any
frequency.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import date
from typing import Any, Callable, Optional

from sqlmodel import Session

from models import AppState
from services import QueueService

logger = logging.getLogger(__name__)


class DailyResetScheduler:
    """Wipe the queue once per local calendar day.

    The last reset date lives in the ``appstate`` table, not in this
    process, so restarts and multiple instances agree on whether today's
    reset already happened.  A failed reset leaves the date untouched and
    the next tick tries again.
    """

    KEY = "last_reset_date"

    def __init__(self, queue: QueueService, reset: Optional[Callable[[], Any]] = None) -> None:
        self.queue = queue
        self.reset = reset or queue.full_reset

    def last_reset_date(self) -> Optional[date]:
        with Session(self.queue.engine) as session:
            state = session.get(AppState, self.KEY)
            return date.fromisoformat(state.value) if state else None

    def _save(self, day: date) -> None:
        with Session(self.queue.engine) as session:
            state = session.get(AppState, self.KEY) or AppState(key=self.KEY, value="")
            state.value = day.isoformat()
            session.add(state)
            session.commit()

    def tick(self) -> bool:
        """Reset if the local date moved on.  Returns True when a reset ran."""
        today = self.queue.clock.today()
        if self.last_reset_date() == today:
            return False

        logger.info("Date change detected (%s). Performing daily queue reset...", today)
        try:
            self.reset()
        except Exception:
            logger.exception("Daily reset failed; will retry on the next tick")
            return False
        self._save(today)
        logger.info("Daily reset successful")
        return True


class PeriodicTask:
    """Run ``func`` every ``interval`` seconds until stopped."""

    def __init__(self, name: str, func: Callable[[], Any], interval: float) -> None:
        self.name = name
        self.func = func
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
            logger.info("Started periodic task %s (every %ss)", self.name, self.interval)
        return self._task

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self.func)
            except Exception:
                logger.exception("Periodic task %s failed", self.name)
            await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Stopped periodic task %s", self.name)
