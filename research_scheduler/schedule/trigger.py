from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from croniter import croniter

from research_scheduler.schedule.cron import is_valid_expression


logger = logging.getLogger(__name__)


Callback = Callable[[], Awaitable[None]]


def _local_now() -> datetime:
    return datetime.now()


@dataclass
class _Registration:
    handle: int
    expression: str
    callback: Callback
    name: str
    last_fired_minute: datetime | None = None


class CronTrigger:
    """Single-task cron driver.

    All registrations share one loop that wakes at each minute boundary and
    starts a task for every registration whose expression matches that minute.
    Expressions are evaluated against local wall-clock time.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or _local_now
        self._registrations: dict[int, _Registration] = {}
        self._next_handle = 1
        self._task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._registrations)

    def register(self, expression: str, callback: Callback, name: str = "") -> int:
        if not is_valid_expression(expression):
            raise ValueError(f"invalid cron expression: {expression!r}")
        handle = self._next_handle
        self._next_handle += 1
        self._registrations[handle] = _Registration(
            handle=handle,
            expression=expression,
            callback=callback,
            name=name or f"cron-{handle}",
        )
        return handle

    def unregister(self, handle: int) -> bool:
        return self._registrations.pop(handle, None) is not None

    def next_fire_time(self, handle: int) -> datetime | None:
        reg = self._registrations.get(handle)
        if reg is None:
            return None
        return croniter(reg.expression, self._clock()).get_next(datetime)

    def fire_due(self, now: datetime) -> list[asyncio.Task]:
        minute = now.replace(second=0, microsecond=0)
        started: list[asyncio.Task] = []
        for reg in list(self._registrations.values()):
            if reg.last_fired_minute == minute:
                continue
            if not croniter.match(reg.expression, minute):
                continue
            reg.last_fired_minute = minute
            task = asyncio.create_task(self._run(reg), name=reg.name)
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            started.append(task)
        return started

    async def _run(self, reg: _Registration) -> None:
        try:
            await reg.callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("trigger callback failed name=%s", reg.name)

    async def _loop(self) -> None:
        while True:
            now = self._clock()
            try:
                self.fire_due(now)
            except Exception:
                logger.exception("trigger tick failed")
            next_minute = now.replace(second=0, microsecond=0) + timedelta(minutes=1)
            delay = (next_minute - self._clock()).total_seconds()
            await asyncio.sleep(max(0.05, delay + 0.05))

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="cron_trigger")

    async def drain(self) -> None:
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def stop(self) -> None:
        tasks = list(self._inflight)
        if self._task is not None:
            tasks.append(self._task)
            self._task = None
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
