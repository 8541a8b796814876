# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from threadloom.engine.timers import TimerSet

from .coordinator import ExecutionCoordinator, ExecutionMode
from .models import Trigger
from .schedule import calculate_next_run, should_execute_now
from .store import TriggerStore

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SchedulerService:
    """Periodically executes enabled triggers whose next run is due."""

    def __init__(
        self,
        triggers: TriggerStore,
        coordinator: ExecutionCoordinator,
        *,
        interval: float = 30.0,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._triggers = triggers
        self._coordinator = coordinator
        self._interval = interval
        self._clock = clock
        self._timers = TimerSet("scheduler")
        self._loop: Optional[asyncio.Task[None]] = None
        self._check_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._loop is not None and not self._loop.done()

    async def start(self) -> None:
        if self.running:
            return
        await self.reschedule_missed()
        self._loop = self._timers.call_every(self._interval, self.check)
        logger.info("Scheduler started (checking every %ss)", self._interval)

    async def stop(self) -> None:
        self._timers.dispose()
        self._loop = None

    async def reschedule_missed(self, now: Optional[datetime] = None) -> int:
        """Move past-due or unset next runs forward from ``now``; missed runs are not replayed."""
        now = now or self._clock()
        updated = 0
        for trigger in await self._triggers.list_all():
            if trigger.schedule is None or not trigger.enabled:
                continue
            if trigger.next_run is not None and trigger.next_run >= now:
                continue
            if trigger.next_run is None and trigger.schedule.start_timestamp >= now:
                trigger.next_run = trigger.schedule.start_timestamp
            else:
                trigger.next_run = calculate_next_run(trigger.schedule, now, trigger.occurrence_count)
            await self._triggers.save(trigger)
            updated += 1
        if updated:
            logger.info("Rescheduled %d triggers", updated)
        return updated

    async def check(self, now: Optional[datetime] = None) -> list[str]:
        now = now or self._clock()
        executed: list[str] = []
        async with self._check_lock:
            for trigger in await self._triggers.list_all():
                if not trigger.enabled or trigger.schedule is None:
                    continue
                if should_execute_now(trigger.schedule, trigger.next_run, trigger.occurrence_count, now):
                    await self._execute(trigger, now)
                    executed.append(trigger.id)
        return executed

    async def _execute(self, trigger: Trigger, now: datetime) -> None:
        try:
            await self._coordinator.execute_prompt(
                trigger.id,
                trigger.parameters,
                trigger.created_by,
                ExecutionMode.SCHEDULED,
            )
        except Exception:
            logger.exception("Scheduled execution of trigger %s failed", trigger.id)

        latest = await self._triggers.get(trigger.project, trigger.id) or trigger
        latest.last_run = now
        latest.occurrence_count += 1
        latest.next_run = calculate_next_run(latest.schedule or trigger.schedule, now, latest.occurrence_count)
        await self._triggers.save(latest)
        logger.info(
            "Trigger %s ran (occurrence %d); next run %s",
            trigger.id,
            latest.occurrence_count,
            latest.next_run.isoformat() if latest.next_run else "never",
        )
