# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger(__name__)

Callback = Callable[[], Union[None, Awaitable[Any]]]


class TimerSet:
    """Owns every delayed and periodic callback of one component.

    ``dispose`` cancels all of them at once, so a component that disposes its
    set on every exit path cannot leave timers behind.
    """

    def __init__(self, name: str = "timers") -> None:
        self._name = name
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def active_count(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def call_later(self, delay: float, callback: Callback) -> asyncio.Task[None]:
        return self._spawn(self._run_later(delay, callback), f"{self._name}:later")

    def call_every(self, interval: float, callback: Callback) -> asyncio.Task[None]:
        return self._spawn(self._run_every(interval, callback), f"{self._name}:every")

    def cancel(self, timer: asyncio.Task[None] | None) -> None:
        if timer is None:
            return
        self._tasks.discard(timer)
        if not _has_running_loop() or timer is not asyncio.current_task():
            timer.cancel()

    def dispose(self) -> None:
        tasks, self._tasks = self._tasks, set()
        current = asyncio.current_task() if _has_running_loop() else None
        for task in tasks:
            if task is not current:
                task.cancel()

    def _spawn(self, coro: Awaitable[None], name: str) -> asyncio.Task[None]:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_later(self, delay: float, callback: Callback) -> None:
        await asyncio.sleep(delay)
        # A fired one-shot timer no longer counts as pending.
        self._tasks.discard(asyncio.current_task())  # type: ignore[arg-type]
        await self._invoke(callback)

    async def _run_every(self, interval: float, callback: Callback) -> None:
        while True:
            await asyncio.sleep(interval)
            await self._invoke(callback)

    async def _invoke(self, callback: Callback) -> None:
        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Timer callback failed in %s", self._name)


def _has_running_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
