# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from .store import SQLiteThreadStore

logger = logging.getLogger(__name__)


class ThreadCleanupService:
    """Deletes threads that have not been modified for ``ttl_days``."""

    def __init__(
        self,
        store: SQLiteThreadStore,
        *,
        ttl_days: int = 30,
        interval: float = 24 * 60 * 60,
        initial_delay: float = 5 * 60,
    ) -> None:
        self._store = store
        self._ttl = timedelta(days=ttl_days)
        self._interval = interval
        self._initial_delay = initial_delay
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="thread-cleanup")
        logger.info(
            "Thread cleanup scheduled (ttl %s, first sweep in %ss, every %ss)",
            self._ttl,
            self._initial_delay,
            self._interval,
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run_once(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or datetime.now(timezone.utc)) - self._ttl
        return await self._store.delete_expired(cutoff)

    async def _loop(self) -> None:
        await asyncio.sleep(self._initial_delay)
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Thread cleanup sweep failed")
            await asyncio.sleep(self._interval)
