# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from threadloom.events import BaseEvent

logger = logging.getLogger(__name__)

Handler = Callable[[BaseEvent], Union[None, Awaitable[Any]]]

DEFAULT_QUEUE_SIZE = 1000


class Subscription:
    """One subscriber of a channel: its own queue drained by its own task."""

    def __init__(self, channel: "EventChannel", handler: Handler, maxsize: int) -> None:
        self._channel = channel
        self._handler = handler
        self._queue: asyncio.Queue[BaseEvent] = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task[None] = asyncio.create_task(self._consume(), name=f"channel:{channel.name}")
        self.dropped = 0

    @property
    def active(self) -> bool:
        return not self._task.done()

    def offer(self, event: BaseEvent) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self._queue.task_done()
            self.dropped += 1
            logger.warning("Subscriber of %s is lagging; dropped oldest event", self._channel.name)
        self._queue.put_nowait(event)

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()

    def unsubscribe(self) -> None:
        self._channel._remove(self)
        self._task.cancel()
        # Undelivered events must still be marked done or a pending join() never returns.
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                result = self._handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Subscriber of %s failed on %s event", self._channel.name, event.type)
            finally:
                self._queue.task_done()


class EventChannel:
    """Fan-out of one thread's events to any number of subscribers."""

    def __init__(self, name: str, *, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self.name = name
        self._maxsize = maxsize
        self._subscriptions: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, handler: Handler, *, maxsize: Optional[int] = None) -> Subscription:
        subscription = Subscription(self, handler, maxsize or self._maxsize)
        self._subscriptions.append(subscription)
        return subscription

    def publish(self, event: BaseEvent) -> None:
        for subscription in list(self._subscriptions):
            subscription.offer(event)

    async def drain(self) -> None:
        await asyncio.gather(*(subscription.drain() for subscription in list(self._subscriptions)))

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.unsubscribe()

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
