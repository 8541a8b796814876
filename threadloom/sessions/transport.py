# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, Protocol
from uuid import uuid4

from threadloom.events import BaseEvent

logger = logging.getLogger(__name__)


class TransportClosedError(ConnectionError):
    pass


class Transport(Protocol):
    """A live connection to a client. ``send`` raises when the client is gone."""

    id: str

    @property
    def closed(self) -> bool: ...

    async def send(self, event: BaseEvent) -> None: ...

    async def close(self) -> None: ...


def format_sse(event: BaseEvent) -> str:
    data = json.dumps(event.to_payload(), ensure_ascii=False)
    return f"event: {event.type}\ndata: {data}\n\n"


class SSETransport:
    """Transport feeding a server-sent-events response through a bounded queue."""

    def __init__(self, *, maxsize: int = 1000) -> None:
        self.id = uuid4().hex
        self._queue: asyncio.Queue[BaseEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: BaseEvent) -> None:
        if self._closed:
            raise TransportClosedError(f"Transport {self.id} is closed")
        if self._queue.full():
            self._queue.get_nowait()
            logger.warning("SSE client %s is lagging; dropped oldest event", self.id)
        self._queue.put_nowait(event)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def stream(self) -> AsyncIterator[str]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield format_sse(event)
