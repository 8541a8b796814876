# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from threadloom.events import (
    AnswerEvent,
    BaseEvent,
    ChoiceEvent,
    ErrorEvent,
    TextEvent,
    ThinkingEvent,
    WarnEvent,
)

logger = logging.getLogger(__name__)

Publisher = Callable[[BaseEvent], None]


class Interactor:
    """Bridges the engine and whoever is listening to a session.

    Prompts are published as ``ChoiceEvent``; the matching ``AnswerEvent`` (by
    ``parent_key``) resolves the waiting coroutine. With ``auto_answer`` set, prompts
    are answered immediately, which is how unattended runs avoid blocking.
    """

    def __init__(self, publish: Publisher, *, auto_answer: Optional[str] = None) -> None:
        self._publish = publish
        self.auto_answer = auto_answer
        self._pending: dict[str, asyncio.Future[str]] = {}

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def send(self, event: BaseEvent) -> None:
        self._publish(event)

    def display_text(self, text: str, speaker: Optional[str] = None) -> None:
        self._publish(TextEvent(text=text, speaker=speaker))

    def warn(self, warning: str) -> None:
        self._publish(WarnEvent(warning=warning))

    def error(self, error: str, kind: Optional[str] = None) -> None:
        self._publish(ErrorEvent(error=error, kind=kind))

    def thinking(self) -> None:
        self._publish(ThinkingEvent())

    async def choose_option(
        self,
        options: list[str],
        invite: str,
        optional_question: Optional[str] = None,
    ) -> str:
        choice = ChoiceEvent(options=options, invite=invite, optional_question=optional_question)
        if self.auto_answer is not None:
            self._publish(choice)
            self._publish(choice.build_answer(self.auto_answer))
            return self.auto_answer

        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._pending[choice.timestamp] = future
        self._publish(choice)
        try:
            return await future
        finally:
            self._pending.pop(choice.timestamp, None)

    def receive_answer(self, answer: AnswerEvent) -> bool:
        """Resolve the prompt ``answer`` replies to; False when nothing was waiting."""
        key = answer.parent_key
        if key is None and len(self._pending) == 1:
            key = next(iter(self._pending))
        future = self._pending.get(key) if key is not None else None
        if future is None or future.done():
            logger.debug("Ignoring answer %s with no pending prompt", answer.timestamp)
            return False
        future.set_result(answer.answer)
        return True

    def cancel_pending(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()
