# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Union
from uuid import uuid4

from threadloom.errors import ThreadMutationError
from threadloom.events import (
    MessageEvent,
    SummaryEvent,
    ToolRequestEvent,
    ToolResponseEvent,
    new_timestamp,
)

logger = logging.getLogger(__name__)

HistoryMessage = Union[MessageEvent, ToolRequestEvent, ToolResponseEvent, SummaryEvent]
Compactor = Callable[[list[HistoryMessage], int], Awaitable[SummaryEvent]]

TRUNCATION_MARKER = "[Previous conversation truncated due to context window constraints]"


class RunStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    DONE = "done"


@dataclass(slots=True)
class Usage:
    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    iterations: int = 0
    price: float = 0.0
    price_threshold: float = 2.0
    iterations_threshold: int = 20

    def threshold_reached(self) -> bool:
        if self.price > 0:
            return self.price >= self.price_threshold
        return self.iterations >= self.iterations_threshold

    def raise_threshold(self) -> str:
        """Double the limit that was reached and describe the new value."""
        if self.price > 0:
            self.price_threshold *= 2
            return f"Cost threshold increased to {self.price_threshold:.2f}"
        self.iterations_threshold *= 2
        return f"Iteration threshold increased to {self.iterations_threshold}"


@dataclass(slots=True)
class MessageView:
    messages: list[HistoryMessage]
    compacted: bool


def summary_reserve(budget: int) -> int:
    """Characters kept aside for the summary that replaces older messages."""
    return max(100, budget // 20)


def _has_orphan_response(messages: list[HistoryMessage]) -> bool:
    requested = {message.tool_request_id for message in messages if isinstance(message, ToolRequestEvent)}
    return any(
        isinstance(message, ToolResponseEvent) and message.tool_request_id not in requested for message in messages
    )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ConversationThread:
    """Ordered, append-only history of one conversation plus its accounting."""

    project_id: str
    username: str
    id: str = field(default_factory=lambda: uuid4().hex)
    name: str = "untitled"
    summary: Optional[str] = None
    created_date: datetime = field(default_factory=_utc_now)
    modified_date: Optional[datetime] = None
    price: float = 0.0
    starring: set[str] = field(default_factory=set)
    data: dict[str, Any] = field(default_factory=dict)
    messages: list[HistoryMessage] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    run_status: RunStatus = RunStatus.DONE

    def __post_init__(self) -> None:
        if self.modified_date is None:
            self.modified_date = self.created_date

    @property
    def total_length(self) -> int:
        return sum(message.length for message in self.messages)

    def touch(self) -> None:
        self.modified_date = _utc_now()

    async def get_messages(
        self,
        char_budget: Optional[int] = None,
        compactor: Optional[Compactor] = None,
    ) -> MessageView:
        """Return the history to send to a model, compacted to fit ``char_budget``.

        When the whole history fits (or no budget is given) it is returned as is.
        Otherwise the most recent messages that fit are kept verbatim and every
        older message is replaced by a single summary. The kept suffix never holds
        a tool response whose request was summarised away.
        """
        messages = list(self.messages)
        if char_budget is None or sum(message.length for message in messages) <= char_budget:
            return MessageView(messages=messages, compacted=False)
        if char_budget <= 0:
            logger.warning("Thread %s has no room for history (budget %d chars)", self.id, char_budget)
            return MessageView(messages=[], compacted=True)

        reserve = summary_reserve(char_budget)
        suffix_budget = char_budget - reserve
        start = len(messages)
        used = 0
        while start > 0 and used + messages[start - 1].length <= suffix_budget:
            start -= 1
            used += messages[start].length
        while start < len(messages) and _has_orphan_response(messages[start:]):
            used -= messages[start].length
            start += 1

        older, recent = messages[:start], messages[start:]
        logger.warning(
            "Compacting thread %s: %d messages summarised, %d kept (budget %d chars)",
            self.id,
            len(older),
            len(recent),
            char_budget,
        )
        if compactor is not None:
            summary = await compactor(older, char_budget)
        else:
            summary = SummaryEvent(summary=TRUNCATION_MARKER)

        allowed = max(0, char_budget - used)
        if summary.length > allowed:
            summary = summary.model_copy(update={"summary": summary.summary[:allowed]})
        return MessageView(messages=[summary, *recent], compacted=True)

    def get_event_by_id(self, timestamp: str) -> Optional[HistoryMessage]:
        return next((message for message in self.messages if message.timestamp == timestamp), None)

    def last_message(self) -> Optional[HistoryMessage]:
        return self.messages[-1] if self.messages else None

    def truncate_at_message(self, timestamp: str) -> None:
        """Remove the user message ``timestamp`` and everything after it."""
        if self.run_status == RunStatus.RUNNING:
            raise ThreadMutationError("Cannot delete messages while the thread is running")
        index = next((i for i, message in enumerate(self.messages) if message.timestamp == timestamp), -1)
        if index < 0:
            raise ThreadMutationError(f"Message {timestamp} not found in thread {self.id}")
        if index == 0:
            raise ThreadMutationError("Cannot delete the first message of a thread")
        target = self.messages[index]
        if not isinstance(target, MessageEvent) or target.role != "user":
            raise ThreadMutationError("Only user messages can be deleted")
        removed = len(self.messages) - index
        del self.messages[index:]
        self.touch()
        logger.info("Truncated thread %s at %s (%d messages removed)", self.id, timestamp, removed)

    def add_user_message(self, username: str, content: str) -> MessageEvent:
        return self._add_message("user", username, content)

    def add_agent_message(self, agent_name: str, content: str) -> MessageEvent:
        return self._add_message("assistant", agent_name, content)

    def _add_message(self, role: str, name: str, content: str) -> MessageEvent:
        last = self.last_message()
        if isinstance(last, MessageEvent) and last.role == role and last.name == name:
            last.content = f"{last.content}\n\n{content}"
            self.touch()
            return last
        message = MessageEvent(role=role, name=name, content=content)
        self._append(message)
        return message

    def add_summary(self, summary: SummaryEvent) -> None:
        self._append(summary)

    def add_tool_requests(self, requests: Iterable[ToolRequestEvent]) -> None:
        for request in requests:
            if not request.tool_request_id or not request.name:
                continue
            self._append(request)

    def add_tool_responses(self, responses: Iterable[ToolResponseEvent]) -> None:
        """Append responses, dropping older identical calls and their responses."""
        for response in responses:
            request = self._find_request(response.tool_request_id)
            if request is None:
                logger.warning("Dropping tool response %s without a request", response.tool_request_id)
                continue
            similar = {
                message.tool_request_id
                for message in self.messages
                if isinstance(message, ToolRequestEvent)
                and message is not request
                and message.name == request.name
                and message.args == request.args
            }
            if similar:
                self.messages = [
                    message
                    for message in self.messages
                    if not (
                        isinstance(message, (ToolRequestEvent, ToolResponseEvent))
                        and message.tool_request_id in similar
                    )
                ]
            self._append(response)

    def add_tool_exchange(self, request: ToolRequestEvent, response: ToolResponseEvent) -> None:
        self.add_tool_requests([request])
        self.add_tool_responses([response])

    def add_usage(
        self,
        *,
        input: int = 0,
        output: int = 0,
        cache_read: int = 0,
        cache_write: int = 0,
        price: float = 0.0,
    ) -> None:
        self.price += price
        usage = self.usage
        usage.price += price
        usage.iterations += 1
        usage.input += input
        usage.output += output
        usage.cache_read += cache_read
        usage.cache_write += cache_write

    def _find_request(self, tool_request_id: str) -> Optional[ToolRequestEvent]:
        for message in self.messages:
            if isinstance(message, ToolRequestEvent) and message.tool_request_id == tool_request_id:
                return message
        return None

    def _append(self, message: HistoryMessage) -> None:
        last = self.last_message()
        if last is not None and message.timestamp <= last.timestamp:
            message = message.model_copy(update={"timestamp": new_timestamp()})
        self.messages.append(message)
        self.touch()
