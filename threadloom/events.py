# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Events exchanged between the engine, sessions, transports and the store.

Every event is a pydantic model tagged by a literal ``type`` field. The four
history types (message, tool request, tool response, summary) form the closed
``ThreadMessage`` union persisted by the store; ``Event`` covers everything a
transport can receive.
"""

from __future__ import annotations

import json
import random
import string
import threading
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
_clock_lock = threading.Lock()
_last_instant: Optional[datetime] = None


def new_timestamp() -> str:
    """Return a unique, strictly increasing event id: ISO-8601 UTC plus a random suffix."""
    global _last_instant
    with _clock_lock:
        now = datetime.now(timezone.utc)
        if _last_instant is not None and now <= _last_instant:
            now = _last_instant + timedelta(microseconds=1)
        _last_instant = now
    suffix = "".join(random.choices(_SUFFIX_ALPHABET, k=5))
    return f"{now.strftime('%Y-%m-%dT%H:%M:%S.%f')}Z-{suffix}"


def truncate_text(text: str, max_length: int = 80) -> str:
    if len(text) <= max_length:
        return text
    stripped = text.strip()
    if stripped.startswith(("{", "[")):
        try:
            simplified = json.dumps(json.loads(stripped), separators=(",", ":"))
        except ValueError:
            simplified = None
        if simplified is not None:
            if len(simplified) <= max_length:
                return simplified
            return f"{simplified[:max_length]}...({len(simplified)} chars)"
    return text[:max_length] + "..."


class BaseEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    timestamp: str = Field(default_factory=new_timestamp)
    parent_key: Optional[str] = None

    @property
    def length(self) -> int:
        """Character weight of the event inside a context window."""
        return 0

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class MessageEvent(BaseEvent):
    type: Literal["message"] = "message"
    role: Literal["user", "assistant"]
    name: str
    content: str

    @property
    def length(self) -> int:
        return len(self.content)


class ToolRequestEvent(BaseEvent):
    type: Literal["tool_request"] = "tool_request"
    tool_request_id: str = ""
    name: str
    args: str = "{}"

    @model_validator(mode="after")
    def _default_request_id(self) -> "ToolRequestEvent":
        if not self.tool_request_id:
            self.tool_request_id = self.timestamp
        return self

    @property
    def length(self) -> int:
        return len(self.args) + len(self.name) + len(self.tool_request_id) + 20

    def parsed_args(self) -> dict[str, Any]:
        try:
            value = json.loads(self.args or "{}")
        except ValueError:
            return {}
        return value if isinstance(value, dict) else {"input": value}

    def build_response(self, output: str) -> "ToolResponseEvent":
        return ToolResponseEvent(tool_request_id=self.tool_request_id, output=output, parent_key=self.timestamp)

    def to_single_line(self, max_length: int = 50) -> str:
        return f"{self.name}({truncate_text(self.args, max_length)})"


class ToolResponseEvent(BaseEvent):
    type: Literal["tool_response"] = "tool_response"
    tool_request_id: str
    output: str

    @property
    def length(self) -> int:
        return len(self.output) + len(self.tool_request_id) + 20

    def to_single_line(self, max_length: int = 50) -> str:
        return truncate_text(self.output, max_length)


class SummaryEvent(BaseEvent):
    type: Literal["summary"] = "summary"
    summary: str

    @property
    def length(self) -> int:
        return len(self.summary)


class ErrorEvent(BaseEvent):
    type: Literal["error"] = "error"
    error: str
    kind: Optional[str] = None


class WarnEvent(BaseEvent):
    type: Literal["warn"] = "warn"
    warning: str


class TextEvent(BaseEvent):
    type: Literal["text"] = "text"
    speaker: Optional[str] = None
    text: str


class HeartbeatEvent(BaseEvent):
    type: Literal["heartbeat"] = "heartbeat"


class ThinkingEvent(BaseEvent):
    type: Literal["thinking"] = "thinking"


class ChoiceEvent(BaseEvent):
    type: Literal["choice"] = "choice"
    invite: str
    options: list[str]
    optional_question: Optional[str] = None

    def build_answer(self, answer: str) -> "AnswerEvent":
        return AnswerEvent(answer=answer, invite=self.invite, parent_key=self.timestamp)


class AnswerEvent(BaseEvent):
    type: Literal["answer"] = "answer"
    answer: str
    invite: Optional[str] = None


class OAuthRequestEvent(BaseEvent):
    type: Literal["oauth_request"] = "oauth_request"
    integration_name: str
    authorization_url: str
    state: Optional[str] = None


class ThreadSelectedEvent(BaseEvent):
    type: Literal["thread_selected"] = "thread_selected"
    thread_id: str
    thread_name: str


ThreadMessage = Annotated[
    Union[MessageEvent, ToolRequestEvent, ToolResponseEvent, SummaryEvent],
    Field(discriminator="type"),
]

Event = Annotated[
    Union[
        MessageEvent,
        ToolRequestEvent,
        ToolResponseEvent,
        SummaryEvent,
        ErrorEvent,
        WarnEvent,
        TextEvent,
        HeartbeatEvent,
        ThinkingEvent,
        ChoiceEvent,
        AnswerEvent,
        OAuthRequestEvent,
        ThreadSelectedEvent,
    ],
    Field(discriminator="type"),
]

HISTORY_TYPES = (MessageEvent, ToolRequestEvent, ToolResponseEvent, SummaryEvent)
HISTORY_TYPE_NAMES = frozenset({"message", "tool_request", "tool_response", "summary"})

_thread_message_adapter: TypeAdapter = TypeAdapter(ThreadMessage)
_event_adapter: TypeAdapter = TypeAdapter(Event)


def parse_thread_message(data: dict[str, Any]) -> Union[MessageEvent, ToolRequestEvent, ToolResponseEvent, SummaryEvent]:
    return _thread_message_adapter.validate_python(data)


def parse_event(data: dict[str, Any]) -> BaseEvent:
    return _event_adapter.validate_python(data)


def is_history_message(event: BaseEvent) -> bool:
    return isinstance(event, HISTORY_TYPES)
