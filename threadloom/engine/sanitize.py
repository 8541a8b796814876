# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Reshape thread history into what the running agent should see."""

from __future__ import annotations

import re
from typing import AbstractSet, Optional

from threadloom.events import MessageEvent, ToolRequestEvent, ToolResponseEvent
from threadloom.threads.thread import HistoryMessage

_AGENT_PREFIX = re.compile(r"^@\S+\s*")


def strip_agent_prefixes(messages: list[HistoryMessage]) -> list[HistoryMessage]:
    """Drop the leading ``@agent`` routing mention from user turns."""
    result: list[HistoryMessage] = []
    for message in messages:
        if isinstance(message, MessageEvent) and message.role == "user":
            stripped = _AGENT_PREFIX.sub("", message.content, count=1)
            if stripped != message.content:
                message = message.model_copy(update={"content": stripped})
        result.append(message)
    return result


def convert_agent_messages(messages: list[HistoryMessage], current_agent: str) -> list[HistoryMessage]:
    """Present other agents' answers as tagged user turns."""
    result: list[HistoryMessage] = []
    for message in messages:
        if (
            isinstance(message, MessageEvent)
            and message.role == "assistant"
            and message.name
            and message.name != current_agent
        ):
            message = message.model_copy(
                update={"role": "user", "content": f"<agent={message.name}>{message.content}</agent>"}
            )
        result.append(message)
    return result


def filter_unknown_tool_calls(
    messages: list[HistoryMessage],
    allowed_tools: AbstractSet[str],
) -> list[HistoryMessage]:
    """Remove tool requests outside ``allowed_tools`` together with their responses."""
    foreign = {
        message.tool_request_id
        for message in messages
        if isinstance(message, ToolRequestEvent) and message.name not in allowed_tools
    }
    if not foreign:
        return messages
    return [
        message
        for message in messages
        if not (isinstance(message, (ToolRequestEvent, ToolResponseEvent)) and message.tool_request_id in foreign)
    ]


def sanitize_messages(
    messages: list[HistoryMessage],
    agent_name: Optional[str] = None,
    allowed_tools: Optional[AbstractSet[str]] = None,
) -> list[HistoryMessage]:
    messages = strip_agent_prefixes(messages)
    if allowed_tools is not None:
        messages = filter_unknown_tool_calls(messages, allowed_tools)
    if agent_name:
        messages = convert_agent_messages(messages, agent_name)
    return messages
