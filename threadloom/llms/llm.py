# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Sequence

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

from threadloom.config.agents import AgentDefinition, ModelSpec
from threadloom.events import (
    MessageEvent,
    SummaryEvent,
    ToolRequestEvent,
    ToolResponseEvent,
)

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "Summary of the earlier conversation:\n"
DEFAULT_MAX_OUTPUT_TOKENS = 8192


@dataclass(slots=True)
class ToolSpec:
    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": self.parameters},
        }

    @property
    def char_length(self) -> int:
        return len(json.dumps(self.to_openai_tool()))


@dataclass(slots=True)
class ToolCall:
    id: str
    name: str
    args: str = "{}"


@dataclass(slots=True)
class TurnUsage:
    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    price: float = 0.0


@dataclass(slots=True)
class TurnResult:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: TurnUsage = field(default_factory=TurnUsage)


class ProviderAdapter(Protocol):
    """What the completion engine needs from a model provider."""

    name: str

    async def complete_turn(
        self,
        *,
        model: ModelSpec,
        agent: AgentDefinition,
        messages: Sequence[Any],
        tools: Sequence[ToolSpec],
    ) -> TurnResult: ...

    async def complete(self, prompt: str, *, model: ModelSpec, max_tokens: Optional[int] = None) -> str: ...


def compute_price(model: ModelSpec, usage: TurnUsage) -> float:
    price = model.price
    return (
        usage.input * price.input
        + usage.output * price.output
        + usage.cache_read * price.cache_read
        + usage.cache_write * price.cache_write
    ) / 1_000_000


def to_langchain_messages(instructions: str, messages: Sequence[Any]) -> list[BaseMessage]:
    """Convert thread history into LangChain messages.

    Consecutive tool requests are grouped into one assistant message, attached to the
    preceding assistant text when there is one, so that tool results always follow
    the message that asked for them.
    """
    converted: list[BaseMessage] = []
    if instructions:
        converted.append(SystemMessage(content=instructions))
    for message in messages:
        if isinstance(message, MessageEvent):
            if message.role == "assistant":
                converted.append(AIMessage(content=message.content))
            else:
                converted.append(HumanMessage(content=message.content))
        elif isinstance(message, SummaryEvent):
            converted.append(HumanMessage(content=SUMMARY_PREFIX + message.summary))
        elif isinstance(message, ToolRequestEvent):
            call = {"id": message.tool_request_id, "name": message.name, "args": message.parsed_args()}
            previous = converted[-1] if converted else None
            if isinstance(previous, AIMessage):
                converted[-1] = AIMessage(content=previous.content, tool_calls=[*previous.tool_calls, call])
            else:
                converted.append(AIMessage(content="", tool_calls=[call]))
        elif isinstance(message, ToolResponseEvent):
            converted.append(ToolMessage(content=message.output, tool_call_id=message.tool_request_id))
    return converted


def _text_content(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def _turn_usage(message: BaseMessage) -> TurnUsage:
    metadata = getattr(message, "usage_metadata", None) or {}
    details = metadata.get("input_token_details") or {}
    cache_read = details.get("cache_read", 0) or 0
    cache_write = details.get("cache_creation", 0) or 0
    return TurnUsage(
        input=max(0, (metadata.get("input_tokens", 0) or 0) - cache_read - cache_write),
        output=metadata.get("output_tokens", 0) or 0,
        cache_read=cache_read,
        cache_write=cache_write,
    )


def build_chat_model(
    model: ModelSpec,
    *,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
) -> BaseChatModel:
    kwargs: dict[str, Any] = {"model": model.name, "max_tokens": max_tokens or DEFAULT_MAX_OUTPUT_TOKENS}
    if temperature is not None:
        kwargs["temperature"] = temperature
    if model.api_key:
        kwargs["api_key"] = model.api_key
    if model.base_url:
        kwargs["base_url"] = model.base_url

    provider = model.provider.lower()
    if provider == "anthropic":
        from langchain_anthropic import ChatAnthropic

        return ChatAnthropic(**kwargs)
    if provider in {"openai", "openai-compatible"}:
        from langchain_openai import ChatOpenAI

        return ChatOpenAI(**kwargs)
    raise ValueError(f"Unsupported model provider: {model.provider}")


class LangChainProvider:
    """Provider adapter backed by LangChain chat models."""

    def __init__(self, name: str = "langchain") -> None:
        self.name = name

    async def complete_turn(
        self,
        *,
        model: ModelSpec,
        agent: AgentDefinition,
        messages: Sequence[Any],
        tools: Sequence[ToolSpec],
    ) -> TurnResult:
        llm = build_chat_model(model, temperature=agent.temperature, max_tokens=agent.max_output_tokens)
        runnable = llm.bind_tools([tool.to_openai_tool() for tool in tools]) if tools else llm
        response = await runnable.ainvoke(to_langchain_messages(agent.instructions, messages))

        usage = _turn_usage(response)
        usage.price = compute_price(model, usage)
        tool_calls = [
            ToolCall(id=call.get("id") or "", name=call["name"], args=json.dumps(call.get("args") or {}))
            for call in getattr(response, "tool_calls", None) or []
        ]
        logger.debug(
            "Model %s answered with %d tool calls (%d in / %d out tokens)",
            model.name,
            len(tool_calls),
            usage.input,
            usage.output,
        )
        return TurnResult(text=_text_content(response).strip(), tool_calls=tool_calls, usage=usage)

    async def complete(self, prompt: str, *, model: ModelSpec, max_tokens: Optional[int] = None) -> str:
        llm = build_chat_model(model, max_tokens=max_tokens)
        response = await llm.ainvoke([HumanMessage(content=prompt)])
        return _text_content(response)
