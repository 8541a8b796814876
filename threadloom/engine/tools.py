# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Protocol

from threadloom.events import ToolRequestEvent, ToolResponseEvent
from threadloom.llms.llm import ToolSpec

logger = logging.getLogger(__name__)


class ToolExecutor(Protocol):
    def specs(self, allowed: Optional[Iterable[str]] = None) -> list[ToolSpec]: ...

    async def run(self, request: ToolRequestEvent) -> ToolResponseEvent: ...


@dataclass(slots=True)
class RegisteredTool:
    spec: ToolSpec
    handler: Callable[..., Any]


class UnknownToolError(LookupError):
    pass


def format_tool_output(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


class Toolbox:
    """In-process registry of callables exposed to agents as tools.

    Handlers receive the parsed JSON arguments as keyword arguments. Coroutine
    functions are awaited; plain functions run in a worker thread.
    """

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        handler: Callable[..., Any],
        *,
        description: str = "",
        parameters: Optional[dict[str, Any]] = None,
    ) -> None:
        if name in self._tools:
            raise ValueError(f"Tool {name} is already registered")
        spec = ToolSpec(name=name, description=description or (inspect.getdoc(handler) or ""))
        if parameters is not None:
            spec.parameters = parameters
        self._tools[name] = RegisteredTool(spec=spec, handler=handler)

    def tool(self, name: Optional[str] = None, *, description: str = "", parameters: Optional[dict[str, Any]] = None):
        def decorator(handler: Callable[..., Any]) -> Callable[..., Any]:
            self.register(name or handler.__name__, handler, description=description, parameters=parameters)
            return handler

        return decorator

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def specs(self, allowed: Optional[Iterable[str]] = None) -> list[ToolSpec]:
        if allowed is None:
            return [tool.spec for tool in self._tools.values()]
        wanted = set(allowed)
        return [tool.spec for name, tool in self._tools.items() if name in wanted]

    async def run(self, request: ToolRequestEvent) -> ToolResponseEvent:
        tool = self._tools.get(request.name)
        if tool is None:
            raise UnknownToolError(f"Unknown tool {request.name}")
        kwargs = request.parsed_args()
        logger.debug("Running tool %s", request.to_single_line())
        if inspect.iscoroutinefunction(tool.handler):
            result = await tool.handler(**kwargs)
        else:
            result = await asyncio.to_thread(tool.handler, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        return request.build_response(format_tool_output(result))
