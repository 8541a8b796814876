# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from threadloom.config.agents import AgentDefinition, ModelSpec
from threadloom.events import (
    BaseEvent,
    ErrorEvent,
    ToolRequestEvent,
    ToolResponseEvent,
)
from threadloom.llms.errors import ProviderErrorKind, classify_provider_error, describe_provider_error
from threadloom.llms.llm import ProviderAdapter, ToolSpec
from threadloom.threads.thread import ConversationThread, RunStatus

from .compaction import make_compactor
from .interactor import Interactor
from .sanitize import sanitize_messages
from .timers import TimerSet
from .tools import ToolExecutor

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 3
BUDGET_PADDING = 20
THRESHOLD_OPTIONS = ["proceed", "stop"]

ModelResolver = Callable[[AgentDefinition], Optional[ModelSpec]]

_END = object()


def compute_char_budget(model: ModelSpec, agent: AgentDefinition, tools: list[ToolSpec]) -> int:
    overhead = len(agent.instructions) + sum(tool.char_length for tool in tools) + BUDGET_PADDING
    return max(0, model.context_window * CHARS_PER_TOKEN - overhead)


class CompletionRun:
    """The event stream of one engine run; iterate it to receive events until the run ends."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False
        self.task: Optional[asyncio.Task[None]] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, event: BaseEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_END)

    def __aiter__(self) -> "CompletionRun":
        return self

    async def __anext__(self) -> BaseEvent:
        item = await self._queue.get()
        if item is _END:
            self._queue.put_nowait(_END)
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    async def wait(self) -> None:
        if self.task is not None:
            await asyncio.gather(self.task, return_exceptions=True)


class CompletionEngine:
    """Runs the agent loop for one session: model turn, tool calls, repeat.

    The engine never lets a provider or tool failure escape a run; both end up as
    events in the run's stream. ``kill`` ends the current run and disposes every
    timer the engine owns.
    """

    def __init__(
        self,
        provider: ProviderAdapter,
        model_resolver: ModelResolver,
        *,
        tools: Optional[ToolExecutor] = None,
        thinking_interval: float = 1.0,
        auto_answer: Optional[str] = None,
    ) -> None:
        self._provider = provider
        self._model_resolver = model_resolver
        self._tools = tools
        self._thinking_interval = thinking_interval
        self._timers = TimerSet("engine")
        self._current: Optional[CompletionRun] = None
        self.interactor = Interactor(self._emit, auto_answer=auto_answer)
        self.killed = False

    @property
    def timers(self) -> TimerSet:
        return self._timers

    @property
    def running(self) -> bool:
        return self._current is not None and not self._current.closed

    def run(self, agent: AgentDefinition, thread: ConversationThread) -> CompletionRun:
        if self.running:
            raise RuntimeError("A run is already in progress for this engine")
        self.killed = False
        run = CompletionRun()
        self._current = run
        thread.run_status = RunStatus.RUNNING
        run.task = asyncio.create_task(self._drive(agent, thread, run), name=f"completion:{thread.id}")
        run.task.add_done_callback(lambda _task: self._finish(thread, run))
        return run

    def kill(self) -> None:
        self.killed = True
        self.interactor.cancel_pending()
        self._timers.dispose()
        run = self._current
        if run is not None and run.task is not None and not run.task.done():
            if run.task is not asyncio.current_task():
                run.task.cancel()

    def _finish(self, thread: ConversationThread, run: CompletionRun) -> None:
        # Also reached when the task is cancelled before _drive starts.
        if thread.run_status == RunStatus.RUNNING:
            thread.run_status = RunStatus.STOPPED
        run.close()

    def _emit(self, event: BaseEvent) -> None:
        if self._current is None or self._current.closed:
            logger.debug("Dropping %s event emitted outside of a run", event.type)
            return
        self._current.push(event)

    async def _drive(self, agent: AgentDefinition, thread: ConversationThread, run: CompletionRun) -> None:
        try:
            model = self._model_resolver(agent)
            if model is None:
                self.interactor.error(f"No model available for agent {agent.name}")
                thread.run_status = RunStatus.STOPPED
                return
            tools = self._tools.specs(agent.allowed_tools) if self._tools is not None else []
            while thread.run_status == RunStatus.RUNNING and not self.killed:
                if not await self._turn(agent, model, tools, thread):
                    break
            if thread.run_status == RunStatus.RUNNING:
                thread.run_status = RunStatus.STOPPED if self.killed else RunStatus.DONE
        except asyncio.CancelledError:
            thread.run_status = RunStatus.STOPPED
            raise
        except Exception as exc:
            logger.exception("Completion run failed for thread %s", thread.id)
            self.interactor.error(str(exc) or type(exc).__name__)
            thread.run_status = RunStatus.STOPPED
        finally:
            self._timers.dispose()
            run.close()

    async def _turn(
        self,
        agent: AgentDefinition,
        model: ModelSpec,
        tools: list[ToolSpec],
        thread: ConversationThread,
    ) -> bool:
        thinking = self._timers.call_every(self._thinking_interval, self.interactor.thinking)
        try:
            budget = compute_char_budget(model, agent, tools)
            if budget == 0:
                self._report_overflow(agent, model)
                thread.run_status = RunStatus.STOPPED
                return False
            view = await thread.get_messages(budget, make_compactor(self._provider, model, self.interactor.warn))
            messages = sanitize_messages(view.messages, agent.name, agent.allowed_tools)
            result = await self._provider.complete_turn(model=model, agent=agent, messages=messages, tools=tools)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._handle_error(exc, model)
            thread.run_status = RunStatus.STOPPED
            return False
        finally:
            self._timers.cancel(thinking)

        if self.killed:
            return False

        usage = result.usage
        thread.add_usage(
            input=usage.input,
            output=usage.output,
            cache_read=usage.cache_read,
            cache_write=usage.cache_write,
            price=usage.price,
        )
        if result.text:
            # A merged answer is streamed whole, under the id it is stored with.
            message = thread.add_agent_message(agent.name, result.text)
            self._emit(message.model_copy())

        requests = [
            ToolRequestEvent(tool_request_id=call.id, name=call.name, args=call.args) for call in result.tool_calls
        ]
        return await self._process_tool_requests(requests, thread)

    async def _process_tool_requests(self, requests: list[ToolRequestEvent], thread: ConversationThread) -> bool:
        if not requests:
            return False

        usage = thread.usage
        if usage.threshold_reached():
            if not await self._confirm_threshold(thread):
                thread.run_status = RunStatus.STOPPED
                return False
            self.interactor.display_text(usage.raise_threshold())

        responses = await asyncio.gather(*(self._run_tool(request) for request in requests))
        if self.killed:
            return False
        thread.add_tool_requests(requests)
        thread.add_tool_responses(responses)
        return thread.run_status == RunStatus.RUNNING and not self.killed

    async def _confirm_threshold(self, thread: ConversationThread) -> bool:
        usage = thread.usage
        if usage.price > 0:
            kind, current, limit = "cost", f"{usage.price:.2f}", f"{usage.price_threshold:.2f}"
        else:
            kind, current, limit = "iteration", str(usage.iterations), str(usage.iterations_threshold)
        explanation = (
            f"{kind} threshold reached ({current} >= {limit}).\n"
            "Proceeding will:\n"
            f"- Double the {kind} limit\n"
            "- Continue processing with the current context\n\n"
            "Stopping will:\n"
            "- End the current run\n"
            "- Clear pending commands\n"
            "- Return to prompt"
        )
        choice = await self.interactor.choose_option(THRESHOLD_OPTIONS, explanation, "What do you want to do?")
        logger.info("Threshold prompt on thread %s answered with %r", thread.id, choice)
        return choice.strip().lower() == "proceed"

    async def _run_tool(self, request: ToolRequestEvent) -> ToolResponseEvent:
        self._emit(request)
        try:
            if self._tools is None:
                raise LookupError("No tools are available")
            response = await self._tools.run(request)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Tool %s failed: %s", request.name, exc)
            response = request.build_response(f"Error running tool {request.name}: {exc}")
        self._emit(response)
        return response

    def _report_overflow(self, agent: AgentDefinition, model: ModelSpec) -> None:
        message = (
            f"Agent {agent.name} does not fit model {model.name}: its instructions and tools "
            f"exceed the {model.context_window} token context window"
        )
        logger.error(message)
        self._emit(ErrorEvent(error=message, kind=ProviderErrorKind.TOKEN_OVERFLOW.value))
        self.interactor.warn(message)

    def _handle_error(self, exc: Exception, model: ModelSpec) -> None:
        kind = classify_provider_error(exc)
        message = describe_provider_error(exc, provider=self._provider.name, model=model.name, kind=kind)
        logger.error("Provider %s failed on model %s (%s): %s", self._provider.name, model.name, kind.value, exc)
        self._emit(ErrorEvent(error=str(exc) or message, kind=kind.value))
        self.interactor.warn(message)
