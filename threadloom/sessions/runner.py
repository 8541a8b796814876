# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import asyncio
import logging
import re
from typing import Awaitable, Callable, Optional

from threadloom.config.agents import AgentDefinition, ConfigResolver
from threadloom.engine.completion import CompletionEngine
from threadloom.engine.tools import ToolExecutor
from threadloom.errors import AgentNotFoundError, PersistenceError, ThreadNotFoundError
from threadloom.events import AnswerEvent, ErrorEvent, ThreadSelectedEvent
from threadloom.llms.llm import ProviderAdapter
from threadloom.threads.store import SQLiteThreadStore
from threadloom.threads.thread import ConversationThread, RunStatus

from .channel import EventChannel

logger = logging.getLogger(__name__)

IdleCallback = Callable[["ConversationRunner"], Awaitable[None]]

_AGENT_MENTION = re.compile(r"^@(\S+)")
_MAX_NAME_LENGTH = 50
DEFAULT_THREAD_NAME = "untitled"
ONE_SHOT_ANSWER = "stop"


def derive_thread_name(content: str) -> str:
    cleaned = " ".join(_AGENT_MENTION.sub("", content.strip()).split())
    if not cleaned:
        return DEFAULT_THREAD_NAME
    if len(cleaned) <= _MAX_NAME_LENGTH:
        return cleaned
    return cleaned[: _MAX_NAME_LENGTH - 1].rstrip() + "…"


class ConversationRunner:
    """Works through the prompts of one session against one thread.

    Prompts are queued and handled one at a time: the prompt is routed to an agent,
    appended to the thread, the engine runs, its events are published on the
    thread channel and the thread is saved.
    """

    def __init__(
        self,
        *,
        project_id: str,
        username: str,
        store: SQLiteThreadStore,
        config: ConfigResolver,
        provider: ProviderAdapter,
        tools: Optional[ToolExecutor] = None,
        thread_id: Optional[str] = None,
        one_shot: bool = False,
        thinking_interval: float = 1.0,
        on_idle: Optional[IdleCallback] = None,
    ) -> None:
        self.project_id = project_id
        self.username = username
        self.one_shot = one_shot
        self.on_idle = on_idle
        self._store = store
        self._config = config
        self._requested_thread_id = thread_id
        self.thread: Optional[ConversationThread] = None
        self.channel = EventChannel(f"{project_id}:{thread_id or 'new'}")
        self.engine = CompletionEngine(
            provider,
            lambda agent: config.get_model(project_id, agent.model),
            tools=tools,
            thinking_interval=thinking_interval,
            auto_answer=ONE_SHOT_ANSWER if one_shot else None,
        )
        self._prompts: asyncio.Queue[str] = asyncio.Queue()
        self._worker: Optional[asyncio.Task[None]] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

    @property
    def thread_id(self) -> Optional[str]:
        return self.thread.id if self.thread else None

    @property
    def run_status(self) -> RunStatus:
        return self.thread.run_status if self.thread else RunStatus.DONE

    @property
    def busy(self) -> bool:
        return not self._idle.is_set()

    async def start(self) -> ConversationThread:
        if self.thread is None:
            if self._requested_thread_id:
                thread = await self._store.get_by_id(self.project_id, self._requested_thread_id)
                if thread is None:
                    raise ThreadNotFoundError(self.project_id, self._requested_thread_id)
            else:
                thread = ConversationThread(project_id=self.project_id, username=self.username)
                await self._store.save(thread)
                logger.info("Created thread %s in project %s for %s", thread.id, self.project_id, self.username)
            self.thread = thread
            self.channel.name = f"{self.project_id}:{thread.id}"
        if self._worker is None:
            self._worker = asyncio.create_task(self._work(), name=f"runner:{self.thread.id}")
        return self.thread

    def selected_event(self) -> ThreadSelectedEvent:
        if self.thread is None:
            raise RuntimeError("Runner has no thread; call start() first")
        return ThreadSelectedEvent(thread_id=self.thread.id, thread_name=self.thread.name)

    def submit(self, content: str) -> None:
        if self._closed:
            raise RuntimeError("Runner is closed")
        self._idle.clear()
        self._prompts.put_nowait(content)

    def answer(self, answer: AnswerEvent) -> bool:
        accepted = self.engine.interactor.receive_answer(answer)
        if accepted:
            self.channel.publish(answer)
        return accepted

    @property
    def awaiting_answer(self) -> bool:
        return self.engine.interactor.has_pending

    def stop(self) -> None:
        """Stop the current run and drop prompts still waiting."""
        dropped = 0
        while not self._prompts.empty():
            self._prompts.get_nowait()
            self._prompts.task_done()
            dropped += 1
        self.engine.kill()
        if dropped:
            logger.info("Dropped %d pending prompts on thread %s", dropped, self.thread_id)

    async def wait_idle(self) -> None:
        await self._idle.wait()

    async def close(self) -> None:
        self._closed = True
        self.stop()
        worker, self._worker = self._worker, None
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)
        self.channel.close()
        self._idle.set()

    def resolve_agent(self, content: str) -> AgentDefinition:
        match = _AGENT_MENTION.match(content.strip())
        if match:
            agent = self._config.find_agent(self.project_id, match.group(1))
            if agent is not None:
                return agent
            logger.debug("Unknown agent mention @%s, using default agent", match.group(1))
        return self._config.get_default_agent(self.project_id)

    async def _work(self) -> None:
        while True:
            content = await self._prompts.get()
            try:
                await self._handle_prompt(content)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Prompt handling failed on thread %s", self.thread_id)
                self.channel.publish(ErrorEvent(error=str(exc) or type(exc).__name__))
            finally:
                self._prompts.task_done()
            if self._prompts.empty():
                await self.channel.drain()
                self._idle.set()
                if self.on_idle is not None:
                    await self.on_idle(self)
                if self._closed:
                    return

    async def _handle_prompt(self, content: str) -> None:
        thread = self.thread
        if thread is None:
            raise RuntimeError("Runner has no thread; call start() first")
        try:
            agent = self.resolve_agent(content)
        except AgentNotFoundError as exc:
            self.channel.publish(ErrorEvent(error=str(exc)))
            return

        if thread.name == DEFAULT_THREAD_NAME and not thread.messages:
            thread.name = derive_thread_name(content)
        message = thread.add_user_message(self.username, content)
        self.channel.publish(message)

        run = self.engine.run(agent, thread)
        async for event in run:
            self.channel.publish(event)
        await run.wait()
        await self._save(thread)

    async def _save(self, thread: ConversationThread) -> None:
        try:
            await self._store.save(thread)
        except PersistenceError as exc:
            logger.exception("Failed to persist thread %s", thread.id)
            self.channel.publish(ErrorEvent(error=str(exc), kind="persistence"))
