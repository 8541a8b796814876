# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from uuid import uuid4

from threadloom.config.configuration import Settings
from threadloom.engine.timers import TimerSet
from threadloom.errors import ExecutionError, TriggerNotFoundError, WebhookDisabledError
from threadloom.events import BaseEvent, MessageEvent
from threadloom.sessions.manager import Session, SessionManager
from threadloom.threads.store import SQLiteThreadStore
from threadloom.threads.thread import ConversationThread

from .interpolation import Parameters, interpolate_commands
from .models import Trigger
from .schedule import is_expired
from .store import TriggerStore

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "pending-"


class ExecutionMode(str, Enum):
    DIRECT = "direct"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"


@dataclass(slots=True)
class ExecutionOptions:
    title: Optional[str] = None
    await_final_answer: bool = False
    prompts: Optional[list[str]] = None


@dataclass(slots=True)
class ExecutionResult:
    thread_id: str
    last_event: Optional[MessageEvent] = None
    placeholder: bool = False


class _FinalAnswerWaiter:
    """Resolves with the first assistant message that carries an author name."""

    def __init__(self) -> None:
        self.future: asyncio.Future[MessageEvent] = asyncio.get_running_loop().create_future()

    def __call__(self, event: BaseEvent) -> None:
        if isinstance(event, MessageEvent) and event.role == "assistant" and event.name and not self.future.done():
            self.future.set_result(event)


class ExecutionCoordinator:
    """Runs triggers through one path whatever started them: user, scheduler or webhook."""

    def __init__(
        self,
        settings: Settings,
        triggers: TriggerStore,
        sessions: SessionManager,
        store: SQLiteThreadStore,
    ) -> None:
        self._settings = settings
        self._triggers = triggers
        self._sessions = sessions
        self._store = store
        self._timers = TimerSet("executions")
        self._background: set[asyncio.Task] = set()

    @property
    def timers(self) -> TimerSet:
        return self._timers

    async def execute_prompt(
        self,
        prompt_id: str,
        parameters: Parameters = None,
        username: Optional[str] = None,
        mode: ExecutionMode = ExecutionMode.DIRECT,
        options: Optional[ExecutionOptions] = None,
    ) -> ExecutionResult:
        options = options or ExecutionOptions()
        trigger = await self._triggers.find(prompt_id)
        if trigger is None:
            raise TriggerNotFoundError(prompt_id)
        if mode == ExecutionMode.WEBHOOK and not trigger.webhook_enabled:
            raise WebhookDisabledError(prompt_id)

        if options.prompts:
            prompts = list(options.prompts)
        elif trigger.commands:
            if parameters is None and mode == ExecutionMode.SCHEDULED:
                parameters = trigger.parameters
            prompts = interpolate_commands(trigger.commands, parameters)
        else:
            raise ExecutionError(f"Trigger {prompt_id} has no commands configured")

        username = username or trigger.created_by
        client_id = f"{mode.value}-{uuid4().hex}"
        waiter = _FinalAnswerWaiter() if options.await_final_answer else None
        logger.info(
            "Executing trigger %s (%s) in %s mode for %s with %d prompts",
            trigger.id,
            trigger.name,
            mode.value,
            username,
            len(prompts),
        )

        start = asyncio.create_task(self._start(trigger, client_id, username, prompts, options.title, waiter))
        self._track(start)
        try:
            session = await asyncio.wait_for(asyncio.shield(start), timeout=self._settings.resolve_timeout)
        except asyncio.TimeoutError:
            placeholder = f"{PLACEHOLDER_PREFIX}{client_id}"
            logger.warning("Thread resolution for trigger %s timed out; answering with %s", trigger.id, placeholder)
            self._schedule_cleanup(client_id)
            return ExecutionResult(thread_id=placeholder, placeholder=True)

        thread_id = session.runner.thread_id or ""
        if waiter is None:
            self._schedule_cleanup(client_id)
            return ExecutionResult(thread_id=thread_id)
        return await self._await_final_answer(session, thread_id, waiter)

    async def resolve_thread(self, trigger: Trigger, username: str, title: Optional[str] = None) -> str:
        """Reuse the trigger's active thread while it is within its lifetime, else create one."""
        if trigger.thread_lifetime and trigger.active_thread_id:
            thread = await self._store.get_by_id(trigger.project, trigger.active_thread_id)
            if thread is not None and not is_expired(thread.created_date, trigger.thread_lifetime):
                logger.debug("Reusing thread %s for trigger %s", thread.id, trigger.id)
                return thread.id

        thread = ConversationThread(project_id=trigger.project, username=username, name=title or trigger.name)
        await self._store.save(thread)
        if trigger.thread_lifetime:
            latest = await self._triggers.get(trigger.project, trigger.id) or trigger
            latest.active_thread_id = thread.id
            await self._triggers.save(latest)
            trigger.active_thread_id = thread.id
            logger.info("Trigger %s rotated to thread %s", trigger.id, thread.id)
        return thread.id

    async def close(self) -> None:
        self._timers.dispose()
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()

    async def _start(
        self,
        trigger: Trigger,
        client_id: str,
        username: str,
        prompts: list[str],
        title: Optional[str],
        waiter: Optional[_FinalAnswerWaiter],
    ) -> Session:
        thread_id = await self.resolve_thread(trigger, username, title)
        session = await self._sessions.get_or_create(
            client_id,
            project_id=trigger.project,
            username=username,
            thread_id=thread_id,
            one_shot=True,
        )
        if waiter is not None:
            session.runner.channel.subscribe(waiter)
        for prompt in prompts:
            session.runner.submit(prompt)
        return session

    async def _await_final_answer(
        self,
        session: Session,
        thread_id: str,
        waiter: _FinalAnswerWaiter,
    ) -> ExecutionResult:
        idle = asyncio.create_task(session.runner.wait_idle())
        try:
            await asyncio.wait(
                {waiter.future, idle},
                timeout=self._settings.sync_wait_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            idle.cancel()
        last_event = waiter.future.result() if waiter.future.done() and not waiter.future.cancelled() else None
        if last_event is None and not session.runner.busy:
            logger.info("Run on thread %s ended without an assistant answer", thread_id)
        elif last_event is None:
            logger.warning("No answer on thread %s within %ss", thread_id, self._settings.sync_wait_timeout)
        if not waiter.future.done():
            waiter.future.cancel()
        if last_event is not None and session.runner.busy:
            # The answer is only persisted once the run settles.
            try:
                await asyncio.wait_for(session.runner.wait_idle(), timeout=self._settings.resolve_timeout)
            except asyncio.TimeoutError:
                logger.warning("Run on thread %s still busy after its answer; stopping it", thread_id)
        await self._sessions.terminate(session.client_id)
        return ExecutionResult(thread_id=thread_id, last_event=last_event)

    def _schedule_cleanup(self, client_id: str) -> None:
        self._timers.call_later(self._settings.oneshot_cleanup_delay, lambda: self._sessions.terminate(client_id))

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background execution failed: %s", task.exception())
