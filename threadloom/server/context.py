# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from threadloom.config.agents import ConfigResolver, YamlConfigResolver
from threadloom.config.configuration import Settings
from threadloom.engine.tools import Toolbox, ToolExecutor
from threadloom.llms.llm import LangChainProvider, ProviderAdapter
from threadloom.sessions.manager import SessionManager
from threadloom.sessions.runner import ConversationRunner
from threadloom.threads.cleanup import ThreadCleanupService
from threadloom.threads.registry import StoreRegistry
from threadloom.threads.store import SQLiteThreadStore
from threadloom.triggers.coordinator import ExecutionCoordinator
from threadloom.triggers.scheduler import SchedulerService
from threadloom.triggers.store import TriggerStore

logger = logging.getLogger(__name__)


class AppContext:
    """Owns every long-lived service of the server and their start/stop order."""

    def __init__(
        self,
        settings: Settings,
        *,
        config: Optional[ConfigResolver] = None,
        provider: Optional[ProviderAdapter] = None,
        tools: Optional[ToolExecutor] = None,
        background: bool = True,
    ) -> None:
        self.settings = settings
        self.config = config or YamlConfigResolver(settings.projects_dir)
        self.provider = provider or LangChainProvider()
        self.tools = tools if tools is not None else Toolbox()
        self.background = background
        self.registry = StoreRegistry(busy_timeout_ms=settings.sqlite_busy_timeout_ms)
        self.triggers = TriggerStore(settings.projects_dir)
        self.sessions = SessionManager(settings, self._make_runner)
        self._store: Optional[SQLiteThreadStore] = None
        self._coordinator: Optional[ExecutionCoordinator] = None
        self._scheduler: Optional[SchedulerService] = None
        self._cleanup: Optional[ThreadCleanupService] = None

    @property
    def store(self) -> SQLiteThreadStore:
        if self._store is None:
            raise RuntimeError("Application context has not been started")
        return self._store

    @property
    def coordinator(self) -> ExecutionCoordinator:
        if self._coordinator is None:
            raise RuntimeError("Application context has not been started")
        return self._coordinator

    @property
    def scheduler(self) -> Optional[SchedulerService]:
        return self._scheduler

    async def start(self) -> None:
        self.settings.home.mkdir(parents=True, exist_ok=True)
        self._store = await self.registry.get(self.settings.home)
        self._coordinator = ExecutionCoordinator(self.settings, self.triggers, self.sessions, self._store)
        self._scheduler = SchedulerService(
            self.triggers, self._coordinator, interval=self.settings.scheduler_interval
        )
        self._cleanup = ThreadCleanupService(
            self._store,
            ttl_days=self.settings.thread_ttl_days,
            interval=self.settings.cleanup_interval,
            initial_delay=self.settings.cleanup_initial_delay,
        )
        if self.background:
            self.sessions.start()
            await self._scheduler.start()
            self._cleanup.start()
        logger.info("Threadloom started with home %s", self.settings.home)

    async def shutdown(self) -> None:
        steps: list[tuple[str, Optional[Callable[[], Awaitable[None]]]]] = [
            ("scheduler", self._scheduler.stop if self._scheduler else None),
            ("thread cleanup", self._cleanup.stop if self._cleanup else None),
            ("executions", self._coordinator.close if self._coordinator else None),
            ("sessions", self.sessions.shutdown),
            ("thread stores", self.registry.close),
        ]
        for name, step in steps:
            if step is None:
                continue
            try:
                await step()
            except Exception:
                logger.exception("Failed to stop %s", name)
        logger.info("Threadloom stopped")

    def _make_runner(
        self,
        *,
        project_id: str,
        username: str,
        thread_id: Optional[str],
        one_shot: bool,
    ) -> ConversationRunner:
        return ConversationRunner(
            project_id=project_id,
            username=username,
            store=self.store,
            config=self.config,
            provider=self.provider,
            tools=self.tools,
            thread_id=thread_id,
            one_shot=one_shot,
            thinking_interval=self.settings.thinking_interval,
        )
