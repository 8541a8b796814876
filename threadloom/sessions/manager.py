# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from threadloom.config.configuration import Settings
from threadloom.engine.timers import TimerSet
from threadloom.errors import SessionNotFoundError, SessionsClosedError
from threadloom.events import AnswerEvent, BaseEvent, HeartbeatEvent

from .channel import Subscription
from .runner import ConversationRunner
from .transport import Transport

logger = logging.getLogger(__name__)


class RunnerFactory(Protocol):
    def __call__(
        self,
        *,
        project_id: str,
        username: str,
        thread_id: Optional[str],
        one_shot: bool,
    ) -> ConversationRunner: ...


@dataclass
class Session:
    client_id: str
    project_id: str
    username: str
    runner: ConversationRunner
    one_shot: bool = False
    transport: Optional[Transport] = None
    subscription: Optional[Subscription] = None
    termination_timer: Optional[asyncio.Task[None]] = None
    last_connected: float = field(default_factory=time.monotonic)
    created_at: float = field(default_factory=time.time)

    @property
    def connected(self) -> bool:
        return self.transport is not None


class SessionManager:
    """Keeps one session per client id alive across reconnects.

    A disconnected session survives for ``idle_timeout`` seconds. The periodic
    heartbeat both probes connected transports and sweeps expired sessions.
    """

    def __init__(
        self,
        settings: Settings,
        runner_factory: RunnerFactory,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._runner_factory = runner_factory
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._timers = TimerSet("sessions")
        self._heartbeat: Optional[asyncio.Task[None]] = None
        self._client_locks: dict[str, asyncio.Lock] = {}
        self._accepting = True

    @property
    def accepting(self) -> bool:
        return self._accepting

    @property
    def active_timer_count(self) -> int:
        return self._timers.active_count + sum(
            session.runner.engine.timers.active_count for session in self._sessions.values()
        )

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, client_id: str) -> bool:
        return client_id in self._sessions

    def start(self) -> None:
        if self._heartbeat is None:
            self._heartbeat = self._timers.call_every(self._settings.heartbeat_interval, self.tick)
            logger.info("Session heartbeat every %ss", self._settings.heartbeat_interval)

    def get(self, client_id: str) -> Session:
        session = self._sessions.get(client_id)
        if session is None:
            raise SessionNotFoundError(client_id)
        return session

    def find(self, client_id: str) -> Optional[Session]:
        return self._sessions.get(client_id)

    def find_by_thread(self, project_id: str, thread_id: str) -> Optional[Session]:
        for session in self._sessions.values():
            if session.project_id == project_id and session.runner.thread_id == thread_id:
                return session
        return None

    async def get_or_create(
        self,
        client_id: str,
        transport: Optional[Transport] = None,
        *,
        project_id: str,
        username: str,
        thread_id: Optional[str] = None,
        one_shot: bool = False,
    ) -> Session:
        if not self._accepting:
            raise SessionsClosedError("Session manager is shutting down")
        # Serialised per client only; one slow start or replay never holds up other clients.
        lock = self._client_locks.setdefault(client_id, asyncio.Lock())
        async with lock:
            session = self._sessions.get(client_id)
            if session is not None:
                logger.info("Client %s reconnected", client_id)
                self._cancel_termination(session)
                session.last_connected = self._clock()
                if transport is not None:
                    await self._attach(session, transport, replay=True)
                return session

            runner = self._runner_factory(
                project_id=project_id,
                username=username,
                thread_id=thread_id,
                one_shot=one_shot,
            )
            try:
                await runner.start()
            except Exception:
                self._client_locks.pop(client_id, None)
                raise
            session = Session(
                client_id=client_id,
                project_id=project_id,
                username=username,
                runner=runner,
                one_shot=one_shot,
                last_connected=self._clock(),
            )
            if one_shot:
                runner.on_idle = self._make_one_shot_teardown(client_id)
            self._sessions[client_id] = session
            if transport is not None:
                await self._attach(session, transport, replay=False)
            logger.info(
                "Session %s created for %s on thread %s%s",
                client_id,
                username,
                runner.thread_id,
                " (one-shot)" if one_shot else "",
            )
            return session

    async def attach(self, client_id: str, transport: Transport) -> Session:
        session = self.get(client_id)
        self._cancel_termination(session)
        session.last_connected = self._clock()
        await self._attach(session, transport, replay=True)
        return session

    async def disconnect(self, client_id: str, transport: Optional[Transport] = None) -> None:
        session = self._sessions.get(client_id)
        if session is None:
            return
        if transport is not None and session.transport is not transport:
            return
        self._detach(session)
        session.last_connected = self._clock()
        self._cancel_termination(session)
        session.termination_timer = self._timers.call_later(
            self._settings.idle_timeout, lambda: self.terminate(client_id)
        )
        logger.info("Client %s disconnected; session kept for %ss", client_id, self._settings.idle_timeout)

    async def tick(self) -> None:
        for session in list(self._sessions.values()):
            transport = session.transport
            if transport is None:
                continue
            try:
                await transport.send(HeartbeatEvent())
            except Exception as exc:
                logger.warning("Heartbeat to %s failed: %s", session.client_id, exc)
                await self.terminate(session.client_id)
        await self.sweep()

    async def sweep(self) -> list[str]:
        now = self._clock()
        expired = [
            session.client_id
            for session in self._sessions.values()
            if session.transport is None and now - session.last_connected >= self._settings.idle_timeout
        ]
        for client_id in expired:
            await self.terminate(client_id)
        if expired:
            logger.info("Swept %d idle sessions", len(expired))
        return expired

    def stop(self, client_id: str) -> None:
        self.get(client_id).runner.stop()

    def submit(self, client_id: str, content: str, parent_key: Optional[str] = None) -> bool:
        """Answer the pending prompt of the session, or queue ``content`` as a new prompt.

        Returns True when ``content`` was taken as an answer.
        """
        runner = self.get(client_id).runner
        if runner.awaiting_answer:
            if runner.answer(AnswerEvent(answer=content, parent_key=parent_key)):
                return True
        runner.submit(content)
        return False

    async def terminate(self, client_id: str) -> bool:
        session = self._sessions.pop(client_id, None)
        if session is None:
            return False
        lock = self._client_locks.get(client_id)
        if lock is not None and not lock.locked():
            del self._client_locks[client_id]
        await self._safely(client_id, "cancel termination timer", self._cancel_termination, session)
        await self._safely(client_id, "unsubscribe", self._unsubscribe, session)
        await self._safely(client_id, "close runner", session.runner.close)
        if session.transport is not None:
            await self._safely(client_id, "close transport", session.transport.close)
            session.transport = None
        logger.info("Session %s terminated", client_id)
        return True

    async def shutdown(self) -> None:
        self._accepting = False
        self._timers.cancel(self._heartbeat)
        self._heartbeat = None
        client_ids = list(self._sessions)
        for client_id in client_ids:
            await self.terminate(client_id)
        self._timers.dispose()
        logger.info("Session manager shut down (%d sessions terminated)", len(client_ids))

    def stats(self) -> dict[str, Any]:
        sessions = list(self._sessions.values())
        return {
            "sessions": len(sessions),
            "connected": sum(1 for session in sessions if session.connected),
            "one_shot": sum(1 for session in sessions if session.one_shot),
            "running": sum(1 for session in sessions if session.runner.busy),
            "pending_timers": self.active_timer_count,
            "accepting": self._accepting,
        }

    async def _attach(self, session: Session, transport: Transport, *, replay: bool) -> None:
        previous = session.transport
        if previous is not None and previous is not transport:
            self._detach(session)
            await self._safely(session.client_id, "close previous transport", previous.close)
        elif previous is transport:
            return

        if replay:
            await transport.send(session.runner.selected_event())
            if session.runner.thread is not None:
                for message in list(session.runner.thread.messages):
                    await transport.send(message)
        session.transport = transport
        session.subscription = session.runner.channel.subscribe(self._make_forwarder(session, transport))

    def _detach(self, session: Session) -> None:
        self._unsubscribe(session)
        session.transport = None

    @staticmethod
    def _unsubscribe(session: Session) -> None:
        subscription, session.subscription = session.subscription, None
        if subscription is not None:
            subscription.unsubscribe()

    def _cancel_termination(self, session: Session) -> None:
        timer, session.termination_timer = session.termination_timer, None
        self._timers.cancel(timer)

    def _make_forwarder(self, session: Session, transport: Transport) -> Callable[[BaseEvent], Awaitable[None]]:
        async def forward(event: BaseEvent) -> None:
            if session.transport is not transport:
                return
            try:
                await transport.send(event)
            except Exception as exc:
                logger.warning("Dropping transport of %s after failed write: %s", session.client_id, exc)
                self._timers.call_later(0, lambda: self.terminate(session.client_id))

        return forward

    def _make_one_shot_teardown(self, client_id: str) -> Callable[[ConversationRunner], Awaitable[None]]:
        async def teardown(_runner: ConversationRunner) -> None:
            await self.terminate(client_id)

        return teardown

    async def _safely(self, client_id: str, step: str, action: Callable[..., Union[None, Awaitable[Any]]], *args) -> None:
        try:
            result = action(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Cleanup step '%s' failed for session %s", step, client_id)
