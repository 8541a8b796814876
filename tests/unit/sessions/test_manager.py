import asyncio
from uuid import uuid4

import pytest

from threadloom.config.configuration import Settings
from threadloom.errors import SessionNotFoundError, SessionsClosedError
from threadloom.events import AnswerEvent, ChoiceEvent, MessageEvent, ThreadSelectedEvent
from threadloom.llms.llm import TurnResult
from threadloom.sessions.manager import SessionManager
from threadloom.sessions.runner import ConversationRunner, derive_thread_name
from threadloom.threads.thread import RunStatus


class RecordingTransport:
    def __init__(self, fail: bool = False):
        self.id = uuid4().hex
        self.events = []
        self.fail = fail
        self._closed = False

    @property
    def closed(self):
        return self._closed

    async def send(self, event):
        if self.fail:
            raise ConnectionError("client went away")
        self.events.append(event)

    async def close(self):
        self._closed = True


class GatedTransport(RecordingTransport):
    """Holds every send until its gate opens."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.waiting = False

    async def send(self, event):
        self.waiting = True
        await self.gate.wait()
        await super().send(event)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def make_manager(thread_store, static_config, make_provider, tmp_path):
    def factory(turns=None, clock=None, **settings):
        provider = make_provider(turns)
        config = Settings(home=tmp_path, idle_timeout=settings.pop("idle_timeout", 100.0), **settings)

        def runner_factory(*, project_id, username, thread_id, one_shot):
            return ConversationRunner(
                project_id=project_id,
                username=username,
                store=thread_store,
                config=static_config,
                provider=provider,
                thread_id=thread_id,
                one_shot=one_shot,
            )

        return SessionManager(config, runner_factory, clock=clock or FakeClock())

    return factory


async def _eventually(predicate, timeout: float = 2.0):
    for _ in range(int(timeout / 0.01)):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


@pytest.mark.asyncio
async def test_prompt_is_answered_streamed_and_persisted(make_manager, thread_store):
    manager = make_manager([TurnResult(text="Hello alice")])
    transport = RecordingTransport()
    session = await manager.get_or_create("client-1", transport, project_id="demo", username="alice")

    assert manager.submit("client-1", "Say hello to me") is False
    await session.runner.wait_idle()

    contents = [event.content for event in transport.events if isinstance(event, MessageEvent)]
    assert contents == ["Say hello to me", "Hello alice"]
    stored = await thread_store.get_by_id("demo", session.runner.thread_id)
    assert stored.name == "Say hello to me"
    assert [message.content for message in stored.messages] == contents
    await manager.shutdown()


@pytest.mark.asyncio
async def test_reconnect_within_grace_period_reuses_session_and_replays(make_manager):
    manager = make_manager([TurnResult(text="First answer")])
    first = RecordingTransport()
    session = await manager.get_or_create("client-1", first, project_id="demo", username="alice")
    manager.submit("client-1", "question")
    await session.runner.wait_idle()
    status_before = session.runner.run_status

    await manager.disconnect("client-1", first)
    assert session.connected is False
    assert session.termination_timer is not None

    second = RecordingTransport()
    again = await manager.get_or_create("client-1", second, project_id="demo", username="alice")

    assert again is session
    assert len(manager) == 1
    assert session.termination_timer is None
    assert isinstance(second.events[0], ThreadSelectedEvent)
    assert [event.content for event in second.events[1:]] == ["question", "First answer"]
    assert again.runner.run_status == status_before == RunStatus.DONE
    await manager.shutdown()


@pytest.mark.asyncio
async def test_sweep_terminates_idle_sessions_and_leaves_no_timers(make_manager):
    clock = FakeClock()
    manager = make_manager(clock=clock, idle_timeout=50.0)
    transport = RecordingTransport()
    await manager.get_or_create("idle", transport, project_id="demo", username="alice")
    await manager.get_or_create("busy", RecordingTransport(), project_id="demo", username="bob")
    await manager.disconnect("idle", transport)

    clock.now += 10
    assert await manager.sweep() == []
    clock.now += 50
    assert await manager.sweep() == ["idle"]

    assert "idle" not in manager
    assert transport.closed is False
    await manager.terminate("busy")
    assert len(manager) == 0
    assert manager.active_timer_count == 0


@pytest.mark.asyncio
async def test_heartbeat_failure_terminates_session(make_manager):
    manager = make_manager()
    await manager.get_or_create("flaky", RecordingTransport(fail=True), project_id="demo", username="alice")
    healthy = RecordingTransport()
    await manager.get_or_create("healthy", healthy, project_id="demo", username="bob")

    await manager.tick()

    assert "flaky" not in manager
    assert "healthy" in manager
    assert healthy.events[-1].type == "heartbeat"
    await manager.shutdown()


@pytest.mark.asyncio
async def test_one_shot_session_is_removed_once_idle(make_manager):
    manager = make_manager([TurnResult(text="Report ready")])
    session = await manager.get_or_create("webhook-1", project_id="demo", username="bot", one_shot=True)
    session.runner.submit("build the report")

    await _eventually(lambda: "webhook-1" not in manager)
    assert session.runner.thread.messages[-1].content == "Report ready"


@pytest.mark.asyncio
async def test_pending_choice_is_answered_through_submit(make_manager, make_tool_turn):
    manager = make_manager([make_tool_turn(("call-1", "lookup", "{}"))])
    transport = RecordingTransport()
    session = await manager.get_or_create("client-1", transport, project_id="demo", username="alice")
    session.runner.thread.usage.iterations = 19

    manager.submit("client-1", "keep going")
    await _eventually(lambda: session.runner.awaiting_answer)
    assert manager.submit("client-1", "stop") is True
    await session.runner.wait_idle()

    assert any(isinstance(event, ChoiceEvent) for event in transport.events)
    assert any(isinstance(event, AnswerEvent) and event.answer == "stop" for event in transport.events)
    assert session.runner.run_status == RunStatus.STOPPED
    await manager.shutdown()


@pytest.mark.asyncio
async def test_shutdown_rejects_new_sessions(make_manager):
    manager = make_manager()
    await manager.get_or_create("client-1", project_id="demo", username="alice")
    await manager.shutdown()

    assert len(manager) == 0
    assert manager.accepting is False
    with pytest.raises(SessionsClosedError):
        await manager.get_or_create("client-2", project_id="demo", username="alice")
    with pytest.raises(SessionNotFoundError):
        manager.get("client-1")


@pytest.mark.asyncio
async def test_disconnect_while_events_are_flushing_leaves_session_usable(make_manager):
    manager = make_manager([TurnResult(text="first")])
    stalled = GatedTransport()
    session = await manager.get_or_create("client-1", stalled, project_id="demo", username="alice")
    manager.submit("client-1", "hello")
    await _eventually(lambda: session.runner.thread.messages[-1:] and session.runner.thread.messages[-1].content == "first")
    await asyncio.sleep(0.05)
    assert session.runner.busy

    await manager.disconnect("client-1", stalled)
    await asyncio.wait_for(session.runner.wait_idle(), timeout=1)

    second = RecordingTransport()
    await manager.get_or_create("client-1", second, project_id="demo", username="alice")
    manager.submit("client-1", "again")
    await asyncio.wait_for(session.runner.wait_idle(), timeout=2)

    assert [message.content for message in session.runner.thread.messages] == ["hello", "first", "again", "done"]
    assert session.runner.busy is False
    assert "again" in [event.content for event in second.events if isinstance(event, MessageEvent)]
    await manager.shutdown()


@pytest.mark.asyncio
async def test_slow_replay_does_not_block_other_clients(make_manager):
    manager = make_manager([TurnResult(text="First answer")])
    first = RecordingTransport()
    session = await manager.get_or_create("client-1", first, project_id="demo", username="alice")
    manager.submit("client-1", "question")
    await session.runner.wait_idle()
    await manager.disconnect("client-1", first)

    stalled = GatedTransport()
    reconnect = asyncio.create_task(
        manager.get_or_create("client-1", stalled, project_id="demo", username="alice")
    )
    await _eventually(lambda: stalled.waiting)

    other = await asyncio.wait_for(
        manager.get_or_create("client-2", RecordingTransport(), project_id="demo", username="bob"),
        timeout=1,
    )
    assert other.client_id == "client-2"
    assert not reconnect.done()

    stalled.gate.set()
    assert await reconnect is session
    assert isinstance(stalled.events[0], ThreadSelectedEvent)
    assert [event.content for event in stalled.events[1:]] == ["question", "First answer"]
    await manager.shutdown()


@pytest.mark.asyncio
async def test_runner_refuses_work_before_start(thread_store, static_config, make_provider):
    runner = ConversationRunner(
        project_id="demo",
        username="alice",
        store=thread_store,
        config=static_config,
        provider=make_provider(),
    )
    with pytest.raises(RuntimeError):
        runner.selected_event()
    with pytest.raises(RuntimeError):
        await runner._handle_prompt("hello")


def test_thread_name_is_derived_from_first_prompt():
    assert derive_thread_name("@helper   plan the   release") == "plan the release"
    assert derive_thread_name("@helper") == "untitled"
    long_name = derive_thread_name("x" * 80)
    assert len(long_name) == 50
    assert long_name.endswith("…")
