import asyncio

import pytest

from threadloom.engine.interactor import Interactor
from threadloom.engine.timers import TimerSet
from threadloom.engine.tools import Toolbox, UnknownToolError, format_tool_output
from threadloom.events import AnswerEvent, ChoiceEvent, ToolRequestEvent


@pytest.mark.asyncio
async def test_call_later_fires_once_and_stops_counting():
    timers = TimerSet("test")
    fired = []
    timers.call_later(0.01, lambda: fired.append("sync"))

    async def async_callback():
        fired.append("async")

    timers.call_later(0.01, async_callback)
    assert timers.active_count == 2

    await asyncio.sleep(0.05)
    assert sorted(fired) == ["async", "sync"]
    assert timers.active_count == 0


@pytest.mark.asyncio
async def test_call_every_survives_failing_callback_until_disposed():
    timers = TimerSet("test")
    calls = []

    def flaky():
        calls.append(1)
        raise RuntimeError("tick failed")

    timers.call_every(0.01, flaky)
    await asyncio.sleep(0.05)
    assert len(calls) >= 2

    timers.dispose()
    await asyncio.sleep(0)
    count = len(calls)
    await asyncio.sleep(0.03)
    assert len(calls) == count
    assert timers.active_count == 0


@pytest.mark.asyncio
async def test_cancel_from_inside_own_callback_does_not_abort_it():
    timers = TimerSet("test")
    finished = asyncio.Event()
    holder = {}

    async def callback():
        timers.cancel(holder["timer"])
        await asyncio.sleep(0)
        finished.set()

    holder["timer"] = timers.call_later(0, callback)
    await asyncio.wait_for(finished.wait(), timeout=1)


@pytest.mark.asyncio
async def test_interactor_resolves_prompt_with_matching_answer():
    published = []
    interactor = Interactor(published.append)

    waiter = asyncio.create_task(interactor.choose_option(["proceed", "stop"], "Continue?"))
    await asyncio.sleep(0)
    choice = published[0]
    assert isinstance(choice, ChoiceEvent)
    assert interactor.has_pending

    assert interactor.receive_answer(AnswerEvent(answer="stop", parent_key="unrelated")) is False
    assert interactor.receive_answer(choice.build_answer("proceed")) is True
    assert await waiter == "proceed"
    assert not interactor.has_pending


@pytest.mark.asyncio
async def test_interactor_cancel_pending_releases_waiters():
    interactor = Interactor(lambda event: None)
    waiter = asyncio.create_task(interactor.choose_option(["a", "b"], "Pick"))
    await asyncio.sleep(0)

    interactor.cancel_pending()

    with pytest.raises(asyncio.CancelledError):
        await waiter


@pytest.mark.asyncio
async def test_toolbox_runs_sync_and_async_handlers():
    toolbox = Toolbox()

    @toolbox.tool()
    def add(a: int, b: int) -> dict:
        """Add two numbers."""
        return {"sum": a + b}

    async def shout(text: str) -> str:
        return text.upper()

    toolbox.register("shout", shout, description="Upper-case text")

    assert "add" in toolbox
    assert [spec.name for spec in toolbox.specs(["shout"])] == ["shout"]
    assert toolbox.specs()[0].description == "Add two numbers."

    added = await toolbox.run(ToolRequestEvent(name="add", args='{"a": 2, "b": 3}'))
    shouted = await toolbox.run(ToolRequestEvent(name="shout", args='{"text": "hi"}'))
    assert added.output == '{"sum": 5}'
    assert shouted.output == "HI"

    with pytest.raises(UnknownToolError):
        await toolbox.run(ToolRequestEvent(name="nope"))
    with pytest.raises(ValueError):
        toolbox.register("add", shout)


def test_format_tool_output():
    assert format_tool_output(None) == ""
    assert format_tool_output("plain") == "plain"
    assert format_tool_output(["a", 1]) == '["a", 1]'
