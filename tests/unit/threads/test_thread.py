import pytest

from threadloom.errors import ThreadMutationError
from threadloom.events import MessageEvent, SummaryEvent, ToolRequestEvent, ToolResponseEvent
from threadloom.threads.thread import TRUNCATION_MARKER, ConversationThread, RunStatus, Usage


def _conversation() -> ConversationThread:
    thread = ConversationThread(project_id="demo", username="alice")
    for index in range(6):
        thread.add_user_message("alice", f"question {index} " + "q" * (20 * index))
        request = ToolRequestEvent(name="lookup", args=f'{{"page": {index}}}')
        thread.add_tool_exchange(request, request.build_response("r" * (30 + index)))
        thread.add_agent_message("helper", f"answer {index} " + "a" * (15 * index))
    return thread


def _size(messages) -> int:
    return sum(message.length for message in messages)


@pytest.mark.asyncio
async def test_history_is_returned_unchanged_when_it_fits():
    thread = _conversation()
    view = await thread.get_messages(thread.total_length)
    assert view.compacted is False
    assert view.messages == thread.messages

    unbounded = await thread.get_messages(None)
    assert unbounded.compacted is False
    assert len(unbounded.messages) == len(thread.messages)


@pytest.mark.asyncio
async def test_compacted_history_never_exceeds_budget():
    thread = _conversation()

    async def verbose_compactor(messages, budget):
        return SummaryEvent(summary="s" * 5000)

    for budget in range(10, thread.total_length, 37):
        view = await thread.get_messages(budget, verbose_compactor)
        assert view.compacted is True
        assert _size(view.messages) <= budget
        assert isinstance(view.messages[0], SummaryEvent)


@pytest.mark.asyncio
async def test_compacted_suffix_never_starts_with_orphan_tool_response():
    thread = _conversation()

    for budget in range(150, thread.total_length, 11):
        view = await thread.get_messages(budget)
        kept = view.messages[1:]
        requested = {m.tool_request_id for m in kept if isinstance(m, ToolRequestEvent)}
        for message in kept:
            if isinstance(message, ToolResponseEvent):
                assert message.tool_request_id in requested


@pytest.mark.asyncio
async def test_compaction_without_compactor_uses_truncation_marker():
    thread = _conversation()
    view = await thread.get_messages(thread.total_length // 2)
    assert view.messages[0].summary == TRUNCATION_MARKER
    assert view.messages[-1] is thread.messages[-1]
    # history itself is left untouched
    assert not any(isinstance(message, SummaryEvent) for message in thread.messages)


@pytest.mark.asyncio
async def test_compactor_receives_older_messages_and_full_budget():
    thread = _conversation()
    seen = {}

    async def compactor(messages, budget):
        seen["count"] = len(messages)
        seen["budget"] = budget
        return SummaryEvent(summary="recap")

    view = await thread.get_messages(400, compactor)
    assert seen["budget"] == 400
    assert seen["count"] + len(view.messages) - 1 == len(thread.messages)


def test_truncate_removes_target_and_everything_after():
    thread = ConversationThread(project_id="demo", username="alice")
    thread.add_user_message("alice", "first")
    thread.add_agent_message("helper", "reply")
    target = thread.add_user_message("alice", "second")
    thread.add_agent_message("helper", "another reply")

    thread.truncate_at_message(target.timestamp)

    assert [message.content for message in thread.messages] == ["first", "reply"]


def test_truncate_rejections():
    thread = ConversationThread(project_id="demo", username="alice")
    first = thread.add_user_message("alice", "first")
    reply = thread.add_agent_message("helper", "reply")
    second = thread.add_user_message("alice", "second")

    with pytest.raises(ThreadMutationError):
        thread.truncate_at_message(first.timestamp)
    with pytest.raises(ThreadMutationError):
        thread.truncate_at_message(reply.timestamp)
    with pytest.raises(ThreadMutationError):
        thread.truncate_at_message("unknown")

    thread.run_status = RunStatus.RUNNING
    with pytest.raises(ThreadMutationError):
        thread.truncate_at_message(second.timestamp)
    assert len(thread.messages) == 3


def test_consecutive_messages_from_same_author_are_merged():
    thread = ConversationThread(project_id="demo", username="alice")
    thread.add_user_message("alice", "hello")
    merged = thread.add_user_message("alice", "are you there?")
    thread.add_user_message("bob", "hi both")

    assert len(thread.messages) == 2
    assert merged.content == "hello\n\nare you there?"
    assert isinstance(thread.messages[1], MessageEvent)
    assert thread.messages[1].name == "bob"


def test_repeated_tool_call_replaces_older_identical_exchange():
    thread = ConversationThread(project_id="demo", username="alice")
    first = ToolRequestEvent(name="lookup", args='{"q": "x"}')
    thread.add_tool_exchange(first, first.build_response("old"))
    other = ToolRequestEvent(name="lookup", args='{"q": "y"}')
    thread.add_tool_exchange(other, other.build_response("kept"))
    again = ToolRequestEvent(name="lookup", args='{"q": "x"}')
    thread.add_tool_exchange(again, again.build_response("new"))

    outputs = [message.output for message in thread.messages if isinstance(message, ToolResponseEvent)]
    assert outputs == ["kept", "new"]
    assert first.tool_request_id not in {
        message.tool_request_id for message in thread.messages if isinstance(message, ToolRequestEvent)
    }


def test_response_without_request_is_dropped():
    thread = ConversationThread(project_id="demo", username="alice")
    thread.add_tool_responses([ToolResponseEvent(tool_request_id="nope", output="lost")])
    assert thread.messages == []


def test_appended_messages_keep_strictly_increasing_timestamps():
    thread = ConversationThread(project_id="demo", username="alice")
    late = MessageEvent(role="user", name="alice", content="late")
    early = MessageEvent(role="assistant", name="helper", content="early", timestamp="0000")
    thread._append(late)
    thread._append(early)
    assert thread.messages[0].timestamp < thread.messages[1].timestamp


def test_usage_accumulates_and_thresholds_double():
    thread = ConversationThread(project_id="demo", username="alice")
    thread.add_usage(input=100, output=20, price=0.5)
    thread.add_usage(input=50, output=10, price=1.5)
    assert thread.usage.iterations == 2
    assert thread.usage.input == 150
    assert thread.price == pytest.approx(2.0)
    assert thread.usage.threshold_reached() is True
    assert thread.usage.raise_threshold() == "Cost threshold increased to 4.00"
    assert thread.usage.iterations_threshold == 20

    usage = Usage(iterations=20)
    assert usage.threshold_reached() is True
    assert usage.raise_threshold() == "Iteration threshold increased to 40"
    assert usage.price_threshold == 2.0


@pytest.mark.asyncio
async def test_zero_budget_yields_empty_view_without_calling_compactor():
    thread = _conversation()
    called = []

    async def compactor(messages, budget):
        called.append(budget)
        return SummaryEvent(summary="never used")

    view = await thread.get_messages(0, compactor)
    assert view.messages == []
    assert view.compacted is True
    assert called == []

    empty = ConversationThread(project_id="demo", username="alice")
    view = await empty.get_messages(0, compactor)
    assert view.messages == []
    assert view.compacted is False
