from threadloom.engine.sanitize import (
    convert_agent_messages,
    filter_unknown_tool_calls,
    sanitize_messages,
    strip_agent_prefixes,
)
from threadloom.events import MessageEvent, ToolRequestEvent


def test_strip_agent_prefixes_only_touches_user_turns():
    messages = [
        MessageEvent(role="user", name="alice", content="@helper   summarise this"),
        MessageEvent(role="assistant", name="helper", content="@alice done"),
    ]
    stripped = strip_agent_prefixes(messages)
    assert stripped[0].content == "summarise this"
    assert stripped[1].content == "@alice done"
    assert messages[0].content == "@helper   summarise this"


def test_other_agents_answers_become_tagged_user_turns():
    messages = [
        MessageEvent(role="assistant", name="critic", content="Looks weak"),
        MessageEvent(role="assistant", name="helper", content="I disagree"),
    ]
    converted = convert_agent_messages(messages, "helper")
    assert converted[0].role == "user"
    assert converted[0].content == "<agent=critic>Looks weak</agent>"
    assert converted[1].role == "assistant"


def test_unknown_tool_calls_are_removed_with_their_responses():
    allowed = ToolRequestEvent(tool_request_id="a", name="lookup")
    foreign = ToolRequestEvent(tool_request_id="b", name="shell")
    messages = [allowed, allowed.build_response("ok"), foreign, foreign.build_response("secret")]

    filtered = filter_unknown_tool_calls(messages, {"lookup"})

    assert [(m.type, m.tool_request_id) for m in filtered] == [("tool_request", "a"), ("tool_response", "a")]
    assert filter_unknown_tool_calls(messages, {"lookup", "shell"}) is messages


def test_sanitize_messages_combines_every_step():
    messages = [
        MessageEvent(role="user", name="alice", content="@critic review"),
        MessageEvent(role="assistant", name="helper", content="draft"),
        ToolRequestEvent(tool_request_id="x", name="shell"),
    ]
    result = sanitize_messages(messages, "critic", frozenset())
    assert [m.content for m in result] == ["review", "<agent=helper>draft</agent>"]
