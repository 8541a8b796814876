import pytest

from threadloom.config.agents import ModelSpec
from threadloom.engine.compaction import (
    EMPTY_SUMMARY,
    FAILED_MARKER,
    build_transcript,
    clip_transcript,
    make_compactor,
    max_transcript_chars,
    parse_summary,
    summary_budget,
)
from threadloom.events import MessageEvent, ToolRequestEvent
from threadloom.threads.thread import TRUNCATION_MARKER

MODEL = ModelSpec(provider="openai", name="fake-model")


def _messages():
    return [
        MessageEvent(role="user", name="alice", content="What is the plan?"),
        ToolRequestEvent(name="lookup", args="{}"),
        MessageEvent(role="assistant", name="helper", content="Ship on Friday."),
    ]


def test_transcript_lists_only_conversation_messages():
    assert build_transcript(_messages()) == " - user: What is the plan?\n - assistant: Ship on Friday."


def test_clip_transcript_keeps_most_recent_text():
    assert clip_transcript("abcdefghij", 20) == "abcdefghij"
    assert clip_transcript("abcdefghij", 6) == "...hij"
    assert clip_transcript("abcdefghij", 2) == ".."


def test_budgets_scale_with_available_characters():
    assert summary_budget(1000) == 100
    assert summary_budget(10_000) == 500
    assert max_transcript_chars(10_000) == int((10_000 - 150 - 500) * 0.8)


def test_parse_summary_prefers_tagged_content():
    assert parse_summary("<summary>\nThey agreed.\n</summary> trailing") == "They agreed."
    assert parse_summary("They agreed.") == "They agreed."
    assert parse_summary("They agreed.\n</summary>") == "They agreed."
    assert parse_summary("   ") == EMPTY_SUMMARY


@pytest.mark.asyncio
async def test_compactor_summarises_with_provider(make_provider):
    provider = make_provider(summary="They planned a Friday release.</summary>")
    compact = make_compactor(provider, MODEL)

    summary = await compact(_messages(), 5000)

    assert summary.summary == "They planned a Friday release."
    assert "<transcript> - user: What is the plan?" in provider.prompts[0]


@pytest.mark.asyncio
async def test_compactor_falls_back_when_budget_too_small(make_provider):
    warnings = []
    provider = make_provider()
    compact = make_compactor(provider, MODEL, warnings.append)

    summary = await compact(_messages(), 200)

    assert summary.summary == TRUNCATION_MARKER
    assert provider.prompts == []
    assert "Budget too small" in warnings[0]


@pytest.mark.asyncio
async def test_compactor_failure_yields_failed_marker(make_provider):
    warnings = []
    provider = make_provider(summary=RuntimeError("provider down"))
    compact = make_compactor(provider, MODEL, warnings.append)

    summary = await compact(_messages(), 5000)

    assert summary.summary == FAILED_MARKER
    assert "Compaction failed (provider down)" in warnings[0]
