import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from threadloom.errors import PersistenceError
from threadloom.events import SummaryEvent, ToolRequestEvent
from threadloom.threads.cleanup import ThreadCleanupService
from threadloom.threads.registry import DB_FILE_NAME, StoreRegistry
from threadloom.threads.store import SQLiteThreadStore
from threadloom.threads.thread import ConversationThread


@pytest.mark.asyncio
async def test_save_and_load_thread_with_messages(thread_store):
    thread = ConversationThread(project_id="demo", username="alice", name="First chat")
    thread.add_user_message("alice", "你好")
    thread.add_agent_message("helper", "你好，请问有什么可以帮你？")
    request = ToolRequestEvent(name="lookup", args='{"q": "weather"}')
    thread.add_tool_exchange(request, request.build_response("sunny"))
    thread.starring.add("alice")
    await thread_store.save(thread)

    stored = await thread_store.get_by_id("demo", thread.id)
    assert stored is not None
    assert stored.name == "First chat"
    assert stored.starring == {"alice"}
    assert [message.type for message in stored.messages] == ["message", "message", "tool_request", "tool_response"]
    assert stored.messages[1].content == "你好，请问有什么可以帮你？"
    assert stored.messages[3].output == "sunny"

    summaries = await thread_store.list_by_project("demo")
    assert len(summaries) == 1
    assert summaries[0].id == thread.id
    assert summaries[0].starring == ["alice"]


@pytest.mark.asyncio
async def test_save_replaces_messages_after_truncation(thread_store):
    thread = ConversationThread(project_id="demo", username="alice")
    thread.add_user_message("alice", "one")
    thread.add_agent_message("helper", "two")
    second = thread.add_user_message("alice", "three")
    thread.add_agent_message("helper", "four")
    await thread_store.save(thread)

    thread.truncate_at_message(second.timestamp)
    await thread_store.save(thread)

    stored = await thread_store.get_by_id("demo", thread.id)
    assert [message.content for message in stored.messages] == ["one", "two"]


@pytest.mark.asyncio
async def test_get_by_id_is_scoped_to_project(thread_store):
    thread = ConversationThread(project_id="demo", username="alice")
    await thread_store.save(thread)

    assert await thread_store.get_by_id("other", thread.id) is None
    assert await thread_store.delete("other", thread.id) is False
    assert await thread_store.delete("demo", thread.id) is True
    assert await thread_store.get_by_id("demo", thread.id) is None


@pytest.mark.asyncio
async def test_list_by_project_filters_by_username_and_orders_by_modification(thread_store):
    older = ConversationThread(project_id="demo", username="alice", name="older")
    newer = ConversationThread(project_id="demo", username="alice", name="newer")
    other = ConversationThread(project_id="demo", username="bob", name="bob's")
    older.modified_date = datetime.now(timezone.utc) - timedelta(hours=1)
    for thread in (older, newer, other):
        await thread_store.save(thread)

    names = [summary.name for summary in await thread_store.list_by_project("demo", "alice")]
    assert names == ["newer", "older"]
    assert len(await thread_store.list_by_project("demo")) == 3


@pytest.mark.asyncio
async def test_unreadable_message_rows_are_skipped(thread_store):
    thread = ConversationThread(project_id="demo", username="alice")
    thread.add_user_message("alice", "kept")
    await thread_store.save(thread)

    connection = sqlite3.connect(thread_store.db_path)
    connection.execute(
        "INSERT INTO messages (id, thread_id, seq, timestamp, type, content) VALUES (?, ?, ?, ?, ?, ?)",
        ("broken", thread.id, 5, "broken", "message", "{not json"),
    )
    connection.commit()
    connection.close()

    stored = await thread_store.get_by_id("demo", thread.id)
    assert [message.content for message in stored.messages] == ["kept"]


@pytest.mark.asyncio
async def test_update_metadata_and_type_query(thread_store):
    thread = ConversationThread(project_id="demo", username="alice")
    thread.add_user_message("alice", "hello")
    thread.add_summary(SummaryEvent(summary="short recap"))
    await thread_store.save(thread)

    summary = await thread_store.update_metadata("demo", thread.id, name="Renamed", starring={"bob"})
    assert summary is not None
    assert summary.name == "Renamed"
    assert summary.starring == ["bob"]
    assert await thread_store.update_metadata("demo", "missing", name="x") is None

    summaries = await thread_store.list_messages_by_type("demo", "summary")
    assert [(row.thread_id, row.type) for row in summaries] == [(thread.id, "summary")]


@pytest.mark.asyncio
async def test_delete_expired_removes_only_stale_threads(thread_store):
    stale = ConversationThread(project_id="demo", username="alice")
    fresh = ConversationThread(project_id="demo", username="alice")
    stale.add_user_message("alice", "old")
    stale.modified_date = datetime.now(timezone.utc) - timedelta(days=40)
    await thread_store.save(stale)
    await thread_store.save(fresh)

    removed = await thread_store.delete_expired(datetime.now(timezone.utc) - timedelta(days=30))
    assert removed == 1
    assert await thread_store.get_by_id("demo", stale.id) is None
    assert await thread_store.get_by_id("demo", fresh.id) is not None


@pytest.mark.asyncio
async def test_registry_hands_out_one_store_per_root(tmp_path):
    registry = StoreRegistry()
    first = await registry.get(tmp_path)
    second = await registry.get(tmp_path / ".")
    assert first is second
    assert isinstance(first, SQLiteThreadStore)
    assert first.db_path.endswith(DB_FILE_NAME)

    other = await registry.get(tmp_path / "elsewhere")
    assert other is not first
    assert len(registry) == 2
    await registry.close()
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_cleanup_service_sweeps_with_ttl_and_stops_cleanly(thread_store):
    stale = ConversationThread(project_id="demo", username="alice")
    stale.modified_date = datetime.now(timezone.utc) - timedelta(days=8)
    await thread_store.save(stale)
    cleanup = ThreadCleanupService(thread_store, ttl_days=7, interval=3600, initial_delay=3600)

    assert await cleanup.run_once() == 1
    assert await thread_store.get_by_id("demo", stale.id) is None

    cleanup.start()
    assert cleanup.running
    await cleanup.stop()
    assert not cleanup.running


@pytest.mark.asyncio
async def test_failed_save_rolls_back_and_store_stays_writable(thread_store):
    thread = ConversationThread(project_id="demo", username="alice", name="orig")
    thread.add_user_message("alice", "one")
    thread.add_agent_message("helper", "two")
    await thread_store.save(thread)

    thread.name = "renamed"
    thread.messages.append(thread.messages[0].model_copy(update={"content": "clash"}))
    with pytest.raises(PersistenceError):
        await thread_store.save(thread)

    stored = await thread_store.get_by_id("demo", thread.id)
    assert stored.name == "orig"
    assert [message.content for message in stored.messages] == ["one", "two"]

    thread.messages.pop()
    await thread_store.save(thread)
    stored = await thread_store.get_by_id("demo", thread.id)
    assert stored.name == "renamed"
    assert [message.content for message in stored.messages] == ["one", "two"]
