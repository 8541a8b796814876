import pytest

from threadloom.errors import ValidationError
from threadloom.triggers.models import Trigger
from threadloom.triggers.store import TriggerStore


def _trigger(project="demo", **overrides):
    values = {"project": project, "name": "Daily report", "commands": ["Write the report"], "created_by": "alice"}
    values.update(overrides)
    return Trigger(**values)


@pytest.mark.asyncio
async def test_save_get_and_find(tmp_path):
    store = TriggerStore(tmp_path)
    trigger = await store.save(_trigger(parameters={"team": "ops"}))

    path = tmp_path / "demo" / "triggers" / f"{trigger.id}.yml"
    assert path.is_file()
    assert "active_thread_id" not in path.read_text(encoding="utf-8")

    loaded = await store.get("demo", trigger.id)
    assert loaded == trigger
    assert (await store.find(trigger.id)).project == "demo"
    assert await store.get("other", trigger.id) is None


@pytest.mark.asyncio
async def test_listing_is_scoped_per_project(tmp_path):
    store = TriggerStore(tmp_path)
    first = await store.save(_trigger(id="a-first"))
    second = await store.save(_trigger(id="b-second"))
    elsewhere = await store.save(_trigger(project="other"))

    assert [t.id for t in await store.list_by_project("demo")] == [first.id, second.id]
    assert {t.id for t in await store.list_all()} == {first.id, second.id, elsewhere.id}
    assert await store.list_by_project("empty") == []


@pytest.mark.asyncio
async def test_delete(tmp_path):
    store = TriggerStore(tmp_path)
    trigger = await store.save(_trigger())

    assert await store.delete("demo", trigger.id) is True
    assert await store.delete("demo", trigger.id) is False
    assert await store.find(trigger.id) is None


@pytest.mark.asyncio
async def test_invalid_files_are_skipped(tmp_path):
    store = TriggerStore(tmp_path)
    valid = await store.save(_trigger())
    broken_dir = tmp_path / "demo" / "triggers"
    (broken_dir / "broken.yml").write_text("name: [unclosed", encoding="utf-8")
    (broken_dir / "incomplete.yml").write_text("name: no project\n", encoding="utf-8")

    assert [t.id for t in await store.list_by_project("demo")] == [valid.id]


@pytest.mark.asyncio
async def test_unsafe_identifiers_are_rejected(tmp_path):
    store = TriggerStore(tmp_path)

    with pytest.raises(ValidationError):
        await store.list_by_project("../escape")
    with pytest.raises(ValidationError):
        await store.get("demo", "../../etc")
    assert await store.find("../../etc") is None
