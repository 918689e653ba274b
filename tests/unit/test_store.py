import os

import pytest

import procflow.persistence as persistence
from procflow.errors import InstanceNotFoundError
from procflow.persistence import (
    InMemoryInstanceStore,
    PostgresInstanceStore,
    SQLiteInstanceStore,
    get_store,
    open_store,
)
from procflow.state import HistoryEntry, InstanceState, InstanceStatus, Outcome


def sample_state(**overrides):
    values = dict(
        process_type="approval",
        status=InstanceStatus.RUNNING,
        active_steps=["review"],
        context={"amount": 120, "nested": {"ok": True}},
        history=[HistoryEntry(step_id="submit", outcome=Outcome.SUCCESS)],
    )
    values.update(overrides)
    return InstanceState(**values)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryInstanceStore()
    return SQLiteInstanceStore(tmp_path / "instances.db")


@pytest.mark.asyncio
async def test_save_and_load(store):
    state = sample_state()
    await store.save(state)

    loaded = await store.load(state.instance_id)
    assert loaded == state


@pytest.mark.asyncio
async def test_save_replaces_previous_record(store):
    state = sample_state()
    await store.save(state)

    updated = state.model_copy(deep=True)
    updated.status = InstanceStatus.COMPLETED
    updated.active_steps = []
    updated.version = 1
    await store.save(updated)

    loaded = await store.load(state.instance_id)
    assert loaded.status is InstanceStatus.COMPLETED
    assert loaded.version == 1
    assert len(await store.list_instances()) == 1


@pytest.mark.asyncio
async def test_loaded_state_is_independent(store):
    state = sample_state()
    await store.save(state)

    loaded = await store.load(state.instance_id)
    loaded.context["nested"]["ok"] = False

    assert (await store.load(state.instance_id)).context["nested"]["ok"] is True


@pytest.mark.asyncio
async def test_missing_instance(store):
    with pytest.raises(InstanceNotFoundError):
        await store.load("does-not-exist")


@pytest.mark.asyncio
async def test_delete(store):
    state = sample_state()
    await store.save(state)
    await store.delete(state.instance_id)
    await store.delete(state.instance_id)

    assert await store.list_instances() == []


@pytest.mark.asyncio
async def test_sqlite_survives_reopen(tmp_path):
    path = tmp_path / "instances.db"
    state = sample_state()
    first = SQLiteInstanceStore(path)
    await first.save(state)
    await first.close()

    second = SQLiteInstanceStore(path)
    assert (await second.load(state.instance_id)) == state
    await second.close()


@pytest.mark.asyncio
async def test_store_usable_after_close(store):
    state = sample_state()
    await store.save(state)
    await store.close()
    await store.close()

    # SQLite reconnects on the next call; the in-memory store keeps its records
    assert (await store.load(state.instance_id)) == state
    await store.close()


def test_get_store_selects_backend(tmp_path, monkeypatch):
    monkeypatch.setattr(persistence, "_store_instance", None)
    monkeypatch.delenv("PROCFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("PROCFLOW_CONFIG", str(tmp_path / "absent.yaml"))

    assert isinstance(get_store(), InMemoryInstanceStore)

    sqlite_store = get_store(f"sqlite://{tmp_path / 'wf.db'}")
    assert isinstance(sqlite_store, SQLiteInstanceStore)
    assert get_store() is sqlite_store

    with pytest.raises(ValueError):
        get_store("mysql://nope")
    with pytest.raises(ValueError):
        get_store("no-scheme")


def test_open_store_builds_a_fresh_store_per_call(tmp_path):
    assert isinstance(open_store(None), InMemoryInstanceStore)
    assert isinstance(open_store("memory://"), InMemoryInstanceStore)
    assert open_store("memory://") is not open_store("memory://")

    url = f"sqlite://{tmp_path / 'wf.db'}"
    sqlite_store = open_store(url)
    assert isinstance(sqlite_store, SQLiteInstanceStore)
    assert sqlite_store.db_path == str(tmp_path / "wf.db")


@pytest.mark.asyncio
async def test_postgres_store_roundtrip():
    dsn = os.getenv("PROCFLOW_TEST_POSTGRES")
    if not dsn or PostgresInstanceStore is None:
        pytest.skip("Postgres not available")

    store = PostgresInstanceStore(dsn)
    state = sample_state()
    await store.save(state)
    try:
        loaded = await store.load(state.instance_id)
        assert loaded.instance_id == state.instance_id
        assert loaded.context == state.context
    finally:
        await store.delete(state.instance_id)
