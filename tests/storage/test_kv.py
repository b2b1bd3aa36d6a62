from __future__ import annotations

import pytest

from bounded_agent.agent.checkpoints import Checkpoint, CheckpointStore
from bounded_agent.agent.tool_cache import ResultCache
from bounded_agent.agent.types import ToolCall
from bounded_agent.core.exceptions import CacheUnavailable
from bounded_agent.storage.kv import KeyValueStore, MemoryStore, SqlKeyValueStore
from shared.db.engine import make_engine, make_session_factory
from shared.db.models import Base


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    try:
        yield make_session_factory(engine)
    finally:
        engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def store(request, session_factory) -> KeyValueStore:
    if request.param == "memory":
        return MemoryStore()
    return SqlKeyValueStore("tests", session_factory=session_factory)


def test_put_get_delete(store: KeyValueStore) -> None:
    assert store.get("a") is None
    store.put("a", {"value": 1})
    store.put("a", {"value": 2})
    assert store.get("a") == {"value": 2}
    assert store.delete("a") is True
    assert store.delete("a") is False
    assert store.get("a") is None


def test_keys_filters_by_prefix(store: KeyValueStore) -> None:
    store.put("cache/1", {})
    store.put("cache/2", {})
    store.put("checkpoint/t/1", {})
    assert store.keys("cache/") == ["cache/1", "cache/2"]
    assert len(store.keys()) == 3


def test_stored_values_are_copies(store: KeyValueStore) -> None:
    value = {"items": [1]}
    store.put("k", value)
    value["items"].append(2)
    fetched = store.get("k")
    assert fetched == {"items": [1]}


def test_sql_namespaces_are_isolated(session_factory) -> None:
    first = SqlKeyValueStore("one", session_factory=session_factory)
    second = SqlKeyValueStore("two", session_factory=session_factory)
    first.put("k", {"owner": "one"})
    assert second.get("k") is None
    assert second.keys() == []


def test_sql_prefix_scan_escapes_wildcards(session_factory) -> None:
    kv = SqlKeyValueStore("tests", session_factory=session_factory)
    kv.put("cache_1", {})
    kv.put("cacheX1", {})
    assert kv.keys("cache_") == ["cache_1"]


def test_sql_errors_surface_as_cache_unavailable() -> None:
    engine = make_engine("sqlite://")  # no tables created
    kv = SqlKeyValueStore("tests", session_factory=make_session_factory(engine))
    with pytest.raises(CacheUnavailable):
        kv.get("k")
    with pytest.raises(CacheUnavailable):
        kv.put("k", {})


def test_cache_and_checkpoints_persist_through_sql_store(session_factory) -> None:
    kv = SqlKeyValueStore("agent", session_factory=session_factory)
    call = ToolCall(tool="search", params={"q": "x"})
    ResultCache(kv).store(call, {"hits": 1}, ttl=3600)
    CheckpointStore(kv).save(Checkpoint(task_id="t1", step_count=1))

    assert ResultCache(kv).lookup(call).result == {"hits": 1}
    assert CheckpointStore(kv).latest("t1").step_count == 1
