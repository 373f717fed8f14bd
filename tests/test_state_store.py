import json
import threading

import pytest

from core.exceptions import StoreUnavailable
from infra.state_store import (
    JsonFileBackend,
    MemoryStateBackend,
    SQLiteStateBackend,
    StateStore,
    create_state_store_from_config,
)


def test_create_state_store_from_config_respects_sqlite(tmp_path):
    cfg = {"store": "sqlite", "path": str(tmp_path / "state.db")}
    store = create_state_store_from_config(cfg)
    assert isinstance(store._backend, SQLiteStateBackend)
    # Should point at configured path
    assert "state.db" in store.describe()


def test_create_state_store_from_config_json_and_memory(tmp_path):
    json_store = create_state_store_from_config({"store": "json", "path": str(tmp_path / "state.json")})
    assert isinstance(json_store._backend, JsonFileBackend)
    assert create_state_store_from_config({"store": "memory"}).describe() == "memory"


def test_create_state_store_rejects_unknown_backend():
    with pytest.raises(ValueError):
        create_state_store_from_config({"store": "redis"})


def test_load_merges_defaults():
    store = StateStore(backend=MemoryStateBackend({"investments": [{"id": "a"}]}))
    state = store.load()
    assert state["investments"] == [{"id": "a"}]
    assert state["circuit_breaker"]["is_paused"] is False
    assert state["decisions"] == []


@pytest.mark.parametrize("kind", ["json", "sqlite"])
def test_mutate_persists_across_instances(tmp_path, kind):
    path = str(tmp_path / ("state.json" if kind == "json" else "state.db"))
    store = create_state_store_from_config({"store": kind, "path": path})
    store.mutate(lambda s: s["investments"].append({"id": "inv-1", "amount": 100.0}))

    reopened = create_state_store_from_config({"store": kind, "path": path})
    state = reopened.load()
    assert state["investments"] == [{"id": "inv-1", "amount": 100.0}]
    assert state["updated_at"] is not None


def test_json_backend_writes_valid_json(tmp_path):
    path = tmp_path / "state.json"
    store = StateStore(backend=JsonFileBackend(path))
    store.save({"circuit_breaker": {"is_paused": True, "reason": "test"}})

    on_disk = json.loads(path.read_text())
    assert on_disk["circuit_breaker"]["reason"] == "test"
    assert not list(tmp_path.glob(".state_*.tmp"))


def test_corrupt_state_raises_store_unavailable(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json")
    store = StateStore(backend=JsonFileBackend(path))

    with pytest.raises(StoreUnavailable):
        store.load()
    with pytest.raises(StoreUnavailable):
        store.mutate(lambda s: None)


def test_concurrent_mutations_do_not_lose_updates(tmp_path):
    store = create_state_store_from_config({"store": "sqlite", "path": str(tmp_path / "state.db")})

    def worker(n):
        for i in range(10):
            store.mutate(lambda s: s["decisions"].append({"id": f"{n}-{i}"}))

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(store.load()["decisions"]) == 40


def test_reset_restores_defaults(store):
    store.mutate(lambda s: s["circuit_breaker"].update(is_paused=True))
    store.reset()
    assert store.get("circuit_breaker")["is_paused"] is False
