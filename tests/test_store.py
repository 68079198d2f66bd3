"""Tests des stores (mémoire et Redis)."""
import pytest
import redis

from store import MemoryInferenceStore, RedisInferenceStore, get_store
from streaming.errors import StoreError


class FakeRedis:
    """Sous-ensemble de redis.Redis utilisé par le store (decode_responses=True)."""

    def __init__(self):
        self.values = {}
        self.sets = {}
        self.down = False

    def _check(self):
        if self.down:
            raise redis.ConnectionError("Connection refused")

    def get(self, key):
        self._check()
        return self.values.get(key)

    def set(self, key, value):
        self._check()
        self.values[key] = value

    def sadd(self, key, *members):
        self._check()
        self.sets.setdefault(key, set()).update(members)

    def smembers(self, key):
        self._check()
        return set(self.sets.get(key, set()))


@pytest.fixture(params=["memory", "redis"])
def any_store(request):
    if request.param == "memory":
        return MemoryInferenceStore()
    return RedisInferenceStore(FakeRedis())


def test_create_sets_pending_defaults(any_store):
    item = any_store.create({"_id": "a", "owner_key": "alice", "prompt": "x"})
    assert item["status"] == "pending"
    assert item["is_completed"] is False
    assert any_store.get_by_id("a")["prompt"] == "x"


def test_create_requires_id(any_store):
    with pytest.raises(StoreError):
        any_store.create({"owner_key": "alice"})


def test_update_merges_fields(any_store):
    any_store.create({"_id": "a", "prompt": "x"})
    updated = any_store.update_by_id("a", {"status": "completed", "response": "ok"})

    assert updated["prompt"] == "x"
    assert updated["response"] == "ok"
    assert "updated_at" in any_store.get_by_id("a")


def test_update_missing_record(any_store):
    assert any_store.update_by_id("absent", {"status": "completed"}) is None
    assert any_store.get_by_id("absent") is None


def test_list_by_owner(any_store):
    any_store.create({"_id": "a", "owner_key": "alice", "created_at": "2024-01-02"})
    any_store.create({"_id": "b", "owner_key": "alice", "created_at": "2024-01-01"})
    any_store.create({"_id": "c", "owner_key": "bob"})

    items = any_store.get_all_by_owner_key("alice")

    assert [i["_id"] for i in items] == ["b", "a"]
    assert any_store.get_all_by_owner_key("personne") == []


def test_memory_store_returns_copies():
    store = MemoryInferenceStore()
    store.create({"_id": "a", "result": {"tokens": 1}})
    store.get_by_id("a")["result"]["tokens"] = 99
    assert store.get_by_id("a")["result"]["tokens"] == 1


def test_redis_errors_become_store_errors():
    client = FakeRedis()
    store = RedisInferenceStore(client)
    store.create({"_id": "a"})
    client.down = True

    with pytest.raises(StoreError):
        store.update_by_id("a", {"status": "completed"})
    with pytest.raises(StoreError):
        store.get_all_by_owner_key("alice")


def test_get_store():
    assert isinstance(get_store("memory"), MemoryInferenceStore)
    with pytest.raises(ValueError):
        get_store("mongo")
