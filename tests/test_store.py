import pytest
import redis

from coach_pipeline.config import PipelineConfig
from coach_pipeline.store import (
    InMemoryRowStore,
    RedisRowStore,
    RowNotFound,
    StoreError,
    build_row_store,
    parse_ts,
    row_matches,
)


class FakeRedis:
    """Just enough of redis.Redis for RedisRowStore: get, ping and transaction()."""

    def __init__(self, fail=False):
        self.data = {}
        self.fail = fail

    def ping(self):
        if self.fail:
            raise redis.exceptions.ConnectionError("down")
        return True

    def get(self, key):
        if self.fail:
            raise redis.exceptions.ConnectionError("down")
        return self.data.get(key)

    def transaction(self, fn, *keys):
        store = self

        class Pipe:
            def get(self, key):
                return store.data.get(key)

            def multi(self):
                pass

            def set(self, key, value):
                store.data[key] = value

        fn(Pipe())


def test_row_matches_operators():
    row = {"a": 1, "b": None, "ts": "2026-01-02T00:00:00+00:00"}
    assert row_matches(row, {"a": 1})
    assert not row_matches(row, {"a": 2})
    assert row_matches(row, {"b": ("ne", "x")})
    assert not row_matches(row, {"b": ("ne", None)})
    assert row_matches(row, {"a": ("in", [1, 2])})
    assert row_matches(row, {"ts": ("gt", "2026-01-01T23:59:59Z")})
    assert not row_matches(row, {"ts": ("lt", "2026-01-01T00:00:00Z")})
    assert not row_matches(row, {"b": ("gt", 0)})


def test_parse_ts():
    assert parse_ts("2026-01-01T00:00:00Z").tzinfo is not None
    assert parse_ts("garbage") is None
    assert parse_ts(None) is None


def test_insert_select_order_and_limit():
    s = InMemoryRowStore()
    s.insert("t", "u", [{"n": 2}, {"n": 1}, {"n": 3}])
    rows = s.select("t", "u", order_by="n", descending=True, limit=2)
    assert [r["n"] for r in rows] == [3, 2]
    assert all(r["user_id"] == "u" and r["id"] for r in rows)
    assert s.select("t", "someone-else") == []


def test_select_one_and_not_found():
    s = InMemoryRowStore()
    s.insert("t", "u", [{"k": "a"}])
    assert s.select_one("t", "u", filters={"k": "a"})["k"] == "a"
    with pytest.raises(RowNotFound):
        s.select_one("t", "u", filters={"k": "b"})


def test_update_count_delete():
    s = InMemoryRowStore()
    s.insert("t", "u", [{"k": "a"}, {"k": "b"}])
    assert s.update("t", "u", filters={"k": "a"}, values={"v": 1}) == 1
    assert s.select_one("t", "u", filters={"k": "a"})["v"] == 1
    assert s.count("t", "u") == 2
    assert s.delete("t", "u", filters={"k": "b"}) == 1
    assert s.count("t", "u") == 1


def test_upsert_merges_on_key():
    s = InMemoryRowStore()
    first = s.upsert("cache", "u", {"v": 1})
    second = s.upsert("cache", "u", {"v": 2})
    assert first["id"] == second["id"]
    assert s.count("cache", "u") == 1
    assert s.select_one("cache", "u")["v"] == 2


def test_replace_is_wholesale():
    s = InMemoryRowStore()
    s.insert("p", "u", [{"theme": "old"}])
    s.replace("p", "u", [{"theme": "a"}, {"theme": "b"}])
    assert sorted(r["theme"] for r in s.select("p", "u")) == ["a", "b"]
    s.replace("p", "u", [])
    assert s.select("p", "u") == []


def test_increment_touch_flag():
    s = InMemoryRowStore()
    s.insert("p", "u", [{"theme": "a", "updated_at": "2026-01-01T00:00:00+00:00"}])
    s.increment("p", "u", filters={"theme": "a"}, field="surface_count", touch=False)
    row = s.select_one("p", "u")
    assert row["surface_count"] == 1
    assert row["updated_at"] == "2026-01-01T00:00:00+00:00"
    s.increment("p", "u", filters={"theme": "a"}, field="surface_count", amount=2, values={"x": 1})
    row = s.select_one("p", "u")
    assert row["surface_count"] == 3
    assert row["x"] == 1
    assert row["updated_at"] != "2026-01-01T00:00:00+00:00"


def test_redis_store_roundtrip_with_fake_client():
    fake = FakeRedis()
    s = RedisRowStore(client=fake, prefix="test:")
    s.insert("t", "u", [{"k": "a"}])
    s.increment("t", "u", filters={"k": "a"}, field="n")
    assert s.select_one("t", "u", filters={"k": "a"})["n"] == 1
    assert "test:t:u" in fake.data


def test_redis_store_errors_become_store_error():
    with pytest.raises(StoreError):
        RedisRowStore(client=FakeRedis(fail=True))

    fake = FakeRedis()
    s = RedisRowStore(client=fake)
    fake.fail = True
    with pytest.raises(StoreError):
        s.select("t", "u")

    fake.fail = False
    fake.data["coach:rows:t:u"] = "{not json"
    with pytest.raises(StoreError):
        s.select("t", "u")


def test_build_row_store_falls_back_to_memory():
    cfg = PipelineConfig(memory_backend="redis", redis_url="redis://127.0.0.1:1/0")
    assert isinstance(build_row_store(cfg), InMemoryRowStore)
    assert isinstance(build_row_store(PipelineConfig()), InMemoryRowStore)
