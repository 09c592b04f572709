"""
Row store abstractions for per-user pipeline state.

This module provides two implementations of the same table-like interface:
- InMemoryRowStore: process-local, lock-protected (local dev and tests)
- RedisRowStore: rows kept as one JSON list per (table, user) key, with every
  mutation applied inside a WATCH/MULTI transaction

"Not found" and "transient failure" are distinct on purpose: RowNotFound is
a normal empty state (no cache yet, no row for that theme), StoreError means
the backend misbehaved and the caller should degrade gracefully and log.

These classes are decoupled from environment variables; build them through
build_row_store(config) or pass values to the constructors directly.
"""
from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

Row = Dict[str, Any]
Filters = Dict[str, Any]


class RowStoreError(Exception):
    """Base class for store failures."""


class RowNotFound(RowStoreError):
    """No row matched; a legitimate empty state."""


class StoreError(RowStoreError):
    """Transient backend failure (connection, serialization, timeout)."""


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_ts(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp into an aware datetime; None when unparseable."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _compare(op: str, actual: Any, expected: Any) -> bool:
    if op == "ne":
        return actual != expected
    if op == "in":
        return actual in expected
    if actual is None:
        return False
    # Timestamps are stored as ISO strings; compare them as datetimes
    if isinstance(actual, str) and isinstance(expected, (str, datetime)):
        a, e = parse_ts(actual), parse_ts(expected)
        if a is not None and e is not None:
            actual, expected = a, e
    if op == "gt":
        return actual > expected
    if op == "gte":
        return actual >= expected
    if op == "lt":
        return actual < expected
    raise ValueError(f"Unsupported filter operator: {op}")


def row_matches(row: Row, filters: Optional[Filters]) -> bool:
    """Equality filters, or (op, value) tuples with op in gt|gte|lt|ne|in."""
    for field, cond in (filters or {}).items():
        actual = row.get(field)
        if isinstance(cond, tuple) and len(cond) == 2 and isinstance(cond[0], str):
            if not _compare(cond[0], actual, cond[1]):
                return False
        elif actual != cond:
            return False
    return True


def _sorted(rows: List[Row], order_by: Optional[str], descending: bool) -> List[Row]:
    if not order_by:
        return rows
    present = [r for r in rows if r.get(order_by) is not None]
    missing = [r for r in rows if r.get(order_by) is None]

    def key(r: Row):
        v = r.get(order_by)
        ts = parse_ts(v) if isinstance(v, str) else None
        return ts if ts is not None else v

    return sorted(present, key=key, reverse=descending) + missing


class RowStore:
    """Table-like operations shared by both backends.

    Subclasses provide `_read(table, user_id)` and
    `_mutate(table, user_id, fn)` where `fn` receives the current row list and
    returns `(new_rows, result)`; `_mutate` must apply the change atomically.
    """

    def _read(self, table: str, user_id: str) -> List[Row]:
        raise NotImplementedError

    def _mutate(self, table: str, user_id: str, fn: Callable[[List[Row]], Tuple[List[Row], Any]]) -> Any:
        raise NotImplementedError

    def select(
        self,
        table: str,
        user_id: str,
        *,
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Row]:
        rows = [dict(r) for r in self._read(table, user_id) if row_matches(r, filters)]
        rows = _sorted(rows, order_by, descending)
        if limit is not None:
            rows = rows[: max(0, int(limit))]
        return rows

    def select_one(self, table: str, user_id: str, *, filters: Optional[Filters] = None) -> Row:
        rows = self.select(table, user_id, filters=filters, limit=1)
        if not rows:
            raise RowNotFound(f"{table}: no row for user {user_id} matching {filters or {}}")
        return rows[0]

    def count(self, table: str, user_id: str, *, filters: Optional[Filters] = None) -> int:
        return sum(1 for r in self._read(table, user_id) if row_matches(r, filters))

    def insert(self, table: str, user_id: str, rows: Iterable[Row]) -> List[Row]:
        now = utcnow_iso()
        prepared: List[Row] = []
        for r in rows:
            row = dict(r)
            row.setdefault("id", str(uuid.uuid4()))
            row["user_id"] = user_id
            row.setdefault("created_at", now)
            row.setdefault("updated_at", now)
            prepared.append(row)

        def fn(current: List[Row]):
            return current + prepared, None

        self._mutate(table, user_id, fn)
        return [dict(r) for r in prepared]

    def update(self, table: str, user_id: str, *, filters: Optional[Filters], values: Row) -> int:
        now = utcnow_iso()

        def fn(current: List[Row]):
            changed = 0
            out: List[Row] = []
            for r in current:
                if row_matches(r, filters):
                    r = {**r, **values}
                    if "updated_at" not in values:
                        r["updated_at"] = now
                    changed += 1
                out.append(r)
            return out, changed

        return self._mutate(table, user_id, fn)

    def delete(self, table: str, user_id: str, *, filters: Optional[Filters] = None) -> int:
        def fn(current: List[Row]):
            kept = [r for r in current if not row_matches(r, filters)]
            return kept, len(current) - len(kept)

        return self._mutate(table, user_id, fn)

    def upsert(self, table: str, user_id: str, row: Row, *, key_fields: Sequence[str] = ("user_id",)) -> Row:
        now = utcnow_iso()
        new_row = dict(row)
        new_row["user_id"] = user_id
        key = {k: new_row.get(k) for k in key_fields}

        def fn(current: List[Row]):
            out: List[Row] = []
            merged: Optional[Row] = None
            for r in current:
                if merged is None and row_matches(r, key):
                    merged = {**r, **new_row, "updated_at": now}
                    out.append(merged)
                else:
                    out.append(r)
            if merged is None:
                merged = {"id": str(uuid.uuid4()), "created_at": now, **new_row, "updated_at": now}
                out.append(merged)
            return out, dict(merged)

        return self._mutate(table, user_id, fn)

    def replace(self, table: str, user_id: str, rows: Iterable[Row]) -> List[Row]:
        """Atomically drop every row the user has in `table` and insert `rows`."""
        now = utcnow_iso()
        prepared: List[Row] = []
        for r in rows:
            row = {"id": str(uuid.uuid4()), "created_at": now, "updated_at": now, **dict(r)}
            row["user_id"] = user_id
            prepared.append(row)

        def fn(_current: List[Row]):
            return list(prepared), None

        self._mutate(table, user_id, fn)
        return [dict(r) for r in prepared]

    def increment(
        self,
        table: str,
        user_id: str,
        *,
        filters: Optional[Filters],
        field: str,
        amount: int = 1,
        values: Optional[Row] = None,
        touch: bool = True,
    ) -> int:
        """Atomically add `amount` to `field` (missing/None counts as 0) on matching rows.

        With touch=False the rows keep their updated_at.
        """
        now = utcnow_iso()

        def fn(current: List[Row]):
            changed = 0
            out: List[Row] = []
            for r in current:
                if row_matches(r, filters):
                    r = {**r, **(values or {})}
                    r[field] = int(r.get(field) or 0) + amount
                    if touch:
                        r["updated_at"] = now
                    changed += 1
                out.append(r)
            return out, changed

        return self._mutate(table, user_id, fn)


class InMemoryRowStore(RowStore):
    """Process-local store; a single lock makes every mutation atomic."""

    def __init__(self) -> None:
        self._tables: Dict[Tuple[str, str], List[Row]] = {}
        self._lock = threading.RLock()

    def _read(self, table: str, user_id: str) -> List[Row]:
        with self._lock:
            return [dict(r) for r in self._tables.get((table, user_id), [])]

    def _mutate(self, table: str, user_id: str, fn):
        with self._lock:
            current = [dict(r) for r in self._tables.get((table, user_id), [])]
            new_rows, result = fn(current)
            self._tables[(table, user_id)] = new_rows
            return result

    def __len__(self) -> int:  # pragma: no cover - trivial
        with self._lock:
            return sum(len(v) for v in self._tables.values())


class RedisRowStore(RowStore):
    """Redis-backed store with key prefix.

    Parameters
    - url: full redis URL, if provided (takes precedence over host/port/db/password)
    - host, port, db, password: standard Redis connection fields
    - prefix: string prefix for namespacing keys
    """

    def __init__(
        self,
        *,
        url: Optional[str] = None,
        host: Optional[str] = None,
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "coach:rows:",
        client: Any = None,
    ) -> None:
        import redis

        self._errors = (redis.exceptions.RedisError,)
        self._prefix = prefix
        if client is not None:
            self.r = client
        elif url:
            self.r = redis.from_url(url, decode_responses=True)
        else:
            self.r = redis.Redis(host=host, port=port, db=db, password=password, decode_responses=True)

        # Verify connection early
        try:
            self.r.ping()
        except self._errors as e:
            raise StoreError(f"Cannot connect to Redis: {e}") from e

    def _k(self, table: str, user_id: str) -> str:
        return f"{self._prefix}{table}:{user_id}"

    @staticmethod
    def _decode(raw: Any) -> List[Row]:
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Corrupt row payload: {e}") from e
        return data if isinstance(data, list) else []

    def _read(self, table: str, user_id: str) -> List[Row]:
        try:
            raw = self.r.get(self._k(table, user_id))
        except self._errors as e:
            raise StoreError(str(e)) from e
        return self._decode(raw)

    def _mutate(self, table: str, user_id: str, fn):
        key = self._k(table, user_id)
        box: Dict[str, Any] = {}

        def tx(pipe) -> None:
            current = self._decode(pipe.get(key))
            new_rows, result = fn(current)
            box["result"] = result
            pipe.multi()
            pipe.set(key, json.dumps(new_rows, default=str))

        try:
            self.r.transaction(tx, key)
        except self._errors as e:
            raise StoreError(str(e)) from e
        return box.get("result")


def build_row_store(config, logger=None) -> RowStore:
    """Instantiate the configured backend, falling back to memory if Redis is unreachable."""
    if config.memory_backend == "redis":
        try:
            return RedisRowStore(
                url=config.redis_url,
                host=config.redis_host,
                port=config.redis_port,
                db=config.redis_db,
                password=config.redis_password,
                prefix=config.redis_prefix,
            )
        except (StoreError, ImportError) as e:
            if logger is not None:
                logger.warning(json.dumps({"event": "row_store_fallback", "backend": "memory", "error": str(e)}))
    return InMemoryRowStore()


__all__ = [
    "Row",
    "RowStoreError",
    "RowNotFound",
    "StoreError",
    "RowStore",
    "InMemoryRowStore",
    "RedisRowStore",
    "build_row_store",
    "utcnow_iso",
    "parse_ts",
    "row_matches",
]
