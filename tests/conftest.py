"""
Shared fixtures for sharkspotter tests.

Provides:
- ``make_row`` for building Moray ``manta`` rows
- an in-memory shard accessor with injectable failures
- fake metadata-service client and fake psycopg connection over the same rows
- fast retry settings and a temporary duplicate store
"""
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import pytest

from sharkspotter.accessor import ShardAccessor
from sharkspotter.config import RetryConfig
from sharkspotter.dedupe import DuplicateDetector
from sharkspotter.records import ShardDescriptor

DOMAIN = "east.example.com"
SHARK_A = f"1.stor.{DOMAIN}"
SHARK_B = f"2.stor.{DOMAIN}"
SHARK_C = f"3.stor.{DOMAIN}"


def make_row(
    index: int,
    sharks: Sequence[str] = (SHARK_A,),
    object_id: Optional[str] = None,
    etag: str = "ETAG",
    key: Optional[str] = None,
    value_as_str: bool = True,
) -> Dict[str, Any]:
    object_id = object_id or f"obj-{index:05d}"
    value = {
        "objectId": object_id,
        "owner": "owner-1",
        "key": key or f"/owner-1/stor/{object_id}",
        "sharks": [{"datacenter": "dc0", "manta_storage_id": s} for s in sharks],
        "contentLength": 42,
    }
    return {
        "_id": index,
        "_idx": index,
        "_key": key or f"/owner-1/stor/{object_id}",
        "_etag": etag,
        "_value": json.dumps(value) if value_as_str else value,
        "type": "object",
    }


def filter_rows(rows: Iterable[Dict[str, Any]], from_index: int, end: Optional[int], limit: int, id_name: str = "_id") -> List[Dict[str, Any]]:
    selected = [
        r for r in sorted(rows, key=lambda r: r[id_name])
        if r[id_name] >= from_index and (end is None or r[id_name] < end)
    ]
    return [dict(r) for r in selected[:limit]]


def descriptor(shard: int = 1, begin: int = 0, end: Optional[int] = None) -> ShardDescriptor:
    return ShardDescriptor(
        shard=shard,
        rpc_host=f"{shard}.moray.{DOMAIN}",
        rpc_port=2020,
        db_host=f"{shard}.rebalancer-postgres.{DOMAIN}",
        begin=begin,
        end=end,
    )


class FakeShardAccessor(ShardAccessor):
    """In-memory shard; ``transient_failures`` fetches fail before serving data."""

    mode = "fake"

    def __init__(
        self,
        desc: ShardDescriptor,
        rows: Sequence[Dict[str, Any]],
        retry: Optional[RetryConfig] = None,
        transient_failures: int = 0,
        always_fail: bool = False,
        id_name: str = "_id",
    ) -> None:
        super().__init__(desc, id_name, retry)
        self.rows = list(rows)
        self.transient_failures = transient_failures
        self.always_fail = always_fail
        self.fetch_calls: List[Any] = []
        self.resets = 0

    def _connect(self) -> None:
        pass

    def _fetch(self, from_index: int, limit: int) -> List[Dict[str, Any]]:
        self.fetch_calls.append((from_index, limit))
        if self.always_fail or self.transient_failures > 0:
            self.transient_failures -= 1
            raise ConnectionResetError("connection reset by peer")
        return filter_rows(self.rows, from_index, self.descriptor.end, limit, self.id_name)

    def _fetch_max(self) -> List[Dict[str, Any]]:
        if not self.rows:
            return [{"max": None}]
        return [{"max": str(max(r[self.id_name] for r in self.rows))}]

    def _reset(self) -> None:
        self.resets += 1


class FakeMorayClient:
    """Answers the paging and MAX queries the RPC accessor sends."""

    def __init__(self, rows: Sequence[Dict[str, Any]] = (), storage: Optional[Dict[str, List[Dict[str, Any]]]] = None) -> None:
        self.rows = list(rows)
        self.storage = storage or {}
        self.queries: List[Any] = []
        self.closed = False

    def sql(self, query: str, args: Sequence[Any] = (), options: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        self.queries.append((query, list(args)))
        if "MAX(" in query:
            top = max((r["_id"] for r in self.rows), default=None)
            return [{"max": None if top is None else str(top)}]
        args = list(args)
        end = args[1] if len(args) == 3 else None
        # The gateway hands back etags quoted, as Moray stores them.
        rows = filter_rows(self.rows, args[0], end, args[-1])
        for r in rows:
            r["_etag"] = f'"{r["_etag"]}"'
        return rows

    def find_objects(self, bucket: str, filter_: str, options: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        self.queries.append((bucket, filter_))
        shark = filter_.strip("()").split("=", 1)[1]
        return self.storage.get(shark, [])

    def close(self) -> None:
        self.closed = True


class FakeCursor:
    def __init__(self, conn: "FakePgConnection") -> None:
        self.conn = conn
        self._result: List[Dict[str, Any]] = []

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, *exc: Any) -> None:
        pass

    def execute(self, query: str, params: Sequence[Any] = ()) -> None:
        self.conn.queries.append((query, list(params)))
        if "MAX(" in query:
            top = max((r["_id"] for r in self.conn.rows), default=None)
            self._result = [{"max": top}]
            return
        params = list(params)
        end = params[1] if len(params) == 3 else None
        self._result = filter_rows(self.conn.rows, params[0], end, params[-1])

    def fetchall(self) -> List[Dict[str, Any]]:
        return self._result


class FakePgConnection:
    def __init__(self, rows: Sequence[Dict[str, Any]]) -> None:
        self.rows = list(rows)
        self.queries: List[Any] = []
        self.closed = False

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fast_retry() -> RetryConfig:
    return RetryConfig(attempts=3, backoff_multiplier=0, backoff_min=0, backoff_max=0)


@pytest.fixture
def detector(tmp_path: Path):
    det = DuplicateDetector.open(tmp_path / "spot.db")
    det.start_run(DOMAIN, "sharks", "testhost", "tester")
    yield det
    det.close()
