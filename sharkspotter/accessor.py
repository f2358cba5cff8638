# sharkspotter/accessor.py
"""
Shard accessors: one paging operation over a shard's ``manta`` bucket.

Two interchangeable implementations:
1. RpcShardAccessor queries through the metadata service (Moray)
2. DirectShardAccessor queries the shard's Postgres replica directly

Direct mode skips the service layer for throughput and may observe
replication lag that RPC mode does not. It never falls back to RPC mode.
"""
from __future__ import annotations
import logging
import socket
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple, Type

import psycopg
from psycopg.rows import dict_row
import requests
from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import INDEX_COLUMNS, DirectDBConfig, RetryConfig, RpcConfig
from .errors import ConfigError, ConnectivityError, DataError
from .moray import MorayClient
from .records import ShardDescriptor, row_index
from .util import lookup_ip

logger = logging.getLogger("sharkspotter")

Row = Dict[str, Any]


class Page(NamedTuple):
    rows: List[Row]
    next_index: Optional[int]  # None once the shard (or window) is exhausted


def page_query(id_name: str, bounded: bool, placeholder: Callable[[int], str]) -> str:
    if id_name not in INDEX_COLUMNS:
        raise ConfigError(f"Unknown index column {id_name!r}")
    clauses = [f"{id_name} >= {placeholder(1)}"]
    n = 2
    if bounded:
        clauses.append(f"{id_name} < {placeholder(n)}")
        n += 1
    return (
        "SELECT * FROM manta WHERE " + " AND ".join(clauses) +
        f" AND type = 'object' ORDER BY {id_name} ASC LIMIT {placeholder(n)}"
    )


def max_query(id_name: str) -> str:
    if id_name not in INDEX_COLUMNS:
        raise ConfigError(f"Unknown index column {id_name!r}")
    return f"SELECT MAX({id_name}) AS max FROM manta"


def parse_max_index_value(rows: Sequence[Row]) -> Optional[int]:
    """Parse the ``[{"max": <value>}]`` answer of a MAX() query.

    ``<value>`` is a number or a numeric string; ``null`` means an empty bucket.
    """
    if not isinstance(rows, (list, tuple)):
        raise DataError("Expected array")
    if len(rows) != 1:
        raise DataError(f"Expected single element got {len(rows)}")
    row = rows[0]
    if not isinstance(row, dict) or "max" not in row:
        raise DataError("Query missing 'max' value")
    value = row["max"]
    if value is None:
        return None
    if isinstance(value, bool):
        raise DataError("Error max value was not a string or a number")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as e:
            raise DataError(f"Error parsing max value as String: {e}") from e
    raise DataError("Error max value was not a string or a number")


def _normalize_row(row: Row) -> Row:
    out = dict(row)
    etag = out.get("_etag")
    if isinstance(etag, str):
        out["_etag"] = etag.strip().replace('"', "")
    return out


class ShardAccessor:
    """Base class: bounded retries around connect/fetch, window bookkeeping."""

    mode = "abstract"
    transient_errors: Tuple[Type[BaseException], ...] = (socket.gaierror, socket.timeout, ConnectionResetError)

    def __init__(self, descriptor: ShardDescriptor, id_name: str = "_id", retry: Optional[RetryConfig] = None) -> None:
        if id_name not in INDEX_COLUMNS:
            raise ConfigError(f"Unknown index column {id_name!r}")
        self.descriptor = descriptor
        self.id_name = id_name
        self.retry = retry or RetryConfig()
        self.requests_made = 0

    # -- subclass hooks -------------------------------------------------
    def _connect(self) -> None:
        raise NotImplementedError

    def _fetch(self, from_index: int, limit: int) -> List[Row]:
        raise NotImplementedError

    def _fetch_max(self) -> List[Row]:
        raise NotImplementedError

    def _reset(self) -> None:
        """Drop a possibly broken connection so the next attempt reconnects."""

    def close(self) -> None:
        self._reset()

    # -- public API -----------------------------------------------------
    def open(self) -> "ShardAccessor":
        self._call(self._connect)
        return self

    def __enter__(self) -> "ShardAccessor":
        return self.open()

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def page(self, from_index: int, limit: int) -> Page:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        end = self.descriptor.end
        if end is not None and from_index >= end:
            return Page([], None)
        self.requests_made += 1
        rows = [_normalize_row(r) for r in self._call(self._fetch, from_index, limit)]
        if len(rows) < limit:
            return Page(rows, None)
        next_index = self._last_index(rows) + 1
        if end is not None and next_index >= end:
            return Page(rows, None)
        return Page(rows, next_index)

    def _last_index(self, rows: Sequence[Row]) -> int:
        # rows without a usable index are skipped by the scanner; page past them
        for row in reversed(rows):
            try:
                return row_index(row, self.id_name)
            except DataError:
                continue
        raise DataError(f"shard {self.descriptor.shard}: no row in a full page carries {self.id_name!r}")

    def max_index(self) -> Optional[int]:
        return parse_max_index_value(self._call(self._fetch_max))

    # -- retry ----------------------------------------------------------
    def _before_sleep(self, state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        sleep = state.next_action.sleep if state.next_action else 0
        logger.warning(
            "[RETRY] shard %s (%s) attempt %s/%s failed: %s; retrying in %.1fs",
            self.descriptor.shard, self.mode, state.attempt_number, self.retry.attempts, exc, sleep,
        )
        self._reset()

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        retrying = Retrying(
            stop=stop_after_attempt(self.retry.attempts),
            wait=wait_exponential(
                multiplier=self.retry.backoff_multiplier,
                min=self.retry.backoff_min,
                max=self.retry.backoff_max,
            ),
            retry=retry_if_exception_type(self.transient_errors),
            before_sleep=self._before_sleep,
        )
        try:
            return retrying(fn, *args)
        except RetryError as e:
            last = e.last_attempt.exception()
            self._reset()
            raise ConnectivityError(
                f"shard {self.descriptor.shard} ({self.mode}): giving up after {self.retry.attempts} attempts: {last}"
            ) from last


class RpcShardAccessor(ShardAccessor):
    mode = "rpc"
    transient_errors = ShardAccessor.transient_errors + (
        requests.exceptions.ConnectionError,
        requests.exceptions.Timeout,
    )

    def __init__(
        self,
        descriptor: ShardDescriptor,
        id_name: str = "_id",
        retry: Optional[RetryConfig] = None,
        rpc: Optional[RpcConfig] = None,
        client_factory: Optional[Callable[[ShardDescriptor], Any]] = None,
    ) -> None:
        super().__init__(descriptor, id_name, retry)
        self.rpc = rpc or RpcConfig()
        self._client_factory = client_factory or self._default_client
        self._client: Any = None

    def _default_client(self, descriptor: ShardDescriptor) -> MorayClient:
        ip = lookup_ip(descriptor.rpc_host)
        return MorayClient(ip, descriptor.rpc_port, timeout=self.rpc.timeout)

    def _connect(self) -> None:
        if self._client is None:
            logger.debug("[RPC] Connecting to %s:%s", self.descriptor.rpc_host, self.descriptor.rpc_port)
            self._client = self._client_factory(self.descriptor)

    def _fetch(self, from_index: int, limit: int) -> List[Row]:
        self._connect()
        bounded = self.descriptor.end is not None
        args: List[Any] = [from_index]
        if bounded:
            args.append(self.descriptor.end)
        args.append(limit)
        query = page_query(self.id_name, bounded, lambda n: f"${n}")
        return self._client.sql(query, args)

    def _fetch_max(self) -> List[Row]:
        self._connect()
        return self._client.sql(max_query(self.id_name), [])

    def _reset(self) -> None:
        client, self._client = self._client, None
        if client is not None and hasattr(client, "close"):
            client.close()


class DirectShardAccessor(ShardAccessor):
    mode = "direct"
    transient_errors = ShardAccessor.transient_errors + (psycopg.OperationalError,)

    def __init__(
        self,
        descriptor: ShardDescriptor,
        id_name: str = "_id",
        retry: Optional[RetryConfig] = None,
        direct: Optional[DirectDBConfig] = None,
        connect: Optional[Callable[..., Any]] = None,
    ) -> None:
        super().__init__(descriptor, id_name, retry)
        self.direct = direct or DirectDBConfig()
        self._connect_fn = connect or psycopg.connect
        self._conn: Any = None

    def _connect(self) -> None:
        if self._conn is not None and not getattr(self._conn, "closed", False):
            return
        logger.debug("[DIRECT] Connecting to %s", self.descriptor.db_host)
        self._conn = self._connect_fn(
            host=self.descriptor.db_host,
            port=self.direct.port,
            user=self.direct.user,
            dbname=self.direct.dbname,
            connect_timeout=self.direct.connect_timeout,
            keepalives=1,
            keepalives_idle=self.direct.keepalives_idle,
            autocommit=True,
            row_factory=dict_row,
        )

    def _execute(self, query: str, params: Sequence[Any]) -> List[Row]:
        self._connect()
        with self._conn.cursor() as cur:
            cur.execute(query, params)
            return [dict(r) for r in cur.fetchall()]

    def _fetch(self, from_index: int, limit: int) -> List[Row]:
        bounded = self.descriptor.end is not None
        params: List[Any] = [from_index]
        if bounded:
            params.append(self.descriptor.end)
        params.append(limit)
        return self._execute(page_query(self.id_name, bounded, lambda n: "%s"), params)

    def _fetch_max(self) -> List[Row]:
        return self._execute(max_query(self.id_name), [])

    def _reset(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            try:
                conn.close()
            except psycopg.Error as e:
                logger.debug("[DIRECT] Ignoring error while closing %s: %s", self.descriptor.db_host, e)


__all__ = [
    "DirectShardAccessor",
    "Page",
    "RpcShardAccessor",
    "ShardAccessor",
    "max_query",
    "page_query",
    "parse_max_index_value",
]
