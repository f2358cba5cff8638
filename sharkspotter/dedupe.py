# sharkspotter/dedupe.py
"""
Duplicate detection for Manta object metadata.

The first record seen for an object identity leaves a *stub* behind; every
other record carrying the same identity is stored in full as a *duplicate*.
Stubs and duplicates both remember the physical record (shard + index) they
came from, which keeps classification idempotent across re-runs:

- the stub's own record is always FIRST_SEEN, however often it is scanned
- a duplicate is stored once per physical record, never twice

The identity is the Manta ``objectId``: it is assigned once per object and is
the same in every metadata copy regardless of shard or shark.
"""
from __future__ import annotations
import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .db import connect, migrate
from .errors import OutputError
from .records import ObjectRecord

logger = logging.getLogger("sharkspotter")


class Observation(str, Enum):
    FIRST_SEEN = "first_seen"
    DUPLICATE = "duplicate"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DuplicateDetector:
    """Owns the stub/duplicate store; safe to call from any scanner thread.

    Every observation runs as a single transaction on one connection while
    holding the detector's lock.
    """

    def __init__(self, con: sqlite3.Connection, run_id: Optional[int] = None) -> None:
        self._con = con
        self._lock = threading.Lock()
        self.run_id = run_id

    @classmethod
    def open(
        cls,
        db_path: Path,
        journal_mode: str = "WAL",
        synchronous: str = "NORMAL",
    ) -> "DuplicateDetector":
        try:
            con = connect(Path(db_path), journal_mode, synchronous)
        except (OSError, sqlite3.Error) as e:
            raise OutputError(f"Cannot open duplicate store {db_path}: {e}") from e
        try:
            migrate(con)
        except sqlite3.Error as e:
            con.close()
            raise OutputError(f"Cannot prepare duplicate store {db_path}: {e}") from e
        return cls(con)

    def start_run(self, domain: str, mode: str, host: str, user: str) -> int:
        with self._lock:
            cur = self._con.execute(
                "INSERT INTO runs(started_at, domain, mode, host, user) VALUES (?,?,?,?,?)",
                (_now(), domain, mode, host, user),
            )
            self._con.commit()
            self.run_id = cur.lastrowid
        return self.run_id

    def observe(self, record: ObjectRecord, shard: int) -> Observation:
        with self._lock:
            try:
                result = self._observe_locked(record, shard)
            except BaseException:
                self._con.rollback()
                raise
            self._con.commit()
        return result

    def _observe_locked(self, record: ObjectRecord, shard: int) -> Observation:
        cur = self._con.cursor()
        cur.execute(
            "INSERT INTO stubs(id, key, etag, shard, idx, run_id, first_seen_at) VALUES (?,?,?,?,?,?,?) "
            "ON CONFLICT(id) DO NOTHING",
            (record.object_id, record.key, record.etag, shard, record.index, self.run_id, _now()),
        )
        if cur.rowcount == 1:
            return Observation.FIRST_SEEN

        cur.execute("SELECT etag, shard, idx FROM stubs WHERE id = ?", (record.object_id,))
        stub_etag, stub_shard, stub_idx = cur.fetchone()
        if stub_shard == shard and stub_idx == record.index:
            return Observation.FIRST_SEEN

        etag_match = stub_etag == record.etag
        if not etag_match:
            logger.error(
                "[DEDUPE] Found two metadata entries with different etags for %s (%s != %s)",
                record.object_id, stub_etag, record.etag,
            )
        cur.execute(
            "INSERT INTO duplicates(id, key, etag, etag_match, shard, idx, object, run_id, found_at) "
            "VALUES (?,?,?,?,?,?,?,?,?) ON CONFLICT(id, shard, idx) DO NOTHING",
            (
                record.object_id,
                record.key,
                record.etag,
                1 if etag_match else 0,
                shard,
                record.index,
                json.dumps(record.value, sort_keys=True),
                self.run_id,
                _now(),
            ),
        )
        if cur.rowcount == 1:
            logger.info("[DEDUPE] Found duplicate %s (shard %s, index %s)", record.key, shard, record.index)
        return Observation.DUPLICATE

    def counts(self) -> Dict[str, int]:
        with self._lock:
            cur = self._con.cursor()
            cur.execute("SELECT COUNT(*) FROM stubs")
            stubs = cur.fetchone()[0]
            cur.execute("SELECT COUNT(*) FROM duplicates")
            duplicates = cur.fetchone()[0]
        return {"stubs": stubs, "duplicates": duplicates}

    def close(self) -> None:
        with self._lock:
            self._con.close()


def get_duplicate_report(db_path: Path, limit: int = 100) -> List[Dict[str, Any]]:
    """
    Report the object identities with the most duplicate metadata entries.

    Each entry carries the stub's key and location plus every duplicate's
    shard, index and etag check.
    """
    con = connect(Path(db_path))
    try:
        migrate(con)
        cur = con.cursor()
        cur.execute(
            """
            SELECT s.id, s.key, s.shard, s.idx, COUNT(d.dup_id) AS n
            FROM stubs s
            JOIN duplicates d ON d.id = s.id
            GROUP BY s.id
            ORDER BY n DESC, s.id
            LIMIT ?
            """,
            (limit,),
        )
        results = []
        for stub_id, key, shard, idx, count in cur.fetchall():
            cur.execute(
                "SELECT shard, idx, etag_match FROM duplicates WHERE id = ? ORDER BY shard, idx",
                (stub_id,),
            )
            copies = [
                {"shard": s, "index": i, "etag_match": bool(m)}
                for s, i, m in cur.fetchall()
            ]
            results.append({
                "id": stub_id,
                "key": key,
                "stub_shard": shard,
                "stub_index": idx,
                "count": count,
                "duplicates": copies,
            })
        return results
    finally:
        con.close()


__all__ = ["DuplicateDetector", "Observation", "get_duplicate_report"]
