from __future__ import annotations
import sqlite3
from pathlib import Path

DDL = r"""
CREATE TABLE IF NOT EXISTS runs (
  run_id INTEGER PRIMARY KEY,
  started_at TEXT NOT NULL,
  domain TEXT NOT NULL,
  mode TEXT NOT NULL,
  host TEXT NOT NULL,
  user TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS stubs (
  id TEXT PRIMARY KEY,
  key TEXT NOT NULL,
  etag TEXT NOT NULL,
  shard INTEGER NOT NULL,
  idx INTEGER NOT NULL,
  run_id INTEGER REFERENCES runs(run_id),
  first_seen_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS duplicates (
  dup_id INTEGER PRIMARY KEY,
  id TEXT NOT NULL REFERENCES stubs(id),
  key TEXT NOT NULL,
  etag TEXT NOT NULL,
  etag_match INTEGER NOT NULL,
  shard INTEGER NOT NULL,
  idx INTEGER NOT NULL,
  object TEXT NOT NULL,
  run_id INTEGER REFERENCES runs(run_id),
  found_at TEXT NOT NULL,
  UNIQUE (id, shard, idx)
);
CREATE INDEX IF NOT EXISTS idx_stubs_shard ON stubs(shard, idx);
CREATE INDEX IF NOT EXISTS idx_duplicates_id ON duplicates(id);
CREATE INDEX IF NOT EXISTS idx_duplicates_shard ON duplicates(shard);
"""

def connect(db_path: Path, journal_mode: str = "WAL", synchronous: str = "NORMAL") -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    # Shared by scanner threads behind DuplicateDetector's lock.
    con = sqlite3.connect(str(db_path), check_same_thread=False)
    con.execute("PRAGMA foreign_keys=ON;")
    con.execute(f"PRAGMA journal_mode={journal_mode};")
    con.execute(f"PRAGMA synchronous={synchronous};")
    con.execute("PRAGMA busy_timeout=5000;")
    return con

def migrate(con: sqlite3.Connection) -> None:
    con.executescript(DDL)
    cur = con.cursor()
    cur.execute("PRAGMA table_info(duplicates)")
    cols = {row[1] for row in cur.fetchall()}
    # Stores created before etag checking lack the flag; treat old rows as matching.
    if "etag_match" not in cols:
        cur.execute("ALTER TABLE duplicates ADD COLUMN etag_match INTEGER NOT NULL DEFAULT 1")
    con.commit()
