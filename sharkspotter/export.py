from __future__ import annotations
import logging
from pathlib import Path
from typing import Dict

import duckdb

from .errors import OutputError

logger = logging.getLogger("sharkspotter")

TABLES = ("runs", "stubs", "duplicates")


def _quote(path: Path) -> str:
    # DuckDB doesn't support parameter placeholders for ATTACH/COPY targets.
    return str(path).replace("'", "''")


def export_tables(db_path: Path, out: Path) -> Dict[str, Path]:
    """Copy the run, stub and duplicate tables of ``db_path`` to Parquet files in ``out``."""
    db_path = Path(db_path)
    if not db_path.exists():
        raise FileNotFoundError(f"Database not found: {db_path}")
    out = Path(out)
    try:
        out.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise OutputError(f"Cannot create export directory {out}: {e}") from e

    written: Dict[str, Path] = {}
    con = duckdb.connect(database=":memory:")
    try:
        con.execute(f"ATTACH DATABASE '{_quote(db_path)}' AS spot (TYPE SQLITE);")
        for table in TABLES:
            target = out / f"{table}.parquet"
            con.execute(
                f"COPY (SELECT * FROM spot.{table}) TO '{_quote(target)}' (FORMAT PARQUET, OVERWRITE TRUE);"
            )
            written[table] = target
            logger.info("[EXPORT] %s -> %s", table, target)
    except duckdb.Error as e:
        raise OutputError(f"Parquet export failed: {e}") from e
    finally:
        con.close()
    return written
