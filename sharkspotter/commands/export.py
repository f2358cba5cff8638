"""CLI command for exporting duplicate tables to Parquet."""
from __future__ import annotations

import argparse
from argparse import _SubParsersAction
from pathlib import Path
from typing import Optional, Sequence

from ..config import DBConfig, read_config_data
from ..errors import SpotterError
from ..export import export_tables
from ..util import setup_logger


def _configure_parser(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="Configuration file (used when --db omitted)")
    parser.add_argument("--db", help="Explicit path to the sharkspotter SQLite database")
    parser.add_argument("--out", default="data/parquet", help="Destination folder for Parquet files")


def add_parser(subparsers: _SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(
        "export",
        help="Export stub and duplicate tables to Parquet",
        description="Write the runs, stubs and duplicates tables to Parquet files for downstream analysis.",
    )
    _configure_parser(parser)
    parser.set_defaults(handler=run_from_args)
    return parser


def build_parser(prog: Optional[str] = None) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=prog or "sharkspotter export", description="Export stub and duplicate tables to Parquet")
    _configure_parser(parser)
    return parser


def run_from_args(args: argparse.Namespace) -> int:
    setup_logger()
    try:
        db_path = args.db
        if not db_path:
            if not args.config:
                raise SystemExit("Provide --db or --config.")
            db_path = (read_config_data(Path(args.config)).get("db") or {}).get("path") or DBConfig().path
        export_tables(Path(db_path), Path(args.out))
    except SpotterError as e:
        print(f"[ERROR] {e}")
        return e.exit_code
    except FileNotFoundError as e:
        print(f"[ERROR] {e}")
        return 1
    print(f"[OK] Parquet written to {args.out}")
    return 0


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return run_from_args(args)


__all__ = ["add_parser", "build_parser", "run_cli", "run_from_args"]
