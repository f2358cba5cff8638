"""CLI command for duplicate metadata detection across shards."""
from __future__ import annotations

import argparse
import logging
from argparse import _SubParsersAction
from pathlib import Path
from typing import Optional, Sequence

from ..dedupe import get_duplicate_report
from ..errors import EXIT_OK, SpotterError
from ..util import setup_logger
from .scan import add_run_options, config_from_args, execute

logger = logging.getLogger("sharkspotter")


def _configure_parser(parser: argparse.ArgumentParser) -> None:
    add_run_options(parser)
    parser.add_argument("--report", action="store_true", help="Show duplicate report after detection")
    parser.add_argument("--report-only", action="store_true", help="Only show report, skip detection")
    parser.add_argument("--report-limit", type=int, default=100, help="Limit number of objects in report")


def add_parser(subparsers: _SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(
        "duplicates",
        help="Record duplicate metadata entries",
        description="Scan every object of every shard and record objects whose metadata appears more than once.",
    )
    _configure_parser(parser)
    parser.set_defaults(handler=run_from_args)
    return parser


def build_parser(prog: Optional[str] = None) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=prog or "sharkspotter duplicates", description="Record duplicate metadata entries")
    _configure_parser(parser)
    return parser


def print_report(db_path: Path, limit: int) -> None:
    print("\n" + "=" * 70)
    print(f"TOP {limit} DUPLICATED OBJECTS (by duplicate count)")
    print("=" * 70)
    report = get_duplicate_report(db_path, limit=limit)
    if not report:
        print("No duplicates recorded.")
    for entry in report:
        print(f"\n{entry['id']}  {entry['key']}")
        print(f"  Stub:       shard {entry['stub_shard']} index {entry['stub_index']}")
        print(f"  Duplicates: {entry['count']}")
        for dup in entry["duplicates"][:5]:
            flag = "" if dup["etag_match"] else "  (etag mismatch)"
            print(f"    - shard {dup['shard']} index {dup['index']}{flag}")
        if len(entry["duplicates"]) > 5:
            print(f"    - ... {len(entry['duplicates']) - 5} more")
    print("=" * 70)


def run_from_args(args: argparse.Namespace) -> int:
    setup_logger(args.log_level, Path(args.log_file) if args.log_file else None)
    try:
        cfg = config_from_args(args, mode="duplicates")
        exit_code = EXIT_OK
        if not args.report_only:
            result = execute(cfg, "DUPLICATE DETECTION SUMMARY")
            exit_code = result.exit_code
        if args.report or args.report_only:
            print_report(Path(cfg.db.path), args.report_limit)
    except SpotterError as e:
        logger.error("%s", e)
        return e.exit_code
    return exit_code


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return run_from_args(args)


__all__ = ["add_parser", "build_parser", "print_report", "run_cli", "run_from_args"]
