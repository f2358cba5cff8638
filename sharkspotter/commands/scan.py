"""CLI command for scanning shards for objects stored on target sharks."""
from __future__ import annotations

import argparse
import logging
import signal
import threading
from argparse import _SubParsersAction
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Sequence

from ..config import SpotterConfig, build_config, read_config_data
from ..dispatch import Dispatcher, RunOutcome
from ..errors import SpotterError
from ..util import setup_logger

logger = logging.getLogger("sharkspotter")


def add_run_options(parser: argparse.ArgumentParser) -> None:
    """Options shared by every command that scans shards."""
    parser.add_argument("--config", help="YAML configuration file; command-line options override it")
    parser.add_argument("--domain", help="Domain of the Manta deployment (e.g. us-east.example.com)")
    parser.add_argument("-s", "--shark", action="append", help="Storage node to look for, e.g. 1.stor (may repeat)")
    parser.add_argument("-b", "--begin", type=int, help="Index to begin scanning at (default 0)")
    parser.add_argument("-e", "--end", type=int, help="Index to stop scanning at, exclusive (default: until exhausted)")
    parser.add_argument("-c", "--chunk-size", type=int, help="Number of records to scan per call to the shard (default 100)")
    parser.add_argument("-m", "--min-shard", type=int, help="Beginning shard number (default 1)")
    parser.add_argument("-M", "--max-shard", type=int, help="Ending shard number (default 1)")
    parser.add_argument("-T", "--multithreaded", action="store_true", default=None, help="Scan shards on a thread pool")
    parser.add_argument("-t", "--max-threads", type=int, help="Maximum concurrent shard scans (default: one per shard)")
    parser.add_argument("-D", "--direct-db", action="store_true", default=None, help="Query each shard's Postgres replica directly instead of Moray")
    parser.add_argument("-i", "--id-name", choices=("_id", "_idx"), help="Index column used as the scan cursor")
    parser.add_argument("--min-copies", type=int, help="Only consider objects with at least this many copies")
    parser.add_argument("--retries", type=int, help="Attempts per shard request before giving up (default 5)")
    parser.add_argument("--db", help="SQLite file recording stubs and duplicates")
    parser.add_argument("--no-duplicates", action="store_true", default=None, help="Do not record duplicate metadata entries")
    parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ERROR)")
    parser.add_argument("--log-file", help="Also write log messages to this file")


def _configure_parser(parser: argparse.ArgumentParser) -> None:
    add_run_options(parser)
    parser.add_argument("-x", "--skip-validation", action="store_true", default=None, help="Skip the storage node operational-status check")
    parser.add_argument("-f", "--file", help="Write every match to this one file instead of <shark>/shard_<N>.objs")
    parser.add_argument("-d", "--output-dir", help="Directory holding the per-shark output files (default .)")
    parser.add_argument("-O", "--object-id-only", action="store_true", default=None, help="Only write the objectId of each match")
    parser.add_argument("-F", "--full-object", action="store_true", default=None, help="Write the full Moray row of each match")
    parser.add_argument("--overwrite", action="store_true", default=None, help="Replace existing output files")


def add_parser(subparsers: _SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(
        "scan",
        help="Find objects stored on the given sharks",
        description="Page through each shard's manta bucket and write every object stored on a target shark.",
    )
    _configure_parser(parser)
    parser.set_defaults(handler=run_from_args)
    return parser


def build_parser(prog: Optional[str] = None) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=prog or "sharkspotter scan", description="Find objects stored on the given sharks")
    _configure_parser(parser)
    return parser


def _set(data: Dict[str, Any], section: Optional[str], key: str, value: Any) -> None:
    if value is None:
        return
    if section is None:
        data[key] = value
    else:
        data.setdefault(section, {})[key] = value


def config_from_args(args: argparse.Namespace, mode: str = "sharks") -> SpotterConfig:
    """Merge the optional YAML file with command-line overrides."""
    data: Dict[str, Any] = read_config_data(Path(args.config)) if args.config else {}
    data["mode"] = mode
    _set(data, None, "domain", args.domain)
    _set(data, None, "sharks", args.shark)
    _set(data, None, "min_copies", args.min_copies)
    if args.no_duplicates:
        data["detect_duplicates"] = False
    _set(data, None, "skip_validation", getattr(args, "skip_validation", None))
    _set(data, "scan", "begin", args.begin)
    _set(data, "scan", "end", args.end)
    _set(data, "scan", "chunk_size", args.chunk_size)
    _set(data, "scan", "id_name", args.id_name)
    _set(data, "shards", "min_shard", args.min_shard)
    _set(data, "shards", "max_shard", args.max_shard)
    _set(data, "concurrency", "multithreaded", args.multithreaded)
    _set(data, "concurrency", "max_threads", args.max_threads)
    _set(data, "direct", "enabled", args.direct_db)
    _set(data, "retry", "attempts", args.retries)
    _set(data, "db", "path", args.db)
    _set(data, "output", "file", getattr(args, "file", None))
    _set(data, "output", "directory", getattr(args, "output_dir", None))
    _set(data, "output", "object_id_only", getattr(args, "object_id_only", None))
    _set(data, "output", "full_object", getattr(args, "full_object", None))
    _set(data, "output", "overwrite", getattr(args, "overwrite", None))
    if "domain" not in data:
        data["domain"] = ""
    return build_config(data)


@contextmanager
def stop_on_sigint(stop_event: threading.Event) -> Iterator[threading.Event]:
    """Turn Ctrl-C into a stop request honoured between pages."""

    def _handle_sigint(signum, frame):  # noqa: ARG001
        if not stop_event.is_set():
            print("\n[CANCEL] Stop requested; finishing in-flight pages...")
        stop_event.set()

    previous = None
    try:
        previous = signal.signal(signal.SIGINT, _handle_sigint)
    except ValueError:
        # signal handlers can only be installed from the main thread
        logger.debug("SIGINT handler not installed outside the main thread")
    try:
        yield stop_event
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)


def print_summary(title: str, result: RunOutcome) -> None:
    print("\n" + "=" * 70)
    print(title)
    print("=" * 70)
    print(f"Shards completed:        {len(result.completed):>10,}")
    print(f"Shards failed:           {len(result.failed):>10,}")
    print(f"Objects matched:         {result.matched:>10,}")
    print(f"Duplicates recorded:     {result.duplicates:>10,}")
    for outcome in result.shards:
        line = f"  • shard {outcome.shard}: {outcome.status.value} (matched {outcome.matched:,}, duplicates {outcome.duplicates:,}, next index {outcome.cursor})"
        if outcome.error and not outcome.ok:
            line += f" - {outcome.error}"
        print(line)
    if result.output_paths:
        print(f"Output files:            {len(result.output_paths):>10,}")
    if result.cancelled:
        print("Run cancelled before all shards completed.")
    if result.fatal_error:
        print(f"Fatal output error: {result.fatal_error}")
    print("=" * 70)


def execute(cfg: SpotterConfig, title: str) -> RunOutcome:
    with stop_on_sigint(threading.Event()) as stop_event:
        result = Dispatcher(cfg, stop_event=stop_event).run()
    print_summary(title, result)
    return result


def run_from_args(args: argparse.Namespace) -> int:
    setup_logger(args.log_level, Path(args.log_file) if args.log_file else None)
    try:
        cfg = config_from_args(args, mode="sharks")
        result = execute(cfg, "SHARKSPOTTER SCAN SUMMARY")
    except SpotterError as e:
        logger.error("%s", e)
        return e.exit_code
    return result.exit_code


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return run_from_args(args)


__all__ = [
    "add_parser",
    "add_run_options",
    "build_parser",
    "config_from_args",
    "execute",
    "print_summary",
    "run_cli",
    "run_from_args",
    "stop_on_sigint",
]
