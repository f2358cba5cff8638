# sharkspotter/dispatch.py
"""
Run coordination across shards.

The dispatcher validates the target sharks, opens the shared output
aggregator and duplicate store, then runs one ShardScanner per shard, either
sequentially in the calling thread or on a bounded thread pool. A failed
shard never stops its siblings; an output failure stops everything.
"""
from __future__ import annotations
import getpass
import logging
import socket
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests

from .accessor import DirectShardAccessor, RpcShardAccessor, ShardAccessor
from .config import SpotterConfig
from .dedupe import DuplicateDetector
from .errors import (
    EXIT_CANCELLED,
    EXIT_OK,
    EXIT_OUTPUT,
    EXIT_SHARD_FAILED,
    ConnectivityError,
    OutputError,
    ValidationError,
)
from .match import TargetSet
from .moray import MorayClient
from .output import MatchHandler, OutputAggregator
from .records import ShardDescriptor
from .scan import ProgressCallback, ScanState, ShardOutcome, ShardScanner
from .util import lookup_ip, normalize_sharks

logger = logging.getLogger("sharkspotter")

AccessorFactory = Callable[[ShardDescriptor], ShardAccessor]

UNSAFE_STORAGE_STATES = {"readonly", "read-only", "read_only", "maintenance", "offline"}


@dataclass
class RunOutcome:
    shards: List[ShardOutcome] = field(default_factory=list)
    cancelled: bool = False
    fatal_error: Optional[str] = None
    output_paths: List[Path] = field(default_factory=list)

    @property
    def matched(self) -> int:
        return sum(s.matched for s in self.shards)

    @property
    def duplicates(self) -> int:
        return sum(s.duplicates for s in self.shards)

    @property
    def completed(self) -> List[int]:
        return [s.shard for s in self.shards if s.status == ScanState.COMPLETED]

    @property
    def failed(self) -> List[int]:
        return [s.shard for s in self.shards if s.status != ScanState.COMPLETED]

    @property
    def exit_code(self) -> int:
        if self.fatal_error:
            return EXIT_OUTPUT
        if self.cancelled:
            return EXIT_CANCELLED
        if self.failed:
            return EXIT_SHARD_FAILED
        return EXIT_OK

    def as_dict(self) -> Dict[str, Any]:
        return {
            "shards": [s.as_dict() for s in self.shards],
            "matched": self.matched,
            "duplicates": self.duplicates,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "fatal_error": self.fatal_error,
            "exit_code": self.exit_code,
        }


def make_descriptors(cfg: SpotterConfig) -> List[ShardDescriptor]:
    return [
        ShardDescriptor(
            shard=n,
            rpc_host=cfg.rpc.host_template.format(shard=n, domain=cfg.domain),
            rpc_port=cfg.rpc.port,
            db_host=cfg.direct.host_template.format(shard=n, domain=cfg.domain),
            begin=cfg.scan.begin,
            end=cfg.scan.end,
        )
        for n in cfg.shard_numbers
    ]


def default_accessor_factory(cfg: SpotterConfig) -> AccessorFactory:
    def factory(descriptor: ShardDescriptor) -> ShardAccessor:
        if cfg.direct.enabled:
            return DirectShardAccessor(descriptor, cfg.scan.id_name, cfg.retry, cfg.direct)
        return RpcShardAccessor(descriptor, cfg.scan.id_name, cfg.retry, cfg.rpc)
    return factory


def build_targets(cfg: SpotterConfig, sharks: Sequence[str]) -> TargetSet:
    if cfg.mode == "duplicates" and not sharks:
        return TargetSet.everything(cfg.min_copies)
    return TargetSet.of(sharks, cfg.min_copies)


def validate_sharks(sharks: Sequence[str], client: Any) -> None:
    """Check every shark is registered exactly once and is safe to scan."""
    for shark in sharks:
        try:
            entries = client.find_objects("manta_storage", f"(manta_storage_id={shark})")
        except (requests.exceptions.RequestException, OSError) as e:
            raise ConnectivityError(f"Could not look up shark {shark}: {e}") from e
        except ValueError as e:
            raise ValidationError(f"Unexpected storage record for shark {shark}: {e}") from e
        if len(entries) > 1:
            raise ValidationError(f'More than one shark with name "{shark}" found')
        if not entries:
            raise ValidationError(f'No shark with name "{shark}" found')
        value = entries[0].get("value", entries[0])
        state = str(value.get("state") or "").lower()
        if value.get("read_only") or value.get("maintenance") or state in UNSAFE_STORAGE_STATES:
            raise ValidationError(f'Shark "{shark}" is not safe to scan (state={state or "read-only"})')
        logger.info("[RUN] shark %s validated", shark)


class Dispatcher:
    def __init__(
        self,
        cfg: SpotterConfig,
        accessor_factory: Optional[AccessorFactory] = None,
        validation_client: Any = None,
        stop_event: Optional[threading.Event] = None,
        progress_cb: Optional[ProgressCallback] = None,
        on_match: Optional[MatchHandler] = None,
    ) -> None:
        self.cfg = cfg
        self.accessor_factory = accessor_factory or default_accessor_factory(cfg)
        self.validation_client = validation_client
        self.stop_event = stop_event or threading.Event()
        self.progress_cb = progress_cb
        # replaces the output files when set
        self.on_match = on_match
        self.sharks = normalize_sharks(cfg.sharks, cfg.domain)
        self.targets = build_targets(cfg, self.sharks)
        self.aggregator: Optional[OutputAggregator] = None
        self.detector: Optional[DuplicateDetector] = None

    def _validation_client(self) -> Any:
        if self.validation_client is not None:
            return self.validation_client
        host = self.cfg.rpc.host_template.format(shard=1, domain=self.cfg.domain)
        try:
            ip = lookup_ip(host)
        except OSError as e:
            raise ConnectivityError(f"Could not resolve {host}: {e}") from e
        return MorayClient(ip, self.cfg.rpc.port, timeout=self.cfg.rpc.timeout)

    def _open_aggregator(self) -> Optional[OutputAggregator]:
        if self.on_match is not None:
            return OutputAggregator(
                self.sharks, self.cfg.shard_numbers, self.cfg.domain, handler=self.on_match
            ).open()
        if self.cfg.mode == "duplicates":
            return None
        out = self.cfg.output
        fmt = "object_id" if out.object_id_only else ("full" if out.full_object else "metadata")
        return OutputAggregator(
            self.sharks,
            self.cfg.shard_numbers,
            self.cfg.domain,
            directory=out.directory,
            filename=out.file,
            fmt=fmt,
            overwrite=out.overwrite,
        ).open()

    def _open_detector(self) -> Optional[DuplicateDetector]:
        if self.cfg.mode != "duplicates" and not self.cfg.detect_duplicates:
            return None
        db = self.cfg.db
        detector = DuplicateDetector.open(Path(db.path), db.journal_mode, db.synchronous)
        detector.start_run(self.cfg.domain, self.cfg.mode, socket.gethostname(), getpass.getuser())
        return detector

    def run(self) -> RunOutcome:
        cfg = self.cfg
        descriptors = make_descriptors(cfg)
        logger.info(
            "[RUN] Starting %s run: domain=%s shards=%s-%s sharks=%s mode=%s workers=%s",
            cfg.mode, cfg.domain, cfg.shards.min_shard, cfg.shards.max_shard,
            ",".join(self.sharks) or "*", "direct" if cfg.direct.enabled else "rpc", cfg.worker_count,
        )

        if self.sharks and not cfg.skip_validation:
            validate_sharks(self.sharks, self._validation_client())

        result = RunOutcome()
        self.aggregator = self._open_aggregator()
        try:
            self.detector = self._open_detector()
            if cfg.concurrency.multithreaded:
                outcomes = self._run_pool(descriptors)
            else:
                outcomes = self._run_sequential(descriptors)
        finally:
            if self.aggregator is not None:
                result.output_paths = self.aggregator.paths
                try:
                    self.aggregator.close()
                except OutputError as e:
                    result.fatal_error = str(e)
            if self.detector is not None:
                self.detector.close()

        result.shards = sorted(outcomes, key=lambda o: o.shard)
        fatal = next((s for s in result.shards if s.fatal), None)
        if fatal is not None and result.fatal_error is None:
            result.fatal_error = fatal.error
        result.cancelled = self.stop_event.is_set() and result.fatal_error is None
        logger.info(
            "[DONE] completed shards=%s failed shards=%s matched=%s duplicates=%s",
            result.completed, result.failed, result.matched, result.duplicates,
        )
        return result

    def _scan_shard(self, descriptor: ShardDescriptor) -> ShardOutcome:
        try:
            accessor = self.accessor_factory(descriptor)
        except Exception as e:
            logger.error("[RUN] shard %s: could not create accessor: %s", descriptor.shard, e)
            return ShardOutcome(descriptor.shard, ScanState.FAILED, cursor=descriptor.begin, error=str(e))
        scanner = ShardScanner(
            descriptor,
            accessor,
            self.targets,
            chunk_size=self.cfg.scan.chunk_size,
            aggregator=self.aggregator,
            detector=self.detector,
            stop_event=self.stop_event,
            progress_cb=self.progress_cb,
        )
        outcome = scanner.run()
        if outcome.fatal:
            self.stop_event.set()
        return outcome

    def _run_sequential(self, descriptors: List[ShardDescriptor]) -> List[ShardOutcome]:
        return [self._scan_shard(d) for d in descriptors]

    def _run_pool(self, descriptors: List[ShardDescriptor]) -> List[ShardOutcome]:
        outcomes: List[ShardOutcome] = []
        with ThreadPoolExecutor(max_workers=self.cfg.worker_count, thread_name_prefix="shard_scanner") as ex:
            fut_map = {ex.submit(self._scan_shard, d): d for d in descriptors}
            for fut in as_completed(fut_map):
                descriptor = fut_map[fut]
                try:
                    outcome = fut.result()
                except Exception as e:
                    logger.error("[RUN] shard %s thread error: %s", descriptor.shard, e)
                    outcome = ShardOutcome(descriptor.shard, ScanState.FAILED, cursor=descriptor.begin, error=str(e))
                outcomes.append(outcome)
        return outcomes


def run(cfg: SpotterConfig, **kwargs: Any) -> RunOutcome:
    return Dispatcher(cfg, **kwargs).run()


__all__ = [
    "Dispatcher",
    "RunOutcome",
    "build_targets",
    "default_accessor_factory",
    "make_descriptors",
    "run",
    "validate_sharks",
]
