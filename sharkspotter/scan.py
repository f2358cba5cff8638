# sharkspotter/scan.py
"""
Per-shard scanning: walk one shard's ``[begin, end)`` window page by page.

    IDLE -> PAGING -> COMPLETED | FAILED

The cursor only moves forward, to one past the last index returned, so a
window is traversed without gaps or overlaps and disjoint windows of the same
shard partition it exactly. A stop request is honoured between pages: the
page in flight is always classified and handed off in full.
"""
from __future__ import annotations
import logging
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .accessor import Row, ShardAccessor
from .dedupe import DuplicateDetector, Observation
from .errors import DataError, OutputError
from .match import TargetSet, match_record
from .output import OutputAggregator
from .records import Cursor, ShardDescriptor, decode_row, row_index

logger = logging.getLogger("sharkspotter")

ProgressCallback = Callable[[str, int, int, str], None]


class ScanState(str, Enum):
    IDLE = "idle"
    PAGING = "paging"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ShardOutcome:
    shard: int
    status: ScanState = ScanState.IDLE
    matched: int = 0
    duplicates: int = 0
    scanned: int = 0
    skipped: int = 0
    pages: int = 0
    cursor: int = 0
    cancelled: bool = False
    fatal: bool = False
    error: Optional[str] = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == ScanState.COMPLETED

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


def _emit(cb: Optional[ProgressCallback], *args: Any) -> None:
    if not cb:
        return
    try:
        cb(*args)
    except Exception as e:
        logger.debug("progress callback failed: %s", e)


class ShardScanner:
    def __init__(
        self,
        descriptor: ShardDescriptor,
        accessor: ShardAccessor,
        targets: TargetSet,
        chunk_size: int = 100,
        aggregator: Optional[OutputAggregator] = None,
        detector: Optional[DuplicateDetector] = None,
        stop_event: Optional[threading.Event] = None,
        progress_cb: Optional[ProgressCallback] = None,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self.descriptor = descriptor
        self.accessor = accessor
        self.targets = targets
        self.chunk_size = chunk_size
        self.aggregator = aggregator
        self.detector = detector
        self.stop_event = stop_event or threading.Event()
        self.progress_cb = progress_cb
        self.cursor = Cursor(descriptor.shard, descriptor.begin)
        self.outcome = ShardOutcome(descriptor.shard, cursor=descriptor.begin)

    @property
    def state(self) -> ScanState:
        return self.outcome.status

    def run(self) -> ShardOutcome:
        if self.state != ScanState.IDLE:
            raise RuntimeError(f"shard {self.descriptor.shard} scanner already ran")
        outcome = self.outcome
        outcome.status = ScanState.PAGING
        shard = self.descriptor.shard
        start = time.monotonic()
        if self.stop_event.is_set():
            self._cancel()
            outcome.elapsed = time.monotonic() - start
            _emit(self.progress_cb, "shard", outcome.cursor, outcome.cursor, f"shard {shard} cancelled")
            return outcome
        logger.info("[SCAN] shard %s: scanning %s via %s", shard, self.descriptor.window(), self.accessor.mode)

        try:
            with self.accessor:
                largest = self._largest_index()
                while True:
                    if self.stop_event.is_set():
                        self._cancel()
                        break

                    page = self.accessor.page(self.cursor.next_index, self.chunk_size)
                    outcome.pages += 1
                    for row in page.rows:
                        self._handle_row(row)
                    last = self._last_index(page.rows)
                    if last is not None:
                        self.cursor.advance(last)
                    outcome.cursor = self.cursor.next_index

                    if page.next_index is None:
                        outcome.status = ScanState.COMPLETED
                        break
                    self._report_progress(largest)
        except OutputError as e:
            outcome.status = ScanState.FAILED
            outcome.fatal = True
            outcome.error = str(e)
            logger.error("[SCAN] shard %s: output failure: %s", shard, e)
        except Exception as e:
            outcome.status = ScanState.FAILED
            outcome.error = str(e)
            logger.error("[SCAN] Encountered error scanning shard %s (%s)", shard, e)

        outcome.elapsed = time.monotonic() - start
        if outcome.ok:
            logger.info(
                "[SCAN] shard %s complete: %s scanned, %s matched, %s duplicates, %s skipped in %s pages",
                shard, outcome.scanned, outcome.matched, outcome.duplicates, outcome.skipped, outcome.pages,
            )
        _emit(self.progress_cb, "shard", outcome.cursor, outcome.cursor, f"shard {shard} {outcome.status.value}")
        return outcome

    def _cancel(self) -> None:
        outcome = self.outcome
        outcome.cancelled = True
        outcome.status = ScanState.FAILED
        outcome.error = "cancelled"
        logger.warning("[CANCEL] shard %s stopped at index %s", self.descriptor.shard, self.cursor.next_index)

    def _largest_index(self) -> Optional[int]:
        try:
            return self.accessor.max_index()
        except Exception as e:
            logger.error("[SCAN] shard %s: error finding largest index, progress unavailable: %s", self.descriptor.shard, e)
            return None

    def _last_index(self, rows: List[Row]) -> Optional[int]:
        for row in reversed(rows):
            try:
                return row_index(row, self.accessor.id_name)
            except DataError:
                continue
        return None

    def _handle_row(self, row: Row) -> None:
        outcome = self.outcome
        shard = self.descriptor.shard
        try:
            record = decode_row(row, self.accessor.id_name)
        except DataError as e:
            outcome.skipped += 1
            logger.warning("[SCAN] shard %s: skipping malformed record: %s", shard, e)
            return

        outcome.scanned += 1
        matches = match_record(record, self.targets, shard)
        if not matches:
            return
        outcome.matched += 1
        if self.detector is not None:
            if self.detector.observe(record, shard) == Observation.DUPLICATE:
                outcome.duplicates += 1
        if self.aggregator is not None:
            for match in matches:
                self.aggregator.submit(match)

    def _report_progress(self, largest: Optional[int]) -> None:
        begin = self.descriptor.begin
        top = largest if self.descriptor.end is None or largest is None else min(largest, self.descriptor.end - 1)
        if top is None or top < begin:
            return
        total = top - begin + 1
        done = min(total, self.cursor.next_index - begin)
        percent = round(done / total * 100.0, 3)
        logger.debug(
            "[SCAN] chunk scanned shard=%s index=%s next=%s remaining=%s percent_complete=%s",
            self.descriptor.shard, self.accessor.id_name, self.cursor.next_index, total - done, percent,
        )
        _emit(self.progress_cb, "scan", done, total, f"shard {self.descriptor.shard}: {percent}%")


__all__ = ["ProgressCallback", "ScanState", "ShardOutcome", "ShardScanner"]
