# sharkspotter/output.py
"""
Output aggregation: the only code that touches output files.

Scanner threads hand MatchResults to ``submit``; a single writer thread
drains the queue and appends one line per result, so lines from different
shards never interleave. Files are laid out as
``<directory>/<shark>/shard_<N>.objs`` (the shark name without the cluster
domain), unless a single output file was requested.

When sharkspotter is embedded in another program, a match handler replaces
the files: the writer thread calls it once per MatchResult, so the handler
never runs concurrently with itself.
"""
from __future__ import annotations
import json
import logging
import queue
import threading
from pathlib import Path
from typing import IO, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .errors import OutputError
from .match import MatchResult
from .util import shark_short_name

logger = logging.getLogger("sharkspotter")

SinkKey = Union[Tuple[str, int], None]
MatchHandler = Callable[[MatchResult], None]
FORMATS = ("metadata", "full", "object_id")
_STOP = object()


def format_line(match: MatchResult, fmt: str) -> str:
    record = match.record
    if fmt == "object_id":
        return record.object_id
    if fmt == "full":
        return json.dumps(record.row, default=str)
    return json.dumps(record.value)


def shard_filename(shark: str, shard: int) -> str:
    return f"{shark}/shard_{shard}.objs"


class OutputAggregator:
    def __init__(
        self,
        sharks: Iterable[str],
        shards: Iterable[int],
        domain: str,
        directory: Union[str, Path] = ".",
        filename: Optional[str] = None,
        fmt: str = "metadata",
        overwrite: bool = False,
        queue_size: int = 10_000,
        handler: Optional[MatchHandler] = None,
    ) -> None:
        if fmt not in FORMATS:
            raise ValueError(f"Unknown output format {fmt!r}")
        self.sharks = list(sharks)
        self.shards = list(shards)
        self.domain = domain
        self.directory = Path(directory)
        self.filename = filename
        self.fmt = fmt
        self.overwrite = overwrite
        self.handler = handler
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=queue_size)
        self._files: Dict[SinkKey, IO[str]] = {}
        self._paths: Dict[SinkKey, Path] = {}
        self.written: Dict[SinkKey, int] = {}
        self.delivered = 0
        self._error: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None
        self._closed = False

    def sink_path(self, shark: str, shard: int) -> Path:
        if self.filename:
            return Path(self.filename)
        return self.directory / shard_filename(shark_short_name(shark, self.domain), shard)

    def _key(self, shark: Optional[str], shard: int) -> SinkKey:
        if self.filename:
            return None
        if shark is None:
            raise ValueError("Per-shark output requires a shark on every match")
        return (shark, shard)

    @property
    def paths(self) -> List[Path]:
        return list(self._paths.values())

    def _open_files(self) -> None:
        mode = "w" if self.overwrite else "x"
        targets: Dict[SinkKey, Path] = {}
        if self.filename:
            targets[None] = Path(self.filename)
        else:
            for shark in self.sharks:
                for shard in self.shards:
                    targets[(shark, shard)] = self.sink_path(shark, shard)
        try:
            for key, path in targets.items():
                path.parent.mkdir(parents=True, exist_ok=True)
                self._files[key] = path.open(mode, encoding="utf-8")
                self._paths[key] = path
                self.written[key] = 0
        except OSError as e:
            self._close_files()
            self._remove_created()
            raise OutputError(f"Couldn't create output file '{e.filename}': {e.strerror or e}") from e

    def _remove_created(self) -> None:
        """Delete the sinks a failed ``open`` created so a retry starts clean."""
        # truncated files cannot be restored; leave them in place
        if not self.overwrite:
            for path in self._paths.values():
                try:
                    path.unlink()
                except FileNotFoundError:
                    continue
        self._paths.clear()
        self.written.clear()

    def open(self) -> "OutputAggregator":
        if self.handler is None:
            self._open_files()
        self._thread = threading.Thread(target=self._writer, name="output-writer", daemon=True)
        self._thread.start()
        if self.handler is None:
            logger.info("[OUTPUT] Writing %s records to %d file(s)", self.fmt, len(self._files))
        else:
            logger.info("[OUTPUT] Passing matches to %s", getattr(self.handler, "__name__", repr(self.handler)))
        return self

    def __enter__(self) -> "OutputAggregator":
        return self.open()

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _raise_if_failed(self) -> None:
        if self._error is not None:
            raise OutputError(f"Output writer failed: {self._error}") from self._error

    def submit(self, match: MatchResult) -> None:
        if self._thread is None or self._closed:
            raise OutputError("Output aggregator is not open")
        self._raise_if_failed()
        if self.handler is not None:
            self._queue.put((None, match))
            return
        key = self._key(match.shark, match.shard)
        if key not in self._files:
            raise OutputError(f"No output sink for shark {match.shark} shard {match.shard}")
        self._queue.put((key, format_line(match, self.fmt)))

    def _deliver(self, match: MatchResult) -> None:
        try:
            self.handler(match)  # type: ignore[misc]
            self.delivered += 1
        except Exception as e:
            logger.error("[OUTPUT] Match handler failed on %s (shard %s): %s", match.object_id, match.shard, e)
            self._error = e

    def _writer(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            if self._error is not None:
                # drain without writing once a write has failed
                continue
            key, payload = item  # type: ignore[misc]
            if self.handler is not None:
                self._deliver(payload)
                continue
            try:
                self._files[key].write(payload + "\n")
                self.written[key] += 1
            except (OSError, ValueError) as e:
                logger.error("[OUTPUT] Write to %s failed: %s", self._paths.get(key), e)
                self._error = e

    def _close_files(self) -> None:
        for key, fh in list(self._files.items()):
            try:
                fh.close()
            except OSError as e:
                if self._error is None:
                    self._error = e
        self._files.clear()

    def close(self) -> None:
        """Drain pending matches, flush and close every sink."""
        if self._closed:
            return
        self._closed = True
        if self._thread is not None:
            self._queue.put(_STOP)
            self._thread.join()
        for key, fh in self._files.items():
            try:
                fh.flush()
            except OSError as e:
                if self._error is None:
                    self._error = e
        self._close_files()
        self._raise_if_failed()
        if self.handler is None:
            logger.info("[OUTPUT] Closed %d file(s), %d lines written", len(self._paths), sum(self.written.values()))
        else:
            logger.info("[OUTPUT] %d matches passed to handler", self.delivered)


__all__ = ["FORMATS", "MatchHandler", "OutputAggregator", "format_line", "shard_filename"]
