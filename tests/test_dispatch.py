import json
import threading

import pytest

from sharkspotter.config import build_config
from sharkspotter.dispatch import Dispatcher, make_descriptors, validate_sharks
from sharkspotter.errors import EXIT_CANCELLED, EXIT_OK, EXIT_OUTPUT, EXIT_SHARD_FAILED, OutputError, ValidationError
from sharkspotter.scan import ScanState

from conftest import DOMAIN, SHARK_A, SHARK_B, FakeMorayClient, FakeShardAccessor, make_row

STORAGE = {
    SHARK_A: [{"key": SHARK_A, "value": {"manta_storage_id": SHARK_A, "datacenter": "dc0"}}],
    SHARK_B: [{"key": SHARK_B, "value": {"manta_storage_id": SHARK_B, "datacenter": "dc1"}}],
}


def _rows_for(shard, n=25):
    # objects 0-4 exist on every shard, the rest are unique to their shard
    return [
        make_row(i, sharks=(SHARK_A,) if i % 2 else (SHARK_B,), object_id=f"common-{i}" if i < 5 else f"s{shard}-{i}")
        for i in range(n)
    ]


def _config(tmp_path, **overrides):
    data = {
        "domain": DOMAIN,
        "sharks": ["1.stor", "2.stor"],
        "scan": {"chunk_size": 10},
        "shards": {"min_shard": 1, "max_shard": 3},
        "retry": {"attempts": 2, "backoff_multiplier": 0, "backoff_min": 0, "backoff_max": 0},
        "output": {"directory": str(tmp_path / "out")},
        "db": {"path": str(tmp_path / "spot.db")},
    }
    data.update(overrides)
    return build_config(data)


def _factory(cfg, failing=()):
    def factory(desc):
        return FakeShardAccessor(desc, _rows_for(desc.shard), retry=cfg.retry, always_fail=desc.shard in failing)
    return factory


def test_descriptors_follow_shard_range(tmp_path):
    cfg = _config(tmp_path, scan={"begin": 5, "end": 50})
    descs = make_descriptors(cfg)
    assert [d.shard for d in descs] == [1, 2, 3]
    assert descs[1].rpc_host == f"2.moray.{DOMAIN}"
    assert descs[1].db_host == f"2.rebalancer-postgres.{DOMAIN}"
    assert (descs[0].begin, descs[0].end) == (5, 50)


def test_failed_shard_does_not_stop_siblings(tmp_path):
    cfg = _config(tmp_path)
    result = Dispatcher(cfg, accessor_factory=_factory(cfg, failing={2}), validation_client=FakeMorayClient(storage=STORAGE)).run()

    assert result.completed == [1, 3]
    assert result.failed == [2]
    assert result.exit_code == EXIT_SHARD_FAILED
    assert not result.cancelled
    for shard in (1, 3):
        lines = (tmp_path / "out" / "1.stor" / f"shard_{shard}.objs").read_text().splitlines()
        assert [json.loads(line)["objectId"] for line in lines][:2] == ["common-1", "common-3"]
        assert len(lines) == 12
        assert len((tmp_path / "out" / "2.stor" / f"shard_{shard}.objs").read_text().splitlines()) == 13
    assert (tmp_path / "out" / "1.stor" / "shard_2.objs").read_text() == ""


@pytest.mark.parametrize("threaded", [False, True])
def test_sequential_and_threaded_runs_agree(tmp_path, threaded):
    concurrency = {"multithreaded": True, "max_threads": 2} if threaded else {}
    cfg = _config(tmp_path, concurrency=concurrency)
    result = Dispatcher(cfg, accessor_factory=_factory(cfg), validation_client=FakeMorayClient(storage=STORAGE)).run()

    assert result.exit_code == EXIT_OK
    assert result.completed == [1, 2, 3]
    assert result.matched == 75
    # the five shared objects are duplicated on two of the three shards
    assert result.duplicates == 10
    assert len(result.output_paths) == 6


def test_unknown_shark_aborts_before_output(tmp_path):
    cfg = _config(tmp_path)
    with pytest.raises(ValidationError, match="No shark"):
        Dispatcher(cfg, accessor_factory=_factory(cfg), validation_client=FakeMorayClient(storage={SHARK_A: STORAGE[SHARK_A]})).run()
    assert not (tmp_path / "out").exists()


def test_validation_rejects_unsafe_and_ambiguous_sharks():
    read_only = {SHARK_A: [{"value": {"manta_storage_id": SHARK_A, "read_only": True}}]}
    with pytest.raises(ValidationError, match="not safe"):
        validate_sharks([SHARK_A], FakeMorayClient(storage=read_only))
    twice = {SHARK_A: STORAGE[SHARK_A] * 2}
    with pytest.raises(ValidationError, match="More than one"):
        validate_sharks([SHARK_A], FakeMorayClient(storage=twice))


def test_skip_validation_never_queries(tmp_path):
    cfg = _config(tmp_path, skip_validation=True)
    client = FakeMorayClient()
    result = Dispatcher(cfg, accessor_factory=_factory(cfg), validation_client=client).run()
    assert result.exit_code == EXIT_OK
    assert client.queries == []


def test_existing_output_aborts_run(tmp_path):
    cfg = _config(tmp_path, skip_validation=True)
    existing = tmp_path / "out" / "2.stor" / "shard_3.objs"
    existing.parent.mkdir(parents=True)
    existing.write_text("keep\n")
    with pytest.raises(OutputError):
        Dispatcher(cfg, accessor_factory=_factory(cfg)).run()
    assert existing.read_text() == "keep\n"


def test_stop_request_reports_cancellation(tmp_path):
    cfg = _config(tmp_path, skip_validation=True)
    stop = threading.Event()
    stop.set()
    result = Dispatcher(cfg, accessor_factory=_factory(cfg), stop_event=stop).run()
    assert result.cancelled
    assert result.exit_code == EXIT_CANCELLED
    assert all(s.cancelled and s.status == ScanState.FAILED for s in result.shards)


def test_duplicates_mode_scans_everything_without_output(tmp_path):
    cfg = _config(tmp_path, mode="duplicates", sharks=[])
    result = Dispatcher(cfg, accessor_factory=_factory(cfg)).run()
    assert result.exit_code == EXIT_OK
    assert result.matched == 75
    assert result.duplicates == 10
    assert result.output_paths == []
    assert not (tmp_path / "out").exists()


class CountingConnect(FakeShardAccessor):
    """Counts connection attempts; every attempt fails."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.connects = 0

    def _connect(self):
        self.connects += 1
        raise ConnectionResetError("connection reset by peer")


def test_stop_before_start_never_connects(tmp_path):
    cfg = _config(tmp_path, skip_validation=True)
    made = []

    def factory(desc):
        acc = CountingConnect(desc, _rows_for(desc.shard), retry=cfg.retry)
        made.append(acc)
        return acc

    stop = threading.Event()
    stop.set()
    result = Dispatcher(cfg, accessor_factory=factory, stop_event=stop).run()
    assert [acc.connects for acc in made] == [0, 0, 0]
    assert result.exit_code == EXIT_CANCELLED
    assert all(s.cancelled and s.status == ScanState.FAILED and s.pages == 0 for s in result.shards)


@pytest.mark.parametrize("threaded", [False, True])
def test_match_handler_replaces_output_files(tmp_path, threaded):
    concurrency = {"multithreaded": True, "max_threads": 3} if threaded else {}
    cfg = _config(tmp_path, skip_validation=True, concurrency=concurrency)
    seen = []
    result = Dispatcher(cfg, accessor_factory=_factory(cfg), on_match=seen.append).run()

    assert result.exit_code == EXIT_OK
    assert len(seen) == result.matched == 75
    assert {m.shard for m in seen} == {1, 2, 3}
    assert sum(1 for m in seen if m.shark == SHARK_A) == 36
    assert all(m.record.etag == "ETAG" for m in seen)
    assert result.output_paths == []
    assert not (tmp_path / "out").exists()


def test_match_handler_in_duplicates_mode_sees_every_object(tmp_path):
    cfg = _config(tmp_path, mode="duplicates", sharks=[])
    seen = []
    result = Dispatcher(cfg, accessor_factory=_factory(cfg), on_match=seen.append).run()
    assert result.exit_code == EXIT_OK
    assert len(seen) == 75
    assert result.duplicates == 10


def test_failing_match_handler_is_fatal(tmp_path):
    cfg = _config(tmp_path, skip_validation=True)

    def handler(match):
        raise RuntimeError("consumer went away")

    result = Dispatcher(cfg, accessor_factory=_factory(cfg), on_match=handler).run()
    assert result.exit_code == EXIT_OUTPUT
    assert "consumer went away" in result.fatal_error
    assert not result.cancelled
