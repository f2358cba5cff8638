import pytest

from sharkspotter import dispatch
from sharkspotter.cli import build_parser, main
from sharkspotter.commands.scan import build_parser as build_scan_parser, config_from_args
from sharkspotter.dedupe import DuplicateDetector
from sharkspotter.errors import EXIT_CONFIG, EXIT_OK, EXIT_OUTPUT
from sharkspotter.records import decode_row

from conftest import DOMAIN, SHARK_A, SHARK_B, FakeShardAccessor, make_row


@pytest.fixture
def fake_shards(monkeypatch):
    def factory(cfg):
        def make(desc):
            rows = [make_row(i, sharks=(SHARK_A, SHARK_B) if i % 2 else (SHARK_B,), object_id=f"o{i}") for i in range(15)]
            return FakeShardAccessor(desc, rows, retry=cfg.retry)
        return make

    monkeypatch.setattr(dispatch, "default_accessor_factory", factory)


def test_command_line_overrides_config_file(tmp_path):
    cfg_file = tmp_path / "spot.yaml"
    cfg_file.write_text(
        f"domain: {DOMAIN}\nsharks: [9.stor]\nscan:\n  chunk_size: 10\n  begin: 4\n",
        encoding="utf-8",
    )
    args = build_scan_parser().parse_args(["--config", str(cfg_file), "-s", "1.stor", "-s", "2.stor", "-c", "50", "-T", "-O"])
    cfg = config_from_args(args)
    assert cfg.sharks == ["1.stor", "2.stor"]
    assert cfg.scan.chunk_size == 50
    assert cfg.scan.begin == 4
    assert cfg.concurrency.multithreaded
    assert cfg.output.object_id_only
    assert not cfg.direct.enabled


def test_scan_writes_per_shark_files(tmp_path, fake_shards, capsys):
    out = tmp_path / "out"
    code = main([
        "scan", "--domain", DOMAIN, "-s", "1.stor", "-x", "-M", "2", "-T",
        "-d", str(out), "--db", str(tmp_path / "spot.db"), "-O",
    ])
    assert code == EXIT_OK
    assert (out / "1.stor" / "shard_2.objs").read_text().splitlines() == [f"o{i}" for i in range(1, 15, 2)]
    assert not (out / "2.stor").exists()
    printed = capsys.readouterr().out
    assert "SHARKSPOTTER SCAN SUMMARY" in printed
    assert "Shards completed:" in printed


def test_missing_domain_is_config_error(tmp_path):
    assert main(["scan", "-s", "1.stor", "-d", str(tmp_path)]) == EXIT_CONFIG


def test_contradictory_formats_are_config_error(tmp_path):
    assert main(["scan", "--domain", DOMAIN, "-s", "1.stor", "-O", "-F", "-d", str(tmp_path)]) == EXIT_CONFIG


def test_duplicates_command_with_report(tmp_path, fake_shards, capsys):
    code = main([
        "duplicates", "--domain", DOMAIN, "-M", "3", "--db", str(tmp_path / "spot.db"), "--report", "--report-limit", "3",
    ])
    assert code == EXIT_OK
    printed = capsys.readouterr().out
    assert "DUPLICATE DETECTION SUMMARY" in printed
    assert "TOP 3 DUPLICATED OBJECTS" in printed
    assert "Duplicates: 2" in printed


def test_report_only_skips_scanning(tmp_path, capsys):
    code = main(["duplicates", "--domain", DOMAIN, "--db", str(tmp_path / "empty.db"), "--report-only"])
    assert code == EXIT_OK
    printed = capsys.readouterr().out
    assert "No duplicates recorded." in printed
    assert "DUPLICATE DETECTION SUMMARY" not in printed


def test_no_command_prints_help():
    assert main([]) == 1


def test_parser_lists_all_commands():
    help_text = build_parser().format_help()
    for name in ("scan", "duplicates", "export"):
        assert name in help_text


@pytest.fixture
def duckdb_sqlite():
    duckdb = pytest.importorskip("duckdb")
    con = duckdb.connect()
    try:
        con.execute("INSTALL sqlite; LOAD sqlite;")
    except duckdb.Error as e:
        pytest.skip(f"duckdb sqlite extension unavailable: {e}")
    finally:
        con.close()


def test_export_writes_parquet(tmp_path, duckdb_sqlite):
    db = tmp_path / "spot.db"
    det = DuplicateDetector.open(db)
    det.start_run(DOMAIN, "duplicates", "h", "u")
    det.observe(decode_row(make_row(1, object_id="x")), shard=1)
    det.observe(decode_row(make_row(1, object_id="x")), shard=2)
    det.close()

    out = tmp_path / "parquet"
    assert main(["export", "--db", str(db), "--out", str(out)]) == EXIT_OK
    for table in ("runs", "stubs", "duplicates"):
        assert (out / f"{table}.parquet").exists()


def test_export_missing_database(tmp_path):
    assert main(["export", "--db", str(tmp_path / "nope.db"), "--out", str(tmp_path / "p")]) == 1


def test_unusable_duplicate_store_exits_with_output_error(tmp_path, fake_shards):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    code = main([
        "scan", "--domain", DOMAIN, "-s", "1.stor", "-x", "-M", "1",
        "-d", str(tmp_path / "out"), "--db", str(blocker / "spot.db"),
    ])
    assert code == EXIT_OUTPUT
