from __future__ import annotations

import threading
import time
from pathlib import Path

import duckdb
from conftest import ADDROB_FIELDS, addrob_row, external_codes, insert_rows, write_dbf

from fias_enricher._exceptions import RecordFormatError
from fias_enricher.reconcile.orchestrator import (
    FileFailure,
    FileSuccess,
    FileTask,
    FileTaskState,
    reconcile_files,
)
from fias_enricher.reconcile.records import ExternalRecord
from fias_enricher.reconcile.store import DictionaryKind, DictionaryStore


def _street_key(region: str, n: int) -> str:
    return f"{region}{n:015d}"


def test_two_files_with_disjoint_keys_both_commit(
    tmp_path: Path, connection: duckdb.DuckDBPyConnection, store: DictionaryStore
) -> None:
    insert_rows(
        connection,
        DictionaryKind.STREET,
        [(i, _street_key("66", i), None) for i in range(1, 51)]
        + [(100 + i, _street_key("77", i), None) for i in range(1, 51)],
    )
    file_a = write_dbf(
        tmp_path / "ADDROB66.DBF",
        [addrob_row(f"A-{i}", _street_key("66", i)) for i in range(1, 51)],
    )
    file_b = write_dbf(
        tmp_path / "ADDROB77.DBF",
        [addrob_row(f"B-{i}", _street_key("77", i)) for i in range(1, 51)],
    )

    report = reconcile_files([file_a, file_b], store, chunk_size=7, pool_size=2)

    assert report.ok
    assert report.processed == 100
    assert report.matched == 100
    codes = external_codes(connection, DictionaryKind.STREET)
    assert codes == {
        **{i: f"A-{i}" for i in range(1, 51)},
        **{100 + i: f"B-{i}" for i in range(1, 51)},
    }


def test_failed_file_does_not_abort_siblings(
    tmp_path: Path, connection: duckdb.DuckDBPyConnection, store: DictionaryStore
) -> None:
    insert_rows(connection, DictionaryKind.SETTLEMENT, [(1, "6612345000000", None)])
    good = write_dbf(tmp_path / "ADDROB66.DBF", [addrob_row("FIAS-1", "6612345000000")])
    bad = write_dbf(tmp_path / "ADDROB99.DBF", [], fields=ADDROB_FIELDS[:3])

    report = reconcile_files([good, bad], store, pool_size=2)

    assert not report.ok
    assert [r.path.name for r in report.succeeded] == ["ADDROB66.DBF"]
    [failure] = report.failed
    assert failure.path == bad
    assert failure.stage is FileTaskState.EXTRACTING
    assert isinstance(failure.cause, RecordFormatError)
    assert external_codes(connection, DictionaryKind.SETTLEMENT) == {1: "FIAS-1"}


def test_flushes_every_chunk_and_once_at_end(
    tmp_path: Path, connection: duckdb.DuckDBPyConnection, store: DictionaryStore
) -> None:
    insert_rows(
        connection,
        DictionaryKind.SETTLEMENT,
        [(i, f"66{i:011d}", None) for i in range(10)],
    )
    path = write_dbf(
        tmp_path / "ADDROB66.DBF",
        [addrob_row(f"FIAS-{i}", f"66{i:011d}") for i in range(10)],
    )

    result = FileTask(path, store, chunk_size=4).run()

    assert isinstance(result, FileSuccess)
    assert result.state is FileTaskState.DONE
    assert result.processed == 10
    assert result.matched == 10
    assert result.flushes == 3


def test_earlier_flushes_stay_committed_when_file_fails_later(
    connection: duckdb.DuckDBPyConnection, store: DictionaryStore
) -> None:
    insert_rows(
        connection,
        DictionaryKind.SETTLEMENT,
        [(i, f"66{i:011d}", None) for i in range(4)],
    )

    def source(_path: Path):
        for i in range(4):
            yield ExternalRecord(f"FIAS-{i}", f"66{i:011d}")
        raise RecordFormatError("ADDROB66.DBF: cannot decode record 5")

    task = FileTask(Path("ADDROB66.DBF"), store, chunk_size=2, open_source=source)
    result = task.run()

    assert isinstance(result, FileFailure)
    assert result.stage is FileTaskState.EXTRACTING
    assert task.state is FileTaskState.FAILED
    assert external_codes(connection, DictionaryKind.SETTLEMENT) == {
        i: f"FIAS-{i}" for i in range(4)
    }


def test_rerunning_the_same_file_is_idempotent(
    tmp_path: Path, connection: duckdb.DuckDBPyConnection, store: DictionaryStore
) -> None:
    insert_rows(
        connection,
        DictionaryKind.SETTLEMENT,
        [(1, "661234501", None), (2, "661234502", None)],
    )
    path = write_dbf(tmp_path / "ADDROB66.DBF", [addrob_row("FIAS-2", "6612345")])

    reconcile_files([path], store)
    first = external_codes(connection, DictionaryKind.SETTLEMENT)
    reconcile_files([path], store)

    assert first == {1: "FIAS-2", 2: "FIAS-2"}
    assert external_codes(connection, DictionaryKind.SETTLEMENT) == first


def test_pool_size_bounds_parallel_tasks(store: DictionaryStore) -> None:
    lock = threading.Lock()
    running = 0
    peak = 0

    def source(_path: Path):
        nonlocal running, peak
        with lock:
            running += 1
            peak = max(peak, running)
        time.sleep(0.05)
        with lock:
            running -= 1
        return []

    files = [Path(f"ADDROB{i:02d}.DBF") for i in range(6)]
    report = reconcile_files(files, store, pool_size=2, open_source=source)

    assert len(report.succeeded) == 6
    assert report.processed == 0
    assert peak <= 2


def test_no_files_gives_empty_report(store: DictionaryStore) -> None:
    report = reconcile_files([], store)

    assert report.results == []
    assert report.ok


class SinglePassSource:
    def __init__(self, records: list[ExternalRecord]) -> None:
        self.records = records
        self.passes = 0

    def __len__(self) -> int:
        raise AssertionError("counting records needs an extra pass over the file")

    def __iter__(self):
        self.passes += 1
        return iter(self.records)


def test_file_is_read_in_a_single_pass(store: DictionaryStore) -> None:
    source = SinglePassSource(
        [ExternalRecord("FIAS-1", "9900000000000"), ExternalRecord("FIAS-2", "")]
    )

    result = FileTask(Path("ADDROB99.DBF"), store, open_source=lambda _path: source).run()

    assert isinstance(result, FileSuccess)
    assert result.processed == 2
    assert source.passes == 1
