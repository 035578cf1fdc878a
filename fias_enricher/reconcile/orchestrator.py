"""Per-file reconciliation tasks on a bounded thread pool.

Each extracted table is processed by one task that owns its record source,
engine, staging buffer and store session. Tasks never share in-memory state;
the dictionary store is the only shared resource. A failing task ends as a
``FileFailure`` and never stops its siblings.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from time import perf_counter

from fias_enricher.reconcile.engine import MatchStats, ReconciliationEngine
from fias_enricher.reconcile.records import (
    ADDROB_SCHEMA,
    SOURCE_ENCODING,
    DbfRecordSource,
    ExternalRecord,
    RecordSchema,
)
from fias_enricher.reconcile.staging import DEFAULT_CHUNK_SIZE, BatchWriter, StagingBuffer
from fias_enricher.reconcile.store import DictionaryStore

logger = logging.getLogger(__name__)

DEFAULT_POOL_SIZE = 8


class FileTaskState(str, Enum):
    PENDING = "pending"
    EXTRACTING = "extracting-records"
    MATCHING = "matching"
    FLUSHING = "flushing"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class FileSuccess:
    path: Path
    processed: int
    matched: int
    flushes: int
    stats: MatchStats
    state: FileTaskState = FileTaskState.DONE


@dataclass(frozen=True)
class FileFailure:
    path: Path
    stage: FileTaskState
    cause: BaseException
    state: FileTaskState = FileTaskState.FAILED


FileResult = FileSuccess | FileFailure

RecordSourceFactory = Callable[[Path], Iterable[ExternalRecord]]


@dataclass
class RunReport:
    """Aggregate of all file results for one run."""

    results: list[FileResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[FileSuccess]:
        return [r for r in self.results if isinstance(r, FileSuccess)]

    @property
    def failed(self) -> list[FileFailure]:
        return [r for r in self.results if isinstance(r, FileFailure)]

    @property
    def processed(self) -> int:
        return sum(r.processed for r in self.succeeded)

    @property
    def matched(self) -> int:
        return sum(r.matched for r in self.succeeded)

    @property
    def stats(self) -> MatchStats:
        total = MatchStats()
        for result in self.succeeded:
            total.merge(result.stats)
        return total

    @property
    def ok(self) -> bool:
        return not self.failed


def dbf_source_factory(
    encoding: str = SOURCE_ENCODING,
    schema: RecordSchema = ADDROB_SCHEMA,
) -> RecordSourceFactory:
    def _open(path: Path) -> DbfRecordSource:
        return DbfRecordSource(path, encoding=encoding, schema=schema)

    return _open


class FileTask:
    """Reconcile one extracted file: read, match, stage and flush in source order."""

    def __init__(
        self,
        path: Path,
        store: DictionaryStore,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        open_source: RecordSourceFactory | None = None,
    ) -> None:
        self.path = path
        self.state = FileTaskState.PENDING
        self._store = store
        self._chunk_size = chunk_size
        self._open_source = open_source or dbf_source_factory()

    def run(self) -> FileResult:
        try:
            return self._run()
        except Exception as exc:  # noqa: BLE001
            failed_in = self.state
            self.state = FileTaskState.FAILED
            logger.error(
                "Failed processing %s while %s: %s",
                self.path.name,
                failed_in.value,
                exc,
                exc_info=exc,
            )
            return FileFailure(path=self.path, stage=failed_in, cause=exc)

    def _run(self) -> FileSuccess:
        t0 = perf_counter()
        self.state = FileTaskState.EXTRACTING
        source = self._open_source(self.path)
        logger.info("Processing file: %s", self.path.name)

        processed = 0
        with self._store.session() as session:
            engine = ReconciliationEngine(session)
            buffer = StagingBuffer(self._chunk_size)
            writer = BatchWriter(session, label=self.path.name)

            for record in source:
                self.state = FileTaskState.MATCHING
                processed += 1
                outcome = engine.reconcile(record)
                if outcome.entries:
                    self.state = FileTaskState.FLUSHING
                    writer.stage(buffer, outcome.entries)
                buffer.record_processed()
                if buffer.is_due:
                    self.state = FileTaskState.FLUSHING
                    writer.flush(buffer)
                self.state = FileTaskState.EXTRACTING

            self.state = FileTaskState.FLUSHING
            writer.flush(buffer)

        self.state = FileTaskState.DONE
        logger.info(
            "Processed %d records from %s (%d matches, %d flushes) in %.2f seconds",
            processed,
            self.path.name,
            engine.stats.matched,
            writer.flushes,
            perf_counter() - t0,
        )
        return FileSuccess(
            path=self.path,
            processed=processed,
            matched=engine.stats.matched,
            flushes=writer.flushes,
            stats=engine.stats,
        )


def reconcile_files(
    files: Iterable[Path],
    store: DictionaryStore,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    pool_size: int = DEFAULT_POOL_SIZE,
    open_source: RecordSourceFactory | None = None,
) -> RunReport:
    """Run one task per file with at most ``pool_size`` running at once.

    Waits for every task; results are collected in completion order.
    """
    if pool_size < 1:
        raise ValueError("pool_size must be >= 1")

    tasks = [
        FileTask(path, store, chunk_size=chunk_size, open_source=open_source)
        for path in files
    ]
    report = RunReport()
    if not tasks:
        logger.warning("No files to reconcile")
        return report

    logger.info("Reconciling %d file(s) with %d worker(s)", len(tasks), pool_size)
    with ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="reconcile") as pool:
        futures = {pool.submit(task.run): task for task in tasks}
        for future in as_completed(futures):
            report.results.append(future.result())

    logger.info(
        "Reconciled %d file(s): %d processed records, %d matches, %d failed file(s)",
        len(report.results),
        report.processed,
        report.matched,
        len(report.failed),
    )
    return report
