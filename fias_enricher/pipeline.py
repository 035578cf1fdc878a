from __future__ import annotations

import logging
from time import perf_counter

from fias_enricher.api.settings import Settings
from fias_enricher.archive.extract import extract_source_files, staging_directory
from fias_enricher.reconcile.orchestrator import RunReport, reconcile_files
from fias_enricher.reconcile.store import DictionaryStore

logger = logging.getLogger(__name__)


def run(settings: Settings) -> RunReport:
    """Extract the configured archive and reconcile every address object table.

    Archive and staging-directory errors abort the whole run before any file
    is reconciled. Errors inside a single file are reported in the returned
    ``RunReport`` instead of being raised.
    """
    total_start = perf_counter()

    logger.info("=" * 60)
    logger.info("FIAS enrichment - Starting run")
    logger.info("=" * 60)
    logger.info("Config: %s", settings.config_path)
    logger.info("Archive: %s", settings.archive_path)
    logger.info("Database: %s", settings.paths.database_path)
    logger.info(
        "Chunk size: %d, pool size: %d",
        settings.processing.chunk_size,
        settings.processing.pool_size,
    )
    logger.info("")

    store = DictionaryStore.open(settings.paths.database_path)
    try:
        with staging_directory(
            settings.paths.staging_dir, work_dir=settings.paths.work_dir
        ) as staging_dir:
            t0 = perf_counter()
            files = extract_source_files(settings.archive_path, staging_dir)
            logger.info("Extract step completed in %.2f seconds", perf_counter() - t0)
            logger.info("")

            t0 = perf_counter()
            report = reconcile_files(
                files,
                store,
                chunk_size=settings.processing.chunk_size,
                pool_size=settings.processing.pool_size,
            )
            logger.info("Reconcile step completed in %.2f seconds", perf_counter() - t0)
    finally:
        store.close()

    for failure in report.failed:
        logger.error(
            "File %s failed while %s: %s", failure.path.name, failure.stage.value, failure.cause
        )

    logger.info("")
    logger.info("=" * 60)
    logger.info(
        "Run completed in %.2f seconds: %d records processed, %d dictionary rows matched, "
        "%d of %d file(s) failed",
        perf_counter() - total_start,
        report.processed,
        report.matched,
        len(report.failed),
        len(report.results),
    )
    logger.info("=" * 60)
    return report
