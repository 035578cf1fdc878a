from __future__ import annotations

import logging
import re
import shutil
import zipfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path, PurePosixPath

from fias_enricher._exceptions import ArchiveError

logger = logging.getLogger(__name__)

# Address object tables, one per region: ADDROB01.DBF ... ADDROB99.DBF
SOURCE_ENTRY_PATTERN = re.compile(r"^ADDROB\d{2}\.DBF$", re.IGNORECASE)


def is_source_entry(name: str) -> bool:
    """Return True if the archive entry *name* is an address object table."""
    return bool(SOURCE_ENTRY_PATTERN.match(PurePosixPath(name).name))


def _reset_directory(directory: Path) -> None:
    if directory.exists():
        logger.info("Removing existing staging directory: %s", directory)
        shutil.rmtree(directory)
    directory.mkdir(parents=True)


@contextmanager
def staging_directory(directory: Path, *, work_dir: Path | None = None) -> Iterator[Path]:
    """Provide an empty staging directory and remove it on exit.

    The directory is cleared (or created) on entry and deleted on every exit
    path, including errors raised inside the block.

    Raises:
        ArchiveError: If the directory is outside ``work_dir`` or cannot be
            prepared.
    """
    directory = Path(directory)
    if work_dir is not None:
        resolved_work_dir = Path(work_dir).resolve()
        if resolved_work_dir not in directory.resolve().parents:
            raise ArchiveError(
                f"Refusing to use staging directory {directory} - not under work_dir {work_dir}"
            )

    try:
        _reset_directory(directory)
    except OSError as exc:
        raise ArchiveError(f"Could not prepare staging directory {directory}: {exc}") from exc

    try:
        yield directory
    finally:
        shutil.rmtree(directory, ignore_errors=True)
        logger.debug("Removed staging directory: %s", directory)


def extract_source_files(archive_path: Path, staging_dir: Path) -> list[Path]:
    """Extract address object tables from a FIAS archive.

    Only entries named ``ADDROB`` plus two digits plus ``.DBF`` are extracted.
    Entries are written flat into ``staging_dir`` under their base name.

    Args:
        archive_path: Path to the zip archive.
        staging_dir: Existing directory to extract into.

    Returns:
        Sorted list of extracted file paths.

    Raises:
        ArchiveError: If the archive is missing or corrupt, holds two tables
            with the same base name, or cannot be extracted. Nothing
            extracted so far should be processed.
    """
    if not archive_path.exists():
        raise ArchiveError(f"Archive not found: {archive_path}")

    logger.info("Extracting address object tables from %s to %s...", archive_path.name, staging_dir)

    extracted: list[Path] = []
    seen: dict[str, str] = {}
    try:
        with zipfile.ZipFile(archive_path, "r") as zf:
            for info in zf.infolist():
                if info.is_dir() or not is_source_entry(info.filename):
                    continue

                name = PurePosixPath(info.filename).name
                if name.upper() in seen:
                    raise ArchiveError(
                        f"Archive {archive_path} holds {seen[name.upper()]} and {info.filename}, "
                        f"which both extract to {name}"
                    )
                seen[name.upper()] = info.filename

                out_path = staging_dir / name
                with zf.open(info) as src, open(out_path, "wb") as dst:
                    shutil.copyfileobj(src, dst)

                logger.debug("Extracted %s (%d bytes)", out_path.name, info.file_size)
                extracted.append(out_path)
    except (zipfile.BadZipFile, OSError) as exc:
        raise ArchiveError(f"Could not extract {archive_path}: {exc}") from exc

    extracted.sort()
    logger.info("Extraction complete: %d file(s)", len(extracted))
    return extracted
