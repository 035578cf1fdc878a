from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

import yaml

from fias_enricher.api.settings import DATABASE_PATH_ENV_VAR, Settings, SettingsError, load_settings
from fias_enricher.pipeline import run as run_pipeline
from fias_enricher.reconcile.orchestrator import RunReport

logger = logging.getLogger(__name__)

STARTED = "started"

DEFAULT_CONFIG: dict[str, object] = {
    "paths": {
        "work_dir": "./data",
        "archive_dir": "./data/archives",
    },
    "archive": {
        "file_name": "",
    },
    "processing": {
        "chunk_size": 5000,
        "pool_size": 8,
    },
}


def render_annotated_config(config: dict[str, object]) -> str:
    """Render config YAML with explanatory comments."""
    paths = config["paths"]
    archive = config["archive"]
    processing = config["processing"]

    return (
        "# FIAS Enricher Configuration\n"
        "# All paths are relative to this config file's directory unless absolute\n\n"
        "paths:\n"
        "  # Base working directory (staging area and default database location)\n"
        f"  work_dir: {paths['work_dir']}\n\n"
        "  # Directory holding the published FIAS archives\n"
        f"  archive_dir: {paths['archive_dir']}\n\n"
        "  # Optional overrides (defaults: <work_dir>/staging, <work_dir>/dictionaries.duckdb)\n"
        "  # The database path can also be set with the "
        f"{DATABASE_PATH_ENV_VAR} environment variable\n"
        "  # overrides:\n"
        "  #   staging_dir: ./data/staging\n"
        "  #   database_path: ./data/dictionaries.duckdb\n\n"
        "archive:\n"
        "  # Zip archive with the ADDROBnn.DBF tables\n"
        f'  file_name: "{archive["file_name"]}"\n\n'
        "# Processing options\n"
        "processing:\n"
        "  # Source records handled between two database writes\n"
        f"  chunk_size: {processing['chunk_size']}\n"
        "  # Number of DBF files reconciled in parallel\n"
        f"  pool_size: {processing['pool_size']}\n"
    )


def load_existing_defaults(config_path: Path) -> dict[str, object]:
    """Load existing config as defaults, merged with built-in defaults."""
    if not config_path.exists():
        return {section: dict(values) for section, values in DEFAULT_CONFIG.items()}

    with open(config_path) as f:
        loaded = yaml.safe_load(f) or {}

    merged = DEFAULT_CONFIG | loaded
    for section in ("paths", "archive", "processing"):
        merged[section] = {**DEFAULT_CONFIG[section], **(loaded.get(section) or {})}
    return merged


def write_env_file(path: Path, overwrite: bool = False, database_path: str | None = None) -> bool:
    """Write .env file with a database location placeholder.

    Returns True if file was written, False if skipped.
    """
    if path.exists() and not overwrite:
        return False

    database_line = (
        f"{DATABASE_PATH_ENV_VAR}={database_path}\n"
        if database_path
        else f"# {DATABASE_PATH_ENV_VAR}=/path/to/dictionaries.duckdb\n"
    )

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        "# Dictionary database location (overrides paths.overrides.database_path)\n"
        + database_line,
        encoding="utf-8",
    )
    return True


def create_config_and_env(
    config_out: str | Path,
    env_out: str | Path = ".env",
    *,
    archive_name: str,
    archive_dir: str | None = None,
    database_path: str | None = None,
    overwrite_env: bool = False,
    processing: dict[str, Any] | None = None,
) -> tuple[Path, Path, bool]:
    """Create config.yaml and .env template programmatically."""
    if not archive_name or not archive_name.strip():
        raise ValueError("archive_name is required")

    config_out_path = Path(config_out).resolve()
    env_out_path = Path(env_out).resolve()
    config = load_existing_defaults(config_out_path)

    config["archive"]["file_name"] = archive_name.strip()
    if archive_dir:
        config["paths"]["archive_dir"] = archive_dir
    if processing:
        config["processing"] = {**config["processing"], **processing}

    config_out_path.parent.mkdir(parents=True, exist_ok=True)
    config_out_path.write_text(render_annotated_config(config), encoding="utf-8")
    env_written = write_env_file(env_out_path, overwrite=overwrite_env, database_path=database_path)

    logger.info("Wrote config to %s", config_out_path)
    if env_written:
        logger.info("Wrote .env template to %s", env_out_path)
    else:
        logger.info(
            ".env file already exists at %s and was not overwritten. "
            "Set overwrite_env=True to overwrite it.",
            env_out_path,
        )

    return config_out_path, env_out_path, env_written


def apply_run_overrides(
    settings: Settings,
    *,
    archive_dir: str | Path | None = None,
    archive_name: str | None = None,
    chunk_size: int | None = None,
    pool_size: int | None = None,
) -> None:
    """Apply runtime overrides to loaded settings."""
    if archive_dir:
        settings.paths.archive_dir = Path(archive_dir).resolve()
    if archive_name:
        settings.archive.file_name = archive_name.strip()

    if chunk_size is not None:
        if chunk_size < 1:
            raise SettingsError("--chunk-size must be >= 1")
        settings.processing.chunk_size = chunk_size

    if pool_size is not None:
        if pool_size < 1:
            raise SettingsError("--pool-size must be >= 1")
        settings.processing.pool_size = pool_size


def run_from_config(
    config_path: str | Path,
    *,
    env_file: str | Path | None = None,
    archive_dir: str | Path | None = None,
    archive_name: str | None = None,
    chunk_size: int | None = None,
    pool_size: int | None = None,
) -> RunReport:
    """Load settings from config, apply overrides, and run the pipeline."""
    config_path = Path(config_path).resolve()

    settings = load_settings(config_path, load_env=True, env_path=env_file)

    apply_run_overrides(
        settings,
        archive_dir=archive_dir,
        archive_name=archive_name,
        chunk_size=chunk_size,
        pool_size=pool_size,
    )

    return run_pipeline(settings)


def run_and_log(config_path: Path, env_file: str | Path | None) -> None:
    """Run from config and report the outcome through logging only."""
    try:
        report = run_from_config(config_path, env_file=env_file)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Processing run failed: %s", exc)
        return

    if report.ok:
        logger.info("Processing run finished: %d matches", report.matched)
    else:
        logger.error(
            "Processing run finished with %d failed file(s): %s",
            len(report.failed),
            ", ".join(failure.path.name for failure in report.failed),
        )


def trigger_run(config_path: str | Path, *, env_file: str | Path | None = None) -> str:
    """Start a run in the background and acknowledge immediately.

    There is no handle on the started run; its outcome is only logged.
    """
    logger.info("Start processing...")
    thread = threading.Thread(
        target=run_and_log,
        args=(Path(config_path).resolve(), env_file),
        name="fias-enrich-run",
        daemon=True,
    )
    thread.start()
    return STARTED
