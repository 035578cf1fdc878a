from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

logger = logging.getLogger(__name__)

DATABASE_PATH_ENV_VAR = "DICTIONARY_DB_PATH"


class StrictBaseModel(BaseModel):
    """Base model for strict settings parsing."""

    model_config = ConfigDict(extra="forbid")


class PathSettings(StrictBaseModel):
    """Paths for the archive, staging area and dictionary database."""

    work_dir: Path
    archive_dir: Path
    staging_dir: Path
    database_path: Path


class ArchiveSettings(StrictBaseModel):
    """Published FIAS archive to reconcile against."""

    file_name: str

    @field_validator("file_name")
    @classmethod
    def _validate_non_empty_str(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("must be non-empty")
        return stripped


class ProcessingSettings(StrictBaseModel):
    """Batching and concurrency configuration."""

    chunk_size: int = 5000
    pool_size: int = 8

    @field_validator("chunk_size", "pool_size")
    @classmethod
    def _validate_positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value


class Settings(StrictBaseModel):
    """Complete application settings."""

    paths: PathSettings
    archive: ArchiveSettings
    processing: ProcessingSettings = ProcessingSettings()
    config_path: Path

    @property
    def archive_path(self) -> Path:
        return self.paths.archive_dir / self.archive.file_name


class SettingsError(Exception):
    """Error loading or validating settings."""

    def __init__(
        self,
        message: str,
        *,
        validation_error: ValidationError | None = None,
        config_path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.validation_error = validation_error
        self.config_path = config_path


class PathOverrideError(SettingsError):
    """A path that belongs under ``paths.overrides`` is misplaced or unknown."""

    def __init__(self, message: str, *, keys: list[str], misplaced: bool) -> None:
        super().__init__(message)
        self.keys = keys
        self.misplaced = misplaced


def _resolve_path(base_dir: Path, path_str: str) -> Path:
    """Resolve a path relative to the config file directory."""
    path = Path(path_str)
    if path.is_absolute():
        return path
    return (base_dir / path).resolve()


def resolve_paths(config: dict[str, Any], config_dir: Path) -> dict[str, Path]:
    """Resolve all runtime paths from config using work_dir defaults and optional overrides."""
    paths_config = config.get("paths", {})
    if not isinstance(paths_config, dict):
        raise SettingsError("paths must be a mapping in config.yaml")

    work_dir_raw = str(paths_config.get("work_dir", "./data"))
    work_dir = _resolve_path(config_dir, work_dir_raw)

    archive_dir_raw = paths_config.get("archive_dir")
    archive_dir = (
        _resolve_path(config_dir, str(archive_dir_raw))
        if archive_dir_raw is not None
        else work_dir / "archives"
    )

    defaults = {
        "staging_dir": work_dir / "staging",
        "database_path": work_dir / "dictionaries.duckdb",
    }

    raw_overrides = paths_config.get("overrides") or {}
    if not isinstance(raw_overrides, dict):
        raise SettingsError("paths.overrides must be a mapping in config.yaml")

    misplaced = [key for key in defaults if key in paths_config]
    if misplaced:
        misplaced_display = ", ".join(f"paths.{key}" for key in misplaced)
        raise PathOverrideError(
            f"{misplaced_display} must be set under paths.overrides instead.",
            keys=misplaced,
            misplaced=True,
        )

    unknown = sorted(set(raw_overrides) - set(defaults))
    if unknown:
        raise PathOverrideError(
            f"Unknown paths.overrides key(s): {', '.join(unknown)}. "
            f"Valid keys: {', '.join(defaults)}",
            keys=unknown,
            misplaced=False,
        )

    overrides: dict[str, Path] = {}
    for key in defaults:
        value = raw_overrides.get(key)
        if value is not None:
            overrides[key] = _resolve_path(config_dir, str(value))

    return {
        "work_dir": work_dir,
        "archive_dir": archive_dir,
        "staging_dir": overrides.get("staging_dir", defaults["staging_dir"]),
        "database_path": overrides.get("database_path", defaults["database_path"]),
    }


def _load_yaml(config_path: Path) -> dict[str, Any]:
    """Load YAML configuration file."""
    if not config_path.exists():
        raise SettingsError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        config = yaml.safe_load(f)

    if not isinstance(config, dict):
        raise SettingsError(f"Invalid config file format: {config_path}")

    return config


def load_settings(
    config_path: str | Path,
    load_env: bool = True,
    env_path: str | Path | None = None,
) -> Settings:
    """Load settings from YAML config file and environment variables.

    Args:
        config_path: Path to the YAML configuration file.
        load_env: Whether to load .env file (default True).
        env_path: Optional .env path (default: <config-dir>/.env).

    Returns:
        Complete Settings object with resolved paths.

    Raises:
        SettingsError: If config file is missing or invalid.
    """
    config_path = Path(config_path).resolve()
    base_dir = config_path.parent

    # Load .env file from the same directory as config
    if load_env:
        env_file = Path(env_path).resolve() if env_path else (base_dir / ".env")
        load_dotenv(env_file)
        if env_file.exists():
            logger.debug("Loaded environment from %s", env_file)

    config = _load_yaml(config_path)

    resolved_paths = resolve_paths(config=config, config_dir=base_dir)

    database_path_env = os.environ.get(DATABASE_PATH_ENV_VAR)
    if database_path_env:
        resolved_paths["database_path"] = _resolve_path(base_dir, database_path_env)
        logger.debug("Using %s from environment", DATABASE_PATH_ENV_VAR)

    archive_config = config.get("archive", {})
    if not isinstance(archive_config, dict):
        raise SettingsError("archive must be a mapping in config.yaml")

    settings_payload = {
        **config,
        "paths": resolved_paths,
        "archive": archive_config,
        "processing": config.get("processing") or {},
        "config_path": config_path,
    }

    try:
        return Settings.model_validate(settings_payload)
    except ValidationError as exc:
        raise SettingsError(
            "Invalid configuration",
            validation_error=exc,
            config_path=config_path,
        ) from exc
