"""User-facing messages for configuration errors.

Validation errors are listed per config section and followed by a
``config.yaml`` snippet for every section that needs attention, filled from
the default config so it can be pasted in as is.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError
from rich.panel import Panel

from fias_enricher.api.api import DEFAULT_CONFIG
from fias_enricher.api.settings import (
    DATABASE_PATH_ENV_VAR,
    PathOverrideError,
    Settings,
    SettingsError,
)

REQUIRED = '"<required>"'

# Command-line flag that overrides each config value for a single run
RUN_FLAGS: dict[tuple[str, str], str] = {
    ("paths", "archive_dir"): "--archive-dir",
    ("archive", "file_name"): "--archive-name",
    ("processing", "chunk_size"): "--chunk-size",
    ("processing", "pool_size"): "--pool-size",
}

OVERRIDE_EXAMPLES: dict[str, str] = {
    "staging_dir": "./data/staging",
    "database_path": "./data/dictionaries.duckdb",
}


def _section_keys(section: str | None) -> list[str]:
    """Keys accepted in a config section, or the top-level sections for None."""
    if section is None:
        return [name for name in Settings.model_fields if name != "config_path"]
    field = Settings.model_fields.get(section)
    model = field.annotation if field is not None else None
    if isinstance(model, type) and issubclass(model, BaseModel):
        return list(model.model_fields)
    return []


def _example_value(section: str, key: str) -> str:
    default: Any = DEFAULT_CONFIG.get(section, {}).get(key)
    if default in (None, ""):
        return REQUIRED
    return str(default)


def _build_yaml_snippet(fields: dict[str, list[str]]) -> str:
    """Render the flagged keys of each section with a usable value."""
    if not fields:
        return ""
    lines = ["Example config.yaml snippet:"]
    for section in [*DEFAULT_CONFIG, *sorted(set(fields) - set(DEFAULT_CONFIG))]:
        keys = fields.get(section)
        if not keys:
            continue
        lines.append(f"{section}:")
        for key in keys:
            lines.append(f"  {key}: {_example_value(section, key)}")
    return "\n".join(lines)


def _describe(err: dict[str, Any], section: str | None) -> str:
    if err.get("type") == "extra_forbidden":
        allowed = ", ".join(_section_keys(section))
        return f"unknown key (allowed: {allowed})"
    msg = str(err.get("msg", "Invalid value"))
    return msg.removeprefix("Value error, ")


def format_pydantic_validation_error(
    exc: ValidationError,
    *,
    file_name: str = "config.yaml",
) -> str:
    """Format pydantic validation errors into concise, actionable text."""
    by_section: dict[str, list[str]] = {}
    snippet_fields: dict[str, list[str]] = {}
    flags: list[str] = []

    for err in exc.errors(include_url=False):
        loc = [str(part) for part in err.get("loc", ())]
        if not loc:
            continue
        if len(loc) == 1:
            section, key = None, loc[0]
        else:
            section, key = loc[0], ".".join(loc[1:])

        by_section.setdefault(section or "(top level)", []).append(
            f"  • {key}: {_describe(err, section)}"
        )
        if section is not None and err.get("type") != "extra_forbidden":
            snippet_fields.setdefault(section, [])
            if key not in snippet_fields[section]:
                snippet_fields[section].append(key)
        flag = RUN_FLAGS.get((section or "", key))
        if flag and flag not in flags:
            flags.append(flag)

    lines = [f"Invalid configuration in {file_name}:"]
    for section, messages in by_section.items():
        lines.append(f"{section}:")
        lines.extend(messages)

    snippet = _build_yaml_snippet(snippet_fields)
    if snippet:
        lines.append("")
        lines.append(snippet)

    lines.append("")
    lines.append("Fix:")
    lines.append(f"• Add or correct these values in {Path(file_name).name}")
    if flags:
        lines.append(f"• Or pass {', '.join(flags)} for a single run")
    return "\n".join(lines)


def format_path_override_error(exc: PathOverrideError) -> str:
    """Explain where ``paths.overrides`` entries go and which keys exist."""
    lines = [str(exc), ""]
    keys = exc.keys if exc.misplaced else list(OVERRIDE_EXAMPLES)
    lines.append("Example config.yaml snippet:")
    lines.append("paths:")
    lines.append("  overrides:")
    for key in keys:
        lines.append(f"    {key}: {OVERRIDE_EXAMPLES.get(key, REQUIRED)}")
    if "database_path" in keys:
        lines.append("")
        lines.append(f"The database path can also be set with {DATABASE_PATH_ENV_VAR} in .env")
    return "\n".join(lines)


def format_settings_error(exc: SettingsError, *, config_path: Path) -> str:
    """Format settings-related errors for user-facing CLI output."""
    if exc.validation_error is not None:
        return format_pydantic_validation_error(exc.validation_error, file_name=str(config_path))
    if isinstance(exc, PathOverrideError):
        return format_path_override_error(exc)
    return str(exc)


def render_config_error_panel(message: str) -> Panel:
    """Render a Rich panel for configuration errors."""
    return Panel.fit(message, title="Configuration error", border_style="red")
