from __future__ import annotations

import argparse
import logging
from pathlib import Path

import uvicorn
from rich.console import Console
from rich.table import Table

from fias_enricher.api.api import run_from_config
from fias_enricher.api.app import create_app
from fias_enricher.api.cli_errors import format_settings_error, render_config_error_panel
from fias_enricher.api.settings import SettingsError
from fias_enricher.reconcile.orchestrator import RunReport

logger = logging.getLogger(__name__)
console = Console()


def _configure_logging(verbose: bool) -> None:
    """Configure root logging for CLI runs."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _add_config_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        default="config.yaml",
        help="Path to YAML config file (default: config.yaml).",
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Optional .env file path (default: <config-dir>/.env).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fias-enrich",
        description="Stamp FIAS codes onto the KLADR street and settlement dictionaries.",
    )
    _add_config_arguments(parser)
    parser.add_argument("--archive-dir", help="Override paths.archive_dir.")
    parser.add_argument("--archive-name", help="Override archive.file_name.")
    parser.add_argument("--chunk-size", type=int, help="Override processing.chunk_size.")
    parser.add_argument("--pool-size", type=int, help="Override processing.pool_size.")
    return parser


def _build_serve_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fias-enrich-serve",
        description="Serve the HTTP trigger for FIAS enrichment runs.",
    )
    _add_config_arguments(parser)
    parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1).")
    parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000).")
    return parser


def _render_report(report: RunReport) -> Table:
    table = Table(title="Reconciliation summary")
    table.add_column("File")
    table.add_column("Status")
    table.add_column("Records", justify="right")
    table.add_column("Matches", justify="right")
    table.add_column("Flushes", justify="right")

    for result in sorted(report.succeeded, key=lambda r: r.path.name):
        table.add_row(
            result.path.name,
            "[green]done[/green]",
            str(result.processed),
            str(result.matched),
            str(result.flushes),
        )
    for failure in sorted(report.failed, key=lambda r: r.path.name):
        table.add_row(
            failure.path.name,
            f"[red]failed while {failure.stage.value}[/red]",
            "-",
            "-",
            "-",
        )
    table.add_section()
    table.add_row("Total", "", str(report.processed), str(report.matched), "")
    return table


def _config_error(exc: SettingsError | ValueError, config: str, verbose: bool) -> int:
    if isinstance(exc, SettingsError):
        error_config_path = exc.config_path or Path(config).resolve()
        message = format_settings_error(exc, config_path=error_config_path)
    else:
        message = str(exc)
    console.print(render_config_error_panel(message))
    logger.error("Configuration error")
    if verbose:
        logger.error("Configuration details: %s", message)
    return 2


def main(argv: list[str] | None = None) -> int:
    """Entry point for `fias-enrich`."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.verbose)

    try:
        console.rule("[bold cyan]FIAS Enricher[/bold cyan]")
        config_path = Path(args.config).resolve()
        console.print(f"[green]✓[/green] Config: [bold]{config_path}[/bold]")
        console.print("[cyan]Starting run...[/cyan]")

        report = run_from_config(
            config_path=config_path,
            env_file=args.env_file,
            archive_dir=args.archive_dir,
            archive_name=args.archive_name,
            chunk_size=args.chunk_size,
            pool_size=args.pool_size,
        )
        console.print(_render_report(report))
        if not report.ok:
            console.print(
                f"[bold red]{len(report.failed)} file(s) failed[/bold red] - see the log for details"
            )
            return 1
        logger.info("Run completed")
        console.print("[bold green]Run completed successfully[/bold green]")
        return 0
    except (SettingsError, ValueError) as exc:
        return _config_error(exc, args.config, args.verbose)
    except Exception as exc:  # noqa: BLE001
        console.print(f"[bold red]Run failed:[/bold red] {exc}")
        logger.exception("Run failed: %s", exc)
        return 1


def serve(argv: list[str] | None = None) -> int:
    """Entry point for `fias-enrich-serve`."""
    parser = _build_serve_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.verbose)

    config_path = Path(args.config).resolve()
    if not config_path.exists():
        return _config_error(
            SettingsError(f"Config file not found: {config_path}", config_path=config_path),
            args.config,
            args.verbose,
        )

    console.print(f"Starting FIAS Enricher trigger at http://{args.host}:{args.port}/")
    uvicorn.run(
        create_app(config_path, env_file=args.env_file),
        host=args.host,
        port=args.port,
        log_level="debug" if args.verbose else "info",
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
