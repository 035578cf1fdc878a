from __future__ import annotations

from pathlib import Path

import pytest

from fias_enricher import cli
from fias_enricher.api.settings import SettingsError
from fias_enricher.reconcile.engine import MatchStats
from fias_enricher.reconcile.orchestrator import (
    FileFailure,
    FileSuccess,
    FileTaskState,
    RunReport,
)


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "_configure_logging", lambda _verbose: None)


def _success(name: str) -> FileSuccess:
    return FileSuccess(
        path=Path(name), processed=3, matched=2, flushes=1, stats=MatchStats(matched=2, exact=2)
    )


def test_main_passes_overrides_to_run_from_config(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_run_from_config(**kwargs):
        captured.update(kwargs)
        return RunReport([_success("ADDROB66.DBF")])

    monkeypatch.setattr(cli, "run_from_config", fake_run_from_config)

    exit_code = cli.main(
        [
            "--config",
            "config.yaml",
            "--archive-name",
            "fias_delta.zip",
            "--chunk-size",
            "100",
            "--pool-size",
            "2",
        ]
    )

    assert exit_code == 0
    assert captured["config_path"] == Path("config.yaml").resolve()
    assert captured["archive_name"] == "fias_delta.zip"
    assert captured["chunk_size"] == 100
    assert captured["pool_size"] == 2
    assert captured["archive_dir"] is None


def test_main_returns_one_when_a_file_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    report = RunReport(
        [
            _success("ADDROB66.DBF"),
            FileFailure(
                path=Path("ADDROB77.DBF"),
                stage=FileTaskState.FLUSHING,
                cause=RuntimeError("write failed"),
            ),
        ]
    )
    monkeypatch.setattr(cli, "run_from_config", lambda **_kwargs: report)

    assert cli.main([]) == 1


def test_main_returns_two_on_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run_from_config(**_kwargs):
        raise SettingsError("Config file not found: config.yaml")

    monkeypatch.setattr(cli, "run_from_config", fake_run_from_config)

    assert cli.main([]) == 2


def test_main_returns_one_on_unexpected_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run_from_config(**_kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(cli, "run_from_config", fake_run_from_config)

    assert cli.main([]) == 1


def test_serve_requires_existing_config(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    def fail_run(*_args, **_kwargs):
        raise AssertionError("server must not start")

    monkeypatch.setattr(cli.uvicorn, "run", fail_run)

    assert cli.serve(["--config", str(tmp_path / "missing.yaml")]) == 2


def test_serve_starts_uvicorn_with_the_app(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text('archive:\n  file_name: "fias_dbf.zip"\n')
    captured: dict[str, object] = {}

    def fake_run(app, **kwargs):
        captured["app"] = app
        captured.update(kwargs)

    monkeypatch.setattr(cli.uvicorn, "run", fake_run)

    assert cli.serve(["--config", str(config_path), "--port", "9000"]) == 0
    assert captured["host"] == "127.0.0.1"
    assert captured["port"] == 9000
    assert captured["app"].title == "FIAS Enricher"
