from __future__ import annotations

import logging
from pathlib import Path

from fastapi import BackgroundTasks, FastAPI

from fias_enricher.api.api import STARTED, run_and_log

logger = logging.getLogger(__name__)


def create_app(config_path: str | Path, env_file: str | Path | None = None) -> FastAPI:
    """Build the HTTP trigger for processing runs.

    ``GET /`` schedules a run and answers at once; the run itself reports
    only through the log.
    """
    resolved_config = Path(config_path).resolve()
    app = FastAPI(title="FIAS Enricher")

    @app.get("/")
    def start_processing(background_tasks: BackgroundTasks) -> dict[str, str]:
        logger.info("Start processing...")
        background_tasks.add_task(run_and_log, resolved_config, env_file)
        return {"status": STARTED}

    return app
