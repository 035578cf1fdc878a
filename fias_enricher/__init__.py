from fias_enricher.api.api import create_config_and_env, run_from_config, trigger_run
from fias_enricher.api.app import create_app
from fias_enricher.reconcile.orchestrator import FileFailure, FileSuccess, RunReport

__version__ = "0.1.0"

__all__ = [
    "create_config_and_env",
    "run_from_config",
    "trigger_run",
    "create_app",
    "RunReport",
    "FileSuccess",
    "FileFailure",
]
