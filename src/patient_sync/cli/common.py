"""
Helpers shared by the command-line entry points.
"""

import argparse
from datetime import datetime

from patient_sync.core.config import PipelineSettings
from patient_sync.warehouse.connection import DatabaseConnectionPool


def add_db_arguments(parser: argparse.ArgumentParser) -> None:
    """Database connection overrides; unset values fall back to DB_* env vars."""
    parser.add_argument("--db-host", help="Database host (default: $DB_HOST or localhost)")
    parser.add_argument("--db-port", type=int, help="Database port (default: $DB_PORT or 5432)")
    parser.add_argument("--db-name", help="Database name (default: $DB_NAME or patient_sync)")
    parser.add_argument("--db-user", help="Database user (default: $DB_USER or pipeline)")
    parser.add_argument("--db-password", help="Database password (default: $DB_PASSWORD)")
    parser.add_argument("--env-file", default=".env", help="Optional .env file (default: .env)")


def load_settings(args: argparse.Namespace) -> PipelineSettings:
    """Environment settings with command-line overrides applied."""
    settings = PipelineSettings.from_env(args.env_file)
    overrides = {
        "db_host": args.db_host,
        "db_port": args.db_port,
        "db_name": args.db_name,
        "db_user": args.db_user,
        "db_password": args.db_password,
    }
    return settings.model_copy(update={k: v for k, v in overrides.items() if v is not None})


def build_pool(settings: PipelineSettings) -> DatabaseConnectionPool:
    return DatabaseConnectionPool.from_settings(settings)


def format_timestamp(ts: datetime | str | None) -> str:
    """Format timestamp for display."""
    if ts is None:
        return "N/A"
    if isinstance(ts, str):
        return ts
    return ts.strftime("%Y-%m-%d %H:%M:%S")
