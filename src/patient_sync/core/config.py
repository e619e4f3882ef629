"""
Pipeline configuration.

Settings come from environment variables (optionally seeded from a .env
file); source definitions come from a YAML file.
"""

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from patient_sync.core.models import SourceConfig


class PipelineSettings(BaseModel):
    """
    Process-wide settings.

    Attributes:
        db_host, db_port, db_name, db_user, db_password: PostgreSQL connection
        db_pool_max_size: Upper bound on pooled connections
        min_request_interval: Default spacing between API requests in seconds
        max_retries: Default fetch retry budget
        max_workers: Default per-page worker count
        metrics_port: Port for the Prometheus HTTP endpoint (None disables it)
    """

    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "patient_sync"
    db_user: str = "pipeline"
    db_password: str | None = None
    db_pool_max_size: int = Field(10, ge=1)
    min_request_interval: float = Field(3.0, ge=0.0)
    max_retries: int = Field(3, ge=0)
    max_workers: int = Field(4, ge=1)
    metrics_port: int | None = None

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> "PipelineSettings":
        """
        Load settings from the environment.

        Args:
            env_file: Optional .env file loaded first (existing env vars win)

        Returns:
            PipelineSettings instance
        """
        if env_file is not None and Path(env_file).exists():
            load_dotenv(env_file, override=False)

        values: dict[str, Any] = {
            "db_host": os.getenv("DB_HOST"),
            "db_port": os.getenv("DB_PORT"),
            "db_name": os.getenv("DB_NAME"),
            "db_user": os.getenv("DB_USER"),
            "db_password": os.getenv("DB_PASSWORD"),
            "db_pool_max_size": os.getenv("DB_POOL_MAX_SIZE"),
            "min_request_interval": os.getenv("SYNC_MIN_REQUEST_INTERVAL"),
            "max_retries": os.getenv("SYNC_MAX_RETRIES"),
            "max_workers": os.getenv("SYNC_MAX_WORKERS"),
            "metrics_port": os.getenv("METRICS_PORT"),
        }
        return cls(**{k: v for k, v in values.items() if v is not None})

    def source_defaults(self) -> dict[str, Any]:
        """Defaults applied to every source that does not override them."""
        return {
            "min_request_interval": self.min_request_interval,
            "max_retries": self.max_retries,
            "max_workers": self.max_workers,
        }


class SourceConfigLoader:
    """
    Loads source definitions from a YAML configuration file.

    Expected YAML format:
    ```yaml
    sources:
      hapi_fhir_r4:
        base_endpoint: https://hapi.fhir.org/baseR4
        page_size: 50
        min_request_interval: 3.0

      clinic_b:
        base_endpoint: https://fhir.clinic-b.example/r4
        max_retries: 5
    ```
    """

    def __init__(self, config_path: str | Path, settings: PipelineSettings | None = None):
        """
        Initialize the source config loader.

        Args:
            config_path: Path to the YAML configuration file
            settings: Settings whose defaults fill unspecified source fields
        """
        self.config_path = Path(config_path)
        if not self.config_path.exists():
            raise FileNotFoundError(f"Source configuration file not found: {config_path}")
        self.settings = settings or PipelineSettings()

    def load_sources(self) -> dict[str, SourceConfig]:
        """
        Load and validate all source definitions.

        Returns:
            Mapping of source system name to SourceConfig

        Raises:
            ValueError: If YAML is invalid or a source definition is invalid
        """
        with open(self.config_path) as f:
            config = yaml.safe_load(f)

        if not config or "sources" not in config:
            raise ValueError("Configuration file must contain 'sources' section")

        sources = {}
        for source_system, source_def in config["sources"].items():
            if not isinstance(source_def, dict):
                raise ValueError(f"Source '{source_system}' must be a mapping")
            sources[source_system] = self._parse_source(source_system, source_def)

        return sources

    def load_source(self, source_system: str) -> SourceConfig:
        """
        Load a single source definition by name.

        Raises:
            KeyError: If the source is not defined in the file
        """
        sources = self.load_sources()
        if source_system not in sources:
            raise KeyError(
                f"Source '{source_system}' not defined in {self.config_path}; "
                f"available: {sorted(sources)}"
            )
        return sources[source_system]

    def _parse_source(self, source_system: str, source_def: dict[str, Any]) -> SourceConfig:
        if "base_endpoint" not in source_def:
            raise ValueError(f"Source '{source_system}' is missing 'base_endpoint'")

        params = {**self.settings.source_defaults(), **source_def}
        params["source_system"] = source_system
        try:
            return SourceConfig(**params)
        except ValidationError as e:
            raise ValueError(f"Invalid definition for source '{source_system}': {e}") from e
