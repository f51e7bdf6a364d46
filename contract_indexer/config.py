"""
Run configuration.

Values are layered in increasing precedence: dataclass defaults, an optional
YAML settings file, environment variables, then CLI flags (applied by the
CLI through :meth:`IndexerConfig.override`).
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = Path("indexer.yaml")

# Environment variable -> config field
_ENV_VARS = {
    "DUCKDB_PATH": "duckdb_path",
    "SOLCX_BINARY_PATH": "solc_dir",
    "INDEXER_WORKERS": "workers",
    "INDEXER_COMPILE_TIMEOUT": "compile_timeout",
}


@dataclass
class IndexerConfig:
    """Settings shared by every command."""

    duckdb_path: Optional[str] = None
    solc_dir: Optional[str] = None
    preprocess_chunk_size: int = 500
    index_chunk_size: int = 100
    workers: int = os.cpu_count() or 4
    compile_timeout: float = 120.0
    crash_retries: int = 1
    timeout_retries: int = 0

    @classmethod
    def load(
        cls,
        settings_path: Optional[Path] = None,
        environ: Optional[Dict[str, str]] = None,
    ) -> "IndexerConfig":
        """Build a config from the YAML settings file and the environment."""
        config = cls()

        path = Path(settings_path) if settings_path else DEFAULT_SETTINGS_PATH
        if path.exists():
            with open(path, "r", encoding="utf-8") as f:
                settings = yaml.safe_load(f) or {}
            if not isinstance(settings, dict):
                raise ValueError(f"Settings file {path} must contain a mapping")
            config = config.override(**settings)
            logger.debug(f"Loaded settings from {path}")
        elif settings_path:
            raise FileNotFoundError(f"Settings file not found: {path}")

        env = os.environ if environ is None else environ
        env_values = {
            field_name: env[var]
            for var, field_name in _ENV_VARS.items()
            if env.get(var)
        }
        return config.override(**env_values)

    def override(self, **values: Any) -> "IndexerConfig":
        """Return a copy with the given non-None values applied and coerced."""
        known = {f.name: f for f in fields(self)}
        current = {name: getattr(self, name) for name in known}
        for key, value in values.items():
            if key not in known:
                raise ValueError(f"Unknown setting: {key}")
            if value is None:
                continue
            current[key] = _coerce(value, type(getattr(self, key)))
        config = IndexerConfig(**current)
        config.validate()
        return config

    def validate(self) -> None:
        if self.preprocess_chunk_size <= 0 or self.index_chunk_size <= 0:
            raise ValueError("Chunk sizes must be positive")
        if self.workers <= 0:
            raise ValueError("workers must be positive")
        if self.compile_timeout <= 0:
            raise ValueError("compile_timeout must be positive")
        if self.crash_retries < 0 or self.timeout_retries < 0:
            raise ValueError("Retry counts cannot be negative")


def _coerce(value: Any, target: type) -> Any:
    # Optional[str] fields default to None, so NoneType means "string"
    if target is type(None) or target is str:
        return str(value)
    if target is bool:
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes")
        return bool(value)
    return target(value)
