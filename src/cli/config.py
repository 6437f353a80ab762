"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. --config <path> CLI flag
2. ./stockbridge.yaml (working directory)
3. ~/.stockbridge/config.yaml (user home)

Environment variables override YAML: STOCKBRIDGE_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from src.services.integration_types import CredentialSettings, SyncSettings

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Args:
        value: String potentially containing ${VAR} references.

    Returns:
        String with all ${VAR} references replaced by their env values.
        Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class StorageConfig(BaseModel):
    """Where integration state is persisted."""

    database_url: str | None = None
    persist_debounce_ms: int = Field(default=120, ge=0)

    @property
    def debounce_seconds(self) -> float:
        return self.persist_debounce_ms / 1000


class LoggingConfig(BaseModel):
    """Log output for CLI runs."""

    level: str = "info"
    format: str = "%(levelname)s:%(name)s:%(message)s"
    file: str | None = None


class StockbridgeConfig(BaseModel):
    """Top-level configuration for the Stockbridge integration engine."""

    storage: StorageConfig = StorageConfig()
    credentials: CredentialSettings = CredentialSettings()
    sync: SyncSettings = SyncSettings()
    logging: LoggingConfig = LoggingConfig()


def _find_config_file() -> Path | None:
    candidates = [
        Path.cwd() / "stockbridge.yaml",
        Path.cwd() / "stockbridge.yml",
        Path.home() / ".stockbridge" / "config.yaml",
        Path.home() / ".stockbridge" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply STOCKBRIDGE_<SECTION>_<KEY> env var overrides to config data.

    For example, ``STOCKBRIDGE_SYNC_RETRY_MAX_ATTEMPTS=3`` maps to section
    ``sync``, field ``retry_max_attempts``. Values that parse as integers
    or booleans are coerced.

    Args:
        data: Parsed YAML config dict.

    Returns:
        Config dict with env var overrides applied.
    """
    prefix = "STOCKBRIDGE_"
    known_sections = sorted(StockbridgeConfig.model_fields.keys(), key=len, reverse=True)
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        suffix = key[len(prefix):].lower()
        matched_section = None
        matched_field = None
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix):
                matched_section = section
                matched_field = suffix[len(section_prefix):]
                break
        if matched_section is None or not matched_field:
            continue
        if matched_section not in data or data[matched_section] is None:
            data[matched_section] = {}
        if isinstance(data[matched_section], dict):
            try:
                data[matched_section][matched_field] = int(value)
            except ValueError:
                if value.lower() in ("true", "false"):
                    data[matched_section][matched_field] = value.lower() == "true"
                else:
                    data[matched_section][matched_field] = value
    return data


def load_config(config_path: str | None = None) -> StockbridgeConfig:
    """Load Stockbridge configuration from YAML file with env var resolution.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.stockbridge/).

    Returns:
        Parsed and validated StockbridgeConfig; defaults (plus env
        overrides) when no file is found.

    Raises:
        FileNotFoundError: If an explicit config path does not exist.
    """
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return StockbridgeConfig(**data)
