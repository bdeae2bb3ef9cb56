"""Configuration management with hierarchical loading."""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from gur.infrastructure.logger import get_logger

logger = get_logger(__name__)

DATA_DIR_NAME = ".guardrails"
DATABASE_FILE_NAME = "db.sqlite"


class TrackerConfig(BaseModel):
    """Defaults applied when creating tasks."""

    default_priority: int = Field(default=2, ge=0, le=4)
    default_type: str = "task"


class MaintenanceConfig(BaseModel):
    """Bulk archive/compact and history settings."""

    batch_size: int = Field(default=100, ge=1, le=1000)
    history_limit: int = Field(default=50, ge=1)


class DatabaseConfig(BaseModel):
    busy_timeout_ms: int = Field(default=5000, ge=0)


class Config(BaseModel):
    """Main configuration model."""

    version: str = "0.1.0"
    log_level: str = "WARNING"
    actor: str = "user"
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}, got '{v}'")
        return v.upper()


def user_config_path() -> Path:
    """Per-user overrides, kept apart from any project's ``.guardrails/``."""
    return Path.home() / ".config" / "gur" / "config.yaml"


def find_project_root(start: Path | None = None) -> Path | None:
    """Walk up from ``start`` to the nearest directory holding ``.guardrails/``.

    The walk does not climb into the home directory: a project rooted at
    ``~`` is only found when ``start`` is ``~`` itself.
    """
    current = (start or Path.cwd()).resolve()
    home = Path.home().resolve()
    for candidate in (current, *current.parents):
        if candidate == home and candidate != current:
            return None
        if (candidate / DATA_DIR_NAME).is_dir():
            return candidate
    return None


class ConfigManager:
    """Manage configuration loading from multiple sources with hierarchy."""

    def __init__(self, project_root: Path | None = None) -> None:
        """Initialize config manager.

        Args:
            project_root: Root directory of the project (default: nearest
                ancestor of the current directory containing ``.guardrails/``,
                falling back to the current directory)
        """
        self.project_root = project_root or find_project_root() or Path.cwd()
        self._config: Config | None = None

    @property
    def data_dir(self) -> Path:
        return self.project_root / DATA_DIR_NAME

    def is_initialized(self) -> bool:
        return self.data_dir.is_dir()

    def load_config(self) -> Config:
        """Load configuration from all sources in hierarchy order.

        Configuration hierarchy (highest priority last):
        1. System defaults (embedded in Config model)
        2. Project defaults (.guardrails/config.yaml)
        3. User overrides (~/.config/gur/config.yaml)
        4. Project-local overrides (.guardrails/local.yaml)
        5. Environment variables (GUR_* prefix)

        Returns:
            Merged configuration
        """
        if self._config is not None:
            return self._config

        config_dict: dict[str, Any] = {}

        for path in (
            self.data_dir / "config.yaml",
            user_config_path(),
            self.data_dir / "local.yaml",
        ):
            if path.exists():
                config_dict = self._merge_dicts(config_dict, self._load_yaml(path))

        config_dict = self._apply_env_vars(config_dict)

        self._config = Config(**config_dict)
        return self._config

    def _load_yaml(self, path: Path) -> dict[str, Any]:
        """Load YAML configuration file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            logger.warning("config_file_ignored", path=str(path), reason="not a mapping")
            return {}
        return data

    def _merge_dicts(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Recursively merge two dictionaries."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_dicts(result[key], value)
            else:
                result[key] = value
        return result

    def _apply_env_vars(self, config_dict: dict[str, Any]) -> dict[str, Any]:
        """Apply environment variables with GUR_ prefix."""
        # Numeric values are left as strings; pydantic coerces them per field.
        env_mappings = {
            "GUR_LOG_LEVEL": ["log_level"],
            "GUR_ACTOR": ["actor"],
            "GUR_DEFAULT_PRIORITY": ["tracker", "default_priority"],
            "GUR_DEFAULT_TYPE": ["tracker", "default_type"],
            "GUR_BATCH_SIZE": ["maintenance", "batch_size"],
            "GUR_HISTORY_LIMIT": ["maintenance", "history_limit"],
            "GUR_BUSY_TIMEOUT_MS": ["database", "busy_timeout_ms"],
        }

        for env_var, path in env_mappings.items():
            value = os.getenv(env_var)
            if value is not None:
                current = config_dict
                for key in path[:-1]:
                    if key not in current:
                        current[key] = {}
                    current = current[key]
                current[path[-1]] = value

        return config_dict

    def get_database_path(self) -> Path:
        """Get path to SQLite database."""
        self.data_dir.mkdir(exist_ok=True)
        return self.data_dir / DATABASE_FILE_NAME

    def get_log_dir(self) -> Path:
        """Get path to log directory."""
        log_dir = self.data_dir / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir
