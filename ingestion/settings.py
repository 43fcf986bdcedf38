"""
Run Configuration
=================

Builds the immutable RunConfig of one export run from three layers,
later layers winning:

1. configs/task_settings.json
2. Environment variables (secrets and hosts)
3. Command-line overrides

Validation happens here, before any connection is opened; every problem
is reported as a ConfigurationError.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import ConfigurationError
from processing.common_code.projects import BOTH, DESCENDANTS, parse_names

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(__file__).parent / "configs"

EXPORT_DEFAULTS = {
    "max_issues": 100,
    "max_changes": 10000,
    "max_days": 30,
    "change_batch_size": 300,
    "include_projects": "",
    "exclude_projects": "",
    "project_closure": DESCENDANTS,
    "resolution_field": "Resolution",
}

# Environment variable -> (section, key)
ENV_OVERRIDES = {
    "REDMINE_DB_HOST": ("source", "host"),
    "REDMINE_DB_PORT": ("source", "port"),
    "REDMINE_DB_NAME": ("source", "database"),
    "REDMINE_DB_USER": ("source", "username"),
    "REDMINE_DB_PASSWORD": ("source", "password"),
    "DWH_HOST": ("target", "host"),
    "DWH_PORT": ("target", "port"),
    "DWH_DATABASE": ("target", "database"),
    "DWH_USER": ("target", "user"),
    "DWH_PASSWORD": ("target", "password"),
    "DWH_SCHEMA": ("target", "schema"),
}

SOURCE_REQUIRED = ["host", "port", "database", "username"]
TARGET_REQUIRED = ["host", "port", "database", "user"]

INT_OPTIONS = ["max_issues", "max_changes", "max_days", "change_batch_size"]


def load_task_settings(config_path: Optional[str] = None) -> Dict:
    """
    Load task settings from JSON file.

    Args:
        config_path: configs directory or a settings file (default: ingestion/configs)

    Returns:
        Settings dictionary
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_DIR
    if path.is_dir():
        path = path / "task_settings.json"
    try:
        with open(path, 'r') as f:
            return json.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Settings file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid settings file {path}: {e}") from e


def _positive_int(name: str, value: Any, minimum: int = 1) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from e
    if number < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {number}")
    return number


def _parse_run_date(value: Any) -> date:
    if value is None:
        return datetime.now(timezone.utc).date()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), "%Y-%m-%d").date()
    except ValueError as e:
        raise ConfigurationError(f"run_date must be YYYY-MM-DD, got {value!r}") from e


def _require(section: str, connection: Dict, keys) -> None:
    missing = [k for k in keys if connection.get(k) in (None, "")]
    if missing:
        raise ConfigurationError(f"Required {section} setting missing: {', '.join(missing)}")


@dataclass(frozen=True)
class RunConfig:
    """Everything one export run needs; never mutated once built."""
    source: Mapping[str, Any]
    target: Mapping[str, Any]
    run_date: date
    max_issues: int = 100
    max_changes: int = 10000
    max_days: int = 30
    change_batch_size: int = 300
    include_projects: Tuple[str, ...] = ()
    exclude_projects: Tuple[str, ...] = ()
    project_closure: str = DESCENDANTS
    resolution_field: str = "Resolution"
    log_settings: Mapping[str, Any] = field(default_factory=dict)
    metrics_settings: Mapping[str, Any] = field(default_factory=dict)

    @property
    def cutoff(self) -> datetime:
        """Only rows created before midnight of the run date are exported."""
        return datetime.combine(self.run_date, time.min)

    @property
    def schema(self) -> str:
        return self.target.get("schema", "redmine")

    @classmethod
    def from_settings(
        cls,
        settings: Dict,
        overrides: Optional[Dict[str, Any]] = None,
        env: Optional[Mapping[str, str]] = None
    ) -> "RunConfig":
        """
        Build and validate a RunConfig.

        Args:
            settings: Parsed task_settings.json
            overrides: CLI overrides (None values are ignored)
            env: Environment (default: os.environ)

        Returns:
            RunConfig

        Raises:
            ConfigurationError: on missing or invalid settings
        """
        env = os.environ if env is None else env
        overrides = {k: v for k, v in (overrides or {}).items() if v is not None}

        connections = {
            "source": dict(settings.get("source", {}).get("connection", {})),
            "target": dict(settings.get("target", {}).get("connection", {})),
        }
        for var, (section, key) in ENV_OVERRIDES.items():
            if env.get(var):
                connections[section][key] = env[var]

        _require("source", connections["source"], SOURCE_REQUIRED)
        _require("target", connections["target"], TARGET_REQUIRED)
        connections["source"].setdefault("password", "")
        connections["target"].setdefault("password", "")
        connections["target"].setdefault("schema", "redmine")
        for section in connections.values():
            section["port"] = _positive_int("port", section["port"])

        task_settings = settings.get("task_settings", {})
        export = dict(EXPORT_DEFAULTS)
        export.update(task_settings.get("export", {}))
        export.update({k: v for k, v in overrides.items() if k in EXPORT_DEFAULTS})

        values = {name: _positive_int(name, export[name]) for name in INT_OPTIONS}

        closure = export["project_closure"]
        if closure not in (DESCENDANTS, BOTH):
            raise ConfigurationError(f"project_closure must be '{DESCENDANTS}' or '{BOTH}', got {closure!r}")

        if not export["resolution_field"]:
            raise ConfigurationError("resolution_field must not be empty")

        return cls(
            source=connections["source"],
            target=connections["target"],
            run_date=_parse_run_date(overrides.get("run_date")),
            include_projects=tuple(parse_names(export["include_projects"])),
            exclude_projects=tuple(parse_names(export["exclude_projects"])),
            project_closure=closure,
            resolution_field=export["resolution_field"],
            log_settings=dict(task_settings.get("logging", {})),
            metrics_settings=dict(task_settings.get("metrics", {})),
            **values
        )

    def describe(self) -> Dict[str, Any]:
        """Loggable view of the run, without secrets."""
        return {
            "run_date": self.run_date.isoformat(),
            "source": f"{self.source['host']}:{self.source['port']}/{self.source['database']}",
            "target": f"{self.target['host']}:{self.target['port']}/{self.target['database']}.{self.schema}",
            "max_issues": self.max_issues,
            "max_changes": self.max_changes,
            "max_days": self.max_days,
            "change_batch_size": self.change_batch_size,
            "include_projects": list(self.include_projects),
            "exclude_projects": list(self.exclude_projects),
            "project_closure": self.project_closure,
            "resolution_field": self.resolution_field,
        }
