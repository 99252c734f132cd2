"""Settings, policy files and logging setup for logica-plan.

Settings are merged from configuration sources in priority order (lowest
first, later sources override earlier ones):

    FileConfigSource (YAML or JSON, priority 50)
         |
         v
    EnvConfigSource (LOGICA_PLAN_* variables, priority 100)
         |
         v
    Settings

Usage:
    >>> from logica_plan.config import Settings, load_policy
    >>>
    >>> settings = Settings.load("logica_plan.yaml")
    >>> settings.engine
    'sqlite'
    >>> policy = load_policy("policy.yaml")
"""

from __future__ import annotations

import json
import logging
import os
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping

import yaml

from logica_plan.access_policy import AccessPolicy
from logica_plan.errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "LOGICA_PLAN_"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class ConfigSourceError(ConfigError):
    """Raised when a configuration source cannot be read."""

    pass


# =============================================================================
# Configuration Sources
# =============================================================================


class ConfigSource(ABC):
    """Base class for configuration sources.

    Sources are merged in priority order; higher priority overrides lower.
    """

    def __init__(self, priority: int = 0) -> None:
        self._priority = priority

    @property
    def priority(self) -> int:
        return self._priority

    @abstractmethod
    def load(self) -> dict[str, Any]:
        """Load configuration from source.

        Returns:
            Dictionary of configuration values.
        """
        pass

    def reload(self) -> dict[str, Any]:
        return self.load()


class EnvConfigSource(ConfigSource):
    """Environment variable configuration source.

    Example:
        LOGICA_PLAN_ENGINE=psql
        LOGICA_PLAN_PER_PAGE=50
        LOGICA_PLAN_POLICY__ENGINE=psql

        Will produce:
        {"engine": "psql", "per_page": 50, "policy": {"engine": "psql"}}
    """

    def __init__(
        self,
        prefix: str = ENV_PREFIX,
        separator: str = "__",
        priority: int = 100,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        """Initialize environment source.

        Args:
            prefix: Environment variable prefix, including its trailing "_".
            separator: Separator for nested keys.
            priority: Source priority.
            environ: Variables to read instead of os.environ.
        """
        super().__init__(priority)
        self._prefix = prefix
        self._separator = separator
        self._environ = environ

    def load(self) -> dict[str, Any]:
        environ = os.environ if self._environ is None else self._environ
        result: dict[str, Any] = {}

        for key, value in environ.items():
            if not key.startswith(self._prefix):
                continue
            parts = key[len(self._prefix):].lower().split(self._separator)

            current = result
            for part in parts[:-1]:
                current = current.setdefault(part, {})
            current[parts[-1]] = self._parse_value(value)

        return result

    def _parse_value(self, value: str) -> Any:
        """Parse string value to appropriate type."""
        lowered = value.lower()
        if lowered in ("true", "yes", "on"):
            return True
        if lowered in ("false", "no", "off"):
            return False
        if lowered in ("null", "none", ""):
            return None

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        if value.startswith(("[", "{")):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                pass

        return value


class FileConfigSource(ConfigSource):
    """File-based configuration source (YAML or JSON, chosen by extension)."""

    def __init__(
        self,
        path: str | Path,
        *,
        required: bool = False,
        priority: int = 50,
    ) -> None:
        """Initialize file source.

        Args:
            path: Path to configuration file.
            required: Raise error if file not found.
            priority: Source priority.
        """
        super().__init__(priority)
        self._path = Path(path)
        self._required = required

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any]:
        if not self._path.exists():
            if self._required:
                raise ConfigSourceError(f"Configuration file not found: {self._path}")
            return {}

        suffix = self._path.suffix.lower()
        if suffix not in (".yaml", ".yml", ".json"):
            raise ConfigSourceError(f"Unsupported file format: {suffix}")

        try:
            content = self._path.read_text(encoding="utf-8")
            if suffix == ".json":
                data = json.loads(content)
            else:
                data = yaml.safe_load(content) or {}
        except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigSourceError(f"Failed to load config {self._path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigSourceError(f"Configuration file must contain a mapping: {self._path}")
        return data


def merge_sources(sources: list[ConfigSource]) -> dict[str, Any]:
    """Load sources by ascending priority and deep-merge the results."""
    merged: dict[str, Any] = {}
    for source in sorted(sources, key=lambda s: s.priority):
        _deep_merge(merged, source.load())
    return merged


def _deep_merge(base: dict[str, Any], override: Mapping[str, Any]) -> None:
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


# =============================================================================
# Settings
# =============================================================================


@dataclass
class Settings:
    """Runtime settings for the command line tools.

    Attributes:
        engine: Default SQL engine ("sqlite" or "psql")
        database: SQLite path or PostgreSQL DSN
        policy_path: Access policy file enforced by ``run``
        per_page: Default page size for fetched outputs (None disables paging)
        validate: Validate plans before executing them
        log_level: Root logging level
    """

    engine: str = "sqlite"
    database: str | None = None
    policy_path: str | None = None
    per_page: int | None = None
    validate: bool = True
    log_level: str = "WARNING"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Settings:
        """Build settings from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        ignored = sorted(set(data) - known)
        if ignored:
            logger.debug("Ignoring unknown settings: %s", ", ".join(ignored))

        values = {k: v for k, v in data.items() if k in known and v is not None}
        settings = cls(**values)
        settings._check()
        return settings

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        return cls.from_dict(EnvConfigSource(environ=environ).load())

    @classmethod
    def load(cls, path: str | Path | None = None, environ: Mapping[str, str] | None = None) -> Settings:
        """Load settings from an optional file, then the environment.

        Args:
            path: YAML or JSON settings file; must exist when given
            environ: Variables to read instead of os.environ

        Raises:
            ConfigError: If the file is unreadable or a value is invalid
        """
        sources: list[ConfigSource] = [EnvConfigSource(environ=environ)]
        if path is not None:
            sources.append(FileConfigSource(path, required=True))
        return cls.from_dict(merge_sources(sources))

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def _check(self) -> None:
        for name in ("database", "policy_path"):
            value = getattr(self, name)
            if value is not None:
                setattr(self, name, str(value))
        self.engine = str(self.engine).lower()
        if self.engine not in ("sqlite", "psql"):
            raise ConfigError(f"Unsupported engine: {self.engine}", details={"engine": self.engine})
        if self.per_page is not None and (isinstance(self.per_page, bool) or not isinstance(self.per_page, int)):
            raise ConfigError("per_page must be an integer", details={"per_page": self.per_page})
        if not isinstance(self.validate, bool):
            raise ConfigError("validate must be a boolean", details={"validate": self.validate})
        self.log_level = str(self.log_level).upper()


# =============================================================================
# Policy files
# =============================================================================


def load_policy(path: str | Path) -> AccessPolicy:
    """Load an AccessPolicy from a YAML or JSON file.

    The file may hold the policy fields at the top level or under an
    ``access_policy`` key.

    Raises:
        ConfigError: If the file is missing, unreadable or has invalid fields
    """
    data = FileConfigSource(path, required=True).load()
    if "access_policy" in data:
        data = data["access_policy"]
        if not isinstance(data, dict):
            raise ConfigError(f"access_policy must be a mapping: {path}")

    try:
        policy = AccessPolicy.from_dict(data)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid access policy in {path}: {e}") from e

    logger.info("Loaded access policy from %s (trust=%s)", path, policy.trust.value if policy.trust else None)
    return policy


# =============================================================================
# Logging
# =============================================================================


def configure_logging(level: str | int = "WARNING", stream: Any = None) -> None:
    """Route logica_plan log records to a stream handler on the root logger.

    Calling this again replaces the handler installed by the previous call.
    """
    if isinstance(level, str):
        name = level.upper()
        level = logging.getLevelName(name)
        if not isinstance(level, int):
            raise ConfigError(f"Unknown log level: {name}")

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_logica_plan", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._logica_plan = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level)
