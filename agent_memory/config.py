"""
Configuration module for Agent Memory.

Loads settings from config.yaml and secrets from environment variables,
and exposes typed getters (ConfigProvider) to the retrieval pipeline and
the embedding worker.
"""

import contextvars
import copy
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Mapping, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigurationError

# Load environment variables from .env file
load_dotenv()

# Context variable for worker name logging
worker_context = contextvars.ContextVar("worker_name", default=None)


class WorkerLogFilter(logging.Filter):
    """Filter to inject the background worker name into log records."""
    def filter(self, record):
        worker_name = worker_context.get()
        if worker_name is not None:
            record.worker_info = f" [{worker_name}]"
        else:
            record.worker_info = ""
        return True


# Default config file path
CONFIG_FILE = Path(
    os.getenv("AGENT_MEMORY_CONFIG", str(Path(__file__).parent.parent / "config.yaml"))
)

DEFAULT_DATABASE = str(Path.home() / ".agent_memory" / "memory.db")


def _load_yaml_config() -> dict:
    """Load configuration from YAML file."""
    if CONFIG_FILE.exists():
        with open(CONFIG_FILE) as f:
            return yaml.safe_load(f) or {}
    return {}


# Load YAML config once at module import
_yaml_config = _load_yaml_config()


def _get_yaml(section: str, key: str, default=None):
    """Get a value from the YAML config."""
    return _yaml_config.get(section, {}).get(key, default)


def _get_yaml_section(section: str, default=None):
    """Get an entire section from the YAML config."""
    return _yaml_config.get(section, default or {})


# =============================================================================
# Typed configuration access
# =============================================================================

_MISSING = object()


class ConfigProvider(ABC):
    """
    Typed, read-only view over configuration values.

    Keys are dotted paths such as ``rag.token_budget``. Getters return the
    default when a key is absent and raise ConfigurationError when a value
    is present but has the wrong type or is out of range. Values are never
    coerced (the string "5" is not an int).
    """

    @abstractmethod
    def lookup(self, key: str) -> Any:
        """Return the raw value for *key*, or ``_MISSING`` if absent."""
        pass

    def get_int(
        self,
        key: str,
        default: int,
        minimum: Optional[int] = None,
        maximum: Optional[int] = None,
    ) -> int:
        value = self.lookup(key)
        if value is _MISSING or value is None:
            return default
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigurationError(f"{key} must be an integer, got {value!r}")
        _check_range(key, value, minimum, maximum)
        return value

    def get_float(
        self,
        key: str,
        default: float,
        minimum: Optional[float] = None,
        maximum: Optional[float] = None,
    ) -> float:
        value = self.lookup(key)
        if value is _MISSING or value is None:
            return default
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(f"{key} must be a number, got {value!r}")
        value = float(value)
        _check_range(key, value, minimum, maximum)
        return value

    def get_bool(self, key: str, default: bool) -> bool:
        value = self.lookup(key)
        if value is _MISSING or value is None:
            return default
        if not isinstance(value, bool):
            raise ConfigurationError(f"{key} must be true or false, got {value!r}")
        return value

    def get_str(self, key: str, default: str) -> str:
        value = self.lookup(key)
        if value is _MISSING or value is None:
            return default
        if not isinstance(value, str):
            raise ConfigurationError(f"{key} must be a string, got {value!r}")
        return value


def _check_range(key: str, value, minimum, maximum) -> None:
    if minimum is not None and value < minimum:
        raise ConfigurationError(f"{key} must be >= {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise ConfigurationError(f"{key} must be <= {maximum}, got {value}")


class MappingConfigProvider(ConfigProvider):
    """ConfigProvider backed by a nested dict (e.g. parsed YAML)."""

    def __init__(self, values: Optional[Mapping[str, Any]] = None):
        self._values: dict[str, Any] = copy.deepcopy(dict(values or {}))

    @classmethod
    def overlay(
        cls, section: str, current: Mapping[str, Any], changes: Mapping[str, Any]
    ) -> "MappingConfigProvider":
        """
        Provider holding *current* settings of *section* with *changes* applied.

        Used to validate runtime changes with the same getters and range
        checks as values read from config.yaml.

        Raises:
            ConfigurationError: *changes* names a key that *current* does not have
        """
        unknown = sorted(set(changes) - set(current))
        if unknown:
            raise ConfigurationError(f"Unknown {section} setting(s): {', '.join(unknown)}")
        return cls({section: {**current, **changes}})

    def lookup(self, key: str) -> Any:
        node: Any = self._values
        for part in key.split("."):
            if not isinstance(node, Mapping) or part not in node:
                return _MISSING
            node = node[part]
        return node

    def set(self, key: str, value: Any) -> None:
        """Set a dotted key, creating intermediate sections as needed."""
        parts = key.split(".")
        node = self._values
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value


class YamlConfigProvider(MappingConfigProvider):
    """ConfigProvider over a YAML file (defaults to config.yaml)."""

    def __init__(self, path: Optional[Path] = None):
        if path is None:
            super().__init__(_yaml_config)
            return
        path = Path(path)
        data = {}
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        super().__init__(data)


# =============================================================================
# Application settings
# =============================================================================


@dataclass
class OpenAIConfig:
    """OpenAI embedding API configuration."""
    # Secret from .env
    api_key: str = field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))
    # Settings from YAML
    embedding_model: str = field(
        default_factory=lambda: _get_yaml("openai", "embedding_model", "text-embedding-3-small")
    )
    # None = use the model's default dimensions
    embedding_dimensions: int | None = field(
        default_factory=lambda: _get_yaml("openai", "embedding_dimensions", None)
    )


@dataclass
class EmbeddingsConfig:
    """Which embedding provider backs the store."""
    provider: Literal["openai", "local"] = field(
        default_factory=lambda: _get_yaml("embeddings", "provider", "openai")
    )
    local_model: str = field(
        default_factory=lambda: _get_yaml("embeddings", "local_model", "all-MiniLM-L6-v2")
    )


@dataclass
class StorageConfig:
    """SQLite storage settings."""
    # Env var wins so tests and multiple checkouts can point elsewhere
    database_path: str = field(
        default_factory=lambda: os.path.expanduser(
            os.getenv(
                "AGENT_MEMORY_DATABASE", _get_yaml("storage", "database_path", DEFAULT_DATABASE)
            )
        )
    )
    vector_index_enabled: bool = field(
        default_factory=lambda: _get_yaml("storage", "vector_index_enabled", True)
    )


@dataclass
class AppConfig:
    """Application settings from YAML."""
    log_level: str = field(
        default_factory=lambda: _get_yaml("logging", "level", "INFO")
    )


@dataclass
class Config:
    """Main configuration container."""
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    embeddings: EmbeddingsConfig = field(default_factory=EmbeddingsConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    app: AppConfig = field(default_factory=AppConfig)

    def provider(self) -> ConfigProvider:
        """Typed access to the rag/embeddings tunables in config.yaml."""
        return YamlConfigProvider()

    def setup_logging(self) -> logging.Logger:
        """Configure and return the application logger."""
        # Reset existing handlers to ensure clean configuration
        root = logging.getLogger()
        if root.handlers:
            for handler in root.handlers:
                root.removeHandler(handler)

        logging.basicConfig(
            level=getattr(logging, self.app.log_level.upper()),
            format="%(asctime)s - %(name)s - %(levelname)s%(worker_info)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        # Add filter to the handler created by basicConfig
        for handler in logging.getLogger().handlers:
            handler.addFilter(WorkerLogFilter())

        return logging.getLogger("agent_memory")

    def validate(self) -> list[str]:
        """
        Validate configuration and return list of missing/invalid settings.

        Returns:
            List of validation error messages, empty if all valid.
        """
        errors = []

        if self.embeddings.provider == "openai" and not self.openai.api_key:
            errors.append("OPENAI_API_KEY is required when using the openai embedding provider")
        elif self.embeddings.provider not in ("openai", "local"):
            errors.append(f"Unknown embedding provider: {self.embeddings.provider}")

        if not self.storage.database_path:
            errors.append("storage.database_path (or AGENT_MEMORY_DATABASE) must not be empty")

        if self.app.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"Invalid logging.level: {self.app.log_level}")

        return errors


# Global configuration instance
config = Config()
