"""
Configuration management and loading.

Handles pipeline timing, sharing and storage settings.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml

from regrets_reporter.storage.db import DEFAULT_DB_PATH


@dataclass(frozen=True)
class PipelineConfig:
    """Timing and memory bounds for navigation batch preprocessing."""
    quiescence_seconds: float = 5.0
    grace_period_seconds: float = 30.0
    drain_interval_seconds: float = 1.0
    max_queue_size: int = 10000
    retained_batch_limit: int = 500

    def __post_init__(self):
        """Validate timing and size bounds."""
        if self.quiescence_seconds <= 0:
            raise ValueError("quiescence_seconds must be > 0")
        if self.grace_period_seconds < 0:
            raise ValueError("grace_period_seconds cannot be negative")
        if self.drain_interval_seconds <= 0:
            raise ValueError("drain_interval_seconds must be > 0")
        if self.max_queue_size <= 0:
            raise ValueError("max_queue_size must be > 0")
        if self.retained_batch_limit <= 0:
            raise ValueError("retained_batch_limit must be > 0")


@dataclass(frozen=True)
class ReportConfig:
    """Bounds on regret report size."""
    max_parent_chain_length: int = 5

    def __post_init__(self):
        if self.max_parent_chain_length < 0:
            raise ValueError("max_parent_chain_length cannot be negative")


@dataclass(frozen=True)
class UsageStatisticsConfig:
    """Periodic usage statistics submission."""
    submission_interval_seconds: float = 86400.0

    def __post_init__(self):
        if self.submission_interval_seconds <= 0:
            raise ValueError("submission_interval_seconds must be > 0")


@dataclass(frozen=True)
class SharingConfig:
    """Outbound sink settings."""
    endpoint_url: Optional[str] = None
    timeout_seconds: float = 10.0
    retry_interval_seconds: float = 300.0

    def __post_init__(self):
        if self.endpoint_url is not None and not self.endpoint_url.startswith(("http://", "https://")):
            raise ValueError("endpoint_url must be an http(s) URL")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.retry_interval_seconds <= 0:
            raise ValueError("retry_interval_seconds must be > 0")


@dataclass(frozen=True)
class StorageConfig:
    """Location of the local database."""
    db_path: str = DEFAULT_DB_PATH

    def __post_init__(self):
        if not self.db_path or not self.db_path.strip():
            raise ValueError("db_path cannot be empty")


@dataclass(frozen=True)
class ReporterConfig:
    """Complete reporter configuration."""
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    report: ReportConfig = field(default_factory=ReportConfig)
    usage_statistics: UsageStatisticsConfig = field(default_factory=UsageStatisticsConfig)
    sharing: SharingConfig = field(default_factory=SharingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


def default_config() -> ReporterConfig:
    """Configuration used when no file is given."""
    return ReporterConfig()


def _number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    return float(value)


def _integer(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    return value


def _optional_string(value: Any, path: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"'{path}' must be a string")
    return value


def _string(value: Any, path: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"'{path}' must be a string")
    return value


# section name -> (dataclass, {key: coercion})
_SECTIONS: Dict[str, tuple] = {
    "pipeline": (PipelineConfig, {
        "quiescence_seconds": _number,
        "grace_period_seconds": _number,
        "drain_interval_seconds": _number,
        "max_queue_size": _integer,
        "retained_batch_limit": _integer,
    }),
    "report": (ReportConfig, {
        "max_parent_chain_length": _integer,
    }),
    "usage_statistics": (UsageStatisticsConfig, {
        "submission_interval_seconds": _number,
    }),
    "sharing": (SharingConfig, {
        "endpoint_url": _optional_string,
        "timeout_seconds": _number,
        "retry_interval_seconds": _number,
    }),
    "storage": (StorageConfig, {
        "db_path": _string,
    }),
}


def load_config(path: str) -> ReporterConfig:
    """Load and validate reporter configuration from a YAML file.

    Every section is optional and falls back to its defaults, but unknown
    sections and keys are rejected so a typo never silently reverts a
    setting to its default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated ReporterConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return default_config()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {
        name: _parse_section(name, raw_config.get(name) or {})
        for name in _SECTIONS
    }
    return ReporterConfig(**sections)


def _parse_section(name: str, data: Any):
    """Parse and validate one configuration section.

    Args:
        name: Section name, used in error messages
        data: Raw section mapping

    Returns:
        The section's config dataclass

    Raises:
        ValueError: If the section is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    section_class, coercions = _SECTIONS[name]
    unknown_keys = set(data.keys()) - set(coercions)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")

    values = {}
    for key, value in data.items():
        coerce: Callable[[Any, str], Any] = coercions[key]
        values[key] = coerce(value, f"{name}.{key}")
    return section_class(**values)
