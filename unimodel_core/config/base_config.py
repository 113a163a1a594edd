"""
Base configuration system for the UniModel serving core.

Features:
- Dataclass-based configuration with type hints
- YAML file loading with environment variable interpolation
- Environment-only configuration with a prefix
- Validation and defaults
"""

from __future__ import annotations

import os
import re
import asyncio
from dataclasses import dataclass, field, asdict, fields, is_dataclass
from datetime import datetime
from pathlib import Path
from typing import (
    Any,
    Dict,
    List,
    Optional,
    TypeVar,
    Type,
    Union,
    get_type_hints,
)
import logging

import yaml

from unimodel_core.serving.errors import ConfigurationError
from unimodel_core.utils.logging_config import LoggingConfig

logger = logging.getLogger(__name__)

T = TypeVar("T", bound="BaseConfig")

ENV_PREFIX = "UNIMODEL_"

# Singleton config instance
_config_instance: Optional["UniModelConfig"] = None
_config_lock = asyncio.Lock()


def _interpolate_env_vars(value: Any) -> Any:
    """
    Recursively interpolate environment variables in config values.

    Supports formats:
    - ${VAR_NAME} - Required, raises if not set
    - ${VAR_NAME:-default} - Optional with default
    - ${VAR_NAME:?error message} - Required with custom error
    """
    if isinstance(value, str):
        # Pattern: ${VAR_NAME}, ${VAR_NAME:-default}, ${VAR_NAME:?error}
        pattern = r"\$\{([A-Z_][A-Z0-9_]*)(?:(:-)([^}]*))?(?:(:\?)([^}]*))?\}"

        def replace_var(match: re.Match) -> str:
            var_name = match.group(1)
            has_default = match.group(2) is not None
            default_value = match.group(3) or ""
            has_error = match.group(4) is not None
            error_msg = match.group(5) or f"Required environment variable {var_name} is not set"

            env_value = os.environ.get(var_name)

            if env_value is not None:
                return env_value
            elif has_default:
                return default_value
            elif has_error:
                raise ConfigurationError(error_msg)
            else:
                # Check if the entire string is just the variable
                if match.group(0) == value:
                    raise ConfigurationError(f"Environment variable {var_name} is not set")
                return match.group(0)  # Keep original if part of larger string

        result = re.sub(pattern, replace_var, value)

        # Handle ~ for home directory
        if result.startswith("~"):
            result = str(Path(result).expanduser())

        return result

    elif isinstance(value, dict):
        return {k: _interpolate_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [_interpolate_env_vars(item) for item in value]

    return value


def _coerce_type(value: Any, target_type: Any) -> Any:
    """Coerce a value to the target type."""
    if value is None:
        return None

    origin = getattr(target_type, "__origin__", None)

    # Handle Optional types
    if origin is Union:
        args = target_type.__args__
        if type(None) in args:
            non_none_types = [t for t in args if t is not type(None)]
            if len(non_none_types) == 1:
                return _coerce_type(value, non_none_types[0])

    # Handle Path
    if target_type is Path:
        return Path(value).expanduser() if value else None

    # Nested config sections
    if isinstance(target_type, type) and is_dataclass(target_type):
        if isinstance(value, target_type):
            return value
        if isinstance(value, dict) and issubclass(target_type, BaseConfig):
            return target_type.from_dict(value)
        return value

    # Handle List
    if origin is list:
        item_type = target_type.__args__[0] if getattr(target_type, "__args__", None) else str
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",") if part.strip()]
        if isinstance(value, list):
            return [_coerce_type(item, item_type) for item in value]
        return [_coerce_type(value, item_type)]

    if origin is dict:
        return dict(value)

    # Handle bool (special case because bool("false") is True)
    if target_type is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on")
        return bool(value)

    # Handle numeric types
    try:
        if target_type is int:
            return int(float(value)) if value != "" else 0
        if target_type is float:
            return float(value) if value != "" else 0.0
    except (TypeError, ValueError):
        raise ConfigurationError(f"Cannot convert {value!r} to {target_type.__name__}")

    if target_type is str:
        return str(value)

    return value


@dataclass
class BaseConfig:
    """
    Base configuration class with YAML loading and env var interpolation.
    """

    @classmethod
    def _field_types(cls) -> Dict[str, Any]:
        return get_type_hints(cls)

    @classmethod
    def from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
        """Create config from dictionary with env var interpolation."""
        interpolated = _interpolate_env_vars(data or {})

        # Get field types for coercion
        field_types = cls._field_types()
        names = {f.name for f in fields(cls)}

        # Only include fields that exist in the dataclass
        filtered = {}
        for key, value in interpolated.items():
            if key in names:
                filtered[key] = _coerce_type(value, field_types[key])
            else:
                logger.debug(f"Ignoring unknown config key for {cls.__name__}: {key}")

        return cls(**filtered)

    @classmethod
    def from_yaml(cls: Type[T], path: Union[str, Path]) -> T:
        """Load config from YAML file with env var interpolation."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def from_env(cls: Type[T], prefix: str = ENV_PREFIX) -> T:
        """Create config entirely from environment variables."""
        data = {}

        for field_info in fields(cls):
            env_key = f"{prefix}{field_info.name}".upper()
            env_value = os.environ.get(env_key)

            if env_value is not None:
                data[field_info.name] = env_value

        return cls.from_dict(data) if data else cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        result = {}
        for key, value in asdict(self).items():
            if isinstance(value, Path):
                result[key] = str(value)
            elif isinstance(value, datetime):
                result[key] = value.isoformat()
            else:
                result[key] = value
        return result

    def merge(self: T, other: Dict[str, Any]) -> T:
        """Create new config with overrides merged in."""
        current = self.to_dict()
        interpolated = _interpolate_env_vars(other)
        for key, value in interpolated.items():
            if isinstance(value, dict) and isinstance(current.get(key), dict):
                current[key] = {**current[key], **value}
            else:
                current[key] = value
        return self.__class__.from_dict(current)


@dataclass
class BatchingConfig(BaseConfig):
    """Default dynamic-batching policy. Models may override per key in their options."""

    max_batch_size: int = field(
        default_factory=lambda: int(os.getenv("UNIMODEL_MAX_BATCH_SIZE", "32"))
    )
    max_wait_ms: float = field(
        default_factory=lambda: float(os.getenv("UNIMODEL_MAX_WAIT_MS", "50"))
    )
    backlog_limit: int = field(
        default_factory=lambda: int(os.getenv("UNIMODEL_BACKLOG_LIMIT", "1024"))
    )
    # Flush this long before the oldest request's deadline
    deadline_margin_ms: float = 5.0
    dynamic_padding: bool = True
    pad_value: float = 0.0


@dataclass
class LifecycleConfig(BaseConfig):
    """Configuration for model lifecycle and health tracking."""

    max_models: int = field(
        default_factory=lambda: int(os.getenv("UNIMODEL_MAX_MODELS", "10"))
    )
    degrade_after_failures: int = 3
    recover_after_successes: int = 1
    load_timeout_seconds: float = 300.0
    unload_timeout_seconds: float = 60.0
    health_check_interval_seconds: float = field(
        default_factory=lambda: float(os.getenv("UNIMODEL_HEALTH_INTERVAL", "30"))
    )


@dataclass
class ExecutionConfig(BaseConfig):
    """Configuration for batch execution, retries and circuit breaking."""

    predict_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("UNIMODEL_PREDICT_TIMEOUT", "30"))
    )
    max_retries: int = 3
    retry_base_delay_ms: float = 50.0
    retry_backoff: float = 2.0
    retry_max_delay_ms: float = 2000.0
    circuit_failure_threshold: int = 3
    requeue_delay_ms: float = 50.0


@dataclass
class ResourceConfig(BaseConfig):
    """Configuration for the device pool."""

    devices: List[Dict[str, Any]] = field(
        default_factory=lambda: [
            {"id": "gpu:0", "kind": "gpu", "capacity": 1.0},
            {"id": "cpu:0", "kind": "cpu", "capacity": 1.0},
        ]
    )
    auto_discover: bool = field(
        default_factory=lambda: os.getenv("UNIMODEL_AUTO_DISCOVER", "false").lower() == "true"
    )
    eviction_enabled: bool = True
    default_device_kind: str = "gpu"
    default_fraction: float = 0.25


@dataclass
class AdmissionConfig(BaseConfig):
    """Configuration for request admission and payload validation."""

    max_text_bytes: int = 1_000_000
    max_binary_bytes: int = 100_000_000
    default_priority: str = "medium"
    default_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("UNIMODEL_REQUEST_TIMEOUT", "30"))
    )


_SECTIONS = ("batching", "lifecycle", "execution", "resources", "admission", "logging")


@dataclass
class UniModelConfig(BaseConfig):
    """
    Master configuration combining all serving-core components.
    """

    batching: BatchingConfig = field(default_factory=BatchingConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    resources: ResourceConfig = field(default_factory=ResourceConfig)
    admission: AdmissionConfig = field(default_factory=AdmissionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UniModelConfig":
        data = data or {}
        logging_data = _interpolate_env_vars(data.get("logging", {}))
        return cls(
            batching=BatchingConfig.from_dict(data.get("batching", {})),
            lifecycle=LifecycleConfig.from_dict(data.get("lifecycle", {})),
            execution=ExecutionConfig.from_dict(data.get("execution", {})),
            resources=ResourceConfig.from_dict(data.get("resources", {})),
            admission=AdmissionConfig.from_dict(data.get("admission", {})),
            logging=LoggingConfig(**{
                k: v for k, v in logging_data.items()
                if k in {f.name for f in fields(LoggingConfig)}
            }),
        )

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX) -> "UniModelConfig":
        """Build each section from `<PREFIX><SECTION>_<FIELD>` variables."""
        return cls(
            batching=BatchingConfig.from_env(f"{prefix}BATCHING_"),
            lifecycle=LifecycleConfig.from_env(f"{prefix}LIFECYCLE_"),
            execution=ExecutionConfig.from_env(f"{prefix}EXECUTION_"),
            resources=ResourceConfig.from_env(f"{prefix}RESOURCES_"),
            admission=AdmissionConfig.from_env(f"{prefix}ADMISSION_"),
        )

    @classmethod
    def from_yaml_dir(cls, config_dir: Union[str, Path]) -> "UniModelConfig":
        """Load config from a directory holding one YAML file per section."""
        config_dir = Path(config_dir)
        data: Dict[str, Any] = {}
        for section in _SECTIONS:
            section_file = config_dir / f"{section}.yaml"
            if section_file.exists():
                with open(section_file, "r") as f:
                    data[section] = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    def validate(self) -> "UniModelConfig":
        """Reject configurations the engine cannot run with."""
        if self.batching.max_batch_size <= 0:
            raise ConfigurationError("Max batch size must be greater than 0")
        if self.batching.max_wait_ms <= 0:
            raise ConfigurationError("Max wait time must be greater than 0")
        if self.batching.backlog_limit <= 0:
            raise ConfigurationError("Backlog limit must be greater than 0")
        if self.lifecycle.max_models <= 0:
            raise ConfigurationError("Max models must be greater than 0")
        if self.lifecycle.degrade_after_failures <= 0 or self.lifecycle.recover_after_successes <= 0:
            raise ConfigurationError("Health thresholds must be greater than 0")
        if self.execution.max_retries < 0:
            raise ConfigurationError("Max retries cannot be negative")
        if self.execution.predict_timeout_seconds <= 0:
            raise ConfigurationError("Predict timeout must be greater than 0")
        if not self.resources.devices and not self.resources.auto_discover:
            raise ConfigurationError("At least one device must be configured")

        seen = set()
        for entry in self.resources.devices:
            device_id = entry.get("id")
            if not device_id:
                raise ConfigurationError(f"Device entry without id: {entry}")
            if device_id in seen:
                raise ConfigurationError(f"Duplicate device id: {device_id}")
            seen.add(device_id)
            capacity = float(entry.get("capacity", 1.0))
            if capacity <= 0.0 or capacity > 1.0:
                raise ConfigurationError(
                    f"Device {device_id} capacity must be between 0 and 1"
                )
        if not 0.0 < self.resources.default_fraction <= 1.0:
            raise ConfigurationError("Default resource fraction must be between 0 and 1")
        return self


async def load_config(
    path: Optional[Union[str, Path]] = None,
    reload: bool = False,
) -> UniModelConfig:
    """
    Load or get cached configuration.

    Args:
        path: Path to config file or directory. If None, uses defaults.
        reload: Force reload even if cached.

    Returns:
        UniModelConfig instance.
    """
    global _config_instance

    if _config_instance is not None and not reload:
        return _config_instance

    async with _config_lock:
        if _config_instance is not None and not reload:
            return _config_instance

        if path is None:
            # Use defaults with env var overrides
            config = UniModelConfig()
        elif Path(path).is_dir():
            config = UniModelConfig.from_yaml_dir(path)
        else:
            config = UniModelConfig.from_yaml(path)

        _config_instance = config.validate()
        logger.info(
            f"Configuration loaded: {len(config.resources.devices)} devices, "
            f"max_batch_size={config.batching.max_batch_size}"
        )
        return _config_instance


def get_config() -> Optional[UniModelConfig]:
    """Get cached config synchronously. Returns None if not loaded."""
    return _config_instance
