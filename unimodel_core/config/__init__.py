"""
Configuration module for the UniModel serving core.

Provides dataclass-based configuration with:
- YAML file loading
- Environment variable interpolation
- Type coercion and validation
- Sensible defaults
"""

from unimodel_core.config.base_config import (
    BaseConfig,
    BatchingConfig,
    LifecycleConfig,
    ExecutionConfig,
    ResourceConfig,
    AdmissionConfig,
    UniModelConfig,
    load_config,
    get_config,
)

__all__ = [
    "BaseConfig",
    "BatchingConfig",
    "LifecycleConfig",
    "ExecutionConfig",
    "ResourceConfig",
    "AdmissionConfig",
    "UniModelConfig",
    "load_config",
    "get_config",
]
