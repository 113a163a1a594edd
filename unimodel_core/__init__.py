"""
UniModel Core - Admission, batching and resource allocation for inference serving

Provides:
- Model registry with versioned lifecycle transitions
- Fractional accelerator allocation with LRU-plus-priority eviction
- Per-model dynamic batching with priorities, deadlines and padding
- Execution with retries, per-item errors and circuit breaking
- Fail-fast admission with backpressure
- Idempotent control-command and config-feed handling
"""

__version__ = "0.3.0"

# Serving core (imported before config, which depends on serving.errors)
from unimodel_core.serving import (
    InferenceEngine,
    init_engine,
    get_engine,
    shutdown_engine,
    ModelDescriptor,
    ModelState,
    DeviceKind,
    RequestPriority,
    RequestHandle,
    ServingError,
    ItemError,
    BackendPlugin,
    register_backend,
)

# Configuration
from unimodel_core.config import (
    UniModelConfig,
    load_config,
    get_config,
)

# Logging
from unimodel_core.utils import setup_logging, LoggingConfig

__all__ = [
    "__version__",
    # Engine
    "InferenceEngine",
    "init_engine",
    "get_engine",
    "shutdown_engine",
    # Types
    "ModelDescriptor",
    "ModelState",
    "DeviceKind",
    "RequestPriority",
    "RequestHandle",
    "ServingError",
    "ItemError",
    "BackendPlugin",
    "register_backend",
    # Config
    "UniModelConfig",
    "load_config",
    "get_config",
    # Logging
    "setup_logging",
    "LoggingConfig",
]
