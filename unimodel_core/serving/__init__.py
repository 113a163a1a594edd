"""
Model Serving Module - UniModel Core
====================================

Admission, dynamic batching and resource allocation for multi-backend
inference.

Components:
- ModelRegistry: Versioned model lifecycle (compare-and-swap transitions)
- ResourcePoolManager: Fractional device allocation with eviction
- BatchScheduler: Per-model priority queues and batch formation
- ExecutionCoordinator: Per-model execution with retries and circuit breaking
- AdmissionRouter: Fail-fast admission and request handles
- InferenceEngine: Wiring plus process-wide init/shutdown
"""

from unimodel_core.serving.errors import (
    ServingError,
    ModelNotFound,
    ModelNotReady,
    DuplicateModel,
    ValidationError,
    Backpressure,
    ResourceExhausted,
    ResourceUnavailable,
    BatchTimeout,
    PluginExecutionError,
    PluginCallFailed,
    InvalidStateTransition,
    ConfigurationError,
    ERROR_CODES,
)

from unimodel_core.serving.types import (
    # Enums
    ModelState,
    DeviceKind,
    RequestPriority,
    RequestState,
    HealthStatus,
    TRANSITIONS,
    can_transition,
    # Data structures
    ModelDescriptor,
    PerformanceStats,
    Device,
    ResourceHandle,
    InferenceRequest,
    Batch,
    ExecutionResult,
    MultimodalInput,
)

from unimodel_core.serving.backends import (
    BackendPlugin,
    ItemError,
    EchoBackend,
    CallableBackend,
    TorchScriptBackend,
    BACKENDS,
    register_backend,
    create_backend,
)

from unimodel_core.serving.padding import pad_batch, unpad
from unimodel_core.serving.registry import ModelRegistry
from unimodel_core.serving.resource_pool import (
    ResourcePoolManager,
    discover_devices,
    devices_from_config,
)
from unimodel_core.serving.scheduler import BatchPolicy, BatchScheduler
from unimodel_core.serving.telemetry import ServingMetrics
from unimodel_core.serving.coordinator import ExecutionCoordinator, ExecutionPolicy
from unimodel_core.serving.router import (
    AdmissionLimits,
    AdmissionRouter,
    RequestHandle,
    validate_payload,
)
from unimodel_core.serving.engine import (
    InferenceEngine,
    init_engine,
    get_engine,
    shutdown_engine,
)
from unimodel_core.serving.control import (
    CommandKind,
    CommandOutcome,
    ControlCommand,
    ConfigChange,
    CommandChannel,
    ConfigFeed,
    InMemoryCommandChannel,
    InMemoryConfigFeed,
    ControlPlane,
)

__all__ = [
    # Errors
    "ServingError",
    "ModelNotFound",
    "ModelNotReady",
    "DuplicateModel",
    "ValidationError",
    "Backpressure",
    "ResourceExhausted",
    "ResourceUnavailable",
    "BatchTimeout",
    "PluginExecutionError",
    "PluginCallFailed",
    "InvalidStateTransition",
    "ConfigurationError",
    "ERROR_CODES",
    # Types
    "ModelState",
    "DeviceKind",
    "RequestPriority",
    "RequestState",
    "HealthStatus",
    "TRANSITIONS",
    "can_transition",
    "ModelDescriptor",
    "PerformanceStats",
    "Device",
    "ResourceHandle",
    "InferenceRequest",
    "Batch",
    "ExecutionResult",
    "MultimodalInput",
    # Backends
    "BackendPlugin",
    "ItemError",
    "EchoBackend",
    "CallableBackend",
    "TorchScriptBackend",
    "BACKENDS",
    "register_backend",
    "create_backend",
    # Components
    "pad_batch",
    "unpad",
    "ModelRegistry",
    "ResourcePoolManager",
    "discover_devices",
    "devices_from_config",
    "BatchPolicy",
    "BatchScheduler",
    "ServingMetrics",
    "ExecutionCoordinator",
    "ExecutionPolicy",
    "AdmissionLimits",
    "AdmissionRouter",
    "RequestHandle",
    "validate_payload",
    # Engine
    "InferenceEngine",
    "init_engine",
    "get_engine",
    "shutdown_engine",
    # Control
    "CommandKind",
    "CommandOutcome",
    "ControlCommand",
    "ConfigChange",
    "CommandChannel",
    "ConfigFeed",
    "InMemoryCommandChannel",
    "InMemoryConfigFeed",
    "ControlPlane",
]
