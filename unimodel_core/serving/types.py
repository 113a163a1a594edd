"""
Core data model for the UniModel serving core.

Defines:
- ModelState and its transition table (model lifecycle)
- ModelDescriptor (identity + lifecycle state + state version)
- Device / ResourceHandle (capacity bookkeeping)
- InferenceRequest / Batch / ExecutionResult (the request path)

Lifecycle:
    Registered ──► Loading ──► Ready ◄──► Degraded
        │             │          │           │
        └─────────────┴──────────┴───────────┴──► Unloading ──► Unloaded
                      │                                 │
                      └──────────────► Failed ◄─────────┘
"""

from __future__ import annotations

import asyncio
import itertools
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Union

from unimodel_core.serving.errors import ServingError, ValidationError


# =============================================================================
# ENUMS
# =============================================================================

class ModelState(Enum):
    """Model lifecycle states."""
    REGISTERED = "registered"
    LOADING = "loading"
    READY = "ready"
    DEGRADED = "degraded"
    UNLOADING = "unloading"
    UNLOADED = "unloaded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ModelState.UNLOADED, ModelState.FAILED)


# Reload from Unloaded is allowed so evicted models can come back.
TRANSITIONS: Dict[ModelState, FrozenSet[ModelState]] = {
    ModelState.REGISTERED: frozenset({ModelState.LOADING, ModelState.UNLOADING}),
    ModelState.LOADING: frozenset({ModelState.READY, ModelState.FAILED, ModelState.UNLOADING}),
    ModelState.READY: frozenset({ModelState.DEGRADED, ModelState.UNLOADING}),
    ModelState.DEGRADED: frozenset({ModelState.READY, ModelState.UNLOADING}),
    ModelState.UNLOADING: frozenset({ModelState.UNLOADED, ModelState.FAILED}),
    ModelState.UNLOADED: frozenset({ModelState.LOADING}),
    ModelState.FAILED: frozenset(),
}


def can_transition(current: ModelState, target: ModelState) -> bool:
    """Check a lifecycle move against the transition table."""
    return target in TRANSITIONS[current]


class DeviceKind(Enum):
    """Accelerator kinds a model can be placed on."""
    GPU = "gpu"
    CPU = "cpu"
    NPU = "npu"

    @classmethod
    def parse(cls, value: Union[str, "DeviceKind"]) -> "DeviceKind":
        if isinstance(value, DeviceKind):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError(f"Unknown device kind: {value}")


class RequestPriority(Enum):
    """Request priority levels. Lower value is served first."""
    CRITICAL = 1  # Safety-related, immediate
    HIGH = 2  # User-facing, low latency
    MEDIUM = 3  # Normal requests
    LOW = 4  # Background tasks
    BATCH = 5  # Batch processing, can wait

    @classmethod
    def parse(cls, value: Union[str, int, "RequestPriority", None]) -> "RequestPriority":
        if value is None:
            return cls.MEDIUM
        if isinstance(value, RequestPriority):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                raise ValidationError(f"Priority out of range: {value}")
        if isinstance(value, str):
            try:
                return cls[value.upper()]
            except KeyError:
                raise ValidationError(f"Unknown priority: {value}")
        raise ValidationError(f"Invalid priority: {value!r}")


class RequestState(Enum):
    """Request lifecycle states."""
    QUEUED = "queued"
    BATCHED = "batched"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_final(self) -> bool:
        return self in (RequestState.COMPLETED, RequestState.FAILED, RequestState.CANCELLED)


class HealthStatus(Enum):
    """Backend health status."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


# =============================================================================
# MODEL DESCRIPTOR
# =============================================================================

def _short_id() -> str:
    return str(uuid.uuid4())[:12]


@dataclass(frozen=True)
class ModelDescriptor:
    """
    Identity and lifecycle state of a registered model.

    Instances are immutable snapshots. The registry replaces the stored
    snapshot on every transition and bumps `version`, so a reader holding a
    snapshot can detect that it is stale.
    """
    name: str
    backend_kind: str
    artifact_path: str = ""
    options: Dict[str, Any] = field(default_factory=dict)
    device_kind: DeviceKind = DeviceKind.GPU
    resource_fraction: float = 0.25
    priority_class: int = 0  # Higher is more valuable when evicting
    state: ModelState = ModelState.REGISTERED
    version: int = 0
    model_id: str = field(default_factory=_short_id)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    last_error: Optional[str] = None

    def option(self, key: str, default: Any = None) -> Any:
        return self.options.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.model_id,
            "name": self.name,
            "backend": self.backend_kind,
            "artifact_path": self.artifact_path,
            "options": dict(self.options),
            "device_kind": self.device_kind.value,
            "resource_fraction": self.resource_fraction,
            "priority_class": self.priority_class,
            "state": self.state.value,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_error": self.last_error,
        }


@dataclass
class PerformanceStats:
    """Per-model request statistics with a smoothed latency."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    avg_latency_ms: float = 0.0
    last_updated: datetime = field(default_factory=datetime.now)

    SMOOTHING = 0.1

    def record(self, latency_ms: float, success: bool) -> None:
        self.total_requests += 1
        if success:
            self.successful_requests += 1
        else:
            self.failed_requests += 1
        if self.total_requests == 1:
            self.avg_latency_ms = latency_ms
        else:
            self.avg_latency_ms = (
                self.avg_latency_ms * (1 - self.SMOOTHING) + latency_ms * self.SMOOTHING
            )
        self.last_updated = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "avg_latency_ms": round(self.avg_latency_ms, 2),
            "last_updated": self.last_updated.isoformat(),
        }


# =============================================================================
# RESOURCES
# =============================================================================

@dataclass
class ResourceHandle:
    """One allocation of a device fraction to an owning model."""
    device_id: str
    device_kind: DeviceKind
    fraction: float
    owner: Optional[str]
    handle_id: str = field(default_factory=_short_id)
    allocated_at: float = field(default_factory=time.time)
    released: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handle_id": self.handle_id,
            "device_id": self.device_id,
            "device_kind": self.device_kind.value,
            "fraction": round(self.fraction, 4),
            "owner": self.owner,
            "released": self.released,
        }


@dataclass
class Device:
    """A capacity-constrained device. Capacity is normalized to 1.0."""
    device_id: str
    kind: DeviceKind
    capacity: float = 1.0
    live: bool = True
    allocations: Dict[str, ResourceHandle] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def allocated(self) -> float:
        return sum(h.fraction for h in self.allocations.values())

    @property
    def free(self) -> float:
        return self.capacity - self.allocated

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "kind": self.kind.value,
            "capacity": self.capacity,
            "allocated": round(self.allocated, 4),
            "utilization": round(self.allocated / self.capacity, 4) if self.capacity else 0.0,
            "live": self.live,
            "owners": sorted({h.owner for h in self.allocations.values() if h.owner}),
        }


# =============================================================================
# REQUEST PATH
# =============================================================================

_arrival_counter = itertools.count()


@dataclass
class InferenceRequest:
    """
    A single prediction request.

    `deadline` is an absolute time.monotonic() value. `sequence` breaks
    priority ties so that equal-priority requests stay FIFO.
    """
    model_name: str
    payload: Any
    priority: RequestPriority = RequestPriority.MEDIUM
    deadline: Optional[float] = None
    id: str = field(default_factory=_short_id)
    arrival: float = field(default_factory=time.monotonic)
    created_at: datetime = field(default_factory=datetime.now)
    sequence: int = field(default_factory=lambda: next(_arrival_counter))
    state: RequestState = RequestState.QUEUED
    future: Optional[asyncio.Future] = field(default=None, repr=False, compare=False)

    @property
    def sort_key(self):
        return (self.priority.value, self.sequence)

    @property
    def cancelled(self) -> bool:
        return self.state == RequestState.CANCELLED

    def expired(self, now: Optional[float] = None) -> bool:
        if self.deadline is None:
            return False
        return (now if now is not None else time.monotonic()) >= self.deadline

    def waited_ms(self, now: Optional[float] = None) -> float:
        return ((now if now is not None else time.monotonic()) - self.arrival) * 1000

    def resolve(self, result: "ExecutionResult") -> bool:
        """Hand a result to the caller. False if nobody is waiting for it any more."""
        if self.future is None or self.future.done():
            return False
        if not self.cancelled:
            self.state = RequestState.COMPLETED if result.ok else RequestState.FAILED
        self.future.set_result(result)
        return True

    def fail(self, error: ServingError, **extra: Any) -> bool:
        if error.correlation_id != self.id:
            error = error.with_correlation(self.id)
        return self.resolve(
            ExecutionResult(request_id=self.id, model_name=self.model_name, error=error, **extra)
        )


@dataclass
class Batch:
    """
    An ordered group of requests for one model.

    `inputs` holds the (possibly padded) payloads in request order;
    `original_lengths[i]` is None when item i was not padded.
    """
    model_name: str
    requests: List[InferenceRequest]
    inputs: List[Any] = field(default_factory=list)
    original_lengths: List[Optional[int]] = field(default_factory=list)
    original_types: List[Optional[type]] = field(default_factory=list)
    formation_started_at: float = field(default_factory=time.monotonic)
    formed_at: float = field(default_factory=time.monotonic)
    batch_id: str = field(default_factory=_short_id)
    requeue_count: int = 0

    @property
    def size(self) -> int:
        return len(self.requests)

    @property
    def padded(self) -> bool:
        return any(length is not None for length in self.original_lengths)

    @property
    def formation_wait_ms(self) -> float:
        return (self.formed_at - self.formation_started_at) * 1000

    def request_ids(self) -> List[str]:
        return [r.id for r in self.requests]


@dataclass
class ExecutionResult:
    """Per-request outcome of a batch execution."""
    request_id: str
    model_name: str
    output: Any = None
    error: Optional[ServingError] = None
    batch_id: Optional[str] = None
    batch_size: int = 0
    latency_ms: float = 0.0
    queue_wait_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.request_id,
            "model": self.model_name,
            "output": self.output if self.ok else None,
            "error": self.error.to_dict() if self.error else None,
            "batch_id": self.batch_id,
            "batch_size": self.batch_size,
            "latency_ms": round(self.latency_ms, 2),
            "queue_wait_ms": round(self.queue_wait_ms, 2),
        }


class MultimodalInput(dict):
    """Payload made of named parts (text, binary, JSON or nested multimodal)."""
