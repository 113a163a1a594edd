"""
Model Registry for the UniModel serving core.

Holds one immutable ModelDescriptor snapshot per registered model and moves
models through their lifecycle:

    register ─► request_load ─► confirm_ready ─► report_health (Ready ⇄ Degraded)
                     │                                │
                     └──────► mark_failed            request_unload ─► confirm_unloaded

Every mutation is a compare-and-swap on the descriptor's version: a new
snapshot is built from the one that was read and installed only if nobody
bumped the version in between. Only the swap itself is guarded, so reads
are plain dict lookups and never wait. Concurrent request_load() calls on
one model therefore produce exactly one Loading transition.

The registry also keeps the per-model bookkeeping the rest of the core
needs: health counters, in-flight request counts, last access times for
eviction, and performance statistics.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from unimodel_core.serving.errors import (
    DuplicateModel,
    InvalidStateTransition,
    ModelNotFound,
    ValidationError,
)
from unimodel_core.serving.types import (
    HealthStatus,
    ModelDescriptor,
    ModelState,
    PerformanceStats,
    can_transition,
)

logger = logging.getLogger(__name__)

TransitionListener = Callable[[ModelDescriptor, ModelDescriptor], None]


@dataclass
class _HealthCounters:
    consecutive_failures: int = 0
    consecutive_successes: int = 0

    def reset(self) -> None:
        self.consecutive_failures = 0
        self.consecutive_successes = 0


@dataclass
class _Usage:
    in_flight: int = 0
    last_used: float = 0.0


class ModelRegistry:
    """
    Versioned store of model descriptors.

    Models can be addressed by name or by generated id everywhere.
    """

    def __init__(
        self,
        max_models: int = 10,
        degrade_after_failures: int = 3,
        recover_after_successes: int = 1,
    ):
        self.max_models = max_models
        self.degrade_after_failures = degrade_after_failures
        self.recover_after_successes = recover_after_successes

        self._models: Dict[str, ModelDescriptor] = {}
        self._ids_by_name: Dict[str, str] = {}
        self._swap_lock = threading.Lock()

        self._health: Dict[str, _HealthCounters] = {}
        self._usage: Dict[str, _Usage] = {}
        self._stats: Dict[str, PerformanceStats] = {}
        self._listeners: List[TransitionListener] = []

    # =========================================================================
    # Lookup
    # =========================================================================

    def get(self, key: str) -> Optional[ModelDescriptor]:
        """Current snapshot by id or name, or None."""
        descriptor = self._models.get(key)
        if descriptor is not None:
            return descriptor
        model_id = self._ids_by_name.get(key)
        return self._models.get(model_id) if model_id else None

    def resolve(self, key: str) -> ModelDescriptor:
        descriptor = self.get(key)
        if descriptor is None:
            raise ModelNotFound(f"Model not found: {key}", model=key)
        return descriptor

    def get_status(self, key: str) -> ModelState:
        return self.resolve(key).state

    def list_models(self, state: Optional[ModelState] = None) -> List[ModelDescriptor]:
        models = sorted(self._models.values(), key=lambda d: d.created_at)
        if state is not None:
            models = [d for d in models if d.state == state]
        return models

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._models)

    # =========================================================================
    # Registration
    # =========================================================================

    def register(self, descriptor: ModelDescriptor) -> str:
        """Add a model in the Registered state and return its id."""
        if not descriptor.name or not descriptor.name.strip():
            raise ValidationError("Model name cannot be empty")
        if not 0.0 < descriptor.resource_fraction <= 1.0:
            raise ValidationError(
                f"Resource fraction must be in (0, 1]: {descriptor.resource_fraction}",
                model=descriptor.name,
            )

        now = datetime.now()
        stored = replace(
            descriptor,
            state=ModelState.REGISTERED,
            version=1,
            created_at=now,
            updated_at=now,
            last_error=None,
        )

        with self._swap_lock:
            if descriptor.name in self._ids_by_name:
                raise DuplicateModel(
                    f"Model already registered: {descriptor.name}", model=descriptor.name
                )
            if len(self._models) >= self.max_models:
                raise ValidationError(
                    f"Maximum number of models ({self.max_models}) reached",
                    model=descriptor.name,
                )
            self._models[stored.model_id] = stored
            self._ids_by_name[stored.name] = stored.model_id

        self._health[stored.model_id] = _HealthCounters()
        self._usage[stored.model_id] = _Usage(last_used=time.monotonic())
        self._stats[stored.model_id] = PerformanceStats()

        logger.info(
            f"[Registry] Registered {stored.name} ({stored.model_id}) "
            f"backend={stored.backend_kind}"
        )
        return stored.model_id

    def deregister(self, key: str) -> ModelDescriptor:
        """Remove a model. Only Unloaded and Failed models can be removed."""
        descriptor = self.resolve(key)
        with self._swap_lock:
            current = self._models.get(descriptor.model_id)
            if current is None:
                raise ModelNotFound(f"Model not found: {key}", model=key)
            if not current.state.is_terminal:
                raise InvalidStateTransition(
                    f"Cannot deregister {current.name} in state {current.state.value}",
                    model=current.name,
                )
            del self._models[current.model_id]
            del self._ids_by_name[current.name]

        self._health.pop(current.model_id, None)
        self._usage.pop(current.model_id, None)
        self._stats.pop(current.model_id, None)
        logger.info(f"[Registry] Deregistered {current.name}")
        return current

    # =========================================================================
    # Compare-and-swap core
    # =========================================================================

    def compare_and_swap(
        self,
        model_id: str,
        expected_version: int,
        **changes: Any,
    ) -> Optional[ModelDescriptor]:
        """
        Install a new snapshot if the stored version still matches.

        Returns the new snapshot, or None if the version moved on.
        """
        with self._swap_lock:
            current = self._models.get(model_id)
            if current is None:
                raise ModelNotFound(f"Model not found: {model_id}", model=model_id)
            if current.version != expected_version:
                return None
            updated = replace(
                current,
                version=current.version + 1,
                updated_at=datetime.now(),
                **changes,
            )
            self._models[model_id] = updated

        if updated.state != current.state:
            self._notify(current, updated)
        return updated

    def _transition(
        self,
        key: str,
        target: ModelState,
        expected_from: Optional[ModelState] = None,
        **changes: Any,
    ) -> ModelDescriptor:
        while True:
            snapshot = self.resolve(key)
            if expected_from is not None and snapshot.state != expected_from:
                raise InvalidStateTransition(
                    f"{snapshot.name}: expected {expected_from.value}, "
                    f"found {snapshot.state.value}",
                    model=snapshot.name,
                )
            if not can_transition(snapshot.state, target):
                raise InvalidStateTransition(
                    f"{snapshot.name}: {snapshot.state.value} -> {target.value} not allowed",
                    model=snapshot.name,
                )
            updated = self.compare_and_swap(
                snapshot.model_id, snapshot.version, state=target, **changes
            )
            if updated is not None:
                return updated

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def request_load(self, key: str) -> bool:
        """
        Move Registered (or Unloaded) to Loading.

        Returns True if this caller won the transition and must perform the
        load, False if the model is already Loading, Ready or Degraded.
        """
        while True:
            snapshot = self.resolve(key)
            if snapshot.state in (ModelState.LOADING, ModelState.READY, ModelState.DEGRADED):
                return False
            if not can_transition(snapshot.state, ModelState.LOADING):
                raise InvalidStateTransition(
                    f"Cannot load {snapshot.name} in state {snapshot.state.value}",
                    model=snapshot.name,
                )
            updated = self.compare_and_swap(
                snapshot.model_id, snapshot.version, state=ModelState.LOADING, last_error=None
            )
            if updated is not None:
                logger.info(f"[Registry] {updated.name}: loading (v{updated.version})")
                return True

    def confirm_ready(self, key: str) -> ModelDescriptor:
        """Loading -> Ready."""
        updated = self._transition(key, ModelState.READY, expected_from=ModelState.LOADING)
        self._health[updated.model_id].reset()
        logger.info(f"[Registry] {updated.name}: ready")
        return updated

    def mark_failed(self, key: str, reason: str) -> ModelDescriptor:
        """Loading/Unloading -> Failed, recording the reason."""
        updated = self._transition(key, ModelState.FAILED, last_error=reason)
        logger.error(f"[Registry] {updated.name}: failed: {reason}")
        return updated

    def request_unload(self, key: str) -> bool:
        """
        Move any non-terminal model to Unloading.

        Returns True if this caller won the transition and must perform the
        unload. Unloaded, Failed and already-Unloading models are a no-op.
        """
        while True:
            snapshot = self.resolve(key)
            if snapshot.state.is_terminal or snapshot.state == ModelState.UNLOADING:
                return False
            updated = self.compare_and_swap(
                snapshot.model_id, snapshot.version, state=ModelState.UNLOADING
            )
            if updated is not None:
                logger.info(f"[Registry] {updated.name}: unloading")
                return True

    def confirm_unloaded(self, key: str) -> ModelDescriptor:
        """Unloading -> Unloaded."""
        updated = self._transition(key, ModelState.UNLOADED, expected_from=ModelState.UNLOADING)
        self._health[updated.model_id].reset()
        logger.info(f"[Registry] {updated.name}: unloaded")
        return updated

    def update_options(
        self,
        key: str,
        options: Dict[str, Any],
        merge: bool = True,
    ) -> ModelDescriptor:
        """Replace or merge descriptor options."""
        while True:
            snapshot = self.resolve(key)
            new_options = {**snapshot.options, **options} if merge else dict(options)
            updated = self.compare_and_swap(
                snapshot.model_id, snapshot.version, options=new_options
            )
            if updated is not None:
                logger.debug(f"[Registry] {updated.name}: options updated (v{updated.version})")
                return updated

    # =========================================================================
    # Health
    # =========================================================================

    def report_health(
        self,
        key: str,
        status: Union[HealthStatus, bool],
        immediate: bool = False,
    ) -> ModelDescriptor:
        """
        Feed one health observation.

        Ready degrades after `degrade_after_failures` consecutive failures
        (or at once with `immediate`); Degraded recovers after
        `recover_after_successes` consecutive successes. Observations for
        models in other states only move the counters.
        """
        if isinstance(status, bool):
            status = HealthStatus.HEALTHY if status else HealthStatus.UNHEALTHY

        snapshot = self.resolve(key)
        if status == HealthStatus.UNKNOWN:
            return snapshot

        counters = self._health[snapshot.model_id]
        if status == HealthStatus.HEALTHY:
            counters.consecutive_successes += 1
            counters.consecutive_failures = 0
        else:
            counters.consecutive_failures += 1
            counters.consecutive_successes = 0

        if (
            snapshot.state == ModelState.READY
            and status != HealthStatus.HEALTHY
            and (immediate or counters.consecutive_failures >= self.degrade_after_failures)
        ):
            try:
                updated = self._transition(
                    key, ModelState.DEGRADED, expected_from=ModelState.READY,
                    last_error=f"health {status.value} x{counters.consecutive_failures}",
                )
            except InvalidStateTransition:
                return self.resolve(key)
            logger.warning(
                f"[Registry] {updated.name}: degraded after "
                f"{counters.consecutive_failures} consecutive failures"
            )
            return updated

        if (
            snapshot.state == ModelState.DEGRADED
            and status == HealthStatus.HEALTHY
            and counters.consecutive_successes >= self.recover_after_successes
        ):
            try:
                updated = self._transition(
                    key, ModelState.READY, expected_from=ModelState.DEGRADED, last_error=None
                )
            except InvalidStateTransition:
                return self.resolve(key)
            counters.reset()
            logger.info(f"[Registry] {updated.name}: recovered")
            return updated

        return snapshot

    def health_counters(self, key: str) -> Dict[str, int]:
        counters = self._health[self.resolve(key).model_id]
        return {
            "consecutive_failures": counters.consecutive_failures,
            "consecutive_successes": counters.consecutive_successes,
        }

    # =========================================================================
    # Usage and statistics
    # =========================================================================

    def touch(self, key: str) -> None:
        """Record an access for LRU eviction ordering."""
        self._usage[self.resolve(key).model_id].last_used = time.monotonic()

    def begin_request(self, key: str) -> None:
        usage = self._usage[self.resolve(key).model_id]
        usage.in_flight += 1
        usage.last_used = time.monotonic()

    def end_request(
        self,
        key: str,
        latency_ms: Optional[float] = None,
        success: bool = True,
    ) -> None:
        descriptor = self.get(key)
        if descriptor is None:
            return
        usage = self._usage[descriptor.model_id]
        usage.in_flight = max(0, usage.in_flight - 1)
        usage.last_used = time.monotonic()
        if latency_ms is not None:
            self._stats[descriptor.model_id].record(latency_ms, success)

    def in_flight(self, key: str) -> int:
        return self._usage[self.resolve(key).model_id].in_flight

    def stats(self, key: str) -> PerformanceStats:
        return self._stats[self.resolve(key).model_id]

    def eviction_candidates(self, exclude: Optional[str] = None) -> List[ModelDescriptor]:
        """
        Ready models with no in-flight requests, least valuable first.

        Ordered by least recent access, then lowest priority class.
        """
        excluded = self.get(exclude) if exclude else None
        candidates = [
            d for d in self._models.values()
            if d.state == ModelState.READY
            and self._usage[d.model_id].in_flight == 0
            and (excluded is None or d.model_id != excluded.model_id)
        ]
        candidates.sort(key=lambda d: (self._usage[d.model_id].last_used, d.priority_class))
        return candidates

    # =========================================================================
    # Listeners
    # =========================================================================

    def add_listener(self, listener: TransitionListener) -> None:
        """Call `listener(old, new)` after every state change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: TransitionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, old: ModelDescriptor, new: ModelDescriptor) -> None:
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception as e:
                logger.error(f"[Registry] Transition listener failed: {e}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_models": len(self._models),
            "max_models": self.max_models,
            "models": [
                {
                    **d.to_dict(),
                    "in_flight": self._usage[d.model_id].in_flight,
                    "stats": self._stats[d.model_id].to_dict(),
                }
                for d in self.list_models()
            ],
        }
