"""
Inference Engine for the UniModel serving core.

Wires the serving components together and owns the model lifecycle:

    Request → AdmissionRouter → BatchScheduler → ExecutionCoordinator → Backend
                   │                                   │
             ModelRegistry  ◄───── health ─────────────┤
                   │                                   │
             ResourcePoolManager ◄── liveness ─────────┘

Process-wide state is explicit: init_engine() builds and starts the single
engine, get_engine() returns it, shutdown_engine() tears it down.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Set

from unimodel_core.config.base_config import UniModelConfig
from unimodel_core.serving.backends import BackendPlugin, create_backend, is_known_backend
from unimodel_core.serving.coordinator import ExecutionCoordinator, ExecutionPolicy
from unimodel_core.serving.errors import (
    InvalidStateTransition,
    ModelNotReady,
    PluginCallFailed,
    ServingError,
    ValidationError,
)
from unimodel_core.serving.registry import ModelRegistry
from unimodel_core.serving.resource_pool import (
    ResourcePoolManager,
    devices_from_config,
    discover_devices,
)
from unimodel_core.serving.router import AdmissionLimits, AdmissionRouter, PriorityLike, RequestHandle
from unimodel_core.serving.scheduler import BatchPolicy, BatchScheduler
from unimodel_core.serving.telemetry import ServingMetrics
from unimodel_core.serving.types import (
    Device,
    DeviceKind,
    HealthStatus,
    ModelDescriptor,
    ModelState,
    ResourceHandle,
)
from unimodel_core.utils.async_helpers import run_with_timeout
from unimodel_core.utils.logging_config import log_duration

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


class InferenceEngine:
    """
    Multi-model serving engine.

    Features:
    - Fail-fast admission with backpressure
    - Per-model dynamic batching with padding
    - Fractional device allocation with LRU eviction
    - Retries, per-item errors and circuit breaking
    - Periodic backend health checks
    """

    def __init__(
        self,
        config: Optional[UniModelConfig] = None,
        devices: Optional[Sequence[Device]] = None,
    ):
        self.config = (config or UniModelConfig()).validate()

        lifecycle = self.config.lifecycle
        self.registry = ModelRegistry(
            max_models=lifecycle.max_models,
            degrade_after_failures=lifecycle.degrade_after_failures,
            recover_after_successes=lifecycle.recover_after_successes,
        )

        if devices is None:
            if self.config.resources.auto_discover:
                devices = discover_devices()
            else:
                devices = devices_from_config(self.config.resources.devices)
        self.pool = ResourcePoolManager(devices, eviction_enabled=self.config.resources.eviction_enabled)
        self.pool.set_evictor(self._evict_for)

        self.metrics = ServingMetrics()
        self.scheduler = BatchScheduler(
            BatchPolicy.from_config(self.config.batching),
            on_batch=self.metrics.record_batch,
        )
        self.coordinator = ExecutionCoordinator(
            self.registry,
            self.pool,
            ExecutionPolicy.from_config(self.config.execution),
            metrics=self.metrics,
        )
        self.scheduler.set_dispatch(self.coordinator.submit)
        self.router = AdmissionRouter(
            self.registry,
            self.scheduler,
            metrics=self.metrics,
            limits=AdmissionLimits.from_config(self.config.admission),
        )

        self.metrics.set_sources(queue_depths=self._queue_depths, utilization=self.pool.utilization)
        self.registry.add_listener(self.metrics.record_transition)
        self.registry.add_listener(self._on_transition)

        # Models with a load in progress; an unload racing a load is finished by the loader
        self._loading: Set[str] = set()
        self._health_task: Optional[asyncio.Task] = None
        self._running = False

        logger.info("[Engine] Initialized")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start formation tasks and the health loop."""
        if self._running:
            return
        self._running = True
        await self.scheduler.start()
        if self.config.lifecycle.health_check_interval_seconds > 0:
            self._health_task = asyncio.create_task(self._health_loop(), name="health-loop")
        logger.info("[Engine] Started")

    async def stop(self) -> None:
        """Unload every model and stop all background tasks."""
        self._running = False

        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

        for descriptor in self.registry.list_models():
            if not descriptor.state.is_terminal:
                try:
                    await self.unload_model(descriptor.name)
                except ServingError as e:
                    logger.error(f"[Engine] Failed to unload {descriptor.name} on stop: {e.message}")

        await self.scheduler.stop()
        await self.coordinator.stop()
        logger.info("[Engine] Stopped")

    @property
    def running(self) -> bool:
        return self._running

    # =========================================================================
    # Model management
    # =========================================================================

    def register_model(self, descriptor: ModelDescriptor) -> str:
        """Register a model. Raises DuplicateModel if the name is taken."""
        if not is_known_backend(descriptor.backend_kind):
            raise ValidationError(
                f"Unknown backend kind: {descriptor.backend_kind}", model=descriptor.name
            )
        return self.registry.register(descriptor)

    async def load_model(self, name: str) -> ModelDescriptor:
        """
        Load a registered model onto a device.

        Loading an already Loading/Ready/Degraded model is a no-op. Any
        failure (including ResourceExhausted after the eviction pass) leaves
        the model Failed and is re-raised.
        """
        if not self.registry.request_load(name):
            return self.registry.resolve(name)

        descriptor = self.registry.resolve(name)
        self._loading.add(descriptor.name)
        try:
            return await self._load(descriptor)
        finally:
            self._loading.discard(descriptor.name)

    @log_duration(logger, message="[Engine] Model load")
    async def _load(self, descriptor: ModelDescriptor) -> ModelDescriptor:
        name = descriptor.name
        handle: Optional[ResourceHandle] = None
        backend: Optional[BackendPlugin] = None

        try:
            handle = await self.pool.allocate(
                descriptor.device_kind, descriptor.resource_fraction, owner=name
            )
            backend = create_backend(descriptor.backend_kind, name)
            await asyncio.wait_for(
                backend.load({
                    "artifact_path": descriptor.artifact_path,
                    "options": dict(descriptor.options),
                    "device_id": handle.device_id,
                }),
                timeout=self.config.lifecycle.load_timeout_seconds,
            )
        except Exception as e:
            error = self._load_error(name, e)
            await self._discard(backend, handle)
            self._finish_failed_load(name, error)
            raise error

        self.coordinator.attach(name, backend, handle)
        self.scheduler.add_model(name, descriptor.options)
        try:
            ready = self.registry.confirm_ready(name)
        except InvalidStateTransition:
            # Unload requested while loading
            logger.info(f"[Engine] {name} was unloaded during load, cleaning up")
            await self._teardown(name)
            return self.registry.resolve(name)

        self.registry.touch(name)
        return ready

    def _load_error(self, name: str, exc: BaseException) -> ServingError:
        if isinstance(exc, ServingError):
            return exc
        if isinstance(exc, asyncio.TimeoutError):
            return PluginCallFailed(
                f"Load timed out after {self.config.lifecycle.load_timeout_seconds}s", model=name
            )
        return PluginCallFailed(f"Load failed: {type(exc).__name__}: {exc}", model=name)

    def _finish_failed_load(self, name: str, error: ServingError) -> None:
        try:
            self.registry.mark_failed(name, f"{error.code}: {error.message}")
        except InvalidStateTransition:
            pass

    async def _discard(self, backend: Optional[BackendPlugin], handle: Optional[ResourceHandle]) -> None:
        if backend is not None:
            try:
                await backend.unload()
            except Exception as e:
                logger.warning(f"[Engine] Backend cleanup after failed load raised: {e}")
        await self.pool.release(handle)

    async def unload_model(self, name: str) -> bool:
        """
        Unload a model. Unloading an Unloaded, Failed or already Unloading
        model is a successful no-op.
        """
        descriptor = self.registry.resolve(name)
        if not self.registry.request_unload(name):
            return True
        if descriptor.name in self._loading:
            # The loader sees the Unloading state and finishes the unload
            return True
        await self._teardown(descriptor.name)
        return True

    async def request_unload(self, name: str) -> bool:
        return await self.unload_model(name)

    async def _teardown(self, name: str) -> None:
        timeout = self.config.lifecycle.unload_timeout_seconds
        await self.scheduler.remove_model(
            name, ModelNotReady(f"Model {name} was unloaded", model=name)
        )
        backend = await self.coordinator.detach(name, timeout=timeout)

        failure: Optional[str] = None
        if backend is not None:
            try:
                await asyncio.wait_for(backend.unload(), timeout=timeout)
            except Exception as e:
                failure = f"Unload failed: {type(e).__name__}: {e}"

        await self.pool.release_owner(name)
        if failure is not None:
            self.registry.mark_failed(name, failure)
        else:
            self.registry.confirm_unloaded(name)

    async def deregister_model(self, name: str) -> ModelDescriptor:
        """Unload if needed, then remove the model from the registry."""
        await self.unload_model(name)
        return self.registry.deregister(name)

    def refresh_policy(self, name: str) -> None:
        """Re-read batching overrides after descriptor options changed."""
        descriptor = self.registry.resolve(name)
        if self.scheduler.has_model(descriptor.name):
            self.scheduler.add_model(descriptor.name, descriptor.options)

    def _on_transition(self, old: ModelDescriptor, new: ModelDescriptor) -> None:
        """Hold batch formation while a model is Degraded."""
        if new.state == ModelState.DEGRADED:
            self.scheduler.pause_model(new.name)
        elif old.state == ModelState.DEGRADED and new.state == ModelState.READY:
            self.scheduler.resume_model(new.name)

    async def _evict_for(
        self,
        device_kind: DeviceKind,
        fraction: float,
        requester: Optional[str],
    ) -> bool:
        """Unload the least valuable idle model whose release makes room."""
        for candidate in self.registry.eviction_candidates(exclude=requester):
            handle = self.pool.handle_for(candidate.name)
            if handle is None or handle.device_kind != device_kind:
                continue
            device = self.pool.get_device(handle.device_id)
            if not device.live or device.free + handle.fraction + _EPSILON < fraction:
                continue
            logger.info(
                f"[Engine] Evicting {candidate.name} from {device.device_id} for {requester}"
            )
            await self.unload_model(candidate.name)
            return True
        logger.info(f"[Engine] No eviction candidate for {requester}")
        return False

    # =========================================================================
    # Requests
    # =========================================================================

    def submit(
        self,
        model_name: str,
        payload: Any,
        priority: PriorityLike = None,
        deadline: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> RequestHandle:
        return self.router.submit(
            model_name, payload, priority=priority, deadline=deadline, timeout=timeout
        )

    async def predict(
        self,
        model_name: str,
        payload: Any,
        priority: PriorityLike = None,
        timeout: Optional[float] = None,
    ) -> Any:
        return await self.router.predict(model_name, payload, priority=priority, timeout=timeout)

    async def predict_many(
        self,
        model_name: str,
        payloads: Sequence[Any],
        priority: PriorityLike = None,
        timeout: Optional[float] = None,
        return_exceptions: bool = False,
    ) -> List[Any]:
        return await self.router.predict_many(
            model_name, payloads, priority=priority, timeout=timeout,
            return_exceptions=return_exceptions,
        )

    # =========================================================================
    # Health
    # =========================================================================

    async def check_health(self, name: str) -> HealthStatus:
        """Run the backend health check once and feed it to the registry."""
        descriptor = self.registry.resolve(name)
        backend = self.coordinator.backend_for(descriptor.name)
        if backend is None:
            return HealthStatus.UNKNOWN

        try:
            status = await run_with_timeout(
                backend.health_check(),
                timeout=self.config.execution.predict_timeout_seconds,
                default=HealthStatus.UNHEALTHY,
            )
        except Exception as e:
            logger.warning(f"[Engine] Health check for {descriptor.name} raised: {e}")
            status = HealthStatus.UNHEALTHY

        self.registry.report_health(descriptor.name, status)
        return status

    async def check_all(self) -> Dict[str, HealthStatus]:
        results = {}
        for descriptor in self.registry.list_models():
            if descriptor.state in (ModelState.READY, ModelState.DEGRADED):
                results[descriptor.name] = await self.check_health(descriptor.name)
        return results

    async def _health_loop(self) -> None:
        interval = self.config.lifecycle.health_check_interval_seconds
        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.check_all()
            except ServingError as e:
                logger.error(f"[Engine] Health sweep failed: {e.message}")

    # =========================================================================
    # Status
    # =========================================================================

    def _queue_depths(self) -> Dict[str, int]:
        return {d.name: self.scheduler.queue_depth(d.name) for d in self.registry.list_models()}

    def get_model_status(self, name: str) -> Dict[str, Any]:
        """State, queue depth and resource usage of one model."""
        descriptor = self.registry.resolve(name)
        handles = self.pool.handles_for(descriptor.name)
        return {
            "id": descriptor.model_id,
            "name": descriptor.name,
            "state": descriptor.state.value,
            "version": descriptor.version,
            "queue_depth": self.scheduler.queue_depth(descriptor.name),
            "in_flight": self.registry.in_flight(descriptor.name),
            "resource_usage": [
                {"device_id": h.device_id, "device_kind": h.device_kind.value, "fraction": h.fraction}
                for h in handles
            ],
            "stats": self.registry.stats(descriptor.name).to_dict(),
            "last_error": descriptor.last_error,
        }

    def list_models(self) -> List[Dict[str, Any]]:
        return [self.get_model_status(d.model_id) for d in self.registry.list_models()]

    def health(self) -> Dict[str, Any]:
        """Aggregate health: healthy when every loaded model is Ready."""
        models = self.registry.list_models()
        loaded = [d for d in models if d.state in (ModelState.READY, ModelState.DEGRADED)]
        degraded = [d.name for d in loaded if d.state == ModelState.DEGRADED]
        failed = [d.name for d in models if d.state == ModelState.FAILED]
        if not loaded:
            status = HealthStatus.UNKNOWN
        elif degraded or failed:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY
        return {
            "status": status.value,
            "models_loaded": len(loaded),
            "degraded": degraded,
            "failed": failed,
        }

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "health": self.health(),
            "registry": self.registry.to_dict(),
            "pool": self.pool.get_stats(),
            "scheduler": self.scheduler.get_stats(),
            "coordinator": self.coordinator.get_stats(),
            "metrics": self.metrics.snapshot(),
        }


# =============================================================================
# PROCESS-WIDE ENGINE
# =============================================================================

_engine: Optional[InferenceEngine] = None


async def init_engine(
    config: Optional[UniModelConfig] = None,
    devices: Optional[Sequence[Device]] = None,
    start: bool = True,
) -> InferenceEngine:
    """Create the process-wide engine. Raises RuntimeError if one exists."""
    global _engine
    if _engine is not None:
        raise RuntimeError("Inference engine already initialized")
    engine = InferenceEngine(config, devices=devices)
    if start:
        await engine.start()
    _engine = engine
    return engine


def get_engine() -> InferenceEngine:
    if _engine is None:
        raise RuntimeError("Inference engine not initialized; call init_engine() first")
    return _engine


async def shutdown_engine() -> None:
    """Stop and drop the process-wide engine. Safe to call twice."""
    global _engine
    engine, _engine = _engine, None
    if engine is not None:
        await engine.stop()
