"""
Execution Coordinator for the UniModel serving core.

Runs formed batches against their model's backend and reconciles results:

- one worker task (and one work queue) per model, so a slow backend never
  holds up another model
- device liveness is checked before dispatch; a batch on a dead device is
  requeued once, then failed with ResourceUnavailable
- backend predict() is bounded by a per-call timeout; whole-call failures
  are retried with exponential backoff, and exhausting retries fails every
  item of the batch
- ItemError entries fail only their own item
- consecutive exhausted batches beyond the circuit threshold degrade the
  model through the registry's health reporting
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional

from unimodel_core.serving.backends import BackendPlugin, ItemError
from unimodel_core.serving.errors import (
    ModelNotReady,
    PluginCallFailed,
    PluginExecutionError,
    ResourceUnavailable,
    ServingError,
)
from unimodel_core.serving.padding import unpad
from unimodel_core.serving.registry import ModelRegistry
from unimodel_core.serving.resource_pool import ResourcePoolManager
from unimodel_core.serving.telemetry import ServingMetrics
from unimodel_core.serving.types import (
    Batch,
    ExecutionResult,
    HealthStatus,
    RequestState,
    ResourceHandle,
)
from unimodel_core.utils.async_helpers import retry_with_backoff
from unimodel_core.utils.logging_config import LogContext

logger = logging.getLogger(__name__)


@dataclass
class ExecutionPolicy:
    """Timeouts, retries and circuit threshold for batch execution."""
    predict_timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_base_delay_ms: float = 50.0
    retry_backoff: float = 2.0
    retry_max_delay_ms: float = 2000.0
    circuit_failure_threshold: int = 3
    requeue_delay_ms: float = 50.0

    @classmethod
    def from_config(cls, config: Any) -> "ExecutionPolicy":
        return cls(**{f.name: getattr(config, f.name) for f in fields(cls) if hasattr(config, f.name)})


@dataclass
class _Binding:
    backend: BackendPlugin
    handle: Optional[ResourceHandle]
    queue: "asyncio.Queue[Batch]"
    worker: Optional[asyncio.Task] = None
    consecutive_failures: int = 0
    batches_executed: int = 0
    batches_failed: int = 0
    requeued: int = 0


class ExecutionCoordinator:
    """
    Dispatches batches to backends, one execution path per model.

    Example:
        coordinator = ExecutionCoordinator(registry, pool)
        coordinator.attach("sentiment", backend, handle)
        scheduler.set_dispatch(coordinator.submit)
    """

    def __init__(
        self,
        registry: ModelRegistry,
        pool: ResourcePoolManager,
        policy: Optional[ExecutionPolicy] = None,
        metrics: Optional[ServingMetrics] = None,
    ):
        self.registry = registry
        self.pool = pool
        self.policy = policy or ExecutionPolicy()
        self.metrics = metrics
        self._bindings: Dict[str, _Binding] = {}

    # =========================================================================
    # Model bindings
    # =========================================================================

    def attach(
        self,
        model_name: str,
        backend: BackendPlugin,
        handle: Optional[ResourceHandle],
    ) -> None:
        """Start the execution worker for a loaded model."""
        if model_name in self._bindings:
            raise RuntimeError(f"Model {model_name} already has an execution worker")
        binding = _Binding(backend=backend, handle=handle, queue=asyncio.Queue())
        binding.worker = asyncio.create_task(
            self._worker(model_name, binding), name=f"execution-{model_name}"
        )
        self._bindings[model_name] = binding
        logger.info(
            f"[Coordinator] Attached {model_name} "
            f"({backend.kind} on {handle.device_id if handle else 'no device'})"
        )

    async def detach(
        self,
        model_name: str,
        timeout: Optional[float] = None,
    ) -> Optional[BackendPlugin]:
        """
        Stop a model's worker.

        Batches already handed over get up to `timeout` seconds to finish;
        whatever is left is failed with ModelNotReady.
        """
        binding = self._bindings.pop(model_name, None)
        if binding is None:
            return None

        if timeout:
            try:
                await asyncio.wait_for(binding.queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"[Coordinator] {model_name}: pending batches did not finish in {timeout}s")

        if binding.worker is not None:
            binding.worker.cancel()
            try:
                await binding.worker
            except asyncio.CancelledError:
                pass

        error = ModelNotReady(f"Model {model_name} was unloaded", model=model_name)
        while not binding.queue.empty():
            batch = binding.queue.get_nowait()
            self._fail_batch(batch, error)
            binding.queue.task_done()

        logger.info(f"[Coordinator] Detached {model_name}")
        return binding.backend

    def backend_for(self, model_name: str) -> Optional[BackendPlugin]:
        binding = self._bindings.get(model_name)
        return binding.backend if binding else None

    def pending_batches(self, model_name: str) -> int:
        binding = self._bindings.get(model_name)
        return binding.queue.qsize() if binding else 0

    async def stop(self) -> None:
        for model_name in list(self._bindings):
            await self.detach(model_name)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def submit(self, batch: Batch) -> None:
        """Hand a formed batch to its model's worker."""
        binding = self._bindings.get(batch.model_name)
        if binding is None:
            raise ModelNotReady(
                f"Model {batch.model_name} has no execution worker", model=batch.model_name
            )
        await binding.queue.put(batch)

    async def _worker(self, model_name: str, binding: _Binding) -> None:
        while True:
            batch = await binding.queue.get()
            try:
                await self.execute(batch)
            except asyncio.CancelledError:
                self._fail_batch(
                    batch, ModelNotReady(f"Model {model_name} was unloaded", model=model_name)
                )
                raise
            except Exception as e:
                logger.exception(f"[Coordinator] Unexpected error executing {batch.batch_id}")
                self._fail_batch(
                    batch, PluginExecutionError(f"Batch execution failed: {e}", model=model_name)
                )
            finally:
                binding.queue.task_done()

    async def execute(self, batch: Batch) -> List[ExecutionResult]:
        """
        Execute one batch and distribute per-request results.

        Returns the results in batch order. A batch whose device is down is
        retried once, ahead of any later batch, after requeue_delay_ms.
        """
        model_name = batch.model_name
        binding = self._bindings.get(model_name)
        if binding is None:
            error = ModelNotReady(f"Model {model_name} has no execution worker", model=model_name)
            return self._fail_batch(batch, error)

        if all(r.cancelled for r in batch.requests):
            logger.debug(f"[Coordinator] Skipping fully cancelled batch {batch.batch_id}")
            return []

        with LogContext(model=model_name, batch_id=batch.batch_id):
            if binding.handle is not None:
                try:
                    self.pool.check_live(binding.handle)
                except ResourceUnavailable as e:
                    return await self._handle_unavailable(binding, batch, e)

            for request in batch.requests:
                if not request.cancelled:
                    request.state = RequestState.EXECUTING

            started = time.monotonic()
            try:
                outputs = await retry_with_backoff(
                    lambda: self._call_backend(binding.backend, batch),
                    attempts=self.policy.max_retries + 1,
                    delay=self.policy.retry_base_delay_ms / 1000,
                    backoff=self.policy.retry_backoff,
                    max_delay=self.policy.retry_max_delay_ms / 1000,
                    exceptions=(PluginCallFailed,),
                    on_retry=lambda attempt, e: self._on_retry(model_name),
                    name=f"{model_name}.predict",
                )
            except ServingError as e:
                self._record_call_failure(model_name, binding, e)
                return self._fail_batch(
                    batch,
                    PluginExecutionError(
                        f"Batch failed: {e.message}",
                        model=model_name,
                        details={"cause": e.code},
                    ),
                    started=started,
                )

            binding.consecutive_failures = 0
            binding.batches_executed += 1
            return self._distribute(batch, outputs, started)

    async def _call_backend(self, backend: BackendPlugin, batch: Batch) -> List[Any]:
        timeout = self.policy.predict_timeout_seconds
        try:
            outputs = await asyncio.wait_for(backend.predict(list(batch.inputs)), timeout=timeout)
        except asyncio.TimeoutError:
            raise PluginCallFailed(
                f"predict() timed out after {timeout}s", model=batch.model_name
            )
        except ServingError:
            raise
        except Exception as e:
            raise PluginCallFailed(f"predict() raised {type(e).__name__}: {e}", model=batch.model_name)

        if not isinstance(outputs, (list, tuple)) or len(outputs) != batch.size:
            got = len(outputs) if isinstance(outputs, (list, tuple)) else type(outputs).__name__
            raise PluginCallFailed(
                f"predict() returned {got} outputs for {batch.size} inputs",
                model=batch.model_name,
            )
        return list(outputs)

    async def _handle_unavailable(
        self,
        binding: _Binding,
        batch: Batch,
        error: ResourceUnavailable,
    ) -> List[ExecutionResult]:
        device_id = binding.handle.device_id
        if batch.requeue_count < 1:
            batch.requeue_count += 1
            binding.requeued += 1
            logger.warning(
                f"[Coordinator] Device {device_id} down, requeueing batch {batch.batch_id}"
            )
            # Back at the head of the model's queue: later batches wait behind it
            await asyncio.sleep(self.policy.requeue_delay_ms / 1000)
            return await self.execute(batch)

        logger.error(f"[Coordinator] Device {device_id} still down, failing batch {batch.batch_id}")
        return self._fail_batch(batch, error)

    def _on_retry(self, model_name: str) -> None:
        if self.metrics is not None:
            self.metrics.record_retry(model_name)

    def _record_call_failure(self, model_name: str, binding: _Binding, error: ServingError) -> None:
        binding.consecutive_failures += 1
        binding.batches_failed += 1
        logger.error(
            f"[Coordinator] {model_name}: batch failed after retries "
            f"({binding.consecutive_failures} consecutive): {error.message}"
        )
        if binding.consecutive_failures >= self.policy.circuit_failure_threshold:
            descriptor = self.registry.report_health(
                model_name, HealthStatus.UNHEALTHY, immediate=True
            )
            logger.warning(
                f"[Coordinator] {model_name}: circuit threshold reached, "
                f"model is {descriptor.state.value}"
            )

    # =========================================================================
    # Result distribution
    # =========================================================================

    def _distribute(self, batch: Batch, outputs: List[Any], started: float) -> List[ExecutionResult]:
        restored = unpad(outputs, batch.inputs, batch.original_lengths, batch.original_types)
        finished = time.monotonic()
        results = []

        for request, output in zip(batch.requests, restored):
            result = ExecutionResult(
                request_id=request.id,
                model_name=batch.model_name,
                batch_id=batch.batch_id,
                batch_size=batch.size,
                latency_ms=(finished - request.arrival) * 1000,
                queue_wait_ms=(started - request.arrival) * 1000,
            )
            if isinstance(output, ItemError):
                result.error = PluginExecutionError(
                    output.message,
                    correlation_id=request.id,
                    model=batch.model_name,
                    details={"item_code": output.code} if output.code else None,
                )
            else:
                result.output = output
            results.append(result)

            # Cancelled after formation: the result is discarded for this item only
            if not request.cancelled:
                request.resolve(result)

        failed = sum(1 for r in results if not r.ok)
        logger.debug(
            f"[Coordinator] Batch {batch.batch_id}: {batch.size - failed} ok, {failed} failed "
            f"in {(finished - started) * 1000:.1f}ms"
        )
        return results

    def _fail_batch(
        self,
        batch: Batch,
        error: ServingError,
        started: Optional[float] = None,
    ) -> List[ExecutionResult]:
        now = time.monotonic()
        results = []
        for request in batch.requests:
            result = ExecutionResult(
                request_id=request.id,
                model_name=batch.model_name,
                error=error.with_correlation(request.id),
                batch_id=batch.batch_id,
                batch_size=batch.size,
                latency_ms=(now - request.arrival) * 1000,
                queue_wait_ms=((started or now) - request.arrival) * 1000,
            )
            results.append(result)
            if not request.cancelled:
                request.resolve(result)
        return results

    def get_stats(self) -> Dict[str, Any]:
        return {
            name: {
                "pending_batches": b.queue.qsize(),
                "batches_executed": b.batches_executed,
                "batches_failed": b.batches_failed,
                "consecutive_failures": b.consecutive_failures,
                "requeued": b.requeued,
                "device_id": b.handle.device_id if b.handle else None,
            }
            for name, b in self._bindings.items()
        }
