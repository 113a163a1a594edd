"""
Admission Router for the UniModel serving core.

submit() is the single entry point for prediction requests. It fails fast,
synchronously and without creating a queue entry, when:
- the model is not registered (ModelNotFound)
- the model is not Ready, Degraded included (ModelNotReady)
- the payload is invalid (ValidationError)
- the model's queue is full (Backpressure)

Otherwise the request is queued and the caller gets a RequestHandle that can
be awaited, polled or cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional, Sequence, Union

from unimodel_core.serving.errors import (
    ModelNotFound,
    ModelNotReady,
    ServingError,
    ValidationError,
)
from unimodel_core.serving.registry import ModelRegistry
from unimodel_core.serving.scheduler import BatchScheduler
from unimodel_core.serving.telemetry import ServingMetrics
from unimodel_core.serving.types import (
    ExecutionResult,
    InferenceRequest,
    ModelState,
    MultimodalInput,
    RequestPriority,
    RequestState,
)

logger = logging.getLogger(__name__)

PriorityLike = Union[RequestPriority, int, str, None]


@dataclass
class AdmissionLimits:
    """Payload limits and request defaults."""
    max_text_bytes: int = 1_000_000
    max_binary_bytes: int = 100_000_000
    default_priority: str = "medium"
    default_timeout_seconds: float = 30.0

    @classmethod
    def from_config(cls, config: Any) -> "AdmissionLimits":
        return cls(**{f.name: getattr(config, f.name) for f in fields(cls) if hasattr(config, f.name)})


def validate_payload(payload: Any, limits: Optional[AdmissionLimits] = None) -> None:
    """
    Reject payloads no backend should ever see.

    Text must be non-empty and within max_text_bytes (UTF-8), binary data
    non-empty and within max_binary_bytes, JSON values non-null. Multimodal
    inputs must be non-empty with non-empty string keys, and each part is
    validated in turn.
    """
    limits = limits or AdmissionLimits()

    if payload is None:
        raise ValidationError("JSON input cannot be null")

    if isinstance(payload, str):
        if not payload:
            raise ValidationError("Text input cannot be empty")
        size = len(payload.encode("utf-8"))
        if size > limits.max_text_bytes:
            raise ValidationError(
                "Text input too large",
                details={"size": size, "limit": limits.max_text_bytes},
            )
        return

    if isinstance(payload, (bytes, bytearray, memoryview)):
        size = len(payload)
        if size == 0:
            raise ValidationError("Binary input cannot be empty")
        if size > limits.max_binary_bytes:
            raise ValidationError(
                "Binary input too large",
                details={"size": size, "limit": limits.max_binary_bytes},
            )
        return

    if isinstance(payload, MultimodalInput):
        if not payload:
            raise ValidationError("Multimodal input cannot be empty")
        for key, value in payload.items():
            if not isinstance(key, str) or not key:
                raise ValidationError("Multimodal key cannot be empty")
            try:
                validate_payload(value, limits)
            except ValidationError as e:
                raise ValidationError(f"{key}: {e.message}", details=e.details)


class RequestHandle:
    """
    Caller-side view of a submitted request.

    Example:
        handle = router.submit("sentiment", "great movie")
        output = await handle            # raises the request's ServingError
        # or
        if handle.done():
            result = handle.poll()       # ExecutionResult
    """

    def __init__(self, request: InferenceRequest, router: "AdmissionRouter"):
        self._request = request
        self._router = router

    @property
    def id(self) -> str:
        return self._request.id

    @property
    def model_name(self) -> str:
        return self._request.model_name

    @property
    def state(self) -> RequestState:
        return self._request.state

    @property
    def request(self) -> InferenceRequest:
        return self._request

    def done(self) -> bool:
        return self._request.future.done()

    def poll(self) -> Optional[ExecutionResult]:
        """Result if available, else None. Cancelled requests have no result."""
        future = self._request.future
        if not future.done() or future.cancelled():
            return None
        return future.result()

    async def result(self, timeout: Optional[float] = None) -> Any:
        """Wait for the output. Raises the request's error if it failed."""
        future = self._request.future
        if timeout is None:
            result = await asyncio.shield(future)
        else:
            result = await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
        if result.error is not None:
            raise result.error
        return result.output

    def __await__(self):
        return self.result().__await__()

    def cancel(self) -> bool:
        """Cancel the request. See AdmissionRouter.cancel."""
        return self._router.cancel(self)

    def __repr__(self) -> str:
        return f"RequestHandle(id={self.id!r}, model={self.model_name!r}, state={self.state.value})"


class AdmissionRouter:
    """
    Fail-fast admission in front of the batch scheduler.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        scheduler: BatchScheduler,
        metrics: Optional[ServingMetrics] = None,
        limits: Optional[AdmissionLimits] = None,
    ):
        self.registry = registry
        self.scheduler = scheduler
        self.metrics = metrics
        self.limits = limits or AdmissionLimits()

    def submit(
        self,
        model_name: str,
        payload: Any,
        priority: PriorityLike = None,
        deadline: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> RequestHandle:
        """
        Admit one request.

        Args:
            model_name: Target model name or id.
            payload: Request input.
            priority: RequestPriority, its int value or its name.
            deadline: Absolute time.monotonic() by which the request must run.
            timeout: Seconds from now; used when no deadline is given.

        Raises:
            ModelNotFound, ModelNotReady, ValidationError, Backpressure
        """
        request = InferenceRequest(model_name=model_name, payload=payload)
        try:
            descriptor = self.registry.get(model_name)
            if descriptor is None:
                raise ModelNotFound(f"Model not found: {model_name}", model=model_name)
            if descriptor.state != ModelState.READY:
                raise ModelNotReady(
                    f"Model {descriptor.name} is {descriptor.state.value}",
                    model=descriptor.name,
                    details={"state": descriptor.state.value},
                )

            validate_payload(payload, self.limits)

            request.model_name = descriptor.name
            request.priority = RequestPriority.parse(
                priority if priority is not None else self.limits.default_priority
            )
            request.deadline = self._deadline(deadline, timeout)
            request.future = asyncio.get_running_loop().create_future()

            self.scheduler.enqueue(request)
        except ServingError as e:
            if self.metrics is not None:
                self.metrics.record_rejected(model_name, e.code)
            logger.debug(f"[Router] Rejected {request.id} for {model_name}: {e.code}")
            if e.correlation_id is None:
                e.correlation_id = request.id
            raise

        self.registry.begin_request(descriptor.name)
        if self.metrics is not None:
            self.metrics.record_submitted(descriptor.name)
        request.future.add_done_callback(lambda f, r=request: self._on_done(r, f))
        return RequestHandle(request, self)

    def _deadline(self, deadline: Optional[float], timeout: Optional[float]) -> Optional[float]:
        if deadline is not None:
            return deadline
        if timeout is None:
            timeout = self.limits.default_timeout_seconds
        if timeout is None or timeout <= 0:
            return None
        return time.monotonic() + timeout

    def _on_done(self, request: InferenceRequest, future: asyncio.Future) -> None:
        if future.cancelled():
            self.registry.end_request(request.model_name)
            if self.metrics is not None:
                self.metrics.record_cancelled(request.model_name)
            return

        result: ExecutionResult = future.result()
        self.registry.end_request(request.model_name, result.latency_ms, result.ok)
        if self.metrics is not None:
            self.metrics.record_completed(
                request.model_name,
                result.latency_ms,
                result.ok,
                code=result.error.code if result.error else None,
            )

    def cancel(self, handle: RequestHandle) -> bool:
        """
        Cancel a request.

        Queued requests are removed from their queue. Batched requests still
        run with their batch, but their result is discarded. Requests that
        are already executing or finished cannot be cancelled.
        """
        request = handle.request
        if request.state.is_final or request.state == RequestState.EXECUTING:
            return False

        if request.state == RequestState.QUEUED:
            if not self.scheduler.cancel(request):
                return False
        else:
            request.state = RequestState.CANCELLED

        request.future.cancel()
        logger.debug(f"[Router] Cancelled {request.id}")
        return True

    async def predict(
        self,
        model_name: str,
        payload: Any,
        priority: PriorityLike = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Submit and wait for the output."""
        return await self.submit(model_name, payload, priority=priority, timeout=timeout)

    async def predict_many(
        self,
        model_name: str,
        payloads: Sequence[Any],
        priority: PriorityLike = None,
        timeout: Optional[float] = None,
        return_exceptions: bool = False,
    ) -> List[Any]:
        """
        Predict several payloads.

        All payloads are validated before any is submitted, so an invalid
        item rejects the whole call without queueing anything.
        """
        for index, payload in enumerate(payloads):
            try:
                validate_payload(payload, self.limits)
            except ValidationError as e:
                raise ValidationError(
                    f"Item {index}: {e.message}",
                    model=model_name,
                    details={**e.details, "index": index},
                )

        handles = [
            self.submit(model_name, payload, priority=priority, timeout=timeout)
            for payload in payloads
        ]
        return await asyncio.gather(
            *(handle.result() for handle in handles),
            return_exceptions=return_exceptions,
        )
