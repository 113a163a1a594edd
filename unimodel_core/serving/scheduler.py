"""
Batch Scheduler for the UniModel serving core.

One priority queue and one formation task per model. Requests are ordered by
priority, then by arrival (strict FIFO among equal priorities). A formation
task flushes a batch as soon as one of these holds:

    (a) max_batch_size requests are queued
    (b) the oldest queued request has waited max_wait_ms
    (c) the earliest deadline in the queue is within deadline_margin_ms

A flush removes its requests from the queue as one unit, pads variable-length
payloads and hands the batch to the dispatch callback (the execution
coordinator). Requests whose deadline passes while queued are failed with
BatchTimeout. A paused queue (model Degraded) keeps its requests and still
expires them, but forms no batches until it is resumed.
"""

from __future__ import annotations

import asyncio
import heapq
import logging
import time
from dataclasses import dataclass, field, fields
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from unimodel_core.serving.errors import (
    Backpressure,
    BatchTimeout,
    ModelNotReady,
    ServingError,
)
from unimodel_core.serving.padding import pad_batch
from unimodel_core.serving.types import Batch, InferenceRequest, RequestState

logger = logging.getLogger(__name__)

Dispatch = Callable[[Batch], Awaitable[None]]


@dataclass
class BatchPolicy:
    """Batching limits for one model."""
    max_batch_size: int = 32
    max_wait_ms: float = 50.0
    backlog_limit: int = 1024
    deadline_margin_ms: float = 5.0
    dynamic_padding: bool = True
    pad_value: float = 0.0

    @classmethod
    def from_config(cls, config: Any) -> "BatchPolicy":
        """Build from a BatchingConfig (or anything with the same attributes)."""
        return cls(**{f.name: getattr(config, f.name) for f in fields(cls) if hasattr(config, f.name)})

    def with_options(self, options: Dict[str, Any]) -> "BatchPolicy":
        """Apply per-model overrides from descriptor options."""
        overrides = {}
        for f in fields(self):
            if f.name in options:
                value = options[f.name]
                if isinstance(getattr(self, f.name), bool):
                    if isinstance(value, str):
                        value = value.lower() in ("true", "1", "yes", "on")
                    overrides[f.name] = bool(value)
                else:
                    overrides[f.name] = type(getattr(self, f.name))(value)
        if not overrides:
            return self
        return BatchPolicy(**{**self.__dict__, **overrides})


@dataclass
class _ModelQueue:
    model_name: str
    policy: BatchPolicy
    heap: List[Tuple[int, int, InferenceRequest]] = field(default_factory=list)
    entries: Dict[str, InferenceRequest] = field(default_factory=dict)
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    paused: bool = False

    # Statistics
    total_batches: int = 0
    total_items: int = 0
    total_wait_ms: float = 0.0
    total_timeouts: int = 0
    largest_batch: int = 0


class BatchScheduler:
    """
    Per-model dynamic batching.

    Example:
        scheduler = BatchScheduler(BatchPolicy(max_batch_size=8), dispatch=coordinator.submit)
        await scheduler.start()
        scheduler.add_model("sentiment")
        scheduler.enqueue(request)
    """

    def __init__(
        self,
        default_policy: Optional[BatchPolicy] = None,
        dispatch: Optional[Dispatch] = None,
        on_batch: Optional[Callable[[Batch], None]] = None,
    ):
        self.default_policy = default_policy or BatchPolicy()
        self._dispatch = dispatch
        self._on_batch = on_batch
        self._queues: Dict[str, _ModelQueue] = {}
        self._running = False

    def set_dispatch(self, dispatch: Dispatch) -> None:
        self._dispatch = dispatch

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        self._running = True
        for queue in self._queues.values():
            self._start_formation(queue)
        logger.info("[Scheduler] Started")

    async def stop(self) -> None:
        self._running = False
        tasks = [q.task for q in self._queues.values() if q.task is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        for queue in self._queues.values():
            queue.task = None
        logger.info("[Scheduler] Stopped")

    def _start_formation(self, queue: _ModelQueue) -> None:
        if self._running and (queue.task is None or queue.task.done()):
            queue.task = asyncio.create_task(
                self._formation_loop(queue), name=f"formation-{queue.model_name}"
            )

    def add_model(
        self,
        model_name: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> BatchPolicy:
        """Open (or reopen) the queue for a model that became Ready."""
        policy = self.default_policy.with_options(options or {})
        queue = self._queues.get(model_name)
        if queue is None:
            queue = _ModelQueue(model_name=model_name, policy=policy)
            self._queues[model_name] = queue
        else:
            queue.policy = policy
        queue.wakeup.set()
        self._start_formation(queue)
        logger.info(
            f"[Scheduler] Queue open for {model_name}: max_batch_size={policy.max_batch_size}, "
            f"max_wait_ms={policy.max_wait_ms}, backlog_limit={policy.backlog_limit}"
        )
        return policy

    async def remove_model(
        self,
        model_name: str,
        error: Optional[ServingError] = None,
    ) -> int:
        """Close a model's queue, failing anything still queued."""
        queue = self._queues.get(model_name)
        if queue is None:
            return 0
        drained = self.drain(model_name, error)
        if queue.task is not None:
            queue.task.cancel()
            try:
                await queue.task
            except asyncio.CancelledError:
                pass
        del self._queues[model_name]
        return drained

    def pause_model(self, model_name: str) -> bool:
        """Stop forming batches for a model. Queued requests stay queued."""
        queue = self._queues.get(model_name)
        if queue is None or queue.paused:
            return False
        queue.paused = True
        queue.wakeup.set()
        logger.info(f"[Scheduler] Paused formation for {model_name} ({len(queue.entries)} queued)")
        return True

    def resume_model(self, model_name: str) -> bool:
        queue = self._queues.get(model_name)
        if queue is None or not queue.paused:
            return False
        queue.paused = False
        queue.wakeup.set()
        logger.info(f"[Scheduler] Resumed formation for {model_name}")
        return True

    def is_paused(self, model_name: str) -> bool:
        queue = self._queues.get(model_name)
        return queue is not None and queue.paused

    def has_model(self, model_name: str) -> bool:
        return model_name in self._queues

    def policy_for(self, model_name: str) -> BatchPolicy:
        queue = self._queues.get(model_name)
        return queue.policy if queue else self.default_policy

    # =========================================================================
    # Admission side
    # =========================================================================

    def enqueue(self, request: InferenceRequest) -> None:
        """
        Add a request to its model's queue.

        Raises:
            ModelNotReady: no queue is open for the model.
            Backpressure: the queue is at its backlog limit.
        """
        queue = self._queues.get(request.model_name)
        if queue is None:
            raise ModelNotReady(
                f"Model {request.model_name} is not accepting requests",
                correlation_id=request.id,
                model=request.model_name,
            )
        if len(queue.entries) >= queue.policy.backlog_limit:
            raise Backpressure(
                f"Queue for {request.model_name} is full ({queue.policy.backlog_limit})",
                correlation_id=request.id,
                model=request.model_name,
                details={"backlog_limit": queue.policy.backlog_limit},
            )

        request.state = RequestState.QUEUED
        heapq.heappush(queue.heap, (request.priority.value, request.sequence, request))
        queue.entries[request.id] = request
        queue.wakeup.set()

    def cancel(self, request: InferenceRequest) -> bool:
        """Remove a still-queued request. False if it was already batched."""
        queue = self._queues.get(request.model_name)
        if queue is None or queue.entries.pop(request.id, None) is None:
            return False
        if not queue.entries:
            queue.heap.clear()
        request.state = RequestState.CANCELLED
        logger.debug(f"[Scheduler] Cancelled queued request {request.id}")
        return True

    def drain(self, model_name: str, error: Optional[ServingError] = None) -> int:
        """Fail every queued request of a model."""
        queue = self._queues.get(model_name)
        if queue is None:
            return 0
        error = error or ModelNotReady(f"Model {model_name} was unloaded", model=model_name)
        drained = list(queue.entries.values())
        queue.entries.clear()
        queue.heap.clear()
        for request in drained:
            request.fail(error)
        if drained:
            logger.info(f"[Scheduler] Drained {len(drained)} requests from {model_name}")
        return len(drained)

    def queue_depth(self, model_name: str) -> int:
        queue = self._queues.get(model_name)
        return len(queue.entries) if queue else 0

    # =========================================================================
    # Formation
    # =========================================================================

    def _purge_expired(self, queue: _ModelQueue, now: float) -> None:
        expired = [r for r in queue.entries.values() if r.expired(now)]
        for request in expired:
            del queue.entries[request.id]
            queue.total_timeouts += 1
            request.fail(
                BatchTimeout(
                    f"Deadline elapsed after {request.waited_ms(now):.1f}ms in queue",
                    model=queue.model_name,
                )
            )
        if not queue.entries:
            queue.heap.clear()
        if expired:
            logger.warning(
                f"[Scheduler] {len(expired)} requests for {queue.model_name} timed out in queue"
            )

    def _flush_at(self, queue: _ModelQueue) -> float:
        policy = queue.policy
        oldest = min(r.arrival for r in queue.entries.values())
        flush_at = oldest + policy.max_wait_ms / 1000
        deadlines = [r.deadline for r in queue.entries.values() if r.deadline is not None]
        if deadlines:
            flush_at = min(flush_at, min(deadlines) - policy.deadline_margin_ms / 1000)
        return flush_at

    async def _formation_loop(self, queue: _ModelQueue) -> None:
        while self._running:
            now = time.monotonic()
            self._purge_expired(queue, now)

            if not queue.entries:
                queue.wakeup.clear()
                await queue.wakeup.wait()
                continue

            if queue.paused:
                # Only expiry runs while paused
                deadlines = [r.deadline for r in queue.entries.values() if r.deadline is not None]
                queue.wakeup.clear()
                try:
                    await asyncio.wait_for(
                        queue.wakeup.wait(),
                        timeout=max(min(deadlines) - now, 0.0) if deadlines else None,
                    )
                except asyncio.TimeoutError:
                    pass
                continue

            flush_at = self._flush_at(queue)
            if len(queue.entries) < queue.policy.max_batch_size and now < flush_at:
                queue.wakeup.clear()
                try:
                    await asyncio.wait_for(queue.wakeup.wait(), timeout=flush_at - now)
                except asyncio.TimeoutError:
                    pass
                continue

            batch = self._form_batch(queue, now)
            if batch is not None:
                await self._hand_off(queue, batch)

    def _form_batch(self, queue: _ModelQueue, now: float) -> Optional[Batch]:
        policy = queue.policy
        requests: List[InferenceRequest] = []
        while queue.heap and len(requests) < policy.max_batch_size:
            _, _, request = heapq.heappop(queue.heap)
            # Cancelled or purged entries are skipped lazily
            if queue.entries.pop(request.id, None) is None:
                continue
            request.state = RequestState.BATCHED
            requests.append(request)
        if not queue.entries:
            queue.heap.clear()

        if not requests:
            return None

        started = min(r.arrival for r in requests)

        inputs, lengths, types = pad_batch(
            [r.payload for r in requests],
            pad_value=policy.pad_value,
            enabled=policy.dynamic_padding,
        )
        batch = Batch(
            model_name=queue.model_name,
            requests=requests,
            inputs=inputs,
            original_lengths=lengths,
            original_types=types,
            formation_started_at=started,
            formed_at=now,
        )

        queue.total_batches += 1
        queue.total_items += batch.size
        queue.total_wait_ms += batch.formation_wait_ms
        queue.largest_batch = max(queue.largest_batch, batch.size)

        logger.debug(
            f"[Scheduler] Formed batch {batch.batch_id} for {queue.model_name}: "
            f"size={batch.size}, wait={batch.formation_wait_ms:.1f}ms, padded={batch.padded}"
        )
        return batch

    async def _hand_off(self, queue: _ModelQueue, batch: Batch) -> None:
        if self._on_batch is not None:
            self._on_batch(batch)
        if self._dispatch is None:
            raise RuntimeError("BatchScheduler has no dispatch target")
        try:
            await self._dispatch(batch)
        except ServingError as e:
            for request in batch.requests:
                request.fail(e)
        except Exception as e:
            logger.error(f"[Scheduler] Dispatch failed for batch {batch.batch_id}: {e}")
            for request in batch.requests:
                request.fail(ModelNotReady(f"Dispatch failed: {e}", model=queue.model_name))

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats(self, model_name: Optional[str] = None) -> Dict[str, Any]:
        if model_name is not None:
            queue = self._queues.get(model_name)
            return self._queue_stats(queue) if queue else {}
        return {name: self._queue_stats(q) for name, q in self._queues.items()}

    @staticmethod
    def _queue_stats(queue: _ModelQueue) -> Dict[str, Any]:
        return {
            "pending": len(queue.entries),
            "paused": queue.paused,
            "total_batches": queue.total_batches,
            "total_processed": queue.total_items,
            "avg_batch_size": (
                queue.total_items / queue.total_batches if queue.total_batches else 0.0
            ),
            "avg_wait_ms": (
                queue.total_wait_ms / queue.total_batches if queue.total_batches else 0.0
            ),
            "largest_batch": queue.largest_batch,
            "timeouts": queue.total_timeouts,
            "max_batch_size": queue.policy.max_batch_size,
            "max_wait_ms": queue.policy.max_wait_ms,
        }
