"""Tests for admission: fail-fast rejection, validation, handles, cancellation."""

import asyncio

import pytest

from conftest import load, make_descriptor
from unimodel_core.serving import (
    Backpressure,
    ModelNotFound,
    ModelNotReady,
    MultimodalInput,
    RequestPriority,
    RequestState,
    ValidationError,
)
from unimodel_core.serving.router import AdmissionLimits, validate_payload


class TestValidatePayload:
    """Test payload validation rules."""

    def test_accepts_common_payloads(self):
        """Test text, binary, JSON and multimodal inputs pass."""
        validate_payload("hello")
        validate_payload(b"\x00\x01")
        validate_payload({"a": 1})
        validate_payload([1, 2, 3])
        validate_payload(MultimodalInput(text="caption", image=b"\x89PNG"))

    @pytest.mark.parametrize(
        "payload,message",
        [
            (None, "JSON input cannot be null"),
            ("", "Text input cannot be empty"),
            (b"", "Binary input cannot be empty"),
            (MultimodalInput(), "Multimodal input cannot be empty"),
            (MultimodalInput({"": "x"}), "Multimodal key cannot be empty"),
        ],
    )
    def test_rejects_invalid_payloads(self, payload, message):
        """Test each validation failure message."""
        with pytest.raises(ValidationError) as exc_info:
            validate_payload(payload)
        assert exc_info.value.message == message
        assert exc_info.value.status_code == 400

    def test_size_limits(self):
        """Test text and binary limits."""
        limits = AdmissionLimits(max_text_bytes=4, max_binary_bytes=2)
        validate_payload("abcd", limits)
        with pytest.raises(ValidationError, match="Text input too large"):
            validate_payload("abcde", limits)
        with pytest.raises(ValidationError, match="Text input too large"):
            validate_payload("ééé", limits)
        with pytest.raises(ValidationError, match="Binary input too large"):
            validate_payload(b"abc", limits)

    def test_multimodal_parts_validated(self):
        """Test an invalid part names its key."""
        with pytest.raises(ValidationError, match="image: Binary input cannot be empty"):
            validate_payload(MultimodalInput(text="ok", image=b""))


class TestSubmit:
    """Test AdmissionRouter.submit via the engine."""

    @pytest.mark.asyncio
    async def test_unknown_model_rejected_without_queueing(self, engine):
        """Test ModelNotFound is raised synchronously and counted."""
        await load(engine, "m1")

        with pytest.raises(ModelNotFound) as exc_info:
            engine.submit("ghost", "x")

        assert exc_info.value.status_code == 404
        assert exc_info.value.correlation_id is not None
        assert engine.scheduler.queue_depth("m1") == 0
        assert engine.metrics.error_count("MODEL_NOT_FOUND") == 1

    @pytest.mark.asyncio
    async def test_registered_but_not_loaded_is_not_ready(self, engine):
        """Test a Registered model rejects requests."""
        engine.register_model(make_descriptor("m1"))
        with pytest.raises(ModelNotReady) as exc_info:
            engine.submit("m1", "x")
        assert exc_info.value.details["state"] == "registered"

    @pytest.mark.asyncio
    async def test_invalid_payload_rejected(self, engine):
        """Test validation happens before queueing."""
        await load(engine, "m1")
        with pytest.raises(ValidationError):
            engine.submit("m1", "")
        assert engine.scheduler.queue_depth("m1") == 0
        assert engine.registry.in_flight("m1") == 0

    @pytest.mark.asyncio
    async def test_backpressure(self, engine_factory):
        """Test a full backlog rejects with Backpressure."""
        engine = await engine_factory(batching={"backlog_limit": 2, "max_wait_ms": 5000, "max_batch_size": 8})
        await load(engine, "m1")
        engine.submit("m1", "a")
        engine.submit("m1", "b")

        with pytest.raises(Backpressure):
            engine.submit("m1", "c")
        assert engine.scheduler.queue_depth("m1") == 2

    @pytest.mark.asyncio
    async def test_submit_by_model_id(self, engine):
        """Test models can be addressed by id."""
        descriptor = await load(engine, "m1")
        assert await engine.predict(descriptor.model_id, "x") == "x"

    @pytest.mark.asyncio
    async def test_priority_forms(self, engine):
        """Test priority as enum, name or number; unknown names rejected."""
        await load(engine, "m1")
        assert engine.submit("m1", "a", priority="high").request.priority == RequestPriority.HIGH
        assert engine.submit("m1", "b", priority=1).request.priority == RequestPriority.CRITICAL
        assert engine.submit("m1", "c").request.priority == RequestPriority.MEDIUM
        with pytest.raises(ValidationError):
            engine.submit("m1", "d", priority="urgent")

    @pytest.mark.asyncio
    async def test_default_deadline_from_config(self, engine):
        """Test requests get the configured default timeout as deadline."""
        await load(engine, "m1")
        handle = engine.submit("m1", "x")
        request = handle.request
        assert request.deadline == pytest.approx(request.arrival + 5.0, abs=0.5)

        no_deadline = engine.submit("m1", "y", timeout=0)
        assert no_deadline.request.deadline is None


class TestHandle:
    """Test RequestHandle."""

    @pytest.mark.asyncio
    async def test_poll_and_await(self, engine):
        """Test polling before and after completion."""
        await load(engine, "m1")
        handle = engine.submit("m1", "hello")

        assert handle.done() is False
        assert handle.poll() is None
        assert await handle == "hello"

        result = handle.poll()
        assert result.ok
        assert result.output == "hello"
        assert result.batch_size == 1
        assert handle.state == RequestState.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_queued_request(self, engine):
        """Test a queued request is removed and never reaches the backend."""
        await load(engine, "m1", backend="scripted")
        backend = engine.coordinator.backend_for("m1")
        handle = engine.submit("m1", "x")

        assert handle.cancel() is True
        assert handle.state == RequestState.CANCELLED
        assert engine.scheduler.queue_depth("m1") == 0
        with pytest.raises(asyncio.CancelledError):
            await handle.result()
        await asyncio.sleep(0.1)
        assert backend.calls == []
        assert engine.registry.in_flight("m1") == 0

    @pytest.mark.asyncio
    async def test_cancel_completed_request(self, engine):
        """Test finished requests cannot be cancelled."""
        await load(engine, "m1")
        handle = engine.submit("m1", "x")
        await handle
        assert handle.cancel() is False


class TestPredictMany:
    """Test predict_many."""

    @pytest.mark.asyncio
    async def test_order_preserved(self, engine):
        """Test outputs come back in input order."""
        await load(engine, "m1")
        payloads = [f"item-{i}" for i in range(10)]
        assert await engine.predict_many("m1", payloads) == payloads

    @pytest.mark.asyncio
    async def test_invalid_item_rejects_whole_call(self, engine):
        """Test nothing is queued when any payload is invalid."""
        await load(engine, "m1", backend="scripted")
        backend = engine.coordinator.backend_for("m1")

        with pytest.raises(ValidationError) as exc_info:
            await engine.predict_many("m1", ["ok", "", "fine"])

        assert exc_info.value.details["index"] == 1
        assert engine.scheduler.queue_depth("m1") == 0
        await asyncio.sleep(0.1)
        assert backend.calls == []
