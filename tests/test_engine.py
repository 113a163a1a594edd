"""End-to-end tests for the inference engine: lifecycle, eviction, health, process-wide state."""

import asyncio

import numpy as np
import pytest

from conftest import load, make_config, make_descriptor
from unimodel_core.serving import (
    Device,
    DeviceKind,
    DuplicateModel,
    HealthStatus,
    InferenceEngine,
    ModelNotFound,
    ModelNotReady,
    ModelState,
    PluginCallFailed,
    RequestState,
    ResourceExhausted,
    ValidationError,
    get_engine,
    init_engine,
    shutdown_engine,
)


class TestBatchingEndToEnd:
    """Test requests flowing through scheduler, coordinator and backend."""

    @pytest.mark.asyncio
    async def test_two_requests_share_one_batch(self, engine):
        """Test two requests 10ms apart are executed as one batch."""
        await load(engine, "m1", backend="scripted")
        backend = engine.coordinator.backend_for("m1")

        first = engine.submit("m1", "hello")
        await asyncio.sleep(0.01)
        second = engine.submit("m1", "world")

        assert await first == "hello"
        assert await second == "world"
        assert backend.calls == [["hello", "world"]]
        assert first.poll().batch_id == second.poll().batch_id

        histogram = engine.metrics.snapshot()["models"]["m1"]["batch_size"]
        assert histogram["count"] == 1
        assert histogram["buckets"]["le_2"] == 1

    @pytest.mark.asyncio
    async def test_padded_payloads_returned_unchanged(self, engine):
        """Test each caller gets exactly its own variable-length payload back."""
        await load(engine, "m1")
        payloads = [[1, 2, 3], [4], (5.0, 6.0), np.array([7, 8, 9, 10])]

        results = await engine.predict_many("m1", payloads)

        assert results[0] == [1, 2, 3]
        assert results[1] == [4]
        assert results[2] == (5.0, 6.0)
        assert isinstance(results[3], np.ndarray)
        assert results[3].tolist() == [7, 8, 9, 10]

    @pytest.mark.asyncio
    async def test_per_model_batch_size_override(self, engine):
        """Test descriptor options override the default batch size."""
        await load(engine, "m1", backend="scripted", max_batch_size=2)
        backend = engine.coordinator.backend_for("m1")

        await engine.predict_many("m1", ["a", "b", "c"])
        assert [len(call) for call in backend.calls] == [2, 1]


class TestLifecycle:
    """Test load and unload through the engine."""

    @pytest.mark.asyncio
    async def test_load_allocates_and_reports_status(self, engine):
        """Test a loaded model is Ready with its device fraction recorded."""
        await load(engine, "m1", fraction=0.4)
        status = engine.get_model_status("m1")

        assert status["state"] == "ready"
        assert status["queue_depth"] == 0
        assert status["resource_usage"] == [
            {"device_id": "gpu:0", "device_kind": "gpu", "fraction": 0.4}
        ]

    @pytest.mark.asyncio
    async def test_load_is_idempotent_under_concurrency(self, engine):
        """Test concurrent loads perform one Loading transition."""
        engine.register_model(make_descriptor("m1"))
        transitions = []
        engine.registry.add_listener(lambda old, new: transitions.append(new.state))

        results = await asyncio.gather(*(engine.load_model("m1") for _ in range(5)))

        assert transitions.count(ModelState.LOADING) == 1
        assert engine.registry.get_status("m1") == ModelState.READY
        assert len(engine.pool.handles_for("m1")) == 1
        assert {r.name for r in results} == {"m1"}

    @pytest.mark.asyncio
    async def test_failed_load_releases_resources(self, engine):
        """Test a backend load failure leaves the model Failed with nothing allocated."""
        engine.register_model(make_descriptor("m1", backend="scripted", fail_load=True))

        with pytest.raises(PluginCallFailed):
            await engine.load_model("m1")

        assert engine.registry.get_status("m1") == ModelState.FAILED
        assert "artifact missing" in engine.registry.resolve("m1").last_error
        assert engine.pool.utilization()["gpu:0"] == 0.0

    @pytest.mark.asyncio
    async def test_unload_is_idempotent(self, engine):
        """Test a second unload is a no-op that leaves the version alone."""
        await load(engine, "m1", backend="scripted")
        backend = engine.coordinator.backend_for("m1")

        assert await engine.unload_model("m1") is True
        version = engine.registry.resolve("m1").version
        assert await engine.unload_model("m1") is True

        descriptor = engine.registry.resolve("m1")
        assert descriptor.state == ModelState.UNLOADED
        assert descriptor.version == version
        assert backend.unloaded
        assert engine.get_model_status("m1")["resource_usage"] == []

    @pytest.mark.asyncio
    async def test_unload_fails_queued_requests(self, engine_factory):
        """Test requests still queued at unload fail with ModelNotReady."""
        engine = await engine_factory(batching={"max_wait_ms": 5000, "max_batch_size": 8})
        await load(engine, "m1")
        handles = [engine.submit("m1", f"x{i}") for i in range(3)]

        await engine.unload_model("m1")

        for handle in handles:
            with pytest.raises(ModelNotReady):
                await handle.result(timeout=1.0)
        with pytest.raises(ModelNotReady):
            engine.submit("m1", "late")

    @pytest.mark.asyncio
    async def test_reload_after_unload(self, engine):
        """Test an Unloaded model can be loaded and used again."""
        await load(engine, "m1")
        await engine.unload_model("m1")
        await engine.load_model("m1")
        assert await engine.predict("m1", "again") == "again"

    @pytest.mark.asyncio
    async def test_unload_during_load(self, engine):
        """Test an unload racing a load ends Unloaded with nothing allocated."""
        engine.register_model(make_descriptor("m1", backend="scripted", load_delay_ms=50))
        loading = asyncio.create_task(engine.load_model("m1"))
        await asyncio.sleep(0.01)

        assert engine.registry.get_status("m1") == ModelState.LOADING
        assert await engine.unload_model("m1") is True
        await loading

        assert engine.registry.get_status("m1") == ModelState.UNLOADED
        assert engine.pool.handles_for("m1") == []

    @pytest.mark.asyncio
    async def test_register_validation(self, engine):
        """Test unknown backends and duplicate names are rejected."""
        with pytest.raises(ValidationError):
            engine.register_model(make_descriptor("m1", backend="onnx-nope"))
        engine.register_model(make_descriptor("m1"))
        with pytest.raises(DuplicateModel):
            engine.register_model(make_descriptor("m1"))

    @pytest.mark.asyncio
    async def test_deregister(self, engine):
        """Test deregistration unloads first."""
        await load(engine, "m1")
        await engine.deregister_model("m1")
        assert "m1" not in engine.registry
        assert engine.pool.handles_for("m1") == []


class TestEviction:
    """Test capacity pressure on a single device."""

    @pytest.mark.asyncio
    async def test_busy_model_blocks_eviction(self, single_gpu_engine):
        """Test ResourceExhausted when the only resident model has in-flight work."""
        engine = single_gpu_engine
        await load(engine, "a", backend="scripted", fraction=0.6, delay_ms=300)
        busy = engine.submit("a", "work")

        engine.register_model(make_descriptor("b", fraction=0.6))
        with pytest.raises(ResourceExhausted):
            await engine.load_model("b")

        assert engine.registry.get_status("b") == ModelState.FAILED
        assert engine.registry.get_status("a") == ModelState.READY
        assert await busy == "work"

    @pytest.mark.asyncio
    async def test_idle_model_evicted(self, single_gpu_engine):
        """Test an idle resident model is unloaded to make room."""
        engine = single_gpu_engine
        await load(engine, "a", fraction=0.6)
        await load(engine, "b", fraction=0.6)

        assert engine.registry.get_status("a") == ModelState.UNLOADED
        assert engine.registry.get_status("b") == ModelState.READY
        assert engine.pool.get_device("gpu:0").allocated == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_least_recently_used_evicted_first(self, single_gpu_engine):
        """Test the model used longest ago is the one evicted."""
        engine = single_gpu_engine
        await load(engine, "a", fraction=0.4)
        await load(engine, "b", fraction=0.4)
        await engine.predict("a", "recent")

        await load(engine, "c", fraction=0.4)

        assert engine.registry.get_status("a") == ModelState.READY
        assert engine.registry.get_status("b") == ModelState.UNLOADED
        assert engine.registry.get_status("c") == ModelState.READY


class TestHealth:
    """Test health checks driving Ready <-> Degraded."""

    @pytest.mark.asyncio
    async def test_three_failed_checks_degrade_then_recover(self, engine):
        """Test degrade after three failures, reject while degraded, recover on success."""
        await load(engine, "m1", backend="scripted")
        backend = engine.coordinator.backend_for("m1")
        backend.health_results = [HealthStatus.UNHEALTHY] * 3

        for _ in range(3):
            await engine.check_health("m1")
        assert engine.registry.get_status("m1") == ModelState.DEGRADED
        assert engine.health()["degraded"] == ["m1"]

        with pytest.raises(ModelNotReady):
            engine.submit("m1", "x")

        assert await engine.check_health("m1") == HealthStatus.HEALTHY
        assert engine.registry.get_status("m1") == ModelState.READY
        assert await engine.predict("m1", "x") == "x"

    @pytest.mark.asyncio
    async def test_degraded_model_holds_queued_requests(self, engine_factory):
        """Test a request queued before degradation is not batched until recovery."""
        engine = await engine_factory(batching={"max_batch_size": 4, "max_wait_ms": 200})
        await load(engine, "m1", backend="scripted")
        backend = engine.coordinator.backend_for("m1")

        handle = engine.submit("m1", "queued-before-degrade")
        engine.registry.report_health("m1", HealthStatus.UNHEALTHY, immediate=True)
        assert engine.registry.get_status("m1") == ModelState.DEGRADED

        await asyncio.sleep(0.4)
        assert backend.calls == []
        assert handle.state == RequestState.QUEUED
        assert engine.get_model_status("m1")["queue_depth"] == 1

        assert await engine.check_health("m1") == HealthStatus.HEALTHY
        assert await handle.result(timeout=2.0) == "queued-before-degrade"
        assert backend.calls == [["queued-before-degrade"]]

    @pytest.mark.asyncio
    async def test_health_check_of_unloaded_model(self, engine):
        """Test models without a backend report UNKNOWN."""
        engine.register_model(make_descriptor("m1"))
        assert await engine.check_health("m1") == HealthStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_health_loop_runs_checks(self, engine_factory):
        """Test the periodic sweep feeds backend health into the registry."""
        engine = await engine_factory(
            lifecycle={"health_check_interval_seconds": 0.02, "degrade_after_failures": 2}
        )
        await load(engine, "m1", backend="scripted")
        backend = engine.coordinator.backend_for("m1")
        backend.health_results = [HealthStatus.UNHEALTHY] * 2

        for _ in range(50):
            if engine.registry.get_status("m1") == ModelState.DEGRADED:
                break
            await asyncio.sleep(0.01)
        assert engine.registry.get_status("m1") in (ModelState.DEGRADED, ModelState.READY)
        assert backend.health_results == []


class TestStats:
    """Test aggregate status reporting."""

    @pytest.mark.asyncio
    async def test_stats_and_metrics(self, engine):
        """Test the stats snapshot covers every component."""
        await load(engine, "m1")
        await engine.predict("m1", "x")
        with pytest.raises(ModelNotFound):
            engine.submit("ghost", "x")

        stats = engine.get_stats()
        assert stats["running"] is True
        assert stats["health"]["status"] == "healthy"
        assert stats["scheduler"]["m1"]["total_processed"] == 1
        metrics = stats["metrics"]
        assert metrics["queue_depth"] == {"m1": 0}
        assert metrics["device_utilization"]["gpu:0"] == pytest.approx(0.25)
        assert metrics["errors_by_code"]["MODEL_NOT_FOUND"] == 1
        assert metrics["transitions"]["loading->ready"] == 1
        assert metrics["models"]["m1"]["requests"]["completed"] == 1

    @pytest.mark.asyncio
    async def test_exporters_receive_snapshot(self, engine):
        """Test flush() pushes to sync and async exporters."""
        received = []

        async def async_exporter(snapshot):
            received.append(("async", snapshot["timestamp"]))

        engine.metrics.add_exporter(lambda snapshot: received.append(("sync", snapshot["timestamp"])))
        engine.metrics.add_exporter(async_exporter)
        await engine.metrics.flush()

        assert [kind for kind, _ in received] == ["sync", "async"]


class TestProcessWideEngine:
    """Test init_engine / get_engine / shutdown_engine."""

    @pytest.mark.asyncio
    async def test_init_get_shutdown(self):
        """Test the explicit process-wide lifecycle."""
        with pytest.raises(RuntimeError):
            get_engine()

        engine = await init_engine(
            make_config(), devices=[Device(device_id="cpu:0", kind=DeviceKind.CPU)]
        )
        try:
            assert get_engine() is engine
            assert engine.running
            with pytest.raises(RuntimeError):
                await init_engine(make_config())
        finally:
            await shutdown_engine()

        assert not engine.running
        with pytest.raises(RuntimeError):
            get_engine()
        await shutdown_engine()

    @pytest.mark.asyncio
    async def test_stop_unloads_everything(self):
        """Test stopping the engine leaves no model loaded."""
        engine = InferenceEngine(make_config())
        await engine.start()
        await load(engine, "m1")
        await load(engine, "m2", device_kind=DeviceKind.CPU)

        await engine.stop()

        assert engine.registry.get_status("m1") == ModelState.UNLOADED
        assert engine.registry.get_status("m2") == ModelState.UNLOADED
        assert all(v == 0.0 for v in engine.pool.utilization().values())
