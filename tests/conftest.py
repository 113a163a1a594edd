"""Shared fixtures for the serving-core test suite.

Provides a scripted backend whose per-item failures, whole-call failures and
health results are controlled by the test, plus configs with small timings.
"""

import asyncio
from typing import Any, Dict, List

import pytest
import pytest_asyncio

from unimodel_core.config import UniModelConfig
from unimodel_core.serving import (
    BackendPlugin,
    Device,
    DeviceKind,
    HealthStatus,
    InferenceEngine,
    ItemError,
    ModelDescriptor,
    register_backend,
)


class ScriptedBackend(BackendPlugin):
    """Echo backend with scripted failures.

    Options:
        fail_items: indices (within a batch) answered with ItemError
        fail_calls: number of predict() calls that raise before succeeding
        delay_ms: sleep inside predict()
        fail_load: raise from load()
        load_delay_ms: sleep inside load()
    """

    kind = "scripted"

    def __init__(self, model_name: str):
        super().__init__(model_name)
        self.fail_items = set()
        self.fail_calls = 0
        self.delay_ms = 0.0
        self.calls: List[List[Any]] = []
        self.health_results: List[HealthStatus] = []
        self.unloaded = False

    async def load(self, config: Dict[str, Any]) -> None:
        options = config.get("options", {})
        if options.get("load_delay_ms"):
            await asyncio.sleep(float(options["load_delay_ms"]) / 1000)
        if options.get("fail_load"):
            raise RuntimeError("artifact missing")
        self.fail_items = set(options.get("fail_items", ()))
        self.fail_calls = int(options.get("fail_calls", 0))
        self.delay_ms = float(options.get("delay_ms", 0.0))
        self.loaded = True

    async def predict(self, inputs: List[Any]) -> List[Any]:
        self.calls.append(list(inputs))
        if self.delay_ms:
            await asyncio.sleep(self.delay_ms / 1000)
        if self.fail_calls > 0:
            self.fail_calls -= 1
            raise ConnectionError("backend unreachable")
        return [
            ItemError(f"bad item {i}") if i in self.fail_items else value
            for i, value in enumerate(inputs)
        ]

    async def health_check(self) -> HealthStatus:
        if self.health_results:
            return self.health_results.pop(0)
        return HealthStatus.HEALTHY

    async def unload(self) -> None:
        self.unloaded = True
        await super().unload()


register_backend(ScriptedBackend.kind, ScriptedBackend)


def make_descriptor(
    name: str,
    backend: str = "echo",
    fraction: float = 0.25,
    device_kind: DeviceKind = DeviceKind.GPU,
    priority_class: int = 0,
    **options: Any,
) -> ModelDescriptor:
    """Build a descriptor with test defaults."""
    return ModelDescriptor(
        name=name,
        backend_kind=backend,
        options=options,
        device_kind=device_kind,
        resource_fraction=fraction,
        priority_class=priority_class,
    )


def make_config(**sections: Dict[str, Any]) -> UniModelConfig:
    """Small-timing config; keyword arguments override whole sections."""
    data = {
        "batching": {"max_batch_size": 4, "max_wait_ms": 50, "backlog_limit": 64},
        "lifecycle": {
            "max_models": 10,
            "degrade_after_failures": 3,
            "recover_after_successes": 1,
            "health_check_interval_seconds": 0,
            "load_timeout_seconds": 5,
            "unload_timeout_seconds": 5,
        },
        "execution": {
            "predict_timeout_seconds": 1.0,
            "max_retries": 2,
            "retry_base_delay_ms": 1,
            "retry_max_delay_ms": 5,
            "circuit_failure_threshold": 3,
            "requeue_delay_ms": 5,
        },
        "resources": {
            "devices": [
                {"id": "gpu:0", "kind": "gpu", "capacity": 1.0},
                {"id": "cpu:0", "kind": "cpu", "capacity": 1.0},
            ],
        },
        "admission": {"default_timeout_seconds": 5},
    }
    for section, values in sections.items():
        data[section] = {**data.get(section, {}), **values}
    return UniModelConfig.from_dict(data)


@pytest.fixture
def config() -> UniModelConfig:
    return make_config()


@pytest_asyncio.fixture
async def engine(config):
    """Started engine, stopped after the test."""
    engine = InferenceEngine(config)
    await engine.start()
    yield engine
    await engine.stop()


@pytest_asyncio.fixture
async def single_gpu_engine():
    """Engine with one GPU of capacity 1.0 and no CPU."""
    engine = InferenceEngine(
        make_config(),
        devices=[Device(device_id="gpu:0", kind=DeviceKind.GPU, capacity=1.0)],
    )
    await engine.start()
    yield engine
    await engine.stop()


@pytest_asyncio.fixture
async def engine_factory():
    """Build started engines from config overrides; all are stopped afterwards."""
    engines: List[InferenceEngine] = []

    async def factory(devices=None, **sections) -> InferenceEngine:
        engine = InferenceEngine(make_config(**sections), devices=devices)
        await engine.start()
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        await engine.stop()


async def load(engine: InferenceEngine, name: str, backend: str = "echo", **kwargs: Any):
    """Register and load a model in one step."""
    engine.register_model(make_descriptor(name, backend=backend, **kwargs))
    return await engine.load_model(name)
