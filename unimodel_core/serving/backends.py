"""
Backend capability for the UniModel serving core.

A backend is the plugin that actually runs a model. The core only talks to
it through BackendPlugin:

    load(config) -> None          raise on failure
    unload() -> None
    predict(inputs) -> outputs    one output per input; an ItemError entry
                                  fails that item only, raising fails the
                                  whole call
    health_check() -> HealthStatus

Backends are selected from a static registry keyed by the descriptor's
backend kind tag. Built-in kinds:
- "echo": returns inputs unchanged
- "callable": wraps a user function given in the model options
- "torchscript": runs a TorchScript artifact with torch
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from unimodel_core.serving.errors import ValidationError
from unimodel_core.serving.types import HealthStatus

logger = logging.getLogger(__name__)


@dataclass
class ItemError:
    """Per-item failure reported by a backend inside a predict() result."""
    message: str
    code: Optional[str] = None


# =============================================================================
# PLUGIN INTERFACE
# =============================================================================

class BackendPlugin(ABC):
    """Abstract interface for model backends."""

    kind: str = "abstract"

    def __init__(self, model_name: str):
        self.model_name = model_name
        self.loaded = False
        self._executor: Optional[ThreadPoolExecutor] = None

    @abstractmethod
    async def load(self, config: Dict[str, Any]) -> None:
        """Load the model. `config` carries artifact_path, options and device_id."""
        pass

    @abstractmethod
    async def predict(self, inputs: List[Any]) -> List[Any]:
        """Run one batch."""
        pass

    async def unload(self) -> None:
        self.loaded = False
        self.close()

    async def health_check(self) -> HealthStatus:
        return HealthStatus.HEALTHY if self.loaded else HealthStatus.UNHEALTHY

    async def run_sync(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run blocking work on this model's own thread."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1,
                thread_name_prefix=f"unimodel-{self.model_name}",
            )
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None


# =============================================================================
# BUILT-IN BACKENDS
# =============================================================================

class EchoBackend(BackendPlugin):
    """Pass-through backend. Option `delay_ms` simulates compute time."""

    kind = "echo"

    def __init__(self, model_name: str):
        super().__init__(model_name)
        self.delay_ms = 0.0

    async def load(self, config: Dict[str, Any]) -> None:
        self.delay_ms = float(config.get("options", {}).get("delay_ms", 0.0))
        self.loaded = True

    async def predict(self, inputs: List[Any]) -> List[Any]:
        if self.delay_ms:
            await asyncio.sleep(self.delay_ms / 1000)
        return list(inputs)


class CallableBackend(BackendPlugin):
    """
    Wraps a user function given as the `function` option.

    The function receives the batch inputs and returns one output per input.
    With `per_item: true` it is called once per input instead, and an
    exception fails only that item. Plain functions run on the model's
    thread; coroutine functions are awaited directly. An optional
    `health_check` option supplies a callable returning a HealthStatus or bool.
    """

    kind = "callable"

    def __init__(self, model_name: str):
        super().__init__(model_name)
        self.function: Optional[Callable[..., Any]] = None
        self.per_item = False
        self._health: Optional[Callable[[], Any]] = None

    async def load(self, config: Dict[str, Any]) -> None:
        options = config.get("options", {})
        function = options.get("function")
        if not callable(function):
            raise ValidationError(
                f"Model {self.model_name} needs a callable 'function' option",
                model=self.model_name,
            )
        self.function = function
        self.per_item = bool(options.get("per_item", False))
        self._health = options.get("health_check")
        self.loaded = True

    async def _call(self, value: Any) -> Any:
        if asyncio.iscoroutinefunction(self.function):
            return await self.function(value)
        return await self.run_sync(self.function, value)

    async def predict(self, inputs: List[Any]) -> List[Any]:
        if not self.loaded:
            raise RuntimeError(f"Model {self.model_name} not loaded")

        if not self.per_item:
            return list(await self._call(inputs))

        outputs: List[Any] = []
        for value in inputs:
            try:
                outputs.append(await self._call(value))
            except Exception as e:
                outputs.append(ItemError(str(e)))
        return outputs

    async def health_check(self) -> HealthStatus:
        if not self.loaded:
            return HealthStatus.UNHEALTHY
        if self._health is None:
            return HealthStatus.HEALTHY
        if asyncio.iscoroutinefunction(self._health):
            result = await self._health()
        else:
            result = self._health()
        if isinstance(result, HealthStatus):
            return result
        return HealthStatus.HEALTHY if result else HealthStatus.UNHEALTHY


class TorchScriptBackend(BackendPlugin):
    """Runs a TorchScript artifact. Requires the `torch` extra."""

    kind = "torchscript"

    def __init__(self, model_name: str):
        super().__init__(model_name)
        self.model = None
        self.device = None

    def _detect_device(self):
        import torch

        if torch.cuda.is_available():
            return torch.device("cuda")
        elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
            return torch.device("mps")
        return torch.device("cpu")

    async def load(self, config: Dict[str, Any]) -> None:
        import torch

        artifact_path = config.get("artifact_path")
        if not artifact_path:
            raise ValidationError(
                f"Model {self.model_name} has no artifact path",
                model=self.model_name,
            )

        requested = config.get("options", {}).get("torch_device")
        self.device = torch.device(requested) if requested else self._detect_device()

        logger.info(f"Loading TorchScript model: {artifact_path} on {self.device}")
        self.model = await self.run_sync(
            lambda: torch.jit.load(artifact_path, map_location=self.device)
        )
        self.model.eval()
        self.loaded = True

    def _forward(self, inputs: List[Any]) -> List[Any]:
        import torch

        batch = torch.as_tensor(np.stack([np.asarray(x) for x in inputs])).to(self.device)
        with torch.no_grad():
            output = self.model(batch)
        return list(output.detach().cpu().numpy())

    async def predict(self, inputs: List[Any]) -> List[Any]:
        if self.model is None:
            raise RuntimeError(f"Model {self.model_name} not loaded")
        return await self.run_sync(self._forward, inputs)

    async def unload(self) -> None:
        import torch

        self.model = None
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

        import gc
        gc.collect()

        await super().unload()
        logger.info(f"TorchScript model unloaded: {self.model_name}")


# =============================================================================
# STATIC REGISTRY
# =============================================================================

BACKENDS: Dict[str, Callable[[str], BackendPlugin]] = {
    EchoBackend.kind: EchoBackend,
    CallableBackend.kind: CallableBackend,
    TorchScriptBackend.kind: TorchScriptBackend,
}


def register_backend(kind: str, factory: Callable[[str], BackendPlugin]) -> None:
    """Add a backend kind. Called at import time by modules shipping backends."""
    BACKENDS[kind.lower()] = factory


def is_known_backend(kind: str) -> bool:
    return kind.lower() in BACKENDS


def create_backend(kind: str, model_name: str) -> BackendPlugin:
    """Instantiate the backend registered for `kind`."""
    try:
        factory = BACKENDS[kind.lower()]
    except KeyError:
        raise ValidationError(
            f"Unknown backend kind: {kind} (known: {', '.join(sorted(BACKENDS))})",
            model=model_name,
        )
    return factory(model_name)
