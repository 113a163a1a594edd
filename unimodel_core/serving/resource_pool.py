"""
Resource Pool Manager for the UniModel serving core.

Tracks capacity-constrained devices (normalized capacity 1.0) and hands out
fractions of them to models:

- Placement is least-loaded among live devices of the requested kind.
- Bookkeeping on a device is mutated only under that device's asyncio.Lock,
  so allocations on different devices never wait on each other.
- When nothing fits, one eviction pass is delegated to the owner of the
  model lifecycle (the engine), then placement is retried once.

Invariant: on every device the sum of allocated fractions never exceeds the
device capacity.
"""

from __future__ import annotations

import asyncio
import importlib.util
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import psutil

from unimodel_core.serving.errors import (
    ResourceExhausted,
    ResourceUnavailable,
    ValidationError,
)
from unimodel_core.serving.types import Device, DeviceKind, ResourceHandle

logger = logging.getLogger(__name__)

# Tolerance for float capacity arithmetic
_EPSILON = 1e-9

# evictor(device_kind, fraction, requesting_owner) -> True if something was freed
Evictor = Callable[[DeviceKind, float, Optional[str]], Awaitable[bool]]


def discover_devices(include_accelerators: bool = True) -> List[Device]:
    """
    Probe the host for devices.

    Always returns one CPU device described with psutil. CUDA and MPS
    accelerators are added when torch is installed.
    """
    memory = psutil.virtual_memory()
    devices = [
        Device(
            device_id="cpu:0",
            kind=DeviceKind.CPU,
            metadata={
                "cores": psutil.cpu_count(logical=True),
                "memory_gb": round(memory.total / 1e9, 2),
            },
        )
    ]

    if include_accelerators and importlib.util.find_spec("torch") is not None:
        import torch

        if torch.cuda.is_available():
            for index in range(torch.cuda.device_count()):
                props = torch.cuda.get_device_properties(index)
                devices.append(
                    Device(
                        device_id=f"gpu:{index}",
                        kind=DeviceKind.GPU,
                        metadata={
                            "name": props.name,
                            "memory_gb": round(props.total_memory / 1e9, 2),
                        },
                    )
                )
        elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
            devices.append(
                Device(device_id="gpu:0", kind=DeviceKind.GPU, metadata={"name": "mps"})
            )

    logger.info(f"[Pool] Discovered devices: {[d.device_id for d in devices]}")
    return devices


def devices_from_config(entries: Iterable[Dict[str, Any]]) -> List[Device]:
    """Build Device records from `{"id", "kind", "capacity"}` entries."""
    devices = []
    for entry in entries:
        device_id = entry["id"]
        kind = DeviceKind.parse(entry.get("kind", device_id.split(":")[0]))
        devices.append(
            Device(
                device_id=device_id,
                kind=kind,
                capacity=float(entry.get("capacity", 1.0)),
                metadata={k: v for k, v in entry.items() if k not in ("id", "kind", "capacity")},
            )
        )
    return devices


class ResourcePoolManager:
    """
    Allocates device fractions to models.

    Example:
        pool = ResourcePoolManager([Device("gpu:0", DeviceKind.GPU)])
        handle = await pool.allocate(DeviceKind.GPU, 0.5, owner="sentiment")
        ...
        await pool.release(handle)
    """

    def __init__(self, devices: Iterable[Device], eviction_enabled: bool = True):
        self._devices: Dict[str, Device] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        for device in devices:
            if device.device_id in self._devices:
                raise ValidationError(f"Duplicate device id: {device.device_id}")
            self._devices[device.device_id] = device
            self._locks[device.device_id] = asyncio.Lock()

        self.eviction_enabled = eviction_enabled
        self._evictor: Optional[Evictor] = None

        # Statistics
        self._total_allocations = 0
        self._total_exhausted = 0
        self._total_evictions = 0

        logger.info(f"[Pool] Initialized with {len(self._devices)} devices")

    def set_evictor(self, evictor: Optional[Evictor]) -> None:
        self._evictor = evictor

    # =========================================================================
    # Allocation
    # =========================================================================

    async def allocate(
        self,
        device_kind: DeviceKind,
        fraction: float,
        owner: Optional[str] = None,
    ) -> ResourceHandle:
        """
        Reserve `fraction` of a device of `device_kind`.

        Raises:
            ResourceExhausted: no device fits, even after one eviction pass.
        """
        if not 0.0 < fraction <= 1.0:
            raise ValidationError(f"Resource fraction must be in (0, 1]: {fraction}", model=owner)

        handle = await self._try_allocate(device_kind, fraction, owner)
        if handle is not None:
            return handle

        if self.eviction_enabled and self._evictor is not None:
            logger.info(
                f"[Pool] No {device_kind.value} capacity for {owner} ({fraction:.2f}), "
                f"running eviction pass"
            )
            if await self._evictor(device_kind, fraction, owner):
                self._total_evictions += 1
                handle = await self._try_allocate(device_kind, fraction, owner)
                if handle is not None:
                    return handle

        self._total_exhausted += 1
        raise ResourceExhausted(
            f"No {device_kind.value} device has {fraction:.2f} free capacity",
            model=owner,
            details={"device_kind": device_kind.value, "fraction": fraction},
        )

    async def _try_allocate(
        self,
        device_kind: DeviceKind,
        fraction: float,
        owner: Optional[str],
    ) -> Optional[ResourceHandle]:
        candidates = sorted(
            (
                d for d in self._devices.values()
                if d.kind == device_kind and d.live and d.free + _EPSILON >= fraction
            ),
            key=lambda d: (d.allocated / d.capacity, d.device_id),
        )

        for device in candidates:
            async with self._locks[device.device_id]:
                # Capacity may have moved while waiting for the lock
                if not device.live or device.free + _EPSILON < fraction:
                    continue
                handle = ResourceHandle(
                    device_id=device.device_id,
                    device_kind=device.kind,
                    fraction=fraction,
                    owner=owner,
                )
                device.allocations[handle.handle_id] = handle
                self._total_allocations += 1

            logger.info(
                f"[Pool] Allocated {fraction:.2f} of {device.device_id} to {owner} "
                f"(now {device.allocated:.2f}/{device.capacity:.2f})"
            )
            return handle

        return None

    async def release(self, handle: Optional[ResourceHandle]) -> bool:
        """Return a handle's capacity. Releasing twice is a no-op."""
        if handle is None or handle.released:
            return False

        device = self._devices.get(handle.device_id)
        if device is None:
            return False

        async with self._locks[device.device_id]:
            if device.allocations.pop(handle.handle_id, None) is None:
                return False
            handle.released = True

        logger.info(
            f"[Pool] Released {handle.fraction:.2f} of {device.device_id} from {handle.owner}"
        )
        return True

    async def release_owner(self, owner: str) -> int:
        """Release every allocation held by `owner`."""
        released = 0
        for handle in self.handles_for(owner):
            if await self.release(handle):
                released += 1
        return released

    # =========================================================================
    # Queries
    # =========================================================================

    def handles_for(self, owner: str) -> List[ResourceHandle]:
        return [
            h for d in self._devices.values() for h in d.allocations.values()
            if h.owner == owner
        ]

    def handle_for(self, owner: str) -> Optional[ResourceHandle]:
        handles = self.handles_for(owner)
        return handles[0] if handles else None

    def get_device(self, device_id: str) -> Device:
        try:
            return self._devices[device_id]
        except KeyError:
            raise ResourceUnavailable(f"Unknown device: {device_id}")

    def devices(self, kind: Optional[DeviceKind] = None) -> List[Device]:
        return [d for d in self._devices.values() if kind is None or d.kind == kind]

    def is_live(self, device_id: str) -> bool:
        device = self._devices.get(device_id)
        return device is not None and device.live

    def check_live(self, handle: ResourceHandle) -> None:
        """Raise ResourceUnavailable if the handle's device is down."""
        if not self.is_live(handle.device_id):
            raise ResourceUnavailable(
                f"Device {handle.device_id} is not live",
                model=handle.owner,
                details={"device_id": handle.device_id},
            )

    def mark_device_live(self, device_id: str, live: bool = True) -> None:
        device = self.get_device(device_id)
        if device.live != live:
            device.live = live
            level = logging.INFO if live else logging.WARNING
            logger.log(level, f"[Pool] Device {device_id} is now {'live' if live else 'down'}")

    def utilization(self) -> Dict[str, float]:
        return {
            d.device_id: round(d.allocated / d.capacity, 4) if d.capacity else 0.0
            for d in self._devices.values()
        }

    def get_stats(self) -> Dict[str, Any]:
        return {
            "devices": [d.to_dict() for d in self._devices.values()],
            "total_allocations": self._total_allocations,
            "total_exhausted": self._total_exhausted,
            "total_evictions": self._total_evictions,
        }
