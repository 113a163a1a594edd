"""
Coordination-service integration for the UniModel serving core.

The external coordination service is seen through two capabilities:

- CommandChannel: at-least-once delivery of control commands (register,
  load, unload, deregister). Duplicates and reordering are possible.
- ConfigFeed: watch-style stream of key changes (model options, device
  liveness).

ControlPlane applies both idempotently:
- a command id that was already applied is ignored
- a command whose per-model sequence is not newer than the last applied one
  is ignored
- load/unload are checked against the model's current state, so repeating
  them is a no-op
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional

from unimodel_core.serving.errors import ServingError, ValidationError
from unimodel_core.serving.types import DeviceKind, ModelDescriptor, ModelState

if TYPE_CHECKING:
    from unimodel_core.serving.engine import InferenceEngine

logger = logging.getLogger(__name__)


class CommandKind(Enum):
    REGISTER = "register"
    LOAD = "load"
    UNLOAD = "unload"
    DEREGISTER = "deregister"


class CommandOutcome(Enum):
    APPLIED = "applied"
    NOOP = "noop"  # Already in the requested state
    DUPLICATE = "duplicate"  # Command id seen before
    STALE = "stale"  # Older per-model sequence
    FAILED = "failed"


@dataclass(frozen=True)
class ControlCommand:
    """One control-bus command. `sequence` orders commands per model."""
    command_id: str
    kind: CommandKind
    model: str
    sequence: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    issued_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ControlCommand":
        try:
            kind = CommandKind(str(data["kind"]).lower())
        except (KeyError, ValueError):
            raise ValidationError(f"Invalid command kind in {data!r}")
        if not data.get("command_id") or not data.get("model"):
            raise ValidationError("Command needs a command_id and a model")
        sequence = data.get("sequence")
        return cls(
            command_id=str(data["command_id"]),
            kind=kind,
            model=str(data["model"]),
            sequence=int(sequence) if sequence is not None else None,
            payload=dict(data.get("payload") or {}),
        )


@dataclass(frozen=True)
class ConfigChange:
    """A key change from the config feed. `value` is None for deletions."""
    key: str
    value: Any = None


# =============================================================================
# CAPABILITIES
# =============================================================================

class CommandChannel(ABC):
    """At-least-once control-command channel."""

    @abstractmethod
    async def receive(self) -> ControlCommand:
        """Wait for the next command."""
        pass

    async def ack(self, command: ControlCommand, outcome: CommandOutcome) -> None:
        """Acknowledge a processed command."""
        pass


class ConfigFeed(ABC):
    """Watch-style configuration and liveness feed."""

    @abstractmethod
    def watch(self) -> AsyncIterator[ConfigChange]:
        pass


class InMemoryCommandChannel(CommandChannel):
    """Queue-backed channel for embedding and tests."""

    def __init__(self):
        self._queue: asyncio.Queue[ControlCommand] = asyncio.Queue()
        self.acks: List[tuple] = []

    async def publish(self, command: ControlCommand) -> None:
        await self._queue.put(command)

    async def receive(self) -> ControlCommand:
        return await self._queue.get()

    async def ack(self, command: ControlCommand, outcome: CommandOutcome) -> None:
        self.acks.append((command.command_id, outcome))
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()


class InMemoryConfigFeed(ConfigFeed):
    """Queue-backed feed for embedding and tests."""

    def __init__(self):
        self._queue: asyncio.Queue[ConfigChange] = asyncio.Queue()

    async def set(self, key: str, value: Any) -> None:
        await self._queue.put(ConfigChange(key, value))

    async def delete(self, key: str) -> None:
        await self._queue.put(ConfigChange(key, None))

    async def watch(self) -> AsyncIterator[ConfigChange]:
        while True:
            change = await self._queue.get()
            try:
                yield change
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()


# =============================================================================
# CONTROL PLANE
# =============================================================================

def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() in ("true", "1", "yes", "on", "live")
    return bool(value)


class ControlPlane:
    """
    Applies coordination-service input to an engine.

    Example:
        channel = InMemoryCommandChannel()
        control = ControlPlane(engine, channel=channel)
        await control.start()
        await channel.publish(ControlCommand("c-1", CommandKind.LOAD, "sentiment", sequence=1))
    """

    def __init__(
        self,
        engine: "InferenceEngine",
        channel: Optional[CommandChannel] = None,
        feed: Optional[ConfigFeed] = None,
        dedupe_window: int = 10000,
    ):
        self.engine = engine
        self.channel = channel
        self.feed = feed
        self.dedupe_window = dedupe_window

        self._seen: "OrderedDict[str, CommandOutcome]" = OrderedDict()
        self._last_sequence: Dict[str, int] = {}
        self._tasks: List[asyncio.Task] = []
        self._outcomes: Dict[CommandOutcome, int] = {o: 0 for o in CommandOutcome}

    async def start(self) -> None:
        if self.channel is not None:
            self._tasks.append(asyncio.create_task(self._command_loop(), name="control-commands"))
        if self.feed is not None:
            self._tasks.append(asyncio.create_task(self._feed_loop(), name="control-feed"))
        logger.info("[Control] Started")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("[Control] Stopped")

    # =========================================================================
    # Commands
    # =========================================================================

    async def _command_loop(self) -> None:
        while True:
            command = await self.channel.receive()
            try:
                outcome = await self.apply(command)
            except Exception as e:
                logger.exception(f"[Control] Unexpected error applying {command.command_id}: {e}")
                outcome = CommandOutcome.FAILED
            await self.channel.ack(command, outcome)

    def _remember(self, command: ControlCommand, outcome: CommandOutcome) -> CommandOutcome:
        self._seen[command.command_id] = outcome
        while len(self._seen) > self.dedupe_window:
            self._seen.popitem(last=False)
        self._outcomes[outcome] += 1
        return outcome

    async def apply(self, command: ControlCommand) -> CommandOutcome:
        """Apply one command idempotently and report what happened."""
        if command.command_id in self._seen:
            logger.debug(f"[Control] Duplicate command {command.command_id}")
            self._outcomes[CommandOutcome.DUPLICATE] += 1
            return CommandOutcome.DUPLICATE

        if command.sequence is not None:
            last = self._last_sequence.get(command.model)
            if last is not None and command.sequence <= last:
                logger.info(
                    f"[Control] Ignoring stale {command.kind.value} for {command.model} "
                    f"(seq {command.sequence} <= {last})"
                )
                return self._remember(command, CommandOutcome.STALE)
            self._last_sequence[command.model] = command.sequence

        try:
            outcome = await self._dispatch(command)
        except ServingError as e:
            logger.error(
                f"[Control] {command.kind.value} {command.model} failed: {e.code}: {e.message}"
            )
            outcome = CommandOutcome.FAILED

        logger.info(f"[Control] {command.kind.value} {command.model}: {outcome.value}")
        return self._remember(command, outcome)

    async def _dispatch(self, command: ControlCommand) -> CommandOutcome:
        registry = self.engine.registry
        descriptor = registry.get(command.model)

        if command.kind == CommandKind.REGISTER:
            if descriptor is not None:
                return CommandOutcome.NOOP
            payload = command.payload
            self.engine.register_model(
                ModelDescriptor(
                    name=command.model,
                    backend_kind=payload.get("backend", "echo"),
                    artifact_path=payload.get("artifact_path", ""),
                    options=dict(payload.get("options", {})),
                    device_kind=DeviceKind.parse(
                        payload.get("device_kind", self.engine.config.resources.default_device_kind)
                    ),
                    resource_fraction=float(
                        payload.get("resource_fraction", self.engine.config.resources.default_fraction)
                    ),
                    priority_class=int(payload.get("priority_class", 0)),
                )
            )
            return CommandOutcome.APPLIED

        if descriptor is None:
            if command.kind in (CommandKind.UNLOAD, CommandKind.DEREGISTER):
                return CommandOutcome.NOOP
            registry.resolve(command.model)

        if command.kind == CommandKind.LOAD:
            if descriptor.state in (ModelState.LOADING, ModelState.READY, ModelState.DEGRADED):
                return CommandOutcome.NOOP
            await self.engine.load_model(command.model)
            return CommandOutcome.APPLIED

        if command.kind == CommandKind.UNLOAD:
            if descriptor.state.is_terminal or descriptor.state == ModelState.UNLOADING:
                return CommandOutcome.NOOP
            await self.engine.unload_model(command.model)
            return CommandOutcome.APPLIED

        await self.engine.deregister_model(command.model)
        return CommandOutcome.APPLIED

    # =========================================================================
    # Config feed
    # =========================================================================

    async def _feed_loop(self) -> None:
        async for change in self.feed.watch():
            try:
                await self.apply_change(change)
            except ServingError as e:
                logger.error(f"[Control] Config change {change.key} rejected: {e.message}")

    async def apply_change(self, change: ConfigChange) -> bool:
        """
        Apply one feed change. Recognized keys:

            devices/<device_id>/live             -> device liveness
            models/<name>/options/<option>       -> one descriptor option
            models/<name>/options                -> all descriptor options (dict)

        Returns False for keys the core does not handle.
        """
        parts = change.key.strip("/").split("/")

        if len(parts) == 3 and parts[0] == "devices" and parts[2] == "live":
            live = change.value is not None and _as_bool(change.value)
            self.engine.pool.mark_device_live(parts[1], live)
            return True

        if len(parts) >= 3 and parts[0] == "models" and parts[2] == "options":
            name = parts[1]
            registry = self.engine.registry
            if len(parts) == 4:
                descriptor = registry.resolve(name)
                options = dict(descriptor.options)
                if change.value is None:
                    options.pop(parts[3], None)
                else:
                    options[parts[3]] = change.value
                registry.update_options(name, options, merge=False)
            elif len(parts) == 3:
                registry.update_options(name, dict(change.value or {}), merge=False)
            else:
                return False
            self.engine.refresh_policy(name)
            return True

        logger.debug(f"[Control] Ignoring config key {change.key}")
        return False

    def get_stats(self) -> Dict[str, Any]:
        return {
            "outcomes": {o.value: n for o, n in self._outcomes.items()},
            "remembered_commands": len(self._seen),
            "last_sequence": dict(self._last_sequence),
        }
