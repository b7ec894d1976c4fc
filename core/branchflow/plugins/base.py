"""
Plugin contracts.

Every plugin carries PluginMetadata and an explicit ``kind``. Lifecycle
plugins only hook initialize/activate/deactivate; node plugins
(``PluginKind.NODE``) additionally bind a node type to a ``process`` call:

    class UpperPlugin(NodePlugin):
        metadata = PluginMetadata(id="upper", name="Upper", version="1.0.0")
        node_type = "upper"
        input_schema = {"type": "object"}
        output_schema = {"type": "object"}

        async def process(self, input, config, context):
            yield {"output": input["input"].upper()}

``process`` may be an async generator (one item per output), a coroutine
(one output) or a plain function returning a single output.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, ClassVar


class PluginKind(StrEnum):
    """Capabilities a plugin declares."""

    LIFECYCLE = "lifecycle"
    NODE = "node"


@dataclass
class PluginMetadata:
    """Identity of a plugin."""

    id: str
    name: str
    version: str
    description: str = ""
    author: str = ""
    dependencies: list[str] = field(default_factory=list)


class ServiceRegistry:
    """Named engine services exposed to plugins (execution, storage, ...)."""

    def __init__(self) -> None:
        self._services: dict[str, Any] = {}

    def register(self, service_id: str, service: Any) -> None:
        self._services[service_id] = service

    def get_service(self, service_id: str) -> Any | None:
        return self._services.get(service_id)

    def has_service(self, service_id: str) -> bool:
        return service_id in self._services


@dataclass
class PluginContext:
    """Handed to Plugin.initialize()."""

    services: ServiceRegistry
    config: dict[str, Any] = field(default_factory=dict)
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("branchflow.plugins"))


EmitEvent = Callable[[str, dict[str, Any]], Awaitable[None]]


async def _discard_event(event_type: str, data: dict[str, Any]) -> None:
    return None


@dataclass
class ExecutionContext:
    """Per-invocation context passed to NodePlugin.process()."""

    node_id: str
    node_type: str
    execution_id: str
    branch_id: str | None = None
    workflow_id: str | None = None
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("branchflow.nodes"))
    services: ServiceRegistry = field(default_factory=ServiceRegistry)
    emit_event: EmitEvent = _discard_event
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BranchOutput:
    """An output that belongs to a specific branch rather than the caller's."""

    data: Any
    branch_id: str


class Plugin(ABC):
    """Base class for every plugin."""

    kind: ClassVar[PluginKind] = PluginKind.LIFECYCLE
    metadata: PluginMetadata

    async def initialize(self, context: PluginContext) -> None:
        """Called once after registration, before activation."""
        self.context = context

    async def activate(self) -> None:
        return None

    async def deactivate(self) -> None:
        return None


ProcessResult = AsyncIterator[Any] | Awaitable[Any] | Any


class NodePlugin(Plugin):
    """A plugin that implements a workflow node type."""

    kind: ClassVar[PluginKind] = PluginKind.NODE
    node_type: str = ""
    input_schema: dict[str, Any] | None = None
    output_schema: dict[str, Any] | None = None
    config_schema: dict[str, Any] | None = None

    @abstractmethod
    def process(self, input: Any, config: dict[str, Any], context: ExecutionContext) -> ProcessResult:
        """Turn one input into zero or more outputs."""
