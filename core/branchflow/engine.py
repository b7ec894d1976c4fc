"""
Engine - explicit wiring of every runtime component.

    engine = Engine.create()
    await engine.start()
    record = await engine.execution.run_workflow(workflow, {"input": "x"})
    await engine.stop()

Nothing here is global: two engines share no state.
"""

import logging
from dataclasses import dataclass

from branchflow.config import EngineConfig
from branchflow.graph.compiler import WorkflowCompiler
from branchflow.graph.executor import WorkflowExecutor
from branchflow.graph.stream import WorkflowStreamService
from branchflow.plugins.base import Plugin, PluginContext, ServiceRegistry
from branchflow.plugins.builtin import create_builtin_plugins
from branchflow.plugins.registry import PluginRegistry
from branchflow.runtime.event_bus import EventBus
from branchflow.runtime.execution_monitor import ExecutionMonitor
from branchflow.runtime.execution_service import ExecutionService
from branchflow.storage import ExecutionStorage, FileExecutionStorage, InMemoryExecutionStorage

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """Holds one fully wired set of components."""

    config: EngineConfig
    registry: PluginRegistry
    compiler: WorkflowCompiler
    event_bus: EventBus
    stream_service: WorkflowStreamService
    storage: ExecutionStorage
    monitor: ExecutionMonitor
    executor: WorkflowExecutor
    services: ServiceRegistry
    execution: ExecutionService
    started: bool = False

    @classmethod
    def create(
        cls,
        config: EngineConfig | None = None,
        storage: ExecutionStorage | None = None,
        plugins: list[Plugin] | None = None,
        include_builtins: bool = True,
    ) -> "Engine":
        """
        Wire an engine.

        Args:
            config: Defaults to EngineConfig() (read from the config file)
            storage: Defaults to file storage when ``config.storage_path``
                is set, in-memory storage otherwise
            plugins: Extra plugins registered after the built-ins
            include_builtins: Register the built-in node plugins

        Raises:
            ValueError: a plugin fails registration
        """
        config = config or EngineConfig()
        if storage is None:
            if config.storage_path:
                storage = FileExecutionStorage(config.storage_path)
            else:
                storage = InMemoryExecutionStorage()

        registry = PluginRegistry()
        for plugin in [*(create_builtin_plugins() if include_builtins else []), *(plugins or [])]:
            result = registry.register_plugin(plugin)
            if not result.valid:
                raise ValueError(f"Cannot register plugin {plugin.metadata.id}: {result.error}")

        compiler = WorkflowCompiler(registry)
        event_bus = EventBus(max_history=config.max_event_history)
        stream_service = WorkflowStreamService(event_bus)
        monitor = ExecutionMonitor()
        executor = WorkflowExecutor(compiler)
        services = ServiceRegistry()
        execution = ExecutionService(
            compiler,
            stream_service,
            storage=storage,
            monitor=monitor,
            executor=executor,
            services=services,
            config=config,
        )
        services.register("execution", execution)
        services.register("storage", storage)
        services.register("monitor", monitor)
        services.register("registry", registry)

        return cls(
            config=config,
            registry=registry,
            compiler=compiler,
            event_bus=event_bus,
            stream_service=stream_service,
            storage=storage,
            monitor=monitor,
            executor=executor,
            services=services,
            execution=execution,
        )

    async def start(self) -> None:
        """Initialize and activate every registered plugin."""
        if self.started:
            return
        context = PluginContext(
            services=self.services,
            config={},
            logger=logging.getLogger("branchflow.plugins"),
        )
        await self.registry.initialize_all(context)
        await self.registry.activate_all()
        self.started = True
        logger.info(f"Engine started with {len(self.registry.get_all_plugins())} plugins")

    async def stop(self) -> None:
        """Cancel active executions, then deactivate plugins."""
        if not self.started:
            return
        await self.execution.shutdown()
        await self.registry.deactivate_all()
        self.started = False
        logger.info("Engine stopped")
