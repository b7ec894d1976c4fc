"""
Plugin Registry - holds plugins and resolves node types to node plugins.

Registration validates identity and, for node plugins, the node contract
(type, schemas, process). A rejected plugin leaves the registry unchanged.
"""

import logging
from dataclasses import dataclass, field

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from branchflow.plugins.base import NodePlugin, Plugin, PluginContext, PluginKind

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of validating a plugin for registration."""

    valid: bool
    errors: list[str] = field(default_factory=list)

    @property
    def error(self) -> str:
        return "; ".join(self.errors) if self.errors else ""


class PluginRegistry:
    """
    Registry of plugins keyed by id, with node plugins indexed by node type.

    Example:
        registry = PluginRegistry()
        result = registry.register_plugin(ProcessPlugin())
        if not result.valid:
            raise RuntimeError(result.error)
        plugin = registry.get_node_plugin("process")
    """

    def __init__(self) -> None:
        self._plugins: dict[str, Plugin] = {}
        self._node_plugins: dict[str, NodePlugin] = {}

    def register_plugin(self, plugin: Plugin) -> ValidationResult:
        """
        Validate and register a plugin.

        Returns:
            ValidationResult; ``valid`` is False and nothing is registered
            when any check fails.
        """
        errors = self._validate(plugin)
        if errors:
            logger.warning(f"Rejected plugin registration: {'; '.join(errors)}")
            return ValidationResult(valid=False, errors=errors)

        self._plugins[plugin.metadata.id] = plugin
        if plugin.kind == PluginKind.NODE:
            self._node_plugins[plugin.node_type] = plugin  # type: ignore[attr-defined]
        logger.debug(f"Registered plugin {plugin.metadata.id}")
        return ValidationResult(valid=True)

    def _validate(self, plugin: Plugin) -> list[str]:
        errors = []
        metadata = getattr(plugin, "metadata", None)
        if metadata is None:
            return ["Plugin metadata is required"]
        if not metadata.id:
            errors.append("Plugin ID is required")
        if not metadata.name:
            errors.append("Plugin name is required")
        if not metadata.version:
            errors.append("Plugin version is required")
        if metadata.id and metadata.id in self._plugins:
            errors.append(f"Plugin with ID {metadata.id} is already registered")

        if plugin.kind != PluginKind.NODE:
            return errors

        if not isinstance(plugin, NodePlugin):
            errors.append("Node plugins must subclass NodePlugin")
            return errors
        if not plugin.node_type:
            errors.append("Node type is required for node plugins")
        elif plugin.node_type in self._node_plugins:
            errors.append(f"Node type {plugin.node_type} is already registered")
        if plugin.input_schema is None:
            errors.append("Input schema is required for node plugins")
        if plugin.output_schema is None:
            errors.append("Output schema is required for node plugins")
        if not callable(getattr(plugin, "process", None)):
            errors.append("Process function is required for node plugins")

        for label, schema in (
            ("Input", plugin.input_schema),
            ("Output", plugin.output_schema),
            ("Config", plugin.config_schema),
        ):
            if schema is None:
                continue
            try:
                Draft7Validator.check_schema(schema)
            except SchemaError as e:
                errors.append(f"{label} schema is not a valid JSON Schema: {e.message}")
        return errors

    def unregister_plugin(self, plugin_id: str) -> bool:
        plugin = self._plugins.pop(plugin_id, None)
        if plugin is None:
            return False
        if plugin.kind == PluginKind.NODE:
            self._node_plugins.pop(plugin.node_type, None)  # type: ignore[attr-defined]
        logger.debug(f"Unregistered plugin {plugin_id}")
        return True

    def get_plugin(self, plugin_id: str) -> Plugin | None:
        return self._plugins.get(plugin_id)

    def get_node_plugin(self, node_type: str) -> NodePlugin | None:
        return self._node_plugins.get(node_type)

    def get_all_plugins(self) -> list[Plugin]:
        return list(self._plugins.values())

    def get_all_node_plugins(self) -> list[NodePlugin]:
        return list(self._node_plugins.values())

    # === LIFECYCLE ===

    async def initialize_all(self, context: PluginContext) -> None:
        for plugin in self._plugins.values():
            await plugin.initialize(context)

    async def activate_all(self) -> None:
        for plugin in self._plugins.values():
            await plugin.activate()

    async def deactivate_all(self) -> None:
        """Deactivate in reverse registration order; one failure does not stop the rest."""
        for plugin in reversed(list(self._plugins.values())):
            try:
                await plugin.deactivate()
            except Exception as e:
                logger.error(f"Failed to deactivate plugin {plugin.metadata.id}: {e}")
