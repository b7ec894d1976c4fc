"""Plugin contracts and the plugin registry."""

from branchflow.plugins.base import (
    BranchOutput,
    ExecutionContext,
    NodePlugin,
    Plugin,
    PluginContext,
    PluginKind,
    PluginMetadata,
    ServiceRegistry,
)
from branchflow.plugins.registry import PluginRegistry, ValidationResult

__all__ = [
    "BranchOutput",
    "ExecutionContext",
    "NodePlugin",
    "Plugin",
    "PluginContext",
    "PluginKind",
    "PluginMetadata",
    "PluginRegistry",
    "ServiceRegistry",
    "ValidationResult",
]
