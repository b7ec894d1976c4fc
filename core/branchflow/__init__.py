"""
branchflow - plugin-based workflow execution with branch tracking.

Workflows are graphs of typed nodes; each node type is implemented by a
NodePlugin. The Engine wires a plugin registry, compiler, stream engine,
lifecycle manager, monitor and storage together.
"""

from branchflow.engine import Engine
from branchflow.graph.workflow import Workflow, load_workflow
from branchflow.plugins.base import BranchOutput, ExecutionContext, NodePlugin, PluginMetadata
from branchflow.schemas.execution import ExecutionOptions, ExecutionRecord, ExecutionStatus

__all__ = [
    "BranchOutput",
    "Engine",
    "ExecutionContext",
    "ExecutionOptions",
    "ExecutionRecord",
    "ExecutionStatus",
    "NodePlugin",
    "PluginMetadata",
    "Workflow",
    "load_workflow",
]
