"""Workflow graphs: definitions, compilation, streaming and execution."""

from branchflow.graph.compiler import (
    CompileOptions,
    ExecutableWorkflow,
    NodeStage,
    WorkflowCompiler,
    topological_sort,
)
from branchflow.graph.executor import WorkflowExecutionState, WorkflowExecutor, WorkflowResult
from branchflow.graph.stream import (
    StreamItem,
    StreamMetadata,
    StreamOptions,
    WorkflowStream,
    WorkflowStreamService,
)
from branchflow.graph.workflow import ENTRY_NODE_ID, Connection, Workflow, WorkflowNode, load_workflow

__all__ = [
    "ENTRY_NODE_ID",
    "CompileOptions",
    "Connection",
    "ExecutableWorkflow",
    "NodeStage",
    "StreamItem",
    "StreamMetadata",
    "StreamOptions",
    "Workflow",
    "WorkflowCompiler",
    "WorkflowExecutionState",
    "WorkflowExecutor",
    "WorkflowNode",
    "WorkflowResult",
    "WorkflowStream",
    "WorkflowStreamService",
    "load_workflow",
    "topological_sort",
]
