"""
Workflow Compiler - turns a Workflow into an ExecutableWorkflow.

Compilation:
1. Checks connection references
2. Orders nodes topologically (depth-first post-order, cycles rejected)
3. Resolves each node type to its node plugin
4. Validates node config against the plugin's config schema
5. Wraps each node into a NodeStage and chains the stages in order

Any failure raises a CompileError subclass; a partially compiled workflow
is never returned.
"""

import asyncio
import inspect
import logging
import uuid
from collections import deque
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from jsonschema import Draft7Validator

from branchflow.errors import (
    CyclicWorkflowError,
    InvalidNodeConfigError,
    InvalidWorkflowError,
    NodeProcessingError,
    NodeTimeoutError,
    PluginNotFoundError,
)
from branchflow.graph.workflow import ENTRY_NODE_ID, Workflow, WorkflowNode
from branchflow.observability import set_trace_context
from branchflow.plugins.base import BranchOutput, ExecutionContext, NodePlugin, ServiceRegistry
from branchflow.plugins.registry import PluginRegistry
from branchflow.runtime.event_bus import EventBus

logger = logging.getLogger(__name__)


@dataclass
class CompileOptions:
    """Per-compilation settings."""

    execution_id: str | None = None
    branch_id: str | None = None
    services: ServiceRegistry | None = None
    event_bus: EventBus | None = None
    timeout_ms: int | None = None
    validate_config: bool = True


def unwrap_output(output: Any, branch_id: str | None) -> tuple[Any, str | None]:
    """Split a plugin output into its data and the branch it belongs to."""
    if isinstance(output, BranchOutput):
        return output.data, output.branch_id
    return output, branch_id


async def iterate_outputs(result: Any) -> AsyncIterator[Any]:
    """Normalise what a plugin's process() returned into a stream of outputs."""
    if inspect.isawaitable(result):
        result = await result
    if hasattr(result, "__aiter__"):
        async for output in result:
            yield output
    else:
        yield result


class NodeStage:
    """A compiled node: its plugin plus everything needed to invoke it."""

    def __init__(
        self,
        node: WorkflowNode,
        plugin: NodePlugin,
        execution_id: str,
        workflow_id: str,
        default_branch_id: str | None = None,
        services: ServiceRegistry | None = None,
        event_bus: EventBus | None = None,
        timeout_ms: int | None = None,
    ):
        self.node = node
        self.plugin = plugin
        self.execution_id = execution_id
        self.workflow_id = workflow_id
        self.default_branch_id = default_branch_id
        self.services = services or ServiceRegistry()
        self.event_bus = event_bus
        self.timeout_ms = timeout_ms

    @property
    def node_id(self) -> str:
        return self.node.id

    def build_context(self, branch_id: str | None, execution_id: str | None = None) -> ExecutionContext:
        execution_id = execution_id or self.execution_id
        bus = self.event_bus
        node_id = self.node.id
        workflow_id = self.workflow_id

        async def emit_event(event_type: str, data: dict[str, Any]) -> None:
            if bus is None:
                logger.debug(f"No event bus; dropped {event_type} from node {node_id}")
                return
            await bus.emit(
                event_type,
                execution_id,
                data=data,
                workflow_id=workflow_id,
                node_id=node_id,
                branch_id=data.get("branch_id") or branch_id,
            )

        return ExecutionContext(
            node_id=node_id,
            node_type=self.node.type,
            execution_id=execution_id,
            branch_id=branch_id,
            workflow_id=workflow_id,
            logger=logging.getLogger(f"branchflow.nodes.{self.node.type}"),
            services=self.services,
            emit_event=emit_event,
        )

    async def run(
        self,
        input: Any,
        branch_id: str | None = None,
        timeout_ms: int | None = None,
        execution_id: str | None = None,
    ) -> list[Any]:
        """
        Invoke the plugin on one input.

        A BranchOutput input routes the invocation into that branch;
        otherwise ``branch_id`` (or the compile-time default) is used.

        Returns:
            Every output the plugin produced, in order.

        Raises:
            NodeTimeoutError: the plugin did not finish in time
            NodeProcessingError: the plugin raised
        """
        data, branch_id = unwrap_output(input, branch_id or self.default_branch_id)
        context = self.build_context(branch_id, execution_id)
        set_trace_context(node_id=self.node.id, branch_id=branch_id)

        timeout_ms = timeout_ms if timeout_ms is not None else self.timeout_ms
        deadline = asyncio.timeout(timeout_ms / 1000 if timeout_ms else None)
        try:
            async with deadline:
                result = self.plugin.process(data, self.node.config, context)
                return [output async for output in iterate_outputs(result)]
        except NodeProcessingError:
            raise
        except TimeoutError as e:
            if deadline.expired():
                raise NodeTimeoutError(self.node.id, timeout_ms or 0) from e
            raise NodeProcessingError(self.node.id, str(e) or "TimeoutError", e) from e
        except Exception as e:
            raise NodeProcessingError(self.node.id, str(e) or type(e).__name__, e) from e


@dataclass(frozen=True)
class ExecutableWorkflow:
    """A compiled workflow bound to one execution (and optionally one branch)."""

    original: Workflow
    node_order: tuple[str, ...]
    pipeline: Callable[[Any], AsyncIterator[Any]]
    stages: Mapping[str, NodeStage] = field(default_factory=dict)
    execution_id: str = ""
    branch_id: str | None = None

    def processors(self) -> dict[str, Callable[..., Any]]:
        """Node id -> stage runner, for the stream engine."""
        return {node_id: stage.run for node_id, stage in self.stages.items()}


def topological_sort(workflow: Workflow) -> list[str]:
    """
    Order nodes so every connection points forward.

    Depth-first from each node in declaration order; a node is prepended
    once all its descendants are placed.

    Raises:
        CyclicWorkflowError: the graph has a cycle
    """
    adjacency: dict[str, list[str]] = {node.id: [] for node in workflow.nodes}
    for connection in workflow.connections:
        if connection.source == ENTRY_NODE_ID:
            continue
        adjacency[connection.source].append(connection.target)

    unvisited, in_progress, done = 0, 1, 2
    state = dict.fromkeys(adjacency, unvisited)
    order: deque[str] = deque()

    for root in adjacency:
        if state[root] != unvisited:
            continue
        state[root] = in_progress
        stack = [(root, iter(adjacency[root]))]
        while stack:
            node_id, children = stack[-1]
            for child in children:
                if state[child] == in_progress:
                    path = [n for n, _ in stack]
                    raise CyclicWorkflowError(path[path.index(child) :] + [child])
                if state[child] == unvisited:
                    state[child] = in_progress
                    stack.append((child, iter(adjacency[child])))
                    break
            else:
                stack.pop()
                state[node_id] = done
                order.appendleft(node_id)

    return list(order)


class WorkflowCompiler:
    """Compiles workflows against a plugin registry."""

    def __init__(self, registry: PluginRegistry):
        self.registry = registry

    def compile(self, workflow: Workflow, options: CompileOptions | None = None) -> ExecutableWorkflow:
        """
        Compile a workflow.

        Raises:
            InvalidWorkflowError: connections reference unknown nodes
            CyclicWorkflowError: the graph has a cycle
            PluginNotFoundError: a node type has no plugin
            InvalidNodeConfigError: a node config fails its plugin's schema
        """
        options = options or CompileOptions()
        problems = workflow.validate_references()
        if problems:
            raise InvalidWorkflowError(problems)

        node_order = topological_sort(workflow)
        execution_id = options.execution_id or uuid.uuid4().hex

        stages: dict[str, NodeStage] = {}
        for node_id in node_order:
            node = workflow.get_node(node_id)
            plugin = self.registry.get_node_plugin(node.type)
            if plugin is None:
                raise PluginNotFoundError(node.id, node.type)
            if options.validate_config and plugin.config_schema:
                errors = sorted(
                    e.message for e in Draft7Validator(plugin.config_schema).iter_errors(node.config)
                )
                if errors:
                    raise InvalidNodeConfigError(node.id, errors)
            stages[node_id] = NodeStage(
                node=node,
                plugin=plugin,
                execution_id=execution_id,
                workflow_id=workflow.id,
                default_branch_id=options.branch_id,
                services=options.services,
                event_bus=options.event_bus,
                timeout_ms=options.timeout_ms,
            )

        ordered = [stages[node_id] for node_id in node_order]

        async def chain(index: int, data: Any, branch_id: str | None) -> AsyncIterator[Any]:
            if index == len(ordered):
                yield data
                return
            for output in await ordered[index].run(data, branch_id):
                out_data, out_branch = unwrap_output(output, branch_id)
                async for result in chain(index + 1, out_data, out_branch):
                    yield result

        async def pipeline(input: Any) -> AsyncIterator[Any]:
            data, branch_id = unwrap_output(input, options.branch_id)
            async for result in chain(0, data, branch_id):
                yield result

        logger.debug(f"Compiled workflow {workflow.id}: {' -> '.join(node_order)}")
        return ExecutableWorkflow(
            original=workflow,
            node_order=tuple(node_order),
            pipeline=pipeline,
            stages=MappingProxyType(stages),
            execution_id=execution_id,
            branch_id=options.branch_id,
        )
