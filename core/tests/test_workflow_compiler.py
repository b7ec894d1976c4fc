"""
Tests for WorkflowCompiler: ordering, plugin resolution, config validation
and the linear pipeline.
"""

import asyncio

import pytest

from branchflow.errors import (
    CyclicWorkflowError,
    InvalidNodeConfigError,
    InvalidWorkflowError,
    NodeProcessingError,
    NodeTimeoutError,
    PluginNotFoundError,
)
from branchflow.graph import CompileOptions, Workflow, WorkflowCompiler, topological_sort
from branchflow.plugins import NodePlugin, PluginMetadata, PluginRegistry
from branchflow.plugins.base import BranchOutput
from branchflow.plugins.builtin import create_builtin_plugins


# ---- Fake plugins ----
class DoublePlugin(NodePlugin):
    metadata = PluginMetadata(id="double-plugin", name="Double", version="1.0.0")
    node_type = "double"
    input_schema = {"type": "number"}
    output_schema = {"type": "number"}

    async def process(self, input, config, context):
        return input * 2


class SplitPlugin(NodePlugin):
    """Emits each element of a list as its own output."""

    metadata = PluginMetadata(id="split-plugin", name="Split", version="1.0.0")
    node_type = "split"
    input_schema = {"type": "array"}
    output_schema = {}

    async def process(self, input, config, context):
        for value in input:
            yield value


class SlowPlugin(NodePlugin):
    metadata = PluginMetadata(id="slow-plugin", name="Slow", version="1.0.0")
    node_type = "slow"
    input_schema = {}
    output_schema = {}

    async def process(self, input, config, context):
        await asyncio.sleep(5)
        return input


class BrokenPlugin(NodePlugin):
    metadata = PluginMetadata(id="broken-plugin", name="Broken", version="1.0.0")
    node_type = "broken"
    input_schema = {}
    output_schema = {}

    def process(self, input, config, context):
        raise RuntimeError("boom")


class RoutingPlugin(NodePlugin):
    metadata = PluginMetadata(id="routing-plugin", name="Routing", version="1.0.0")
    node_type = "route"
    input_schema = {}
    output_schema = {}

    async def process(self, input, config, context):
        return BranchOutput(data={"routed": input, "seen": context.branch_id}, branch_id="b-1")


class BranchEchoPlugin(NodePlugin):
    metadata = PluginMetadata(id="branch-echo-plugin", name="Branch Echo", version="1.0.0")
    node_type = "branch-echo"
    input_schema = {}
    output_schema = {}

    async def process(self, input, config, context):
        return {"input": input, "branch_id": context.branch_id}


def make_registry(*plugins: NodePlugin) -> PluginRegistry:
    registry = PluginRegistry()
    for plugin in [*create_builtin_plugins(), *plugins]:
        assert registry.register_plugin(plugin).valid
    return registry


def chain(*specs: tuple[str, str], config: dict | None = None) -> Workflow:
    """Linear workflow from (id, type) pairs."""
    config = config or {}
    return Workflow(
        id="wf",
        name="Workflow",
        nodes=[{"id": node_id, "type": node_type, "config": config.get(node_id, {})} for node_id, node_type in specs],
        connections=[{"from": a[0], "to": b[0]} for a, b in zip(specs, specs[1:])],
    )


async def collect(executable, input):
    return [output async for output in executable.pipeline(input)]


class TestTopologicalSort:
    def test_every_connection_points_forward(self):
        workflow = Workflow(
            id="wf",
            name="Diamond",
            nodes=[
                {"id": "d", "type": "end"},
                {"id": "b", "type": "process"},
                {"id": "a", "type": "start"},
                {"id": "c", "type": "process"},
            ],
            connections=[
                {"from": "a", "to": "b"},
                {"from": "a", "to": "c"},
                {"from": "b", "to": "d"},
                {"from": "c", "to": "d"},
            ],
        )
        order = topological_sort(workflow)

        assert sorted(order) == ["a", "b", "c", "d"]
        for connection in workflow.connections:
            assert order.index(connection.source) < order.index(connection.target)

    def test_entry_connections_are_ignored(self):
        workflow = Workflow(
            id="wf",
            name="Entry",
            nodes=[{"id": "a", "type": "start"}],
            connections=[{"from": "entry", "to": "a"}],
        )
        assert topological_sort(workflow) == ["a"]

    def test_cycle_is_rejected(self):
        workflow = Workflow(
            id="wf",
            name="Cycle",
            nodes=[{"id": "a", "type": "start"}, {"id": "b", "type": "process"}],
            connections=[{"from": "a", "to": "b"}, {"from": "b", "to": "a"}],
        )
        with pytest.raises(CyclicWorkflowError) as exc_info:
            topological_sort(workflow)
        assert exc_info.value.node_ids[0] == exc_info.value.node_ids[-1]


class TestCompile:
    def test_node_order_and_stages(self):
        compiler = WorkflowCompiler(make_registry())
        executable = compiler.compile(
            chain(("start", "start"), ("process", "process"), ("end", "end")),
            CompileOptions(execution_id="exec-1"),
        )

        assert executable.node_order == ("start", "process", "end")
        assert executable.execution_id == "exec-1"
        assert set(executable.processors()) == {"start", "process", "end"}

    def test_missing_plugin(self):
        compiler = WorkflowCompiler(make_registry())
        workflow = chain(("start", "start"), ("mystery", "does-not-exist"))

        with pytest.raises(PluginNotFoundError) as exc_info:
            compiler.compile(workflow)
        assert "No plugin found for node type: does-not-exist" in str(exc_info.value)
        assert exc_info.value.node_id == "mystery"

    def test_unknown_connection_target(self):
        compiler = WorkflowCompiler(make_registry())
        workflow = Workflow(
            id="wf",
            name="Dangling",
            nodes=[{"id": "start", "type": "start"}],
            connections=[{"from": "start", "to": "nowhere"}],
        )
        with pytest.raises(InvalidWorkflowError):
            compiler.compile(workflow)

    def test_invalid_node_config(self):
        compiler = WorkflowCompiler(make_registry())
        workflow = chain(("process", "process"), config={"process": {"transform": "reverse"}})

        with pytest.raises(InvalidNodeConfigError):
            compiler.compile(workflow)

    def test_config_validation_can_be_disabled(self):
        compiler = WorkflowCompiler(make_registry())
        workflow = chain(("process", "process"), config={"process": {"transform": "reverse"}})

        executable = compiler.compile(workflow, CompileOptions(validate_config=False))
        assert executable.node_order == ("process",)


class TestPipeline:
    @pytest.mark.asyncio
    async def test_linear_builtin_chain(self):
        compiler = WorkflowCompiler(make_registry())
        executable = compiler.compile(
            chain(("start", "start"), ("process", "process"), ("end", "end"))
        )

        outputs = await collect(executable, {"input": "x"})
        assert outputs == [{"completed": True, "result": {"output": "x"}}]

    @pytest.mark.asyncio
    async def test_every_output_feeds_the_next_stage(self):
        compiler = WorkflowCompiler(make_registry(SplitPlugin(), DoublePlugin()))
        executable = compiler.compile(chain(("split", "split"), ("double", "double")))

        assert await collect(executable, [1, 2, 3]) == [2, 4, 6]

    @pytest.mark.asyncio
    async def test_branch_output_routes_downstream_stages(self):
        compiler = WorkflowCompiler(make_registry(RoutingPlugin(), BranchEchoPlugin()))
        executable = compiler.compile(chain(("route", "route"), ("echo", "branch-echo")))

        outputs = await collect(executable, "payload")
        assert outputs == [{"input": {"routed": "payload", "seen": None}, "branch_id": "b-1"}]

    @pytest.mark.asyncio
    async def test_plugin_error_is_wrapped(self):
        compiler = WorkflowCompiler(make_registry(BrokenPlugin()))
        executable = compiler.compile(chain(("broken", "broken")))

        with pytest.raises(NodeProcessingError) as exc_info:
            await collect(executable, {})
        assert exc_info.value.node_id == "broken"
        assert "boom" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_stage_timeout(self):
        compiler = WorkflowCompiler(make_registry(SlowPlugin()))
        executable = compiler.compile(chain(("slow", "slow")), CompileOptions(timeout_ms=20))

        with pytest.raises(NodeTimeoutError) as exc_info:
            await collect(executable, {})
        assert exc_info.value.timeout_ms == 20
