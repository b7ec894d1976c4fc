"""Tests for the built-in node plugins, invoked directly with a context."""

import pytest

from branchflow.graph.compiler import iterate_outputs
from branchflow.plugins import BranchOutput, ExecutionContext
from branchflow.plugins.builtin import (
    BranchPlugin,
    EndPlugin,
    ProcessPlugin,
    StartPlugin,
    TokenBudgetPlugin,
    create_builtin_plugins,
)
from branchflow.plugins.builtin.branch import evaluate_condition, resolve_field
from branchflow.plugins.builtin.process import apply_transform
from branchflow.runtime import EventType


def make_context(node_type: str, branch_id: str | None = None, execution_id: str = "exec-1"):
    emitted = []

    async def emit_event(event_type, data):
        emitted.append((event_type, data))

    context = ExecutionContext(
        node_id=f"{node_type}-node",
        node_type=node_type,
        execution_id=execution_id,
        branch_id=branch_id,
        emit_event=emit_event,
    )
    return context, emitted


async def run(plugin, input, config=None, context=None):
    context = context or make_context(plugin.node_type)[0]
    return [out async for out in iterate_outputs(plugin.process(input, config or {}, context))]


def test_builtin_node_types():
    assert sorted(p.node_type for p in create_builtin_plugins()) == [
        "branch",
        "end",
        "process",
        "start",
        "token-budget",
    ]


class TestStartPlugin:
    @pytest.mark.asyncio
    async def test_passes_input_through(self):
        assert await run(StartPlugin(), {"input": "x"}) == [{"input": "x"}]

    @pytest.mark.asyncio
    async def test_initial_transforms(self):
        assert await run(StartPlugin(), {"a": 1}, {"initialTransform": "stringify"}) == ['{"a": 1}']
        assert await run(StartPlugin(), '{"a": 1}', {"initialTransform": "parse"}) == [{"a": 1}]

    @pytest.mark.asyncio
    async def test_metadata_is_merged(self):
        outputs = await run(
            StartPlugin(),
            {"input": "x", "metadata": {"source": "api"}},
            {"metadata": {"run": "nightly"}},
        )
        assert outputs == [{"input": "x", "metadata": {"source": "api", "run": "nightly"}}]


class TestProcessPlugin:
    @pytest.mark.parametrize(
        "transform,value,expected",
        [
            ("none", " Mixed ", " Mixed "),
            ("uppercase", "abc", "ABC"),
            ("lowercase", "ABC", "abc"),
            ("trim", "  abc  ", "abc"),
            ("json", {"a": 1}, '{"a": 1}'),
            ("uppercase", 42, 42),
        ],
    )
    def test_apply_transform(self, transform, value, expected):
        assert apply_transform(value, transform) == expected

    @pytest.mark.asyncio
    async def test_reads_input_key(self):
        outputs = await run(ProcessPlugin(), {"input": "hello"}, {"transform": "uppercase"})
        assert outputs == [{"output": "HELLO"}]


class TestEndPlugin:
    @pytest.mark.asyncio
    async def test_wraps_result(self):
        assert await run(EndPlugin(), {"output": "x"}) == [{"completed": True, "result": {"output": "x"}}]

    @pytest.mark.asyncio
    async def test_completes_current_branch(self):
        context, emitted = make_context("end", branch_id="branch_1")

        outputs = await run(EndPlugin(), {"output": "x"}, {"addTimestamp": True}, context)

        assert emitted == [(EventType.BRANCH_COMPLETE, {"branch_id": "branch_1", "result": {"output": "x"}})]
        assert "timestamp" in outputs[0]

    @pytest.mark.asyncio
    async def test_no_branch_no_event(self):
        context, emitted = make_context("end")

        await run(EndPlugin(), {}, context=context)

        assert emitted == []


class TestBranchPlugin:
    @pytest.mark.asyncio
    async def test_fork_orders_by_priority_and_emits_events(self):
        context, emitted = make_context("branch", branch_id="main")
        config = {
            "branches": [
                {"name": "Low", "priority": 1},
                {"id": "hi", "name": "High", "priority": 9, "tags": ["urgent"]},
            ]
        }

        outputs = await run(BranchPlugin(), {"input": "x"}, config, context)

        assert all(isinstance(o, BranchOutput) for o in outputs)
        assert [o.data["branch"]["name"] for o in outputs] == ["High", "Low"]
        assert outputs[0].data["branch"]["id"] == "hi"
        assert outputs[0].data["input"] == "x"

        assert [t for t, _ in emitted] == [
            EventType.BRANCH_CREATE,
            EventType.BRANCH_START,
            EventType.BRANCH_CREATE,
            EventType.BRANCH_START,
        ]
        create_high = emitted[0][1]
        assert create_high["branch_id"] == outputs[0].branch_id
        assert create_high["parent_branch_id"] == "main"
        assert create_high["tags"] == ["urgent"]
        assert outputs[0].branch_id != outputs[1].branch_id

    @pytest.mark.asyncio
    async def test_decision_first_match_wins(self):
        config = {
            "conditions": [
                {"path": "big", "field": "size", "operator": "gt", "value": 10},
                {"path": "any", "operator": "truthy"},
            ]
        }

        assert await run(BranchPlugin(), {"value": {"size": 20}}, config) == [
            {"path": "big", "value": {"size": 20}}
        ]
        assert await run(BranchPlugin(), {"value": {"size": 2}}, config) == [
            {"path": "any", "value": {"size": 2}}
        ]

    @pytest.mark.asyncio
    async def test_decision_default_path(self):
        config = {"conditions": [{"path": "yes", "operator": "eq", "value": 1}], "defaultPath": "no"}

        assert await run(BranchPlugin(), {"value": 2}, config) == [{"path": "no", "value": 2}]

    def test_conditions(self):
        assert evaluate_condition({"operator": "contains", "value": "b"}, ["a", "b"])
        assert evaluate_condition({"operator": "in", "value": ["a", "b"]}, "a")
        assert evaluate_condition({"operator": "exists", "field": "a.b"}, {"a": {"b": None}})
        assert not evaluate_condition({"operator": "exists", "field": "a.c"}, {"a": {"b": 1}})
        assert not evaluate_condition({"operator": "lt", "value": 1}, "text")
        with pytest.raises(ValueError):
            evaluate_condition({"operator": "matches"}, 1)

    def test_resolve_field(self):
        assert resolve_field({"a": {"b": 3}}, "a.b") == 3
        assert resolve_field(5, None) == 5


class TestTokenBudgetPlugin:
    @pytest.mark.asyncio
    async def test_update_and_check(self):
        plugin = TokenBudgetPlugin()
        context, _ = make_context("token-budget")
        config = {"totalBudget": 100}

        await run(plugin, {"operation": "update", "tokensUsed": 30, "source": "llm"}, config, context)
        [output] = await run(plugin, {"operation": "update", "tokensUsed": 80, "source": "tool"}, config, context)

        assert output["budget"] == {
            "total": 100,
            "remaining": 0,
            "used": 110,
            "details": {"llm": 30, "tool": 80},
        }
        assert output["exceedsBudget"] is True

    @pytest.mark.asyncio
    async def test_reset(self):
        plugin = TokenBudgetPlugin()
        context, _ = make_context("token-budget")

        await run(plugin, {"operation": "update", "tokensUsed": 30}, {}, context)
        [output] = await run(plugin, {"operation": "reset"}, {}, context)

        assert output["budget"]["used"] == 0
        assert output["exceedsBudget"] is False

    @pytest.mark.asyncio
    async def test_budgets_are_per_execution(self):
        plugin = TokenBudgetPlugin()
        first, _ = make_context("token-budget", execution_id="one")
        second, _ = make_context("token-budget", execution_id="two")

        await run(plugin, {"operation": "update", "tokensUsed": 10}, {}, first)
        [output] = await run(plugin, {"operation": "check"}, {}, second)

        assert output["budget"]["used"] == 0
        assert plugin.get_budget("one").used == 10
