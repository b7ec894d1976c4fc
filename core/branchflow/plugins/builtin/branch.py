"""
Branch node: forks the flow into tracked branches, or picks a path.

Fork mode (``config["branches"]`` set): one branch per entry, highest
priority first. For each, ``branch:create`` and ``branch:start`` are
published and the input is re-emitted routed into the new branch.

Decision mode (``config["conditions"]``): conditions are evaluated in
order against ``input["value"]``; the first match decides the path.
Output: ``{"path": ..., "value": ...}``.
"""

import operator
import uuid
from typing import Any

from branchflow.plugins.base import BranchOutput, ExecutionContext, NodePlugin, PluginMetadata
from branchflow.runtime.event_bus import EventType

DEFAULT_PATH = "default"

_MISSING = object()


def _contains(container: Any, item: Any) -> bool:
    try:
        return item in container
    except TypeError:
        return False


OPERATORS = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
    "contains": _contains,
    "in": lambda left, right: _contains(right, left),
}


def resolve_field(value: Any, path: str | None) -> Any:
    """Follow a dotted path into nested dicts; _MISSING if any step is absent."""
    if not path:
        return value
    current = value
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def evaluate_condition(condition: dict[str, Any], value: Any) -> bool:
    """Evaluate one declarative condition against a value."""
    op = condition.get("operator", "truthy")
    left = resolve_field(value, condition.get("field"))
    if op == "exists":
        return left is not _MISSING
    if left is _MISSING:
        return False
    if op == "truthy":
        return bool(left)
    compare = OPERATORS.get(op)
    if compare is None:
        raise ValueError(f"Unknown operator: {op}")
    try:
        return bool(compare(left, condition.get("value")))
    except TypeError:
        return False


class BranchPlugin(NodePlugin):
    metadata = PluginMetadata(
        id="branch-plugin",
        name="Branch Node",
        version="1.0.0",
        description="Forks execution into branches or selects a path",
    )
    node_type = "branch"
    input_schema = {"type": "object"}
    output_schema = {"type": "object", "properties": {"path": {"type": "string"}, "value": {}}}
    config_schema = {
        "type": "object",
        "properties": {
            "branches": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "string"},
                        "name": {"type": "string"},
                        "description": {"type": "string"},
                        "priority": {"type": "integer"},
                        "tags": {"type": "array", "items": {"type": "string"}},
                    },
                    "required": ["name"],
                },
            },
            "conditions": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "path": {"type": "string"},
                        "field": {"type": "string"},
                        "operator": {"type": "string", "enum": [*OPERATORS, "exists", "truthy"]},
                        "value": {},
                    },
                    "required": ["path"],
                },
            },
            "defaultPath": {"type": "string", "default": DEFAULT_PATH},
        },
    }

    async def process(self, input: Any, config: dict[str, Any], context: ExecutionContext):
        branches = config.get("branches")
        if branches:
            async for output in self._fork(input, branches, context):
                yield output
            return
        yield self._decide(input, config, context)

    async def _fork(self, input: Any, branches: list[dict[str, Any]], context: ExecutionContext):
        ordered = sorted(branches, key=lambda b: b.get("priority", 1), reverse=True)
        for declared in ordered:
            branch_id = f"branch_{uuid.uuid4().hex[:12]}"
            await context.emit_event(
                EventType.BRANCH_CREATE,
                {
                    "branch_id": branch_id,
                    "parent_branch_id": context.branch_id,
                    "name": declared["name"],
                    "description": declared.get("description", ""),
                    "priority": declared.get("priority", 1),
                    "tags": declared.get("tags", []),
                    "declared_id": declared.get("id"),
                    "input": input,
                },
            )
            await context.emit_event(EventType.BRANCH_START, {"branch_id": branch_id})
            context.logger.info(f"Forked branch '{declared['name']}' ({branch_id})")

            data = input
            if isinstance(input, dict):
                data = {**input, "branch": {"id": declared.get("id", branch_id), "name": declared["name"]}}
            yield BranchOutput(data=data, branch_id=branch_id)

    def _decide(self, input: Any, config: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        value = input.get("value") if isinstance(input, dict) else input
        default_path = config.get("defaultPath", DEFAULT_PATH)

        for condition in config.get("conditions") or []:
            try:
                matched = evaluate_condition(condition, value)
            except ValueError as e:
                context.logger.error(f"Error evaluating condition: {e}")
                continue
            if matched:
                context.logger.info(f"Branch condition satisfied: taking path '{condition['path']}'")
                return {"path": condition["path"], "value": value}

        context.logger.info(f"No branch conditions matched: taking default path '{default_path}'")
        return {"path": default_path, "value": value}
