"""Process node: applies a simple string transform to ``input["input"]``."""

import json
from typing import Any

from branchflow.plugins.base import ExecutionContext, NodePlugin, PluginMetadata

TRANSFORMS = ("none", "uppercase", "lowercase", "trim", "json")


def apply_transform(value: Any, transform: str) -> Any:
    """Apply a named transform; non-string values pass through the string ones."""
    if transform == "json":
        return value if isinstance(value, str) else json.dumps(value)
    if not isinstance(value, str):
        return value
    if transform == "uppercase":
        return value.upper()
    if transform == "lowercase":
        return value.lower()
    if transform == "trim":
        return value.strip()
    return value


class ProcessPlugin(NodePlugin):
    metadata = PluginMetadata(
        id="process-plugin",
        name="Process Node",
        version="1.0.0",
        description="Generic process node for workflow execution",
    )
    node_type = "process"
    input_schema = {"type": "object", "properties": {"input": {}}}
    output_schema = {"type": "object", "properties": {"output": {}}}
    config_schema = {
        "type": "object",
        "properties": {
            "transform": {"type": "string", "enum": list(TRANSFORMS), "default": "none"},
        },
    }

    async def process(self, input: Any, config: dict[str, Any], context: ExecutionContext):
        value = input.get("input") if isinstance(input, dict) else input
        transform = config.get("transform", "none")
        context.logger.info(f"Processing data with transform '{transform}'")
        return {"output": apply_transform(value, transform)}
