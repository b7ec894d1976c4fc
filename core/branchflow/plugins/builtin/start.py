"""Start node: hands the workflow input to the rest of the graph."""

import json
from typing import Any

from branchflow.plugins.base import ExecutionContext, NodePlugin, PluginMetadata


class StartPlugin(NodePlugin):
    metadata = PluginMetadata(
        id="start-plugin",
        name="Start Node",
        version="1.0.0",
        description="Entry point that passes the workflow input on",
    )
    node_type = "start"
    input_schema = {"type": "object"}
    output_schema = {"type": "object"}
    config_schema = {
        "type": "object",
        "properties": {
            "initialTransform": {
                "type": "string",
                "enum": ["none", "stringify", "parse"],
                "default": "none",
            },
            "metadata": {"type": "object"},
        },
    }

    async def process(self, input: Any, config: dict[str, Any], context: ExecutionContext):
        transform = config.get("initialTransform", "none")
        data = input
        if transform == "stringify" and not isinstance(input, str):
            data = json.dumps(input)
        elif transform == "parse" and isinstance(input, str):
            data = json.loads(input)

        metadata = config.get("metadata")
        if metadata and isinstance(data, dict):
            data = {**data, "metadata": {**data.get("metadata", {}), **metadata}}

        context.logger.debug(f"Workflow started at {context.node_id}")
        yield data
