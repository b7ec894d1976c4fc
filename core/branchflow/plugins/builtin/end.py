"""End node: closes the current branch and wraps the final result."""

from datetime import datetime
from typing import Any

from branchflow.plugins.base import ExecutionContext, NodePlugin, PluginMetadata
from branchflow.runtime.event_bus import EventType


class EndPlugin(NodePlugin):
    metadata = PluginMetadata(
        id="end-plugin",
        name="End Node",
        version="1.0.0",
        description="Marks the workflow (or the current branch) as completed",
    )
    node_type = "end"
    input_schema = {"type": "object"}
    output_schema = {
        "type": "object",
        "properties": {
            "completed": {"type": "boolean"},
            "result": {},
            "timestamp": {"type": "string"},
        },
    }
    config_schema = {
        "type": "object",
        "properties": {"addTimestamp": {"type": "boolean"}},
    }

    async def process(self, input: Any, config: dict[str, Any], context: ExecutionContext):
        if context.branch_id:
            context.logger.info(f"Completing branch {context.branch_id}")
            await context.emit_event(
                EventType.BRANCH_COMPLETE,
                {"branch_id": context.branch_id, "result": input},
            )
        else:
            context.logger.debug("Workflow end reached outside of any branch")

        output = {"completed": True, "result": input}
        if config.get("addTimestamp"):
            output["timestamp"] = datetime.now().isoformat()
        return output
