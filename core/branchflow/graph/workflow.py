"""
Workflow definition - the graph of typed nodes a caller submits.

Wire format::

    {
        "id": "research",
        "name": "Research",
        "nodes": [{"id": "start", "type": "start", "config": {}}, ...],
        "connections": [{"from": "start", "to": "process"}, ...]
    }

The synthetic id ``"entry"`` may appear as a connection source to mark a
node as receiving the workflow input explicitly. Nodes without incoming
connections receive it implicitly.
"""

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

ENTRY_NODE_ID = "entry"


class WorkflowNode(BaseModel):
    """A node of a workflow, bound to a plugin by its type."""

    id: str
    type: str
    config: dict[str, Any] = Field(default_factory=dict)
    name: str | None = None

    model_config = {"extra": "allow", "frozen": True}


class Connection(BaseModel):
    """A directed edge: outputs of ``source`` feed ``target``."""

    source: str = Field(alias="from")
    target: str = Field(alias="to")

    model_config = {"populate_by_name": True, "frozen": True}


class Workflow(BaseModel):
    """
    A directed graph of processing nodes.

    Fan-out (one node feeding several) is allowed. Cycles are rejected by
    the compiler.
    """

    id: str
    name: str
    description: str = ""
    version: str | None = None
    nodes: list[WorkflowNode] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)

    model_config = {"extra": "allow", "frozen": True}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Workflow":
        return cls.model_validate(data)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def get_node(self, node_id: str) -> WorkflowNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def node_ids(self) -> list[str]:
        return [node.id for node in self.nodes]

    def get_downstream(self, node_id: str) -> list[str]:
        """Targets fed by a node, in connection order."""
        return [c.target for c in self.connections if c.source == node_id]

    def get_upstream(self, node_id: str) -> list[str]:
        """Sources feeding a node, in connection order."""
        return [c.source for c in self.connections if c.target == node_id]

    def descendants(self, node_id: str) -> list[str]:
        """Every node reachable from ``node_id`` (excluding itself), in declaration order."""
        seen: set[str] = set()
        frontier = self.get_downstream(node_id)
        while frontier:
            current = frontier.pop()
            if current in seen:
                continue
            seen.add(current)
            frontier.extend(self.get_downstream(current))
        seen.discard(node_id)
        return [n for n in self.node_ids() if n in seen]

    def root_node_ids(self) -> list[str]:
        """Nodes that receive the workflow input: no real upstream, or wired from entry."""
        roots = []
        for node in self.nodes:
            upstream = self.get_upstream(node.id)
            if not upstream or ENTRY_NODE_ID in upstream:
                roots.append(node.id)
        return roots

    def sink_node_ids(self) -> list[str]:
        """Nodes with no outgoing connections."""
        return [node.id for node in self.nodes if not self.get_downstream(node.id)]

    def validate_references(self) -> list[str]:
        """
        Check the graph's structural invariants.

        Returns:
            A list of problems; empty when the workflow is well formed.
        """
        errors = []
        ids = self.node_ids()
        known = set(ids)

        seen: set[str] = set()
        for node_id in ids:
            if node_id in seen:
                errors.append(f"Duplicate node id: {node_id}")
            seen.add(node_id)
        if ENTRY_NODE_ID in known:
            errors.append(f"Node id '{ENTRY_NODE_ID}' is reserved")

        for connection in self.connections:
            if connection.source != ENTRY_NODE_ID and connection.source not in known:
                errors.append(
                    f"Connection {connection.source} -> {connection.target} "
                    f"references unknown source node"
                )
            if connection.target not in known:
                errors.append(
                    f"Connection {connection.source} -> {connection.target} "
                    f"references unknown target node"
                )
        return errors


def load_workflow(path: str | Path) -> Workflow:
    """Read a workflow definition from a JSON file."""
    with open(path, encoding="utf-8") as f:
        return Workflow.from_dict(json.load(f))
