"""Node plugins shipped with the engine."""

from branchflow.plugins.base import NodePlugin
from branchflow.plugins.builtin.branch import BranchPlugin
from branchflow.plugins.builtin.end import EndPlugin
from branchflow.plugins.builtin.process import ProcessPlugin
from branchflow.plugins.builtin.start import StartPlugin
from branchflow.plugins.builtin.token_budget import TokenBudgetPlugin


def create_builtin_plugins() -> list[NodePlugin]:
    """Fresh instances of every built-in node plugin."""
    return [StartPlugin(), ProcessPlugin(), BranchPlugin(), TokenBudgetPlugin(), EndPlugin()]


__all__ = [
    "BranchPlugin",
    "EndPlugin",
    "ProcessPlugin",
    "StartPlugin",
    "TokenBudgetPlugin",
    "create_builtin_plugins",
]
