"""Records, progress views, events and filters for workflow executions."""

from branchflow.schemas.execution import (
    BranchEvent,
    BranchEventType,
    BranchFilter,
    BranchMetrics,
    BranchOptions,
    BranchProgress,
    BranchStatus,
    CancelBranchesResult,
    ExecutionBranch,
    ExecutionEvent,
    ExecutionFilter,
    ExecutionMetrics,
    ExecutionOptions,
    ExecutionProgress,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionType,
    NodeMetrics,
    TokenUsage,
)

__all__ = [
    "BranchEvent",
    "BranchEventType",
    "BranchFilter",
    "BranchMetrics",
    "BranchOptions",
    "BranchProgress",
    "BranchStatus",
    "CancelBranchesResult",
    "ExecutionBranch",
    "ExecutionEvent",
    "ExecutionFilter",
    "ExecutionMetrics",
    "ExecutionOptions",
    "ExecutionProgress",
    "ExecutionRecord",
    "ExecutionStatus",
    "ExecutionType",
    "NodeMetrics",
    "TokenUsage",
]
