"""
Execution Schema - records, progress, events and filters for workflow runs.

An ExecutionRecord is one run of a workflow against an input. While a run
is active it may fork into ExecutionBranch records that are tracked,
cancelled and scored individually. Progress models are derived views that
the lifecycle manager recomputes as events arrive.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, computed_field


class ExecutionStatus(StrEnum):
    """Status of an execution or a branch."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"
    PAUSED = "paused"  # Reserved, never entered

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELED}
)

# Branches move through the same states as executions
BranchStatus = ExecutionStatus


class ExecutionType(StrEnum):
    """What started an execution."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
    TRIGGERED = "triggered"
    SYSTEM = "system"


class BranchEventType(StrEnum):
    """Entries in a branch's own event log."""

    CREATE = "branch:create"
    START = "branch:start"
    COMPLETE = "branch:complete"
    FAILED = "branch:failed"
    CANCELED = "branch:canceled"
    NODE = "branch:node"


class TokenUsage(BaseModel):
    """Token counts consumed by a node, branch or execution."""

    input: int = 0
    output: int = 0
    total: int = 0

    def add(self, other: "TokenUsage") -> None:
        self.input += other.input
        self.output += other.output
        self.total += other.total

    @classmethod
    def from_data(cls, data: Any) -> "TokenUsage":
        """Build from a loose mapping such as ``{"input": 1, "output": 2}``."""
        if isinstance(data, TokenUsage):
            return data.model_copy()
        if not isinstance(data, dict):
            return cls()
        usage_in = int(data.get("input", 0) or 0)
        usage_out = int(data.get("output", 0) or 0)
        total = int(data.get("total", usage_in + usage_out) or 0)
        return cls(input=usage_in, output=usage_out, total=total)


# === RECORDS ===


class ExecutionBranch(BaseModel):
    """A parallel path within an execution, tracked on its own."""

    id: str
    execution_id: str
    parent_branch_id: str | None = None
    name: str
    description: str = ""
    status: ExecutionStatus = ExecutionStatus.PENDING
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    node_ids: list[str] = Field(default_factory=list)
    current_node_id: str | None = None
    completed_node_ids: list[str] = Field(default_factory=list)

    input: Any = None
    result: Any = None
    error: str | None = None

    priority: int = 1
    tags: list[str] = Field(default_factory=list)
    relevance_score: float | None = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    @property
    def duration_ms(self) -> int:
        if self.started_at is None or self.finished_at is None:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


class ExecutionRecord(BaseModel):
    """One run of a workflow against an input."""

    id: str
    workflow_id: str
    workflow_version: str | None = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    type: ExecutionType = ExecutionType.MANUAL

    created_at: datetime = Field(default_factory=datetime.now)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    input: Any = None
    result: Any = None
    error: str | None = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)

    user_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    priority: int = 1
    metadata: dict[str, Any] = Field(default_factory=dict)

    branches: list[ExecutionBranch] = Field(default_factory=list)
    completed_branch_count: int = 0

    model_config = {"extra": "allow"}

    @property
    def duration_ms(self) -> int:
        if self.started_at is None or self.finished_at is None:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


# === PROGRESS ===


class ExecutionProgress(BaseModel):
    """Aggregate progress of one active execution."""

    execution_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    percentage: int = 0
    total_nodes: int = 0
    completed_nodes: int = 0
    current_node_id: str | None = None

    total_branches: int = 0
    active_branches: int = 0
    completed_branches: int = 0
    failed_branches: int = 0
    canceled_branches: int = 0

    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    updated_at: datetime = Field(default_factory=datetime.now)


class BranchProgress(BaseModel):
    """Per-branch view of which nodes are done and which remain."""

    branch_id: str
    execution_id: str
    name: str = ""
    status: ExecutionStatus = ExecutionStatus.PENDING
    completed_nodes: list[str] = Field(default_factory=list)
    pending_nodes: list[str] = Field(default_factory=list)
    current_node_id: str | None = None
    relevance_score: float | None = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @computed_field
    @property
    def progress(self) -> float:
        total = len(self.completed_nodes) + len(self.pending_nodes)
        if total == 0:
            return 0.0
        return len(self.completed_nodes) / total


# === EVENTS ===


class ExecutionEvent(BaseModel):
    """An entry of an execution's replayable event log."""

    type: str
    execution_id: str
    node_id: str | None = None
    branch_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)


class BranchEvent(BaseModel):
    """An entry of a branch's replayable event log."""

    type: BranchEventType
    execution_id: str
    branch_id: str
    node_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)


# === OPTIONS ===


class ExecutionOptions(BaseModel):
    """Caller-supplied knobs for a single execution."""

    type: ExecutionType = ExecutionType.MANUAL
    workflow_version: str | None = None
    priority: int = 1
    token_budget: int | None = None
    timeout_ms: int | None = None
    max_steps: int | None = None
    concurrency: int | None = None
    tags: list[str] = Field(default_factory=list)
    user_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    enable_branching: bool = False
    max_branches: int | None = None
    branch_relevance_threshold: float = 0.0


class BranchOptions(BaseModel):
    """Caller-supplied attributes of a new branch."""

    name: str
    description: str = ""
    priority: int = 1
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    token_budget: int | None = None
    input: Any = None


# === FILTERS ===

SortDirection = Literal["asc", "desc"]


def _sort_and_page(
    records: list[Any],
    sort_by: str,
    sort_direction: SortDirection,
    offset: int,
    limit: int | None,
) -> list[Any]:
    """Sort by an attribute (missing values first ascending) then slice."""

    def key(record: Any) -> tuple[bool, Any]:
        value = getattr(record, sort_by, None)
        return (value is not None, value)

    ordered = sorted(records, key=key, reverse=sort_direction == "desc")
    end = None if limit is None else offset + limit
    return ordered[offset:end]


class ExecutionFilter(BaseModel):
    """Query for executions; every set field must match."""

    workflow_id: str | None = None
    status: ExecutionStatus | list[ExecutionStatus] | None = None
    user_id: str | None = None
    tags: list[str] | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    has_branches: bool | None = None

    sort_by: str = "created_at"
    sort_direction: SortDirection = "desc"
    offset: int = 0
    limit: int | None = None

    def matches(self, record: ExecutionRecord) -> bool:
        if self.workflow_id is not None and record.workflow_id != self.workflow_id:
            return False
        if self.status is not None:
            allowed = self.status if isinstance(self.status, list) else [self.status]
            if record.status not in allowed:
                return False
        if self.user_id is not None and record.user_id != self.user_id:
            return False
        if self.tags and not set(self.tags) & set(record.tags):
            return False
        if self.date_from is not None and record.created_at < self.date_from:
            return False
        if self.date_to is not None and record.created_at > self.date_to:
            return False
        if self.has_branches is not None and bool(record.branches) != self.has_branches:
            return False
        return True

    def apply(self, records: list[ExecutionRecord]) -> list[ExecutionRecord]:
        matching = [r for r in records if self.matches(r)]
        return _sort_and_page(matching, self.sort_by, self.sort_direction, self.offset, self.limit)


class BranchFilter(BaseModel):
    """Query for branches; every set field must match."""

    execution_id: str | None = None
    status: ExecutionStatus | list[ExecutionStatus] | None = None
    parent_branch_id: str | None = None
    tags: list[str] | None = None
    min_relevance_score: float | None = None

    sort_by: str = "created_at"
    sort_direction: SortDirection = "desc"
    offset: int = 0
    limit: int | None = None

    def matches(self, branch: ExecutionBranch) -> bool:
        if self.execution_id is not None and branch.execution_id != self.execution_id:
            return False
        if self.status is not None:
            allowed = self.status if isinstance(self.status, list) else [self.status]
            if branch.status not in allowed:
                return False
        if self.parent_branch_id is not None and branch.parent_branch_id != self.parent_branch_id:
            return False
        if self.tags and not set(self.tags) & set(branch.tags):
            return False
        if self.min_relevance_score is not None and (
            branch.relevance_score is None or branch.relevance_score < self.min_relevance_score
        ):
            return False
        return True

    def apply(self, branches: list[ExecutionBranch]) -> list[ExecutionBranch]:
        matching = [b for b in branches if self.matches(b)]
        return _sort_and_page(matching, self.sort_by, self.sort_direction, self.offset, self.limit)


# === METRICS ===


class NodeMetrics(BaseModel):
    """Timing and token usage of one node within an execution."""

    node_id: str
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: int = 0
    invocations: int = 0
    failures: int = 0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class BranchMetrics(BaseModel):
    """Timing and progress of one branch within an execution."""

    branch_id: str
    name: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: int = 0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    relevance_score: float | None = None
    completed_nodes: int = 0
    total_nodes: int = 0


class ExecutionMetrics(BaseModel):
    """Snapshot of everything the monitor observed for one execution."""

    execution_id: str
    duration_ms: int = 0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    node_metrics: dict[str, NodeMetrics] = Field(default_factory=dict)
    total_nodes: int = 0
    completed_nodes: int = 0
    failed_nodes: int = 0
    total_branches: int = 0
    completed_branches: int = 0
    failed_branches: int = 0
    canceled_branches: int = 0
    branch_metrics: list[BranchMetrics] = Field(default_factory=list)


class CancelBranchesResult(BaseModel):
    """Outcome of cancelling several branches at once."""

    success: bool
    canceled_branches: list[str] = Field(default_factory=list)
    failed_to_cancel: list[str] = Field(default_factory=list)
