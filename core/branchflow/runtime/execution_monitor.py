"""
Execution Monitor - turns a stream's events into metrics.

The monitor subscribes once per execution and keeps its own tables:
node timings and token usage, node completion/failure counts, branch
totals and per-branch metrics and progress. It is independent of the
lifecycle manager; both consume the same events.

Metric tables live until stop_monitoring() is called for the execution.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from branchflow.errors import MetricsNotFoundError
from branchflow.graph.stream import WorkflowStream
from branchflow.graph.workflow import Workflow
from branchflow.runtime.event_bus import EventType, StreamEvent
from branchflow.schemas.execution import (
    BranchMetrics,
    BranchProgress,
    ExecutionMetrics,
    ExecutionStatus,
    NodeMetrics,
    TokenUsage,
)

logger = logging.getLogger(__name__)


def _elapsed_ms(start: datetime | None, end: datetime | None) -> int:
    if start is None or end is None:
        return 0
    return max(0, int((end - start).total_seconds() * 1000))


@dataclass
class _MonitoredExecution:
    execution_id: str
    workflow: Workflow | None
    subscription_id: str
    stream: WorkflowStream
    first_start: datetime | None = None
    node_metrics: dict[str, NodeMetrics] = field(default_factory=dict)
    open_starts: dict[tuple[str, str | None], list[datetime]] = field(default_factory=dict)
    completed_nodes: set[str] = field(default_factory=set)
    failed_nodes: set[str] = field(default_factory=set)
    branch_metrics: dict[str, BranchMetrics] = field(default_factory=dict)
    branch_progress: dict[str, BranchProgress] = field(default_factory=dict)
    total_branches: int = 0
    completed_branches: int = 0
    failed_branches: int = 0
    canceled_branches: int = 0


class ExecutionMonitor:
    """
    Collects per-execution metrics from workflow stream events.

    Example:
        monitor.monitor_execution(stream, execution_id, workflow)
        ...
        metrics = monitor.collect_execution_metrics(execution_id)
        monitor.stop_monitoring(execution_id)
    """

    def __init__(self) -> None:
        self._executions: dict[str, _MonitoredExecution] = {}

    def is_monitoring(self, execution_id: str) -> bool:
        return execution_id in self._executions

    def monitor_execution(
        self,
        stream: WorkflowStream,
        execution_id: str | None = None,
        workflow: Workflow | None = None,
    ) -> None:
        """Start collecting metrics from a stream. Repeated calls are no-ops."""
        execution_id = execution_id or stream.execution_id
        if execution_id in self._executions:
            return

        async def on_event(event: StreamEvent) -> None:
            self._handle(execution_id, event)

        subscription_id = stream.subscribe(on_event)
        self._executions[execution_id] = _MonitoredExecution(
            execution_id=execution_id,
            workflow=workflow or stream.workflow,
            subscription_id=subscription_id,
            stream=stream,
        )
        logger.debug(f"Monitoring execution {execution_id}")

    def stop_monitoring(self, execution_id: str) -> bool:
        """Unsubscribe and drop all metric state for an execution."""
        monitored = self._executions.pop(execution_id, None)
        if monitored is None:
            return False
        monitored.stream.unsubscribe(monitored.subscription_id)
        logger.debug(f"Stopped monitoring execution {execution_id}")
        return True

    # === EVENT HANDLING ===

    def _handle(self, execution_id: str, event: StreamEvent) -> None:
        monitored = self._executions.get(execution_id)
        if monitored is None:
            return

        if event.type == EventType.NODE_START:
            self._on_node_start(monitored, event)
        elif event.type in (EventType.NODE_COMPLETE, EventType.NODE_ERROR):
            self._on_node_end(monitored, event)
        elif event.type == EventType.BRANCH_CREATE:
            self._on_branch_create(monitored, event)
        elif event.type == EventType.BRANCH_START:
            progress = monitored.branch_progress.get(event.branch_id)
            metrics = monitored.branch_metrics.get(event.branch_id)
            if progress is not None and progress.status == ExecutionStatus.PENDING:
                progress.status = ExecutionStatus.RUNNING
                progress.started_at = metrics.start_time = event.timestamp
        elif event.type in (
            EventType.BRANCH_COMPLETE,
            EventType.BRANCH_FAILED,
            EventType.BRANCH_CANCELED,
        ):
            self._on_branch_end(monitored, event)

    def _on_node_start(self, monitored: _MonitoredExecution, event: StreamEvent) -> None:
        node_id = event.node_id
        metrics = monitored.node_metrics.setdefault(node_id, NodeMetrics(node_id=node_id))
        metrics.invocations += 1
        if metrics.start_time is None:
            metrics.start_time = event.timestamp
        if monitored.first_start is None:
            monitored.first_start = event.timestamp
        monitored.open_starts.setdefault((node_id, event.branch_id), []).append(event.timestamp)

        progress = monitored.branch_progress.get(event.branch_id)
        if progress is not None and not progress.status.is_terminal:
            progress.current_node_id = node_id
            if node_id not in progress.completed_nodes and node_id not in progress.pending_nodes:
                progress.pending_nodes.append(node_id)

    def _on_node_end(self, monitored: _MonitoredExecution, event: StreamEvent) -> None:
        node_id = event.node_id
        metrics = monitored.node_metrics.setdefault(node_id, NodeMetrics(node_id=node_id))
        starts = monitored.open_starts.get((node_id, event.branch_id))
        started = starts.pop(0) if starts else metrics.start_time
        metrics.end_time = event.timestamp
        metrics.duration_ms += _elapsed_ms(started, event.timestamp)

        if event.type == EventType.NODE_ERROR:
            metrics.failures += 1
            monitored.failed_nodes.add(node_id)
            return

        usage = TokenUsage.from_data(event.data.get("tokenUsage"))
        metrics.token_usage.add(usage)
        monitored.completed_nodes.add(node_id)

        branch_metrics = monitored.branch_metrics.get(event.branch_id)
        progress = monitored.branch_progress.get(event.branch_id)
        if progress is None or progress.status.is_terminal:
            return
        branch_metrics.token_usage.add(usage)
        progress.token_usage.add(usage)
        if node_id in progress.pending_nodes:
            progress.pending_nodes.remove(node_id)
        if node_id not in progress.completed_nodes:
            progress.completed_nodes.append(node_id)
        branch_metrics.completed_nodes = len(progress.completed_nodes)
        branch_metrics.total_nodes = len(progress.completed_nodes) + len(progress.pending_nodes)

    def _on_branch_create(self, monitored: _MonitoredExecution, event: StreamEvent) -> None:
        branch_id = event.branch_id
        if branch_id is None or branch_id in monitored.branch_progress:
            return
        workflow = monitored.workflow
        if workflow is None:
            pending = []
        elif event.node_id is None:
            pending = workflow.node_ids()
        else:
            pending = workflow.descendants(event.node_id)

        name = event.data.get("name", "")
        monitored.total_branches += 1
        monitored.branch_progress[branch_id] = BranchProgress(
            branch_id=branch_id,
            execution_id=monitored.execution_id,
            name=name,
            pending_nodes=list(pending),
        )
        monitored.branch_metrics[branch_id] = BranchMetrics(
            branch_id=branch_id,
            name=name,
            total_nodes=len(pending),
        )

    def _on_branch_end(self, monitored: _MonitoredExecution, event: StreamEvent) -> None:
        progress = monitored.branch_progress.get(event.branch_id)
        if progress is None or progress.status.is_terminal:
            return
        metrics = monitored.branch_metrics[event.branch_id]

        if event.type == EventType.BRANCH_COMPLETE:
            progress.status = ExecutionStatus.COMPLETED
            monitored.completed_branches += 1
            score = event.data.get("relevance_score")
            if score is not None:
                progress.relevance_score = metrics.relevance_score = float(score)
        elif event.type == EventType.BRANCH_FAILED:
            progress.status = ExecutionStatus.FAILED
            monitored.failed_branches += 1
        else:
            progress.status = ExecutionStatus.CANCELED
            monitored.canceled_branches += 1

        progress.finished_at = metrics.end_time = event.timestamp
        metrics.duration_ms = _elapsed_ms(metrics.start_time, metrics.end_time)

    # === QUERIES ===

    def collect_execution_metrics(self, execution_id: str) -> ExecutionMetrics:
        """
        Snapshot the metrics of a monitored execution.

        Raises:
            MetricsNotFoundError: the execution is not being monitored
        """
        monitored = self._executions.get(execution_id)
        if monitored is None:
            raise MetricsNotFoundError(execution_id)

        total_usage = TokenUsage()
        for metrics in monitored.node_metrics.values():
            total_usage.add(metrics.token_usage)

        branch_metrics = []
        for branch_id, metrics in monitored.branch_metrics.items():
            progress = monitored.branch_progress[branch_id]
            snapshot = metrics.model_copy(deep=True)
            snapshot.name = progress.name
            snapshot.relevance_score = progress.relevance_score
            snapshot.completed_nodes = len(progress.completed_nodes)
            snapshot.total_nodes = len(progress.completed_nodes) + len(progress.pending_nodes)
            branch_metrics.append(snapshot)

        total_nodes = len(monitored.workflow.nodes) if monitored.workflow else len(monitored.node_metrics)
        return ExecutionMetrics(
            execution_id=execution_id,
            duration_ms=_elapsed_ms(monitored.first_start, datetime.now()),
            token_usage=total_usage,
            node_metrics={k: v.model_copy(deep=True) for k, v in monitored.node_metrics.items()},
            total_nodes=total_nodes,
            completed_nodes=len(monitored.completed_nodes),
            failed_nodes=len(monitored.failed_nodes),
            total_branches=monitored.total_branches,
            completed_branches=monitored.completed_branches,
            failed_branches=monitored.failed_branches,
            canceled_branches=monitored.canceled_branches,
            branch_metrics=branch_metrics,
        )

    def get_branch_progress(self, branch_id: str) -> BranchProgress | None:
        for monitored in self._executions.values():
            progress = monitored.branch_progress.get(branch_id)
            if progress is not None:
                return progress.model_copy(deep=True)
        return None

    def get_execution_branch_progress(self, execution_id: str) -> list[BranchProgress]:
        monitored = self._executions.get(execution_id)
        if monitored is None:
            raise MetricsNotFoundError(execution_id)
        return [p.model_copy(deep=True) for p in monitored.branch_progress.values()]
