"""
Execution Service - lifecycle manager for workflow executions and branches.

Responsibilities:
- Start executions: record, compile, stream, monitor, run to completion
- Track aggregate progress and per-branch state from stream events
- Cancel executions (cascading to branches) and individual branches
- Finalise exactly once: status, result, token usage, persistence, eviction
- Answer queries from the active table, falling back to storage

State machine (executions and branches):

    pending -> running -> completed | failed | canceled

Terminal states are sticky; events arriving for a terminal branch are
ignored. In-memory state is always updated before the first await of a
handler, so counters are never observed half-updated.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from branchflow.config import EngineConfig
from branchflow.errors import (
    BranchLimitError,
    BranchNotFoundError,
    CompileError,
    ExecutionNotFoundError,
    MetricsNotFoundError,
)
from branchflow.graph.compiler import CompileOptions, WorkflowCompiler
from branchflow.graph.executor import WorkflowExecutor, WorkflowResult
from branchflow.graph.stream import StreamOptions, WorkflowStream, WorkflowStreamService
from branchflow.graph.workflow import Workflow
from branchflow.observability import set_trace_context
from branchflow.plugins.base import ServiceRegistry
from branchflow.runtime.channels import EventLog, ValueChannel
from branchflow.runtime.event_bus import EventBus, EventType, StreamEvent
from branchflow.runtime.execution_monitor import ExecutionMonitor
from branchflow.schemas.execution import (
    BranchEvent,
    BranchEventType,
    BranchFilter,
    BranchOptions,
    BranchProgress,
    CancelBranchesResult,
    ExecutionBranch,
    ExecutionEvent,
    ExecutionFilter,
    ExecutionOptions,
    ExecutionProgress,
    ExecutionRecord,
    ExecutionStatus,
    TokenUsage,
)
from branchflow.storage.backend import ExecutionStorage, InMemoryExecutionStorage

logger = logging.getLogger(__name__)

MAIN_BRANCH_NAME = "Main Branch"
MAIN_BRANCH_PRIORITY = 10

_BRANCH_EVENT_TYPES = {
    ExecutionStatus.RUNNING: BranchEventType.START,
    ExecutionStatus.COMPLETED: BranchEventType.COMPLETE,
    ExecutionStatus.FAILED: BranchEventType.FAILED,
    ExecutionStatus.CANCELED: BranchEventType.CANCELED,
}

_BUS_BRANCH_EVENTS = {
    ExecutionStatus.RUNNING: EventType.BRANCH_START,
    ExecutionStatus.COMPLETED: EventType.BRANCH_COMPLETE,
    ExecutionStatus.FAILED: EventType.BRANCH_FAILED,
    ExecutionStatus.CANCELED: EventType.BRANCH_CANCELED,
}


@dataclass
class _BranchState:
    branch: ExecutionBranch
    progress: BranchProgress
    events: EventLog[BranchEvent]


@dataclass
class _ActiveExecution:
    record: ExecutionRecord
    workflow: Workflow
    options: ExecutionOptions
    progress: ExecutionProgress
    progress_channel: ValueChannel[ExecutionProgress]
    events: EventLog[ExecutionEvent]
    max_branches: int
    branches: dict[str, _BranchState] = field(default_factory=dict)
    completed_node_ids: set[str] = field(default_factory=set)
    subscription_id: str | None = None
    stream: WorkflowStream | None = None
    main_branch_id: str | None = None


@dataclass
class ExecutionHandle:
    """Returned by execute_workflow(); wait() resolves to the final record."""

    execution_id: str
    _task: asyncio.Task

    @property
    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> ExecutionRecord:
        return await asyncio.shield(self._task)


class ExecutionService:
    """
    Lifecycle manager for executions.

    Example:
        service = ExecutionService(compiler, stream_service)
        handle = await service.execute_workflow(workflow, {"input": "hello"})
        progress = service.get_execution_progress(handle.execution_id)
        record = await handle.wait()
    """

    def __init__(
        self,
        compiler: WorkflowCompiler,
        stream_service: WorkflowStreamService,
        storage: ExecutionStorage | None = None,
        monitor: ExecutionMonitor | None = None,
        executor: WorkflowExecutor | None = None,
        services: ServiceRegistry | None = None,
        config: EngineConfig | None = None,
    ):
        self.compiler = compiler
        self.stream_service = stream_service
        self.storage = storage or InMemoryExecutionStorage()
        self.monitor = monitor or ExecutionMonitor()
        self.executor = executor or WorkflowExecutor(compiler)
        self.services = services or ServiceRegistry()
        self.config = config or EngineConfig()
        self._active: dict[str, _ActiveExecution] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def bus(self) -> EventBus:
        return self.stream_service.get_events()

    def get_active_execution_ids(self) -> list[str]:
        return list(self._active)

    # === EXECUTION LIFECYCLE ===

    async def execute_workflow(
        self,
        workflow: Workflow,
        input: Any,
        options: ExecutionOptions | None = None,
    ) -> ExecutionHandle:
        """
        Start an execution and return immediately.

        The run proceeds in a background task; compile errors surface as a
        failed execution rather than an exception.
        """
        options = options or ExecutionOptions()
        execution_id = uuid.uuid4().hex
        record = ExecutionRecord(
            id=execution_id,
            workflow_id=workflow.id,
            workflow_version=options.workflow_version or workflow.version,
            type=options.type,
            input=input,
            user_id=options.user_id,
            tags=list(options.tags),
            priority=options.priority,
            metadata=dict(options.metadata),
        )
        progress = ExecutionProgress(execution_id=execution_id, total_nodes=len(workflow.nodes))
        active = _ActiveExecution(
            record=record,
            workflow=workflow,
            options=options,
            progress=progress,
            progress_channel=ValueChannel(progress.model_copy(deep=True)),
            events=EventLog(replay_size=self.config.event_replay_size),
            max_branches=options.max_branches or self.config.max_branches,
        )
        self._active[execution_id] = active

        async def on_event(event: StreamEvent) -> None:
            await self._on_event(active, event)

        active.subscription_id = self.bus.subscribe(
            event_types=None, handler=on_event, filter_execution=execution_id
        )
        set_trace_context(execution_id=execution_id, workflow_id=workflow.id)
        logger.info(f"Starting execution {execution_id} of workflow {workflow.id}")

        await self._persist(active)
        await self.bus.emit(
            EventType.EXECUTION_START,
            execution_id,
            data={"workflow_id": workflow.id, "input": input},
            workflow_id=workflow.id,
        )

        record.status = ExecutionStatus.RUNNING
        record.started_at = datetime.now()
        active.progress.status = ExecutionStatus.RUNNING
        self._publish_progress(active)
        await self._persist(active)

        timeout_ms = options.timeout_ms or self.config.node_timeout_ms
        try:
            executable = self.compiler.compile(
                workflow,
                CompileOptions(
                    execution_id=execution_id,
                    services=self.services,
                    event_bus=self.bus,
                    timeout_ms=timeout_ms,
                ),
            )
        except CompileError as e:
            logger.error(f"Execution {execution_id} failed to compile: {e}")
            task = asyncio.create_task(
                self._finalize(active, WorkflowResult(status=ExecutionStatus.FAILED, error=str(e)))
            )
            return self._track(execution_id, task)

        if options.enable_branching:
            active.main_branch_id = f"branch_{uuid.uuid4().hex[:12]}"

        active.stream = self.stream_service.create_stream(
            workflow,
            input,
            StreamOptions(
                execution_id=execution_id,
                branch_id=active.main_branch_id,
                timeout_ms=timeout_ms,
                max_tokens=options.token_budget,
                max_steps=options.max_steps or self.config.max_steps,
                concurrency=options.concurrency,
            ),
            processors=executable.processors(),
        )
        self.monitor.monitor_execution(active.stream, execution_id, workflow)

        if active.main_branch_id is not None:
            await self.create_branch(
                execution_id,
                BranchOptions(
                    name=MAIN_BRANCH_NAME,
                    tags=["main"],
                    priority=MAIN_BRANCH_PRIORITY,
                    input=input,
                ),
                branch_id=active.main_branch_id,
            )
            await self.start_branch(execution_id, active.main_branch_id)

        task = asyncio.create_task(self._run(active), name=f"execution:{execution_id}")
        return self._track(execution_id, task)

    async def run_workflow(
        self,
        workflow: Workflow,
        input: Any,
        options: ExecutionOptions | None = None,
    ) -> ExecutionRecord:
        """Execute and wait for the final record."""
        handle = await self.execute_workflow(workflow, input, options)
        return await handle.wait()

    def _track(self, execution_id: str, task: asyncio.Task) -> ExecutionHandle:
        self._tasks[execution_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(execution_id, None))
        return ExecutionHandle(execution_id=execution_id, _task=task)

    async def _run(self, active: _ActiveExecution) -> ExecutionRecord:
        result: WorkflowResult | None = None
        try:
            result = await self.executor.collect(active.stream)
        finally:
            if result is None:
                result = WorkflowResult(status=ExecutionStatus.FAILED, error="Execution aborted")
            record = await self._finalize(active, result)
        return record

    async def _finalize(self, active: _ActiveExecution, result: WorkflowResult) -> ExecutionRecord:
        record = active.record
        execution_id = record.id
        try:
            # Branches close while the execution is still open; a terminal
            # execution accepts no branch transition other than cancel.
            await self.complete_active_branches(execution_id)

            if record.status != ExecutionStatus.CANCELED:
                record.status = result.status
                record.finished_at = datetime.now()
            record.result = result.result
            record.error = result.error
            record.token_usage = self._final_token_usage(active, result)

            active.progress.status = record.status
            active.progress.percentage = 100
            active.progress.token_usage = record.token_usage.model_copy()
            self._publish_progress(active)

            await self.bus.emit(
                EventType.EXECUTION_COMPLETE,
                execution_id,
                data={"status": record.status.value, "result": record.result, "error": record.error},
                workflow_id=record.workflow_id,
            )
        finally:
            active.events.close()
            active.progress_channel.close()
            for state in active.branches.values():
                state.events.close()
            if active.subscription_id is not None:
                self.bus.unsubscribe(active.subscription_id)

            try:
                metrics = self.monitor.collect_execution_metrics(execution_id)
                record.metadata["metrics"] = metrics.model_dump(mode="json")
            except MetricsNotFoundError:
                logger.debug(f"No metrics collected for execution {execution_id}")

            await self._persist(active)
            self._active.pop(execution_id, None)
            self.executor.discard_execution_state(execution_id)
            logger.info(f"Execution {execution_id} finished with status {record.status}")

        return record.model_copy(deep=True)

    def _final_token_usage(self, active: _ActiveExecution, result: WorkflowResult) -> TokenUsage:
        """Budget usage reported by the result wins; otherwise what the stream counted."""
        payload = result.result
        if isinstance(payload, dict):
            budget = payload.get("budget")
            if isinstance(budget, dict) and "used" in budget:
                return TokenUsage(total=int(budget["used"]))
        if result.token_usage.total:
            return result.token_usage.model_copy()
        return active.progress.token_usage.model_copy()

    async def cancel_execution(self, execution_id: str) -> bool:
        """
        Cancel an active execution and every non-terminal branch.

        Cancellation is cooperative: in-flight node work is not aborted,
        but the execution stays canceled when the run winds down.

        Returns:
            False if the execution is not active or already terminal
        """
        active = self._active.get(execution_id)
        if active is None or active.record.status.is_terminal:
            return False

        active.record.status = ExecutionStatus.CANCELED
        active.record.finished_at = datetime.now()
        active.progress.status = ExecutionStatus.CANCELED
        canceled = [
            branch_id
            for branch_id in list(active.branches)
            if self._transition_branch(active, branch_id, ExecutionStatus.CANCELED)
        ]
        self._publish_progress(active)
        logger.info(f"Canceled execution {execution_id} ({len(canceled)} branches)")

        await self._persist(active, canceled)
        await self.bus.emit(
            EventType.EXECUTION_CANCEL,
            execution_id,
            data={"canceled_branches": canceled},
            workflow_id=active.record.workflow_id,
        )
        for branch_id in canceled:
            await self._announce_branch(active, branch_id, ExecutionStatus.CANCELED)
        return True

    # === BRANCHES ===

    async def create_branch(
        self,
        execution_id: str,
        options: BranchOptions,
        branch_id: str | None = None,
        parent_branch_id: str | None = None,
    ) -> ExecutionBranch:
        """
        Add a pending branch to an active execution.

        Raises:
            ExecutionNotFoundError: the execution is not active, or already
                terminal
            BranchLimitError: the execution already holds its maximum
        """
        active = self._require_active(execution_id)
        branch = self._register_branch(active, options, branch_id, parent_branch_id, node_id=None)
        await self._persist(active, [branch.id])
        await self.bus.emit(
            EventType.BRANCH_CREATE,
            execution_id,
            data={"branch_id": branch.id, "name": branch.name, "priority": branch.priority},
            workflow_id=active.record.workflow_id,
            branch_id=branch.id,
        )
        return branch.model_copy(deep=True)

    async def start_branch(self, execution_id: str, branch_id: str) -> bool:
        """Move a pending branch to running."""
        return await self._set_branch_status(execution_id, branch_id, ExecutionStatus.RUNNING)

    async def complete_branch(
        self,
        execution_id: str,
        branch_id: str,
        result: Any = None,
        relevance_score: float | None = None,
    ) -> bool:
        return await self._set_branch_status(
            execution_id,
            branch_id,
            ExecutionStatus.COMPLETED,
            result=result,
            relevance_score=relevance_score,
        )

    async def fail_branch(self, execution_id: str, branch_id: str, error: str) -> bool:
        return await self._set_branch_status(
            execution_id, branch_id, ExecutionStatus.FAILED, error=error
        )

    async def cancel_branch(self, execution_id: str, branch_id: str) -> bool:
        """
        Cancel a running branch.

        Returns:
            False when the execution is not active, the branch is unknown,
            or the branch is not running
        """
        active = self._active.get(execution_id)
        if active is None:
            return False
        state = active.branches.get(branch_id)
        if state is None or state.branch.status != ExecutionStatus.RUNNING:
            return False
        return await self._set_branch_status(execution_id, branch_id, ExecutionStatus.CANCELED)

    async def cancel_branches(self, execution_id: str, branch_ids: list[str]) -> CancelBranchesResult:
        canceled, failed = [], []
        for branch_id in branch_ids:
            if await self.cancel_branch(execution_id, branch_id):
                canceled.append(branch_id)
            else:
                failed.append(branch_id)
        return CancelBranchesResult(
            success=not failed, canceled_branches=canceled, failed_to_cancel=failed
        )

    async def complete_active_branches(
        self,
        execution_id: str,
        status: ExecutionStatus = ExecutionStatus.COMPLETED,
    ) -> list[str]:
        """
        Close every branch that is still open.

        Running branches take ``status``; pending ones never started and
        are canceled.
        """
        active = self._active.get(execution_id)
        if active is None:
            return []
        closed = []
        for branch_id, state in list(active.branches.items()):
            if state.branch.status == ExecutionStatus.RUNNING:
                target = status
            elif state.branch.status == ExecutionStatus.PENDING:
                target = ExecutionStatus.CANCELED
            else:
                continue
            if self._transition_branch(active, branch_id, target):
                closed.append((branch_id, target))
        self._publish_progress(active)
        await self._persist(active, [branch_id for branch_id, _ in closed])
        for branch_id, target in closed:
            await self._announce_branch(active, branch_id, target)
        return [branch_id for branch_id, _ in closed]

    async def set_branch_relevance(
        self, execution_id: str, branch_id: str, relevance_score: float
    ) -> ExecutionBranch:
        active = self._require_active(execution_id)
        state = active.branches.get(branch_id)
        if state is None:
            raise BranchNotFoundError(branch_id, execution_id)
        state.branch.relevance_score = relevance_score
        state.progress.relevance_score = relevance_score
        await self._persist(active, [branch_id])
        return state.branch.model_copy(deep=True)

    def get_relevant_branches(self, execution_id: str) -> list[ExecutionBranch]:
        """Completed branches at or above the execution's relevance threshold, best first."""
        active = self._require_active(execution_id)
        threshold = active.options.branch_relevance_threshold
        relevant = [
            s.branch.model_copy(deep=True)
            for s in active.branches.values()
            if s.branch.status == ExecutionStatus.COMPLETED
            and (s.branch.relevance_score or 0.0) >= threshold
        ]
        return sorted(relevant, key=lambda b: b.relevance_score or 0.0, reverse=True)

    async def emit_execution_event(
        self,
        execution_id: str,
        event_type: EventType | str,
        data: dict[str, Any] | None = None,
        node_id: str | None = None,
    ) -> None:
        """Publish an event into an active execution's event stream."""
        active = self._require_active(execution_id)
        data = data or {}
        await self.bus.emit(
            event_type,
            execution_id,
            data=data,
            workflow_id=active.record.workflow_id,
            node_id=node_id,
            branch_id=data.get("branch_id"),
        )

    async def _set_branch_status(
        self,
        execution_id: str,
        branch_id: str,
        status: ExecutionStatus,
        **changes: Any,
    ) -> bool:
        active = self._active.get(execution_id)
        if active is None:
            return False
        if not self._transition_branch(active, branch_id, status, **changes):
            return False
        self._publish_progress(active)
        await self._persist(active, [branch_id])
        await self._announce_branch(active, branch_id, status)
        return True

    def _register_branch(
        self,
        active: _ActiveExecution,
        options: BranchOptions,
        branch_id: str | None,
        parent_branch_id: str | None,
        node_id: str | None,
    ) -> ExecutionBranch:
        if active.record.status.is_terminal:
            raise ExecutionNotFoundError(active.record.id)
        if len(active.branches) >= active.max_branches:
            raise BranchLimitError(active.record.id, active.max_branches)

        branch = ExecutionBranch(
            id=branch_id or f"branch_{uuid.uuid4().hex[:12]}",
            execution_id=active.record.id,
            parent_branch_id=parent_branch_id,
            name=options.name,
            description=options.description,
            priority=options.priority,
            tags=list(options.tags),
            metadata=dict(options.metadata),
            input=options.input,
        )
        if options.token_budget is not None:
            branch.metadata["token_budget"] = options.token_budget

        workflow = active.workflow
        pending = workflow.node_ids() if node_id is None else workflow.descendants(node_id)
        state = _BranchState(
            branch=branch,
            progress=BranchProgress(
                branch_id=branch.id,
                execution_id=branch.execution_id,
                name=branch.name,
                pending_nodes=list(pending),
            ),
            events=EventLog(replay_size=self.config.event_replay_size),
        )
        state.events.append(
            BranchEvent(
                type=BranchEventType.CREATE,
                execution_id=branch.execution_id,
                branch_id=branch.id,
                node_id=node_id,
                data={"name": branch.name, "priority": branch.priority},
            )
        )
        active.branches[branch.id] = state
        active.progress.total_branches += 1
        active.progress.active_branches += 1
        self._publish_progress(active)
        logger.info(f"Created branch {branch.id} ({branch.name}) for execution {branch.execution_id}")
        return branch

    def _transition_branch(
        self,
        active: _ActiveExecution,
        branch_id: str,
        status: ExecutionStatus,
        result: Any = None,
        error: str | None = None,
        relevance_score: float | None = None,
    ) -> bool:
        """
        Apply a branch state change and its counter updates.

        Returns:
            False (and changes nothing) for unknown or terminal branches,
            for starting a branch that is not pending, and for anything
            but a cancel once the execution is terminal
        """
        state = active.branches.get(branch_id)
        if state is None:
            return False
        if active.record.status.is_terminal and status != ExecutionStatus.CANCELED:
            logger.debug(f"Ignoring {status} for branch {branch_id}: execution is {active.record.status}")
            return False
        branch = state.branch
        if branch.status.is_terminal:
            logger.debug(f"Ignoring {status} for branch {branch_id}: already {branch.status}")
            return False
        if status == ExecutionStatus.RUNNING and branch.status != ExecutionStatus.PENDING:
            return False

        now = datetime.now()
        branch.status = status
        state.progress.status = status
        if status == ExecutionStatus.RUNNING:
            branch.started_at = state.progress.started_at = now
        else:
            branch.finished_at = state.progress.finished_at = now
            active.progress.active_branches -= 1
            if status == ExecutionStatus.COMPLETED:
                active.progress.completed_branches += 1
                active.record.completed_branch_count += 1
                branch.result = result
            elif status == ExecutionStatus.FAILED:
                active.progress.failed_branches += 1
                branch.error = error
            else:
                active.progress.canceled_branches += 1
        if relevance_score is not None:
            branch.relevance_score = state.progress.relevance_score = float(relevance_score)

        data: dict[str, Any] = {"status": status.value}
        if error:
            data["error"] = error
        state.events.append(
            BranchEvent(
                type=_BRANCH_EVENT_TYPES[status],
                execution_id=branch.execution_id,
                branch_id=branch_id,
                data=data,
            )
        )
        logger.debug(f"Branch {branch_id} is now {status}")
        return True

    async def _announce_branch(
        self, active: _ActiveExecution, branch_id: str, status: ExecutionStatus
    ) -> None:
        """Publish a branch transition the service made itself, for other subscribers."""
        branch = active.branches[branch_id].branch
        data: dict[str, Any] = {"branch_id": branch_id}
        if branch.relevance_score is not None:
            data["relevance_score"] = branch.relevance_score
        await self.bus.emit(
            _BUS_BRANCH_EVENTS[status],
            active.record.id,
            data=data,
            workflow_id=active.record.workflow_id,
            branch_id=branch_id,
        )

    # === EVENT HANDLING ===

    async def _on_event(self, active: _ActiveExecution, event: StreamEvent) -> None:
        """Single bus handler per execution: log, progress, branch dispatch."""
        active.events.append(
            ExecutionEvent(
                type=event.type.value,
                execution_id=event.execution_id,
                node_id=event.node_id,
                branch_id=event.branch_id,
                data=event.data,
                timestamp=event.timestamp,
            )
        )

        if event.type == EventType.NODE_START:
            active.progress.current_node_id = event.node_id
        elif event.type == EventType.NODE_COMPLETE:
            active.completed_node_ids.add(event.node_id)
            total = active.progress.total_nodes
            active.progress.completed_nodes = len(active.completed_node_ids)
            active.progress.percentage = (
                min(100, round(len(active.completed_node_ids) / total * 100)) if total else 0
            )
            active.progress.token_usage.add(TokenUsage.from_data(event.data.get("tokenUsage")))

        changed: list[str] = []
        if active.options.enable_branching and event.branch_id:
            changed = self._dispatch_branch_event(active, event)

        self._publish_progress(active)
        if changed:
            await self._persist(active, changed)

    def _dispatch_branch_event(self, active: _ActiveExecution, event: StreamEvent) -> list[str]:
        branch_id = event.branch_id
        data = event.data

        if event.type == EventType.BRANCH_CREATE:
            if branch_id in active.branches:
                return []
            if active.record.status.is_terminal:
                logger.warning(
                    f"Dropping branch {branch_id}: execution {active.record.id} is {active.record.status}"
                )
                return []
            try:
                self._register_branch(
                    active,
                    BranchOptions(
                        name=data.get("name") or branch_id,
                        description=data.get("description", ""),
                        priority=data.get("priority", 1),
                        tags=data.get("tags", []),
                        input=data.get("input"),
                    ),
                    branch_id=branch_id,
                    parent_branch_id=data.get("parent_branch_id"),
                    node_id=event.node_id,
                )
            except BranchLimitError as e:
                logger.warning(str(e))
                return []
            return [branch_id]

        if event.type == EventType.BRANCH_START:
            status, changes = ExecutionStatus.RUNNING, {}
        elif event.type == EventType.BRANCH_COMPLETE:
            status = ExecutionStatus.COMPLETED
            changes = {"result": data.get("result"), "relevance_score": data.get("relevance_score")}
        elif event.type == EventType.BRANCH_FAILED:
            status, changes = ExecutionStatus.FAILED, {"error": data.get("error")}
        elif event.type == EventType.BRANCH_CANCELED:
            status, changes = ExecutionStatus.CANCELED, {}
        elif event.type in (EventType.NODE_START, EventType.NODE_COMPLETE):
            self._track_branch_node(active, event)
            return []
        else:
            return []

        if self._transition_branch(active, branch_id, status, **changes):
            return [branch_id]
        return []

    def _track_branch_node(self, active: _ActiveExecution, event: StreamEvent) -> None:
        state = active.branches.get(event.branch_id)
        if state is None or state.branch.status.is_terminal:
            return
        branch, progress, node_id = state.branch, state.progress, event.node_id

        if event.type == EventType.NODE_START:
            branch.current_node_id = progress.current_node_id = node_id
            if node_id not in branch.node_ids:
                branch.node_ids.append(node_id)
            if node_id not in progress.completed_nodes and node_id not in progress.pending_nodes:
                progress.pending_nodes.append(node_id)
            return

        if node_id not in branch.completed_node_ids:
            branch.completed_node_ids.append(node_id)
        if node_id in progress.pending_nodes:
            progress.pending_nodes.remove(node_id)
        if node_id not in progress.completed_nodes:
            progress.completed_nodes.append(node_id)
        usage = TokenUsage.from_data(event.data.get("tokenUsage"))
        branch.token_usage.add(usage)
        progress.token_usage.add(usage)
        state.events.append(
            BranchEvent(
                type=BranchEventType.NODE,
                execution_id=branch.execution_id,
                branch_id=branch.id,
                node_id=node_id,
                data={"output": event.data.get("output")},
            )
        )

    def _publish_progress(self, active: _ActiveExecution) -> None:
        active.progress.updated_at = datetime.now()
        active.progress_channel.publish(active.progress.model_copy(deep=True))

    # === PERSISTENCE ===

    async def _persist(self, active: _ActiveExecution, branch_ids: list[str] | None = None) -> None:
        """Best-effort save; storage errors are logged, never raised."""
        active.record.branches = [s.branch.model_copy(deep=True) for s in active.branches.values()]
        snapshot = active.record.model_copy(deep=True)
        branches = [active.branches[b].branch.model_copy(deep=True) for b in branch_ids or []]
        try:
            await self.storage.save_execution(snapshot)
            for branch in branches:
                await self.storage.save_branch(branch)
        except Exception as e:
            logger.error(f"Failed to persist execution {snapshot.id}: {e}")

    # === QUERIES ===

    def _require_active(self, execution_id: str) -> _ActiveExecution:
        active = self._active.get(execution_id)
        if active is None:
            raise ExecutionNotFoundError(execution_id)
        return active

    def _require_branch(self, execution_id: str, branch_id: str) -> _BranchState:
        active = self._active.get(execution_id)
        state = active.branches.get(branch_id) if active else None
        if state is None:
            raise BranchNotFoundError(branch_id, execution_id)
        return state

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        active = self._active.get(execution_id)
        if active is not None:
            active.record.branches = [s.branch.model_copy(deep=True) for s in active.branches.values()]
            return active.record.model_copy(deep=True)
        return await self.storage.get_execution(execution_id)

    def get_execution_progress(self, execution_id: str) -> ExecutionProgress:
        """Current progress of an active execution."""
        return self._require_active(execution_id).progress_channel.value.model_copy(deep=True)

    def watch_execution_progress(self, execution_id: str) -> AsyncIterator[ExecutionProgress]:
        """Current progress, then every update until the execution finalises."""
        return self._require_active(execution_id).progress_channel.watch()

    def get_execution_events(self, execution_id: str, offset: int = 0) -> AsyncIterator[ExecutionEvent]:
        """Replay the execution's events from ``offset``, then follow live ones."""
        return self._require_active(execution_id).events.subscribe(offset)

    def get_branch_progress(self, execution_id: str, branch_id: str) -> BranchProgress:
        return self._require_branch(execution_id, branch_id).progress.model_copy(deep=True)

    def get_branch_events(
        self, execution_id: str, branch_id: str, offset: int = 0
    ) -> AsyncIterator[BranchEvent]:
        return self._require_branch(execution_id, branch_id).events.subscribe(offset)

    async def get_branch(self, execution_id: str, branch_id: str) -> ExecutionBranch | None:
        active = self._active.get(execution_id)
        if active is not None and branch_id in active.branches:
            return active.branches[branch_id].branch.model_copy(deep=True)
        branch = await self.storage.get_branch(branch_id)
        if branch is None or branch.execution_id != execution_id:
            return None
        return branch

    async def list_branches(
        self, execution_id: str, filter: BranchFilter | None = None
    ) -> list[ExecutionBranch]:
        """Active branches merged with stored ones (active wins), then filtered."""
        filter = filter or BranchFilter()
        stored = await self.storage.get_execution_branches(execution_id)
        merged = {b.id: b for b in stored}
        active = self._active.get(execution_id)
        if active is not None:
            for branch_id, state in active.branches.items():
                merged[branch_id] = state.branch.model_copy(deep=True)
        return filter.apply(list(merged.values()))

    async def list_executions(self, filter: ExecutionFilter | None = None) -> list[ExecutionRecord]:
        """Active executions merged with stored ones (active wins), then sorted and paged."""
        filter = filter or ExecutionFilter()
        unpaged = filter.model_copy(update={"offset": 0, "limit": None})
        stored = await self.storage.list_executions(unpaged)
        merged = {r.id: r for r in stored}
        for execution_id in list(self._active):
            record = await self.get_execution(execution_id)
            if record is not None:
                merged[execution_id] = record
        return filter.apply(list(merged.values()))

    # === SHUTDOWN ===

    async def shutdown(self) -> None:
        """Cancel every active execution and wait for them to finalise."""
        for execution_id in list(self._active):
            await self.cancel_execution(execution_id)
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
