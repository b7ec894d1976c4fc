"""
Workflow Executor - drives a compiled pipeline or a stream to completion.

Two modes:
- execute(): compile and run the linear pipeline (stages chained in
  topological order, every output fed to the next stage)
- collect(): consume a WorkflowStream and derive the result from what
  the sink nodes produced

Failures never escape as exceptions; they come back as a failed
WorkflowResult carrying a readable error.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from branchflow.errors import CompileError
from branchflow.graph.compiler import CompileOptions, WorkflowCompiler
from branchflow.graph.stream import WorkflowStream
from branchflow.graph.workflow import Workflow
from branchflow.observability import set_trace_context
from branchflow.schemas.execution import ExecutionStatus, TokenUsage

logger = logging.getLogger(__name__)


@dataclass
class WorkflowResult:
    """Result of executing a workflow."""

    status: ExecutionStatus
    result: Any = None
    error: str | None = None
    outputs: dict[str, list[Any]] = field(default_factory=dict)  # {node_id: outputs}
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    steps_executed: int = 0
    path: list[str] = field(default_factory=list)  # Node IDs in production order

    @property
    def success(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED


@dataclass
class WorkflowExecutionState:
    """What the executor knows about one run while and after it happens."""

    execution_id: str
    workflow_id: str
    total_nodes: int
    status: ExecutionStatus = ExecutionStatus.RUNNING
    completed_nodes: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: datetime | None = None
    error: str | None = None

    @property
    def progress(self) -> float:
        if self.total_nodes == 0:
            return 0.0
        return len(self.completed_nodes) / self.total_nodes


class WorkflowExecutor:
    """
    Runs workflows and keeps a per-execution state table.

    Example:
        executor = WorkflowExecutor(WorkflowCompiler(registry))
        result = await executor.execute(workflow, {"input": "hello"})
        if result.success:
            print(result.result)
    """

    def __init__(self, compiler: WorkflowCompiler):
        self.compiler = compiler
        self._states: dict[str, WorkflowExecutionState] = {}

    def get_execution_state(self, execution_id: str) -> WorkflowExecutionState | None:
        return self._states.get(execution_id)

    def discard_execution_state(self, execution_id: str) -> None:
        self._states.pop(execution_id, None)

    async def execute(
        self,
        workflow: Workflow,
        input: Any,
        options: CompileOptions | None = None,
    ) -> WorkflowResult:
        """
        Compile a workflow and run its linear pipeline.

        Returns:
            WorkflowResult whose ``result`` is the last pipeline output
        """
        set_trace_context(workflow_id=workflow.id)
        try:
            executable = self.compiler.compile(workflow, options)
        except CompileError as e:
            logger.error(f"Workflow {workflow.id} failed to compile: {e}")
            return WorkflowResult(status=ExecutionStatus.FAILED, error=str(e))

        state = WorkflowExecutionState(
            execution_id=executable.execution_id,
            workflow_id=workflow.id,
            total_nodes=len(executable.node_order),
        )
        self._states[state.execution_id] = state

        outputs: list[Any] = []
        try:
            async for output in executable.pipeline(input):
                outputs.append(output)
        except Exception as e:
            logger.error(f"Workflow {workflow.id} failed: {e}")
            return self._finish(state, WorkflowResult(status=ExecutionStatus.FAILED, error=str(e)))

        state.completed_nodes = list(executable.node_order)
        last_node = executable.node_order[-1] if executable.node_order else None
        return self._finish(
            state,
            WorkflowResult(
                status=ExecutionStatus.COMPLETED,
                result=outputs[-1] if outputs else None,
                outputs={last_node: outputs} if last_node else {},
                steps_executed=len(executable.node_order),
                path=list(executable.node_order),
            ),
        )

    async def collect(self, stream: WorkflowStream) -> WorkflowResult:
        """
        Consume a stream to completion.

        The result is the last item a sink node (one without outgoing
        connections) produced.
        """
        workflow = stream.workflow
        sinks = set(workflow.sink_node_ids())
        state = WorkflowExecutionState(
            execution_id=stream.execution_id,
            workflow_id=workflow.id,
            total_nodes=len(workflow.nodes),
        )
        self._states[state.execution_id] = state

        outputs: dict[str, list[Any]] = {}
        path: list[str] = []
        result = None
        try:
            async for item in stream:
                path.append(item.node_id)
                if item.node_id not in state.completed_nodes:
                    state.completed_nodes.append(item.node_id)
                if item.node_id in sinks:
                    outputs.setdefault(item.node_id, []).append(item.data)
                    result = item.data
        except Exception as e:
            logger.error(f"Workflow {workflow.id} failed: {e}")
            return self._finish(
                state,
                WorkflowResult(
                    status=ExecutionStatus.FAILED,
                    result=result,
                    error=str(e),
                    outputs=outputs,
                    token_usage=stream.token_usage.model_copy(),
                    steps_executed=len(path),
                    path=path,
                ),
            )

        return self._finish(
            state,
            WorkflowResult(
                status=ExecutionStatus.COMPLETED,
                result=result,
                outputs=outputs,
                token_usage=stream.token_usage.model_copy(),
                steps_executed=len(path),
                path=path,
            ),
        )

    def _finish(self, state: WorkflowExecutionState, result: WorkflowResult) -> WorkflowResult:
        state.status = result.status
        state.error = result.error
        state.finished_at = datetime.now()
        return result
