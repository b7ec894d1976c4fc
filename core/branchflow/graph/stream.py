"""
Workflow Stream Engine - propagates items node by node through a workflow.

A stream is lazy: nothing runs until it is iterated, and it can be
iterated once. Each node invocation runs as its own task, so a slow node
never blocks its siblings. Every item produced at every node is yielded
to the consumer as soon as it exists.

Events published on the shared EventBus for each run:

    workflow:start
      node:start      (per node invocation)
      node:complete | node:error   (exactly one per invocation)
    workflow:error    (only if some invocation failed)
    workflow:complete (always last)

A failing invocation does not stop sibling paths; once every path has
settled the first error is raised to the consumer.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from branchflow.config import DEFAULT_MAX_STEPS, DEFAULT_NODE_TIMEOUT_MS
from branchflow.errors import (
    MaxStepsExceededError,
    NodeProcessingError,
    NodeTimeoutError,
    TokenBudgetExceededError,
)
from branchflow.graph.compiler import unwrap_output
from branchflow.graph.workflow import ENTRY_NODE_ID, Workflow
from branchflow.observability import set_trace_context
from branchflow.runtime.event_bus import EventBus, EventHandler, EventType
from branchflow.schemas.execution import TokenUsage

logger = logging.getLogger(__name__)

# (input, branch_id=..., timeout_ms=..., execution_id=...) -> outputs
NodeProcessor = Callable[..., Awaitable[list[Any]]]


@dataclass
class StreamMetadata:
    step: int = 0
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    branch_id: str | None = None
    processed_by: str | None = None


@dataclass
class StreamItem:
    """One value flowing through the workflow, tagged with its producer."""

    execution_id: str
    node_id: str
    data: Any
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: StreamMetadata = field(default_factory=StreamMetadata)


@dataclass
class StreamOptions:
    """Per-run limits."""

    execution_id: str | None = None
    branch_id: str | None = None
    timeout_ms: int = DEFAULT_NODE_TIMEOUT_MS
    max_tokens: int | None = None
    max_steps: int = DEFAULT_MAX_STEPS
    concurrency: int | None = None


async def echo_processor(input: Any, **kwargs: Any) -> list[Any]:
    """Processor for nodes that were given none: emits its input unchanged."""
    return [input]


def _extract_token_usage(output: Any) -> TokenUsage:
    if isinstance(output, dict):
        usage = output.get("token_usage", output.get("tokenUsage"))
        if usage is not None:
            return TokenUsage.from_data(usage)
    return TokenUsage()


_DONE = object()


class WorkflowStream:
    """A single, lazily started run of a workflow."""

    def __init__(
        self,
        workflow: Workflow,
        input: Any,
        options: StreamOptions,
        bus: EventBus,
        processors: dict[str, NodeProcessor] | None = None,
    ):
        self.workflow = workflow
        self.input = input
        self.options = options
        self.bus = bus
        self.execution_id = options.execution_id or uuid.uuid4().hex
        self.processors = processors or {}

        self.token_usage = TokenUsage()
        self.error: BaseException | None = None
        self.started = False
        self.finished = False

        self._entry_targets = workflow.root_node_ids()
        self._semaphore = asyncio.Semaphore(options.concurrency) if options.concurrency else None

    # === SUBSCRIPTIONS ===

    def subscribe(self, handler: EventHandler, event_types: Iterable[EventType] | None = None) -> str:
        """Receive this run's events."""
        return self.bus.subscribe(
            event_types=event_types,
            handler=handler,
            filter_execution=self.execution_id,
        )

    def unsubscribe(self, subscription_id: str) -> bool:
        return self.bus.unsubscribe(subscription_id)

    # === ITERATION ===

    def __aiter__(self) -> AsyncIterator[StreamItem]:
        if self.started:
            raise RuntimeError("A workflow stream can only be consumed once")
        self.started = True
        return self._run()

    def upstream_of(self, node_id: str) -> list[str]:
        upstream = self.workflow.get_upstream(node_id)
        if node_id in self._entry_targets and ENTRY_NODE_ID not in upstream:
            upstream.append(ENTRY_NODE_ID)
        return upstream

    async def process_item(self, node_id: str, item: StreamItem) -> list[StreamItem]:
        """
        Apply one node to one item.

        Items whose producer is not upstream of the node pass through
        unchanged. Otherwise the node's processor runs, bracketed by
        node:start and node:complete/node:error events.
        """
        if item.node_id not in self.upstream_of(node_id):
            return [item]

        step = item.metadata.step + 1
        branch_id = item.metadata.branch_id
        if step > self.options.max_steps:
            raise MaxStepsExceededError(node_id, self.options.max_steps)

        set_trace_context(node_id=node_id, branch_id=branch_id)
        await self._emit(EventType.NODE_START, node_id, branch_id, {"input": item.data})

        processor = self.processors.get(node_id, echo_processor)
        try:
            try:
                if self._semaphore is not None:
                    async with self._semaphore:
                        outputs = await self._invoke(processor, node_id, item)
                else:
                    outputs = await self._invoke(processor, node_id, item)
            except NodeProcessingError:
                raise
            except Exception as e:
                raise NodeProcessingError(node_id, str(e) or type(e).__name__, e) from e

            usage = item.metadata.token_usage.model_copy()
            for output in outputs:
                data, _ = unwrap_output(output, branch_id)
                usage.add(_extract_token_usage(data))
            if self.options.max_tokens is not None and usage.total > self.options.max_tokens:
                raise TokenBudgetExceededError(node_id, usage.total, self.options.max_tokens)
        except NodeProcessingError as error:
            await self._emit(
                EventType.NODE_ERROR,
                node_id,
                branch_id,
                {
                    "input": item.data,
                    "error": str(error),
                    "timeout": isinstance(error, NodeTimeoutError),
                },
            )
            raise

        if usage.total > self.token_usage.total:
            self.token_usage = usage

        produced = []
        for output in outputs:
            data, out_branch = unwrap_output(output, branch_id)
            produced.append(
                StreamItem(
                    execution_id=self.execution_id,
                    node_id=node_id,
                    data=data,
                    metadata=StreamMetadata(
                        step=step,
                        token_usage=usage.model_copy(),
                        branch_id=out_branch,
                        processed_by=node_id,
                    ),
                )
            )

        node_usage = usage.model_copy()
        node_usage.input -= item.metadata.token_usage.input
        node_usage.output -= item.metadata.token_usage.output
        node_usage.total -= item.metadata.token_usage.total
        await self._emit(
            EventType.NODE_COMPLETE,
            node_id,
            branch_id,
            {
                "input": item.data,
                "output": produced[-1].data if produced else None,
                "outputs": [p.data for p in produced],
                "tokenUsage": node_usage.model_dump(),
            },
        )
        return produced

    async def _invoke(self, processor: NodeProcessor, node_id: str, item: StreamItem) -> list[Any]:
        try:
            async with asyncio.timeout(self.options.timeout_ms / 1000):
                return list(
                    await processor(
                        item.data,
                        branch_id=item.metadata.branch_id,
                        timeout_ms=self.options.timeout_ms,
                        execution_id=self.execution_id,
                    )
                )
        except TimeoutError as e:
            raise NodeTimeoutError(node_id, self.options.timeout_ms) from e

    async def _run(self) -> AsyncIterator[StreamItem]:
        queue: asyncio.Queue[Any] = asyncio.Queue()
        tasks: set[asyncio.Task] = set()
        pending = 0
        errors: list[BaseException] = []

        def schedule(node_id: str, item: StreamItem) -> None:
            nonlocal pending
            pending += 1
            task = asyncio.create_task(visit(node_id, item), name=f"{self.execution_id}:{node_id}")
            tasks.add(task)
            task.add_done_callback(tasks.discard)

        async def visit(node_id: str, item: StreamItem) -> None:
            nonlocal pending
            try:
                produced = await self.process_item(node_id, item)
                for new_item in produced:
                    if new_item is item:
                        continue
                    queue.put_nowait(new_item)
                    for target in self.workflow.get_downstream(node_id):
                        schedule(target, new_item)
            except Exception as e:
                logger.warning(f"Path through {node_id} failed: {e}")
                errors.append(e)
            finally:
                pending -= 1
                if pending == 0:
                    queue.put_nowait(_DONE)

        set_trace_context(execution_id=self.execution_id, workflow_id=self.workflow.id)
        entry_item = StreamItem(
            execution_id=self.execution_id,
            node_id=ENTRY_NODE_ID,
            data=self.input,
            metadata=StreamMetadata(branch_id=self.options.branch_id),
        )
        await self._emit(EventType.WORKFLOW_START, None, self.options.branch_id, {"input": self.input})

        try:
            for node_id in self._entry_targets:
                schedule(node_id, entry_item)
            if pending == 0:
                queue.put_nowait(_DONE)

            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                yield item

            if errors:
                self.error = errors[0]
                await self._emit(
                    EventType.WORKFLOW_ERROR,
                    None,
                    self.options.branch_id,
                    {"error": str(self.error), "errors": [str(e) for e in errors]},
                )
                raise self.error
        finally:
            for task in list(tasks):
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            self.finished = True
            await self._emit(
                EventType.WORKFLOW_COMPLETE,
                None,
                self.options.branch_id,
                {"error": str(self.error) if self.error else None},
            )

    async def _emit(
        self,
        event_type: EventType,
        node_id: str | None,
        branch_id: str | None,
        data: dict[str, Any],
    ) -> None:
        await self.bus.emit(
            event_type,
            self.execution_id,
            data=data,
            workflow_id=self.workflow.id,
            node_id=node_id,
            branch_id=branch_id,
        )


class WorkflowStreamService:
    """Creates workflow streams that publish on a shared event bus."""

    def __init__(self, event_bus: EventBus | None = None):
        self.event_bus = event_bus or EventBus()

    def get_events(self) -> EventBus:
        return self.event_bus

    def create_stream(
        self,
        workflow: Workflow,
        input: Any,
        options: StreamOptions | None = None,
        processors: dict[str, NodeProcessor] | None = None,
    ) -> WorkflowStream:
        """
        Prepare a run of ``workflow`` on ``input``. Nothing runs until the
        returned stream is iterated.

        Args:
            processors: node id -> processor; nodes without one echo their input
        """
        return WorkflowStream(
            workflow=workflow,
            input=input,
            options=options or StreamOptions(),
            bus=self.event_bus,
            processors=processors,
        )
