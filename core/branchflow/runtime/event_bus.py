"""
Event Bus - Pub/sub channel shared by streams, the lifecycle manager and the monitor.

Allows:
- Streams to publish workflow and node events as they run
- Plugins to publish branch events through their ExecutionContext
- The lifecycle manager and monitor to consume events per execution
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Workflow stream lifecycle
    WORKFLOW_START = "workflow:start"
    WORKFLOW_COMPLETE = "workflow:complete"
    WORKFLOW_ERROR = "workflow:error"

    # Node lifecycle
    NODE_START = "node:start"
    NODE_COMPLETE = "node:complete"
    NODE_ERROR = "node:error"

    # Branch lifecycle
    BRANCH_CREATE = "branch:create"
    BRANCH_START = "branch:start"
    BRANCH_COMPLETE = "branch:complete"
    BRANCH_FAILED = "branch:failed"
    BRANCH_CANCELED = "branch:canceled"

    # Execution lifecycle
    EXECUTION_START = "execution:start"
    EXECUTION_COMPLETE = "execution:complete"
    EXECUTION_CANCEL = "execution:cancel"

    # Custom events
    CUSTOM = "custom"

    @classmethod
    def coerce(cls, value: "str | EventType") -> "EventType":
        """Map a free-form type string onto a known type, CUSTOM otherwise."""
        try:
            return cls(value)
        except ValueError:
            return cls.CUSTOM


@dataclass
class StreamEvent:
    """An event published while a workflow runs."""

    type: EventType
    execution_id: str
    workflow_id: str | None = None
    node_id: str | None = None
    branch_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


# Type for event handlers
EventHandler = Callable[[StreamEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType] | None  # None receives every type
    handler: EventHandler
    filter_node: str | None = None  # Only receive events from this node
    filter_execution: str | None = None  # Only receive events from this execution
    filter_branch: str | None = None  # Only receive events from this branch


class EventBus:
    """
    Pub/sub event bus.

    Features:
    - Async event handling; publish() returns once matching handlers ran
    - Type-based subscriptions
    - Execution/node/branch filtering
    - Event history for debugging

    Handlers must not publish from inside themselves: they share the
    handler semaphore with the publisher.

    Example:
        bus = EventBus()

        async def on_node_complete(event: StreamEvent):
            print(f"{event.node_id} produced {event.data['output']}")

        bus.subscribe(
            event_types=[EventType.NODE_COMPLETE],
            handler=on_node_complete,
            filter_execution="exec_123",
        )
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        """
        Initialize event bus.

        Args:
            max_history: Maximum events to keep in history
            max_concurrent_handlers: Maximum concurrent handler executions
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[StreamEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0

    def subscribe(
        self,
        event_types: Iterable[EventType] | None,
        handler: EventHandler,
        filter_node: str | None = None,
        filter_execution: str | None = None,
        filter_branch: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Args:
            event_types: Types of events to receive, None for all
            handler: Async function to call when event occurs
            filter_node: Only receive events from this node
            filter_execution: Only receive events from this execution
            filter_branch: Only receive events from this branch

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"

        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types) if event_types is not None else None,
            handler=handler,
            filter_node=filter_node,
            filter_execution=filter_execution,
            filter_branch=filter_branch,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types or 'all events'}")

        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """
        Unsubscribe from events.

        Returns:
            True if subscription was found and removed
        """
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: StreamEvent) -> None:
        """Publish an event to all matching subscribers."""
        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history :]

        matching_handlers = [
            subscription.handler
            for subscription in list(self._subscriptions.values())
            if self._matches(subscription, event)
        ]

        if matching_handlers:
            await self._execute_handlers(event, matching_handlers)

    async def emit(
        self,
        event_type: EventType | str,
        execution_id: str,
        data: dict[str, Any] | None = None,
        workflow_id: str | None = None,
        node_id: str | None = None,
        branch_id: str | None = None,
    ) -> StreamEvent:
        """Build and publish an event; unknown type strings become CUSTOM."""
        resolved = EventType.coerce(event_type)
        payload = dict(data or {})
        if resolved == EventType.CUSTOM and "name" not in payload:
            payload["name"] = str(event_type)
        event = StreamEvent(
            type=resolved,
            execution_id=execution_id,
            workflow_id=workflow_id,
            node_id=node_id,
            branch_id=branch_id,
            data=payload,
        )
        await self.publish(event)
        return event

    def _matches(self, subscription: Subscription, event: StreamEvent) -> bool:
        """Check if a subscription matches an event."""
        if subscription.event_types is not None and event.type not in subscription.event_types:
            return False

        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False

        if subscription.filter_execution and subscription.filter_execution != event.execution_id:
            return False

        if subscription.filter_branch and subscription.filter_branch != event.branch_id:
            return False

        return True

    async def _execute_handlers(
        self,
        event: StreamEvent,
        handlers: list[EventHandler],
    ) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}", exc_info=True)

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        execution_id: str | None = None,
        limit: int = 100,
    ) -> list[StreamEvent]:
        """
        Get event history with optional filtering.

        Returns:
            List of matching events (most recent first)
        """
        events = self._event_history[::-1]

        if event_type:
            events = [e for e in events if e.type == event_type]
        if execution_id:
            events = [e for e in events if e.execution_id == execution_id]

        return events[:limit]

    def get_stats(self) -> dict:
        """Get event bus statistics."""
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1

        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        execution_id: str | None = None,
        node_id: str | None = None,
        branch_id: str | None = None,
        timeout: float | None = None,
    ) -> StreamEvent | None:
        """
        Wait for a specific event to occur.

        Args:
            event_type: Type of event to wait for
            execution_id: Filter by execution
            node_id: Filter by node
            branch_id: Filter by branch
            timeout: Maximum time to wait (seconds)

        Returns:
            The event if received, None if timeout
        """
        result: StreamEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: StreamEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(
            event_types=[event_type],
            handler=handler,
            filter_node=node_id,
            filter_execution=execution_id,
            filter_branch=branch_id,
        )

        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()

            return result
        finally:
            self.unsubscribe(sub_id)
