"""Runtime primitives: the event bus and in-process channels."""

from branchflow.runtime.channels import EventLog, ValueChannel
from branchflow.runtime.event_bus import EventBus, EventType, StreamEvent, Subscription

__all__ = [
    "EventBus",
    "EventLog",
    "EventType",
    "StreamEvent",
    "Subscription",
    "ValueChannel",
]
