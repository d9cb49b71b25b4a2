"""Live node status broadcast."""

from .publisher import (
    InMemoryStatusPublisher,
    NodeStatus,
    NodeStatusEmitter,
    RedisStatusPublisher,
    StatusEvent,
    StatusPublisher,
    channel_for,
)

__all__ = [
    "InMemoryStatusPublisher",
    "NodeStatus",
    "NodeStatusEmitter",
    "RedisStatusPublisher",
    "StatusEvent",
    "StatusPublisher",
    "channel_for",
]
