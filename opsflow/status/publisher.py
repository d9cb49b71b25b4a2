"""Status publishers.

Status events are advisory fan-out for live progress display. The run record
is authoritative, so a publish failure is logged and never fails a node.
"""

import json
import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog
from pydantic import BaseModel, ConfigDict, Field
from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = structlog.get_logger()

STATUS_TOPIC = "status"


class NodeStatus(str, Enum):
    """Node status as shown in the editor."""

    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class StatusEvent(BaseModel):
    """Ephemeral status notification for one node."""

    model_config = ConfigDict(populate_by_name=True)

    node_id: str = Field(..., alias="nodeId")
    status: NodeStatus
    run_id: Optional[str] = Field(default=None, alias="runId")
    current_index: Optional[int] = Field(default=None, alias="currentIndex")
    total_iterations: Optional[int] = Field(default=None, alias="totalIterations")

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _kebab(node_type: str) -> str:
    return re.sub(r"[_\s]+", "-", node_type.strip()).lower()


def channel_for(node_type: str, trigger: bool = False) -> str:
    """Status channel of a node kind, e.g. ``send-email-execution``."""
    name = _kebab(node_type)
    suffix = "trigger" if trigger else "execution"
    if name.endswith(f"-{suffix}"):
        return name
    return f"{name}-{suffix}"


class StatusPublisher(ABC):
    """Publishes status events to subscribers of a channel."""

    @abstractmethod
    async def publish(self, channel: str, event: StatusEvent) -> None:
        """Publish one event."""

    async def close(self) -> None:
        pass


Subscriber = Callable[[str, StatusEvent], Awaitable[None]]


class InMemoryStatusPublisher(StatusPublisher):
    """Keeps every event in order; optional async subscribers are notified."""

    def __init__(self):
        self.events: List[Tuple[str, StatusEvent]] = []
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    async def publish(self, channel: str, event: StatusEvent) -> None:
        self.events.append((channel, event))
        for callback in self._subscribers:
            await callback(channel, event)

    def for_node(self, node_id: str) -> List[StatusEvent]:
        return [event for _, event in self.events if event.node_id == node_id]

    def clear(self) -> None:
        self.events.clear()


class RedisStatusPublisher(StatusPublisher):
    """Publishes JSON events on ``<prefix>:<channel>`` through Redis pub/sub."""

    def __init__(self, redis_client: Redis, prefix: str = "opsflow:status"):
        self.redis = redis_client
        self.prefix = prefix
        self.logger = logger.bind(component="status_publisher")

    async def publish(self, channel: str, event: StatusEvent) -> None:
        message = json.dumps({"topic": STATUS_TOPIC, "data": event.to_payload()})
        try:
            await self.redis.publish(f"{self.prefix}:{channel}", message)
        except RedisError as e:
            self.logger.warning(
                "Failed to publish status event",
                channel=channel,
                node_id=event.node_id,
                error=str(e),
            )


class NodeStatusEmitter:
    """Publishing capability bound to one node in one run."""

    def __init__(
        self,
        publisher: StatusPublisher,
        channel: str,
        node_id: str,
        run_id: Optional[str] = None,
    ):
        self.publisher = publisher
        self.channel = channel
        self.node_id = node_id
        self.run_id = run_id

    async def __call__(self, status: NodeStatus, **fields: Any) -> StatusEvent:
        event = StatusEvent(node_id=self.node_id, status=status, run_id=self.run_id, **fields)
        await self.publisher.publish(self.channel, event)
        return event
