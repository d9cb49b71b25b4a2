"""Test status publishing."""

import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import RedisError

from opsflow.status.publisher import (
    InMemoryStatusPublisher,
    NodeStatus,
    NodeStatusEmitter,
    RedisStatusPublisher,
    StatusEvent,
    channel_for,
)


@pytest.mark.unit
class TestChannels:
    """Test channel naming."""

    def test_execution_channel(self):
        assert channel_for("SEND_EMAIL") == "send-email-execution"
        assert channel_for("IF_ELSE") == "if-else-execution"

    def test_trigger_channel(self):
        assert channel_for("GMAIL", trigger=True) == "gmail-trigger"
        assert channel_for("CONTACT_CREATED_TRIGGER", trigger=True) == "contact-created-trigger"


@pytest.mark.unit
class TestStatusEvent:
    """Test event payloads."""

    def test_payload_uses_camel_case_and_drops_empty_fields(self):
        event = StatusEvent(node_id="bulk", status=NodeStatus.LOADING, run_id="run-1")

        assert event.to_payload() == {"nodeId": "bulk", "status": "loading", "runId": "run-1"}

    def test_iteration_fields(self):
        event = StatusEvent(
            node_id="bulk",
            status=NodeStatus.SUCCESS,
            current_index=2,
            total_iterations=3,
        )

        assert event.to_payload() == {
            "nodeId": "bulk",
            "status": "success",
            "currentIndex": 2,
            "totalIterations": 3,
        }


@pytest.mark.unit
class TestInMemoryStatusPublisher:
    """Test the in-memory publisher."""

    async def test_records_events_in_order(self):
        publisher = InMemoryStatusPublisher()
        emit = NodeStatusEmitter(publisher, "wait-execution", "pause", "run-1")

        await emit(NodeStatus.LOADING)
        await emit(NodeStatus.SUCCESS)

        assert [channel for channel, _ in publisher.events] == ["wait-execution", "wait-execution"]
        assert [event.status for event in publisher.for_node("pause")] == [
            NodeStatus.LOADING,
            NodeStatus.SUCCESS,
        ]

    async def test_notifies_subscribers(self):
        publisher = InMemoryStatusPublisher()
        subscriber = AsyncMock()
        publisher.subscribe(subscriber)

        event = StatusEvent(node_id="n1", status=NodeStatus.ERROR)
        await publisher.publish("slack-send-message-execution", event)

        subscriber.assert_awaited_once_with("slack-send-message-execution", event)

    async def test_clear(self):
        publisher = InMemoryStatusPublisher()
        await publisher.publish("c", StatusEvent(node_id="n1", status=NodeStatus.LOADING))

        publisher.clear()

        assert publisher.events == []


@pytest.mark.unit
class TestRedisStatusPublisher:
    """Test Redis pub/sub publishing."""

    async def test_publishes_json_on_prefixed_channel(self):
        redis = AsyncMock()
        publisher = RedisStatusPublisher(redis, prefix="opsflow:status")

        await publisher.publish(
            "wait-execution",
            StatusEvent(node_id="pause", status=NodeStatus.LOADING, run_id="run-1"),
        )

        redis.publish.assert_awaited_once()
        channel, message = redis.publish.await_args.args
        assert channel == "opsflow:status:wait-execution"
        assert json.loads(message) == {
            "topic": "status",
            "data": {"nodeId": "pause", "status": "loading", "runId": "run-1"},
        }

    async def test_publish_failure_is_not_raised(self):
        redis = AsyncMock()
        redis.publish.side_effect = RedisError("connection refused")
        publisher = RedisStatusPublisher(redis)

        await publisher.publish("wait-execution", StatusEvent(node_id="pause", status=NodeStatus.ERROR))

        redis.publish.assert_awaited_once()
