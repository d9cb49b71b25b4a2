"""Test nested workflow runs."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import edge
from opsflow.executor.errors import (
    ChildRunFailedError,
    ConfigurationError,
    ErrorKind,
    PermanentError,
    TransientError,
)
from opsflow.executor.steps import RunSuspended
from opsflow.nodes.implementations.subworkflow import child_result, extract_value, map_outputs
from opsflow.runs.schemas import RunFailure, RunRecord, RunStatus

MANUAL = {"id": "start", "type": "MANUAL_TRIGGER", "data": {"variableName": "deal"}}


def execute_workflow(node_id, workflow_id, **data):
    return {"id": node_id, "type": "EXECUTE_WORKFLOW", "data": {"workflowId": workflow_id, **data}}


@pytest.fixture
def scoring(make_workflow):
    return make_workflow(
        "score-deal",
        [
            {"id": "calc", "type": "SET_VARIABLE", "data": {"variableName": "score", "value": "{{deal.value}}"}},
            {"id": "label", "type": "SET_VARIABLE", "data": {"variableName": "priority", "value": "{{priority}}"}},
        ],
        [edge("calc", "label")],
    )


@pytest.mark.unit
class TestSubWorkflowNode:
    """Test the execute-workflow node."""

    async def test_nested_run_result_with_mapping(self, orchestrator, make_workflow, scoring):
        make_workflow(
            "parent",
            [
                MANUAL,
                execute_workflow(
                    "sub",
                    "score-deal",
                    variableName="scored",
                    inputs={"priority": "high"},
                    outputMapping={"score": "$.score", "priority": "priority"},
                ),
            ],
            [edge("start", "sub")],
        )

        record = await orchestrator.start_run("parent", {"value": 5000})

        assert record.status == RunStatus.SUCCEEDED
        assert record.context["scored"] == {"score": 5000, "priority": "high"}

        child = await orchestrator.get_run(f"{record.id}:sub")
        assert child.status == RunStatus.SUCCEEDED
        assert child.parent_run_id == record.id
        assert child.parent_node_id == "sub"
        assert child.execution_stack == ["parent"]
        assert child.context["deal"] == {"value": 5000}

    async def test_nested_output_without_mapping(self, orchestrator, make_workflow, scoring):
        make_workflow(
            "parent",
            [MANUAL, execute_workflow("sub", "score-deal")],
            [edge("start", "sub")],
        )

        record = await orchestrator.start_run("parent", {"value": 10})

        result = record.context["workflowResult"]
        assert result["score"] == 10
        assert result["deal"] == {"value": 10}

    async def test_declared_outputs_are_used(self, orchestrator, make_workflow):
        make_workflow(
            "summarise",
            [{"id": "calc", "type": "SET_VARIABLE", "data": {"variableName": "total", "value": "{{deal.value}}"}}],
            bundleOutputs=[{"name": "total", "variablePath": "$.total"}],
        )
        make_workflow("parent", [MANUAL, execute_workflow("sub", "summarise")], [edge("start", "sub")])

        record = await orchestrator.start_run("parent", {"value": 7})

        assert record.context["workflowResult"] == {"total": 7}

    async def test_nested_failure_propagates_without_retry(self, orchestrator, operations, make_workflow):
        slack = AsyncMock(side_effect=PermanentError("Channel archived"))
        operations.register("slack-send-message", slack)
        make_workflow(
            "notify",
            [{"id": "send", "type": "SLACK_SEND_MESSAGE", "data": {"channel": "#x", "message": "y"}}],
        )
        make_workflow("parent", [MANUAL, execute_workflow("sub", "notify")], [edge("start", "sub")])

        record = await orchestrator.start_run("parent", {})

        assert record.status == RunStatus.FAILED
        assert record.failure.node_id == "sub"
        assert record.failure.kind == "permanent"
        assert record.failure.attempts == 1
        assert record.failure.details["error_code"] == "CHILD_RUN_FAILED"
        assert record.failure.details["details"]["child_run_id"] == f"{record.id}:sub"
        child = await orchestrator.get_run(f"{record.id}:sub")
        assert child.failure.node_id == "send"

    async def test_nested_run_spends_its_own_retries(self, orchestrator, operations, make_workflow):
        slack = AsyncMock(side_effect=TransientError("timeout"))
        operations.register("slack-send-message", slack)
        make_workflow(
            "notify",
            [{"id": "send", "type": "SLACK_SEND_MESSAGE", "data": {"channel": "#x", "message": "y"}}],
        )
        make_workflow("parent", [MANUAL, execute_workflow("sub", "notify")], [edge("start", "sub")])

        record = await orchestrator.start_run("parent", {})

        assert record.failure.kind == "transient"
        assert record.failure.attempts == 1
        assert slack.await_count == 3

    async def test_circular_reference(self, orchestrator, make_workflow):
        make_workflow("loop", [MANUAL, execute_workflow("again", "loop")], [edge("start", "again")])

        record = await orchestrator.start_run("loop", {})

        assert record.status == RunStatus.FAILED
        assert record.failure.node_id == "again"
        assert record.failure.kind == "configuration"
        assert record.failure.details["error_code"] == "CIRCULAR_WORKFLOW"
        assert record.failure.details["details"]["workflow_path"] == ["loop", "loop"]

    async def test_indirect_circular_reference(self, orchestrator, make_workflow):
        make_workflow("a", [MANUAL, execute_workflow("to-b", "b")], [edge("start", "to-b")])
        make_workflow("b", [execute_workflow("to-a", "a")])

        record = await orchestrator.start_run("a", {})

        assert record.status == RunStatus.FAILED
        assert record.failure.kind == "configuration"
        child = await orchestrator.get_run(f"{record.id}:to-b")
        assert child.failure.details["error_code"] == "CIRCULAR_WORKFLOW"

    async def test_depth_limit(self, orchestrator, make_workflow, settings):
        settings.max_subworkflow_depth = 1
        make_workflow("a", [MANUAL, execute_workflow("to-b", "b")], [edge("start", "to-b")])
        make_workflow("b", [execute_workflow("to-c", "c")])
        make_workflow("c", [{"id": "x", "type": "SET_VARIABLE", "data": {"variableName": "x", "value": "1"}}])

        record = await orchestrator.start_run("a", {})

        assert record.status == RunStatus.FAILED
        child = await orchestrator.get_run(f"{record.id}:to-b")
        assert child.failure.details["error_code"] == "SUBWORKFLOW_DEPTH"

    async def test_missing_workflow(self, orchestrator, make_workflow):
        make_workflow("parent", [MANUAL, execute_workflow("sub", "ghost")], [edge("start", "sub")])

        record = await orchestrator.start_run("parent", {})

        assert record.failure.kind == "permanent"
        assert record.failure.attempts == 1

    async def test_suspended_child_suspends_parent(self, orchestrator, make_workflow, scheduler, clock):
        make_workflow(
            "slow",
            [
                {"id": "pause", "type": "WAIT", "data": {"duration": 10, "unit": "minutes", "variableName": "pause"}},
                {"id": "done", "type": "SET_VARIABLE", "data": {"variableName": "done", "value": "yes"}},
            ],
            [edge("pause", "done")],
        )
        make_workflow("parent", [MANUAL, execute_workflow("sub", "slow")], [edge("start", "sub")])
        wake_at = clock() + timedelta(minutes=10)

        record = await orchestrator.start_run("parent", {})

        assert record.status == RunStatus.WAITING
        assert record.wake_at == wake_at
        assert (await orchestrator.get_run(f"{record.id}:sub")).status == RunStatus.WAITING
        assert scheduler.wake_ups == [(record.id, wake_at)]

        clock.advance(minutes=10)
        resumed = await orchestrator.resume_run(record.id)

        assert resumed.status == RunStatus.SUCCEEDED
        assert resumed.context["workflowResult"]["done"] == "yes"
        assert (await orchestrator.get_run(f"{record.id}:sub")).status == RunStatus.SUCCEEDED


@pytest.mark.unit
class TestHelpers:
    """Test output extraction and nested result handling."""

    def test_extract_value(self):
        data = {"contact": {"tags": ["a", "b"]}, "items": [{"id": 1}, {"id": 2}]}

        assert extract_value(data, "contact.tags.1") == "b"
        assert extract_value(data, "$.contact.tags[0]") == "a"
        assert extract_value(data, "$.items[*].id") == [1, 2]
        assert extract_value(data, "$.missing") is None

    def test_invalid_jsonpath(self):
        with pytest.raises(ConfigurationError):
            extract_value({}, "$.[[")

    def test_map_outputs(self):
        assert map_outputs({"a": {"b": 1}}, {"first": "$.a.b", "second": "a.c"}) == {"first": 1, "second": None}

    def test_child_result(self, clock):
        child = RunRecord(id="r:n", workflow_id="child", status=RunStatus.SUCCEEDED)
        assert child_result(child) is child

        child.status = RunStatus.WAITING
        child.wake_at = clock()
        with pytest.raises(RunSuspended):
            child_result(child)

        child.status = RunStatus.FAILED
        child.failure = RunFailure(node_id="send", kind="transient", message="timeout", attempts=3)
        with pytest.raises(ChildRunFailedError) as exc_info:
            child_result(child)
        assert exc_info.value.kind == ErrorKind.TRANSIENT
        assert exc_info.value.retriable is False

        child.status = RunStatus.CANCELLED
        with pytest.raises(PermanentError):
            child_result(child)
