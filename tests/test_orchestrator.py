"""Test the workflow orchestrator."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import edge
from opsflow.executor.errors import (
    PermanentError,
    RunNotFoundError,
    TransientError,
    WorkflowNotFoundError,
    WorkflowValidationError,
    is_retriable,
)
from opsflow.runs.schemas import RunStatus
from opsflow.status.publisher import NodeStatus


def set_variable(node_id, name, value, **extra):
    return {"id": node_id, "type": "SET_VARIABLE", "data": {"variableName": name, "value": value}, **extra}


MANUAL = {"id": "start", "type": "MANUAL_TRIGGER", "data": {"variableName": "input"}}


@pytest.fixture
def slack(operations):
    operation = AsyncMock(return_value={"ts": "1700000000.0001"})
    operations.register("slack-send-message", operation)
    return operation


@pytest.fixture
def linear(make_workflow):
    return make_workflow(
        "welcome",
        [
            MANUAL,
            set_variable("greet", "greeting", "Hello {{input.name}}"),
            {
                "id": "notify",
                "type": "SLACK_SEND_MESSAGE",
                "data": {"channel": "#sales", "message": "{{greeting}}"},
            },
        ],
        [edge("start", "greet"), edge("greet", "notify")],
    )


@pytest.fixture
def branching(make_workflow):
    return make_workflow(
        "route-deal",
        [
            MANUAL,
            {
                "id": "check",
                "type": "IF_ELSE",
                "data": {
                    "leftOperand": "{{input.amount}}",
                    "operator": "greaterThan",
                    "rightOperand": "100",
                },
            },
            set_variable("big", "tier", "big"),
            set_variable("small", "tier", "small"),
        ],
        [
            edge("start", "check"),
            edge("check", "big", "true"),
            edge("check", "small", "false"),
        ],
    )


@pytest.mark.unit
class TestTraversal:
    """Test node traversal."""

    async def test_linear_run_succeeds(self, orchestrator, linear, slack):
        record = await orchestrator.start_run("welcome", {"name": "Ada"}, trigger_type="MANUAL_TRIGGER")

        assert record.status == RunStatus.SUCCEEDED
        assert record.completed == ["start", "greet", "notify"]
        assert record.context["greeting"] == "Hello Ada"
        assert record.context["slackMessage"] == {"ts": "1700000000.0001"}
        assert record.output == record.context
        assert record.finished_at is not None
        assert slack.await_args.args[0] == {"channel": "#sales", "message": "Hello Ada"}

    async def test_status_events_follow_traversal(self, orchestrator, linear, slack, publisher):
        record = await orchestrator.start_run("welcome", {"name": "Ada"})

        assert [(event.node_id, event.status) for _, event in publisher.events] == [
            ("start", NodeStatus.LOADING),
            ("start", NodeStatus.SUCCESS),
            ("greet", NodeStatus.LOADING),
            ("greet", NodeStatus.SUCCESS),
            ("notify", NodeStatus.LOADING),
            ("notify", NodeStatus.SUCCESS),
        ]
        assert {event.run_id for _, event in publisher.events} == {record.id}
        assert [channel for channel, _ in publisher.events][-1] == "slack-send-message-execution"

    async def test_run_is_persisted(self, orchestrator, linear, slack):
        record = await orchestrator.start_run("welcome", {"name": "Ada"})

        stored = await orchestrator.get_run(record.id)
        assert stored.status == RunStatus.SUCCEEDED
        assert stored.context == record.context

    @pytest.mark.parametrize("amount,taken,skipped", [(500, "big", "small"), (5, "small", "big")])
    async def test_branch_selects_edge(self, orchestrator, branching, amount, taken, skipped):
        record = await orchestrator.start_run("route-deal", {"amount": amount})

        assert record.status == RunStatus.SUCCEEDED
        assert record.completed == ["start", "check", taken]
        assert skipped not in record.reachable
        assert record.context["tier"] == taken

    async def test_missing_branch_edge_ends_run(self, orchestrator, make_workflow):
        make_workflow(
            "only-true",
            [
                MANUAL,
                {
                    "id": "check",
                    "type": "IF_ELSE",
                    "data": {"leftOperand": "{{input.vip}}", "operator": "equals", "rightOperand": "true"},
                },
                set_variable("vip", "perk", "gold"),
            ],
            [edge("start", "check"), edge("check", "vip", "true")],
        )

        record = await orchestrator.start_run("only-true", {"vip": False})

        assert record.status == RunStatus.SUCCEEDED
        assert record.completed == ["start", "check"]
        assert record.context["condition"]["branchToFollow"] == "false"

    async def test_ties_follow_declaration_order(self, orchestrator, make_workflow):
        make_workflow(
            "diamond",
            [
                MANUAL,
                set_variable("b", "b", "1"),
                set_variable("a", "a", "2"),
                set_variable("join", "sum", "{{a}}{{b}}"),
            ],
            [edge("start", "a"), edge("start", "b"), edge("a", "join"), edge("b", "join")],
        )

        record = await orchestrator.start_run("diamond")

        assert record.completed == ["start", "b", "a", "join"]
        assert record.context["sum"] == 21

    async def test_disabled_node_passes_through(self, orchestrator, make_workflow):
        make_workflow(
            "skip",
            [
                MANUAL,
                {"id": "off", "type": "SET_VARIABLE", "data": {}, "disabled": True},
                set_variable("end", "done", "yes"),
            ],
            [edge("start", "off"), edge("off", "end")],
        )

        record = await orchestrator.start_run("skip")

        assert record.status == RunStatus.SUCCEEDED
        assert record.completed == ["start", "off", "end"]
        assert record.context["done"] == "yes"

    async def test_entry_node_follows_trigger_type(self, orchestrator, make_workflow):
        make_workflow(
            "two-doors",
            [
                {"id": "manual", "type": "MANUAL_TRIGGER", "data": {}},
                {"id": "hook", "type": "WEBHOOK_TRIGGER", "data": {}},
                set_variable("from-manual", "source", "manual"),
                set_variable("from-hook", "source", "hook"),
            ],
            [edge("manual", "from-manual"), edge("hook", "from-hook")],
        )

        record = await orchestrator.start_run("two-doors", {}, trigger_type="WEBHOOK_TRIGGER")

        assert record.completed == ["hook", "from-hook"]
        assert record.context["source"] == "hook"

    async def test_stop_node_ends_run(self, orchestrator, make_workflow):
        make_workflow(
            "stopper",
            [
                MANUAL,
                {"id": "stop", "type": "STOP_WORKFLOW", "data": {"reason": "Unsubscribed"}},
                set_variable("after", "after", "ran"),
            ],
            [edge("start", "stop"), edge("stop", "after")],
        )

        record = await orchestrator.start_run("stopper")

        assert record.status == RunStatus.SUCCEEDED
        assert record.completed == ["start", "stop"]
        assert record.context["stopped"] == {"stopped": True, "reason": "Unsubscribed"}
        assert "after" not in record.context


@pytest.mark.unit
class TestFailures:
    """Test failure classification and retries."""

    async def test_configuration_error_uses_one_attempt(self, orchestrator, make_workflow, slack, publisher):
        make_workflow(
            "broken",
            [
                MANUAL,
                set_variable("greet", "greeting", "hi"),
                {"id": "notify", "type": "SLACK_SEND_MESSAGE", "data": {"message": "{{greeting}}"}},
            ],
            [edge("start", "greet"), edge("greet", "notify")],
        )

        record = await orchestrator.start_run("broken", {"name": "Ada"})

        assert record.status == RunStatus.FAILED
        assert record.failure.node_id == "notify"
        assert record.failure.node_type == "SLACK_SEND_MESSAGE"
        assert record.failure.kind == "configuration"
        assert record.failure.attempts == 1
        assert "Channel is required" in record.failure.message
        assert record.context["greeting"] == "hi"
        assert record.completed == ["start", "greet"]
        slack.assert_not_awaited()
        assert [event.status for event in publisher.for_node("notify")] == [
            NodeStatus.LOADING,
            NodeStatus.ERROR,
        ]

    async def test_transient_error_exhausts_budget(self, orchestrator, linear, slack):
        slack.side_effect = TransientError("Slack rate limited")

        record = await orchestrator.start_run("welcome", {"name": "Ada"})

        assert record.status == RunStatus.FAILED
        assert record.failure.kind == "transient"
        assert record.failure.attempts == 3
        assert record.failure.message == "Slack rate limited"
        assert slack.await_count == 3

    async def test_unknown_exception_is_transient(self, orchestrator, linear, slack):
        slack.side_effect = RuntimeError("socket closed")

        record = await orchestrator.start_run("welcome", {"name": "Ada"})

        assert record.failure.kind == "transient"
        assert record.failure.attempts == 3
        assert record.failure.details["error"] == "RuntimeError"

    async def test_transient_error_then_success(self, orchestrator, linear, slack):
        slack.side_effect = [TransientError("blip"), {"ts": "2"}]

        record = await orchestrator.start_run("welcome", {"name": "Ada"})

        assert record.status == RunStatus.SUCCEEDED
        assert record.context["slackMessage"] == {"ts": "2"}
        assert slack.await_count == 2

    async def test_permanent_error_is_not_retried(self, orchestrator, linear, slack):
        slack.side_effect = PermanentError("Channel archived")

        record = await orchestrator.start_run("welcome", {"name": "Ada"})

        assert record.failure.kind == "permanent"
        assert record.failure.attempts == 1
        assert record.failure.details["error_code"] == "PERMANENT"

    async def test_missing_integration_is_not_implemented(self, orchestrator, linear):
        record = await orchestrator.start_run("welcome", {"name": "Ada"})

        assert record.status == RunStatus.FAILED
        assert record.failure.kind == "not_implemented"
        assert record.failure.attempts == 1

    async def test_retry_budget_is_configurable(self, orchestrator, linear, slack, settings):
        settings.retry_max_attempts = 5
        slack.side_effect = TransientError("down")

        record = await orchestrator.start_run("welcome", {"name": "Ada"})

        assert record.failure.attempts == 5
        assert slack.await_count == 5

    async def test_unknown_workflow(self, orchestrator):
        with pytest.raises(WorkflowNotFoundError):
            await orchestrator.start_run("nope")

    async def test_invalid_workflow_is_rejected(self, orchestrator, make_workflow):
        make_workflow("invalid", [MANUAL, {"id": "x", "type": "TELEPORT", "data": {}}], [edge("start", "x")])

        with pytest.raises(WorkflowValidationError) as exc_info:
            await orchestrator.start_run("invalid")

        assert "Node x has unknown type TELEPORT" in exc_info.value.validation_errors

    async def test_unknown_run(self, orchestrator):
        with pytest.raises(RunNotFoundError):
            await orchestrator.get_run("missing")


@pytest.fixture
def waiting(make_workflow):
    return make_workflow(
        "nurture",
        [
            MANUAL,
            {"id": "pause", "type": "WAIT", "data": {"duration": 5, "unit": "minutes", "variableName": "pause"}},
            set_variable("after", "followedUp", "yes"),
        ],
        [edge("start", "pause"), edge("pause", "after")],
    )


@pytest.mark.unit
class TestSuspension:
    """Test waiting runs."""

    async def test_wait_suspends_run(self, orchestrator, waiting, scheduler, clock):
        record = await orchestrator.start_run("nurture", {"name": "Ada"})
        wake_at = clock() + timedelta(minutes=5)

        assert record.status == RunStatus.WAITING
        assert record.wake_at == wake_at
        assert record.completed == ["start"]
        assert record.current_node_id == "pause"
        assert record.context["input"] == {"name": "Ada"}
        assert scheduler.wake_ups == [(record.id, wake_at)]

    async def test_resume_after_wake_time(self, orchestrator, waiting, clock):
        record = await orchestrator.start_run("nurture", {"name": "Ada"})
        wake_at = record.wake_at

        clock.advance(minutes=5)
        resumed = await orchestrator.resume_run(record.id)

        assert resumed.status == RunStatus.SUCCEEDED
        assert resumed.completed == ["start", "pause", "after"]
        assert resumed.context["pause"]["durationMs"] == 300000
        assert datetime.fromisoformat(resumed.context["pause"]["waitedUntil"]) >= wake_at
        assert resumed.wake_at is None

    async def test_early_resume_waits_again(self, orchestrator, waiting, clock):
        record = await orchestrator.start_run("nurture")

        clock.advance(minutes=1)
        resumed = await orchestrator.resume_run(record.id)

        assert resumed.status == RunStatus.WAITING
        assert resumed.wake_at == record.wake_at

    async def test_resume_due_runs(self, orchestrator, waiting, clock):
        first = await orchestrator.start_run("nurture")
        clock.advance(minutes=3)
        second = await orchestrator.start_run("nurture")

        clock.advance(minutes=2)
        resumed = await orchestrator.resume_due_runs()

        assert [record.id for record in resumed] == [first.id]
        assert resumed[0].status == RunStatus.SUCCEEDED
        assert (await orchestrator.get_run(second.id)).status == RunStatus.WAITING

    async def test_resume_ignores_finished_runs(self, orchestrator, branching):
        record = await orchestrator.start_run("route-deal", {"amount": 1})

        again = await orchestrator.resume_run(record.id)

        assert again.status == RunStatus.SUCCEEDED
        assert again.updated_at == record.updated_at


@pytest.mark.unit
class TestCancellation:
    """Test run cancellation."""

    async def test_cancel_waiting_run(self, orchestrator, waiting, clock):
        record = await orchestrator.start_run("nurture")

        cancelled = await orchestrator.cancel_run(record.id)
        clock.advance(minutes=10)

        assert cancelled.status == RunStatus.CANCELLED
        assert cancelled.wake_at is None
        assert await orchestrator.resume_due_runs() == []
        assert (await orchestrator.resume_run(record.id)).status == RunStatus.CANCELLED

    async def test_effect_after_cancellation_is_discarded(self, orchestrator, operations, make_workflow):
        async def cancel_then_reply(payload, context):
            await orchestrator.cancel_run(context.run_id)
            return {"ts": "late"}

        operations.register("slack-send-message", cancel_then_reply)
        make_workflow(
            "racy",
            [
                MANUAL,
                {"id": "notify", "type": "SLACK_SEND_MESSAGE", "data": {"channel": "#a", "message": "b"}},
                set_variable("after", "after", "ran"),
            ],
            [edge("start", "notify"), edge("notify", "after")],
        )

        record = await orchestrator.start_run("racy")

        assert record.status == RunStatus.CANCELLED
        assert "slackMessage" not in record.context
        assert "after" not in record.completed

    async def test_cancel_finished_run_is_noop(self, orchestrator, branching):
        record = await orchestrator.start_run("route-deal", {"amount": 1})

        assert (await orchestrator.cancel_run(record.id)).status == RunStatus.SUCCEEDED


class WorkerDied(BaseException):
    """Stands in for the worker process going away mid-run."""


@pytest.fixture
def reminder(make_workflow):
    return make_workflow(
        "reminder",
        [
            MANUAL,
            {"id": "pause", "type": "WAIT", "data": {"duration": 5, "unit": "minutes", "variableName": "pause"}},
            {"id": "notify", "type": "SLACK_SEND_MESSAGE", "data": {"channel": "#sales", "message": "ping"}},
        ],
        [edge("start", "pause"), edge("pause", "notify")],
    )


@pytest.mark.unit
class TestRecovery:
    """Test re-entry of runs whose worker went away and exclusive claims."""

    def lease(self, clock, settings):
        return clock() + timedelta(seconds=settings.run_lease_seconds)

    async def test_crash_during_resume_is_taken_over(self, orchestrator, reminder, slack, clock, settings):
        record = await orchestrator.start_run("reminder")
        clock.advance(minutes=5)
        claimed = await orchestrator.runs.claim(record.id, [RunStatus.WAITING], clock(), self.lease(clock, settings))
        assert claimed.status == RunStatus.RUNNING

        # The claiming worker died; its lease is still live
        assert (await orchestrator.resume_run(record.id)).status == RunStatus.RUNNING
        assert await orchestrator.resume_due_runs() == []
        assert slack.await_count == 0

        clock.advance(seconds=settings.run_lease_seconds)
        resumed = await orchestrator.resume_due_runs()

        assert [run.id for run in resumed] == [record.id]
        assert resumed[0].status == RunStatus.SUCCEEDED
        assert resumed[0].completed == ["start", "pause", "notify"]
        assert resumed[0].lease_expires_at is None
        assert slack.await_count == 1

    async def test_resume_run_takes_over_expired_lease(self, orchestrator, reminder, slack, clock, settings):
        record = await orchestrator.start_run("reminder")
        clock.advance(minutes=5)
        await orchestrator.runs.claim(record.id, [RunStatus.WAITING], clock(), self.lease(clock, settings))

        clock.advance(seconds=settings.run_lease_seconds + 1)
        resumed = await orchestrator.resume_run(record.id)

        assert resumed.status == RunStatus.SUCCEEDED
        assert slack.await_count == 1

    async def test_crash_after_effect_replays_recorded_step(
        self, orchestrator, linear, slack, publisher, clock, settings
    ):
        async def die_once(channel, event):
            if event.node_id == "notify" and event.status == NodeStatus.SUCCESS and not died:
                died.append(event)
                raise WorkerDied()

        died = []
        publisher.subscribe(die_once)

        with pytest.raises(WorkerDied):
            await orchestrator.start_run("welcome", {"name": "Ada"}, run_id="run-crash")

        stuck = await orchestrator.get_run("run-crash")
        assert stuck.status == RunStatus.RUNNING
        assert "notify" not in stuck.completed

        clock.advance(seconds=settings.run_lease_seconds)
        resumed = await orchestrator.resume_due_runs()

        assert [run.status for run in resumed] == [RunStatus.SUCCEEDED]
        assert resumed[0].context["slackMessage"] == {"ts": "1700000000.0001"}
        assert slack.await_count == 1

    async def test_sweep_skips_run_claimed_after_listing(self, orchestrator, reminder, slack, clock, settings):
        record = await orchestrator.start_run("reminder")
        clock.advance(minutes=5)
        list_due = orchestrator.runs.list_due

        async def list_then_lose_race(now, limit=100):
            due = await list_due(now, limit)
            for run in due:
                await orchestrator.runs.claim(run.id, [RunStatus.WAITING], now, self.lease(clock, settings))
            return due

        orchestrator.runs.list_due = list_then_lose_race

        assert await orchestrator.resume_due_runs() == []
        assert (await orchestrator.get_run(record.id)).status == RunStatus.RUNNING
        assert slack.await_count == 0

    async def test_concurrent_resumes_run_effect_once(self, orchestrator, reminder, slack, clock):
        record = await orchestrator.start_run("reminder")
        clock.advance(minutes=5)

        await asyncio.gather(
            orchestrator.resume_run(record.id),
            orchestrator.resume_run(record.id),
            orchestrator.resume_due_runs(),
        )

        assert (await orchestrator.get_run(record.id)).status == RunStatus.SUCCEEDED
        assert slack.await_count == 1

    async def test_claim_is_exclusive(self, orchestrator, waiting, clock, settings):
        record = await orchestrator.start_run("nurture")

        first = await orchestrator.runs.claim(record.id, [RunStatus.WAITING], clock(), self.lease(clock, settings))
        second = await orchestrator.runs.claim(record.id, [RunStatus.WAITING], clock(), self.lease(clock, settings))

        assert first.status == RunStatus.RUNNING
        assert first.wake_at is None
        assert second is None

    async def test_execute_run_ignores_waiting_run(self, orchestrator, waiting):
        record = await orchestrator.start_run("nurture")

        again = await orchestrator.execute_run(record.id)

        assert again.status == RunStatus.WAITING
        assert again.updated_at == record.updated_at


@pytest.mark.unit
class TestCancellationSignals:
    """Test that interpreter-level cancellation is never retried."""

    async def test_cancelled_error_is_not_retried(self, orchestrator, linear, slack):
        slack.side_effect = asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await orchestrator.start_run("welcome", {"name": "Ada"})

        assert slack.await_count == 1

    async def test_keyboard_interrupt_is_not_retried(self, orchestrator, linear, slack):
        slack.side_effect = KeyboardInterrupt()

        with pytest.raises(KeyboardInterrupt):
            await orchestrator.start_run("welcome", {"name": "Ada"})

        assert slack.await_count == 1

    @pytest.mark.parametrize("error,retriable", [
        (asyncio.CancelledError(), False),
        (KeyboardInterrupt(), False),
        (SystemExit(1), False),
        (RuntimeError("socket closed"), True),
        (TransientError("blip"), True),
        (PermanentError("no"), False),
    ])
    def test_is_retriable(self, error, retriable):
        assert is_retriable(error) is retriable


@pytest.mark.unit
class TestStepLogPruning:
    """Test that finished runs drop their step entries."""

    async def test_succeeded_run_prunes_steps(self, orchestrator, linear, slack):
        record = await orchestrator.start_run("welcome", {"name": "Ada"})

        assert record.status == RunStatus.SUCCEEDED
        assert orchestrator.step_log.keys(record.id) == []

    async def test_failed_run_prunes_steps(self, orchestrator, make_workflow, slack):
        make_workflow(
            "two-messages",
            [
                MANUAL,
                {"id": "first", "type": "SLACK_SEND_MESSAGE", "data": {"channel": "#a", "message": "one"}},
                {"id": "second", "type": "SLACK_SEND_MESSAGE", "data": {"channel": "#a", "message": "two"}},
            ],
            [edge("start", "first"), edge("first", "second")],
        )
        slack.side_effect = [{"ts": "1"}, PermanentError("Channel archived")]

        record = await orchestrator.start_run("two-messages")

        assert record.status == RunStatus.FAILED
        assert orchestrator.step_log.keys(record.id) == []

    async def test_waiting_run_keeps_steps(self, orchestrator, waiting):
        record = await orchestrator.start_run("nurture")

        assert orchestrator.step_log.keys(record.id) == ["pause:wait"]
