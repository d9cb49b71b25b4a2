"""Test durable steps."""

from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from opsflow.executor.errors import ExecutionSignal
from opsflow.executor.steps import (
    DurableStepRunner,
    MemoryStepLog,
    RunSuspended,
    StepKind,
    StepStatus,
)


@pytest.fixture
def step_log():
    return MemoryStepLog()


@pytest.mark.unit
class TestRunStep:
    """Test at-most-once step execution."""

    async def test_step_runs_once_across_resumptions(self, step_log):
        spy = AsyncMock(return_value={"id": "contact-1"})

        first = await DurableStepRunner("run-1", step_log).run("n1:create-contact", spy)
        second = await DurableStepRunner("run-1", step_log).run("n1:create-contact", spy)
        third = await DurableStepRunner("run-1", step_log).run("n1:create-contact", spy)

        assert first == second == third == {"id": "contact-1"}
        spy.assert_awaited_once()

    async def test_step_keys_are_scoped_to_run(self, step_log):
        spy = AsyncMock(return_value="ok")

        await DurableStepRunner("run-1", step_log).run("n1:send", spy)
        await DurableStepRunner("run-2", step_log).run("n1:send", spy)

        assert spy.await_count == 2

    async def test_sync_functions_are_supported(self, step_log):
        fn = Mock(return_value=7)
        runner = DurableStepRunner("run-1", step_log)

        assert await runner.run("n1:compute", fn) == 7
        assert await runner.run("n1:compute", fn) == 7
        fn.assert_called_once()

    async def test_failed_step_is_not_recorded(self, step_log):
        spy = AsyncMock(side_effect=[RuntimeError("boom"), "ok"])
        runner = DurableStepRunner("run-1", step_log)

        with pytest.raises(RuntimeError):
            await runner.run("n1:send", spy)
        assert await step_log.get("run-1", "n1:send") is None

        assert await runner.run("n1:send", spy) == "ok"
        assert spy.await_count == 2

    async def test_replayed_result_is_a_copy(self, step_log):
        runner = DurableStepRunner("run-1", step_log)
        await runner.run("n1:fetch", AsyncMock(return_value={"tags": ["a"]}))

        replayed = await runner.run("n1:fetch", AsyncMock())
        replayed["tags"].append("b")

        entry = await step_log.get("run-1", "n1:fetch")
        assert entry.result == {"tags": ["a"]}
        assert entry.kind == StepKind.RUN
        assert entry.status == StepStatus.COMPLETED


@pytest.mark.unit
class TestSleepStep:
    """Test durable sleeps."""

    async def test_long_sleep_suspends(self, step_log, clock):
        runner = DurableStepRunner("run-1", step_log, clock=clock)
        expected = clock() + timedelta(minutes=5)

        with pytest.raises(RunSuspended) as exc_info:
            await runner.sleep("wait-1:wait", 300000)

        assert exc_info.value.wake_at == expected
        assert exc_info.value.step_key == "wait-1:wait"
        assert isinstance(exc_info.value, ExecutionSignal)

    async def test_wake_time_is_measured_from_first_visit(self, step_log, clock):
        runner = DurableStepRunner("run-1", step_log, clock=clock)
        expected = clock() + timedelta(minutes=5)

        with pytest.raises(RunSuspended):
            await runner.sleep("wait-1:wait", 300000)
        clock.advance(minutes=2)
        with pytest.raises(RunSuspended) as exc_info:
            await DurableStepRunner("run-1", step_log, clock=clock).sleep("wait-1:wait", 300000)

        assert exc_info.value.wake_at == expected

    async def test_elapsed_sleep_returns(self, step_log, clock):
        runner = DurableStepRunner("run-1", step_log, clock=clock)
        with pytest.raises(RunSuspended):
            await runner.sleep("wait-1:wait", 300000)

        clock.advance(minutes=5)
        wake_at = await runner.sleep("wait-1:wait", 300000)

        assert wake_at <= clock()
        entry = await step_log.get("run-1", "wait-1:wait")
        assert entry.status == StepStatus.COMPLETED

        clock.advance(days=1)
        assert await runner.sleep("wait-1:wait", 300000) == wake_at

    async def test_short_sleep_is_awaited_inline(self, step_log):
        runner = DurableStepRunner("run-1", step_log, inline_sleep_threshold_ms=1000)

        await runner.sleep("wait-1:wait", 5)

        entry = await step_log.get("run-1", "wait-1:wait")
        assert entry.status == StepStatus.COMPLETED

    async def test_delete_run_forgets_steps(self, step_log):
        runner = DurableStepRunner("run-1", step_log)
        await runner.run("a", Mock(return_value=1))
        await runner.run("b", Mock(return_value=2))

        await step_log.delete_run("run-1")

        assert step_log.keys("run-1") == []
