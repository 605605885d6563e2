"""Tests for the iteration schedulers.

Covers:
- Sequential and parallel execution order and concurrency bounds
- Retries as new linked attempts
- Stop-on-failure with both in-flight policies
- Deadlines, executor errors and assertion failures
- External cancellation
"""

import asyncio
import time

import pytest

from conftest import FakeStepExecutor, fails, make_definition, make_iterations, make_sets, passes, raises
from paramrun.errors import ExecutorError, IterationTimeoutError, PersistenceError
from paramrun.parameterized.models import (
    FailureKind,
    InFlightPolicy,
    IterationMode,
    IterationStatus,
    Parallel,
    Sequential,
)
from paramrun.parameterized.scheduler import (
    SKIP_CANCELLED,
    SKIP_STOP_ON_FAILURE,
    CancellationToken,
    ParallelScheduler,
    SequentialScheduler,
    create_scheduler,
)


def _parallel_definition(max_parallel: int, **overrides):
    return make_definition(iteration_mode=IterationMode.PARALLEL, max_parallel=max_parallel, **overrides)


class Recorder:
    """Collects every attempt handed to on_attempt."""

    def __init__(self):
        self.attempts = []

    async def __call__(self, result):
        self.attempts.append(result)


class TestCreateScheduler:
    """Tests for scheduler selection."""

    def test_sequential_policy(self, executor):
        """Test the sequential variant selects SequentialScheduler."""
        assert isinstance(create_scheduler(Sequential(), executor), SequentialScheduler)

    def test_parallel_policy(self, executor):
        """Test the parallel variant selects ParallelScheduler with its bound."""
        scheduler = create_scheduler(Parallel(max_parallel=4), executor)

        assert isinstance(scheduler, ParallelScheduler)
        assert scheduler.max_parallel == 4

    def test_invalid_max_parallel(self, executor):
        """Test ParallelScheduler rejects a bound below one."""
        with pytest.raises(ValueError):
            ParallelScheduler(executor, max_parallel=0)


class TestSequentialScheduler:
    """Tests for SequentialScheduler."""

    @pytest.mark.asyncio
    async def test_runs_in_resolution_order(self, definition, target):
        """Test iterations run one at a time in order."""
        executor = FakeStepExecutor(default=passes(delay=0.001))
        iterations = make_iterations(make_sets("a", "b", "c"))

        results = await SequentialScheduler(executor).run("run-1", definition, iterations, target)

        assert executor.cases_called == ["a", "b", "c"]
        assert executor.peak == 1
        assert [r.iteration_index for r in results] == [0, 1, 2]
        assert all(r.status == IterationStatus.PASSED for r in results)

    @pytest.mark.asyncio
    async def test_sends_resolved_steps(self, definition, target, executor):
        """Test placeholders are replaced before the executor is called."""
        iterations = make_iterations(make_sets("a"))

        await SequentialScheduler(executor).run("run-1", definition, iterations, target)

        call = executor.calls[0]
        assert {"action": "fill", "target": "#username", "value": "user_a"} in call["steps"]
        assert call["assertions"][0]["expected"] == "Hello user_a"
        assert call["parameter_values"] == {"case": "a", "username": "user_a"}

    @pytest.mark.asyncio
    async def test_result_fields(self, definition, target):
        """Test a passed attempt carries snapshot values, timing and metadata."""
        executor = FakeStepExecutor(
            default=passes(duration_ms=1234, step_results=[{"success": True}, {"success": True}])
        )
        iterations = make_iterations(make_sets("a"))

        [result] = await SequentialScheduler(executor).run("run-1", definition, iterations, target)

        assert result.run_id == "run-1"
        assert result.parameter_set_id == "set-a"
        assert result.parameter_values == {"case": "a", "username": "user_a"}
        assert result.duration_ms == 1234
        assert result.assertions_passed == 2
        assert result.assertions_failed == 0
        assert result.retry_count == 0
        assert result.is_retry is False
        assert result.started_at is not None
        assert result.completed_at >= result.started_at
        assert result.metadata["parameter_set_name"] == "Case a"
        assert result.metadata["expected_outcome"] == "pass"

    @pytest.mark.asyncio
    async def test_measured_duration_when_executor_reports_none(self, definition, target):
        """Test elapsed time is used when the executor reports no duration."""
        executor = FakeStepExecutor(default=passes(delay=0.02))
        iterations = make_iterations(make_sets("a"))

        [result] = await SequentialScheduler(executor).run("run-1", definition, iterations, target)

        assert result.duration_ms >= 15

    @pytest.mark.asyncio
    async def test_assertion_failure(self, definition, target):
        """Test a failed outcome is recorded as failed with the failing step."""
        executor = FakeStepExecutor(
            {
                "a": [
                    fails(
                        error="Step 2 failed",
                        step_results=[
                            {"passed": True},
                            {"passed": False, "error": "Element #submit not found"},
                        ],
                    )
                ]
            }
        )
        iterations = make_iterations(make_sets("a"))

        [result] = await SequentialScheduler(executor).run("run-1", definition, iterations, target)

        assert result.status == IterationStatus.FAILED
        assert result.error_message == "Assertion failed: Element #submit not found"
        assert result.failure_kind == FailureKind.ASSERTION
        assert result.metadata["error_step"] == 1
        assert result.assertions_passed == 1
        assert result.assertions_failed == 1

    @pytest.mark.asyncio
    async def test_assertion_failure_without_step_results(self, definition, target):
        """Test the executor's error message is used when no step failed explicitly."""
        executor = FakeStepExecutor({"a": [fails(error="Expected URL /dashboard")]})
        iterations = make_iterations(make_sets("a"))

        [result] = await SequentialScheduler(executor).run("run-1", definition, iterations, target)

        assert result.error_message == "Assertion failed: Expected URL /dashboard"
        assert "error_step" not in result.metadata

    @pytest.mark.asyncio
    async def test_executor_error(self, definition, target):
        """Test executor failures are recorded as error with the status code."""
        executor = FakeStepExecutor({"a": [raises(ExecutorError("Step executor returned HTTP 502", status_code=502))]})
        iterations = make_iterations(make_sets("a"))

        [result] = await SequentialScheduler(executor).run("run-1", definition, iterations, target)

        assert result.status == IterationStatus.ERROR
        assert result.error_message == "Executor error: Step executor returned HTTP 502"
        assert result.failure_kind == FailureKind.EXECUTOR
        assert result.metadata["status_code"] == 502

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_captured(self, definition, target):
        """Test an arbitrary client exception does not abort the run."""
        executor = FakeStepExecutor({"a": [raises(RuntimeError("worker crashed"))]})
        iterations = make_iterations(make_sets("a", "b"))

        results = await SequentialScheduler(executor).run("run-1", definition, iterations, target)

        assert results[0].status == IterationStatus.ERROR
        assert results[0].error_message == "Executor error: worker crashed"
        assert results[1].status == IterationStatus.PASSED

    @pytest.mark.asyncio
    async def test_client_timeout_error(self, definition, target):
        """Test IterationTimeoutError from the client is a timeout error."""
        executor = FakeStepExecutor({"a": [raises(IterationTimeoutError(5000))]})
        iterations = make_iterations(make_sets("a"))

        [result] = await SequentialScheduler(executor).run("run-1", definition, iterations, target)

        assert result.status == IterationStatus.ERROR
        assert result.error_message == "Timeout after 5000ms"
        assert result.failure_kind == FailureKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_deadline_enforced(self, target):
        """Test a slow executor is interrupted at the iteration deadline."""
        definition = make_definition(timeout_per_iteration_ms=50)
        executor = FakeStepExecutor({"a": [passes(delay=5)]})
        iterations = make_iterations(make_sets("a", "b"))

        results = await SequentialScheduler(executor).run("run-1", definition, iterations, target)

        assert results[0].status == IterationStatus.ERROR
        assert results[0].error_message == "Timeout after 50ms"
        assert results[0].failure_kind == FailureKind.TIMEOUT
        assert results[0].duration_ms >= 40
        assert results[1].status == IterationStatus.PASSED
        await asyncio.sleep(0)
        assert executor.interrupted == ["a"]

    @pytest.mark.asyncio
    async def test_invalid_outcome_is_executor_error(self, definition, target):
        """Test a malformed outcome fails only its own iteration."""
        executor = FakeStepExecutor({"a": [passes(duration_ms=-5)]})
        iterations = make_iterations(make_sets("a", "b"))

        results = await SequentialScheduler(executor).run("run-1", definition, iterations, target)

        assert results[0].status == IterationStatus.ERROR
        assert results[0].failure_kind == FailureKind.EXECUTOR
        assert results[0].error_message.startswith("Executor error: invalid outcome")
        assert results[0].duration_ms >= 0
        assert results[1].status == IterationStatus.PASSED

    @pytest.mark.asyncio
    async def test_invalid_outcome_is_retried(self, target):
        """Test a malformed outcome uses the retry budget like any executor error."""
        definition = make_definition(retry_failed_iterations=1)
        executor = FakeStepExecutor({"a": [fails(duration_ms=-1), passes(duration_ms=30)]})
        recorder = Recorder()
        iterations = make_iterations(make_sets("a"))

        [result] = await SequentialScheduler(executor, on_attempt=recorder).run(
            "run-1", definition, iterations, target
        )

        assert result.status == IterationStatus.PASSED
        assert result.retry_count == 1
        assert result.duration_ms == 30
        first = recorder.attempts[0]
        assert first.failure_kind == FailureKind.EXECUTOR
        assert "error_step" not in first.metadata

    @pytest.mark.asyncio
    async def test_environment_overrides_applied_per_set(self, definition, target):
        """Test a set's environment overrides reach only its own executor call."""
        overridden = make_sets("a", environment_overrides={"browser": "webkit", "locale": "de-DE"})
        plain = make_sets("b")
        iterations = make_iterations(overridden + plain)
        executor = FakeStepExecutor()

        results = await SequentialScheduler(executor).run("run-1", definition, iterations, target)

        first, second = (call["target_config"] for call in executor.calls)
        assert first.browser == "webkit"
        assert first.app_url == target.app_url
        assert first.extra == {"locale": "de-DE"}
        assert second == target
        assert results[0].metadata["environment_overrides"] == {"browser": "webkit", "locale": "de-DE"}
        assert "environment_overrides" not in results[1].metadata

    @pytest.mark.asyncio
    async def test_deadline_passed_to_client(self, target, executor):
        """Test the client receives an absolute deadline."""
        definition = make_definition(timeout_per_iteration_ms=2000)
        iterations = make_iterations(make_sets("a"))

        await SequentialScheduler(executor).run("run-1", definition, iterations, target)

        deadline = executor.calls[0]["deadline"]
        assert deadline > 0
        assert deadline - time.monotonic() < 2.5

    @pytest.mark.asyncio
    async def test_retry_until_pass(self, target):
        """Test failed attempts are retried and linked to the prior attempt."""
        definition = make_definition(retry_failed_iterations=2)
        executor = FakeStepExecutor({"a": [fails(), raises(IterationTimeoutError(5000)), passes()]})
        recorder = Recorder()
        iterations = make_iterations(make_sets("a"))

        [final] = await SequentialScheduler(executor, on_attempt=recorder).run(
            "run-1", definition, iterations, target
        )

        attempts = recorder.attempts
        assert [a.status for a in attempts] == [
            IterationStatus.FAILED,
            IterationStatus.ERROR,
            IterationStatus.PASSED,
        ]
        assert [a.retry_count for a in attempts] == [0, 1, 2]
        assert [a.is_retry for a in attempts] == [False, True, True]
        assert attempts[0].original_iteration_id is None
        assert attempts[1].original_iteration_id == attempts[0].id
        assert attempts[2].original_iteration_id == attempts[1].id
        assert len({a.id for a in attempts}) == 3
        assert all(a.iteration_index == 0 for a in attempts)
        assert final == attempts[-1]

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(self, target):
        """Test an iteration makes at most 1 + retry_failed_iterations attempts."""
        definition = make_definition(retry_failed_iterations=2)
        executor = FakeStepExecutor({"a": [fails()]})
        recorder = Recorder()
        iterations = make_iterations(make_sets("a"))

        [final] = await SequentialScheduler(executor, on_attempt=recorder).run(
            "run-1", definition, iterations, target
        )

        assert len(executor.calls) == 3
        assert len(recorder.attempts) == 3
        assert final.status == IterationStatus.FAILED
        assert final.retry_count == 2

    @pytest.mark.asyncio
    async def test_passed_iterations_not_retried(self, target, executor):
        """Test retries only apply to failed or errored attempts."""
        definition = make_definition(retry_failed_iterations=3)
        iterations = make_iterations(make_sets("a", "b"))

        await SequentialScheduler(executor).run("run-1", definition, iterations, target)

        assert len(executor.calls) == 2

    @pytest.mark.asyncio
    async def test_stop_on_failure_skips_remaining(self, target):
        """Test remaining iterations are skipped after a final failure."""
        definition = make_definition(stop_on_failure=True)
        executor = FakeStepExecutor({"b": [fails()]})
        recorder = Recorder()
        iterations = make_iterations(make_sets("a", "b", "c", "d"))

        scheduler = SequentialScheduler(executor, on_attempt=recorder)
        results = await scheduler.run("run-1", definition, iterations, target)

        assert executor.cases_called == ["a", "b"]
        assert [r.status for r in results] == [
            IterationStatus.PASSED,
            IterationStatus.FAILED,
            IterationStatus.SKIPPED,
            IterationStatus.SKIPPED,
        ]
        assert results[2].metadata["skip_reason"] == SKIP_STOP_ON_FAILURE
        assert results[2].duration_ms is None
        assert scheduler.stopped_on_failure is True
        assert len(recorder.attempts) == 4

    @pytest.mark.asyncio
    async def test_stop_on_failure_waits_for_retries(self, target):
        """Test stop only triggers on the final outcome after retries."""
        definition = make_definition(stop_on_failure=True, retry_failed_iterations=1)
        executor = FakeStepExecutor({"a": [fails(), passes()]})
        iterations = make_iterations(make_sets("a", "b"))

        results = await SequentialScheduler(executor).run("run-1", definition, iterations, target)

        assert [r.status for r in results] == [IterationStatus.PASSED, IterationStatus.PASSED]

    @pytest.mark.asyncio
    async def test_failures_continue_without_stop_on_failure(self, definition, target):
        """Test every iteration runs when stop_on_failure is off."""
        executor = FakeStepExecutor({"a": [fails()], "b": [raises(ExecutorError("down"))]})
        iterations = make_iterations(make_sets("a", "b", "c"))

        results = await SequentialScheduler(executor).run("run-1", definition, iterations, target)

        assert executor.cases_called == ["a", "b", "c"]
        assert results[2].status == IterationStatus.PASSED

    @pytest.mark.asyncio
    async def test_cancellation_skips_unstarted(self, definition, target):
        """Test a cancelled run records the remaining iterations as skipped."""
        token = CancellationToken()

        async def cancel_after_first(result):
            token.cancel()

        executor = FakeStepExecutor()
        iterations = make_iterations(make_sets("a", "b", "c"))
        scheduler = SequentialScheduler(executor, on_attempt=cancel_after_first, cancel_token=token)

        results = await scheduler.run("run-1", definition, iterations, target)

        assert executor.cases_called == ["a"]
        assert results[0].status == IterationStatus.PASSED
        assert [r.status for r in results[1:]] == [IterationStatus.SKIPPED] * 2
        assert results[1].error_message == "Run cancelled"
        assert results[1].metadata["skip_reason"] == SKIP_CANCELLED

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, definition, target, executor):
        """Test nothing is executed when the token is already cancelled."""
        token = CancellationToken()
        token.cancel()
        iterations = make_iterations(make_sets("a", "b"))

        results = await SequentialScheduler(executor, cancel_token=token).run(
            "run-1", definition, iterations, target
        )

        assert executor.calls == []
        assert all(r.status == IterationStatus.SKIPPED for r in results)

    @pytest.mark.asyncio
    async def test_cancellation_prevents_retry(self, target):
        """Test a cancelled run does not retry, keeping the last attempt as final."""
        definition = make_definition(retry_failed_iterations=3)
        token = CancellationToken()

        async def cancel_on_failure(result):
            if result.is_failure:
                token.cancel()

        executor = FakeStepExecutor({"a": [fails()]})
        iterations = make_iterations(make_sets("a"))

        [final] = await SequentialScheduler(
            executor, on_attempt=cancel_on_failure, cancel_token=token
        ).run("run-1", definition, iterations, target)

        assert len(executor.calls) == 1
        assert final.status == IterationStatus.FAILED

    @pytest.mark.asyncio
    async def test_on_attempt_failure_propagates(self, definition, target, executor):
        """Test a failing attempt callback aborts the run."""

        async def broken_store(result):
            raise PersistenceError("insert failed", table="iteration_results")

        iterations = make_iterations(make_sets("a", "b"))

        with pytest.raises(PersistenceError):
            await SequentialScheduler(executor, on_attempt=broken_store).run(
                "run-1", definition, iterations, target
            )

        assert executor.cases_called == ["a"]


class TestParallelScheduler:
    """Tests for ParallelScheduler."""

    @pytest.mark.asyncio
    async def test_never_exceeds_max_parallel(self, target):
        """Test at most max_parallel executor calls are outstanding."""
        definition = _parallel_definition(3)
        executor = FakeStepExecutor(default=passes(delay=0.01))
        iterations = make_iterations(make_sets(*[f"c{i}" for i in range(10)]))

        results = await ParallelScheduler(executor, max_parallel=3).run(
            "run-1", definition, iterations, target
        )

        assert executor.peak == 3
        assert len(results) == 10
        assert all(r.status == IterationStatus.PASSED for r in results)

    @pytest.mark.asyncio
    async def test_slot_held_until_cancelled_call_unwinds(self, target):
        """Test a timed-out call that is slow to stop still occupies its slot."""
        definition = _parallel_definition(1, timeout_per_iteration_ms=50)
        executor = FakeStepExecutor(default=passes(delay=5, shutdown_delay=0.2))
        iterations = make_iterations(make_sets("a", "b", "c"))

        results = await ParallelScheduler(executor, max_parallel=1).run(
            "run-1", definition, iterations, target
        )

        assert executor.peak == 1
        assert executor.in_flight == 0
        assert executor.interrupted == ["a", "b", "c"]
        assert [r.failure_kind for r in results] == [FailureKind.TIMEOUT] * 3
        assert all(r.duration_ms < 200 for r in results)

    @pytest.mark.asyncio
    async def test_call_abandoned_after_grace_period(self, target):
        """Test a call that ignores cancellation is given up on after the grace period."""
        definition = _parallel_definition(1, timeout_per_iteration_ms=20)
        executor = FakeStepExecutor(default=passes(delay=5, shutdown_delay=0.3))
        iterations = make_iterations(make_sets("a"))
        scheduler = ParallelScheduler(executor, max_parallel=1, cancel_grace_seconds=0.05)

        start = time.monotonic()
        [result] = await scheduler.run("run-1", definition, iterations, target)

        assert time.monotonic() - start < 0.25
        assert result.failure_kind == FailureKind.TIMEOUT
        assert executor.in_flight == 1
        await asyncio.sleep(0.35)
        assert executor.in_flight == 0

    @pytest.mark.asyncio
    async def test_bound_holds_across_retries(self, target):
        """Test retries run inside the iteration's slot."""
        definition = _parallel_definition(2, retry_failed_iterations=2)
        executor = FakeStepExecutor(default=fails(delay=0.005))
        iterations = make_iterations(make_sets("a", "b", "c", "d"))

        await ParallelScheduler(executor, max_parallel=2).run("run-1", definition, iterations, target)

        assert executor.peak == 2
        assert len(executor.calls) == 12

    @pytest.mark.asyncio
    async def test_max_parallel_one_is_sequential(self, target):
        """Test a bound of one keeps resolution order."""
        definition = _parallel_definition(1)
        executor = FakeStepExecutor(default=passes(delay=0.001))
        iterations = make_iterations(make_sets("a", "b", "c"))

        await ParallelScheduler(executor, max_parallel=1).run("run-1", definition, iterations, target)

        assert executor.peak == 1
        assert executor.cases_called == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_results_keep_their_index(self, target):
        """Test completion order does not change iteration indexes."""
        definition = _parallel_definition(4)
        executor = FakeStepExecutor(
            {
                "a": [passes(delay=0.04)],
                "b": [passes(delay=0.03)],
                "c": [passes(delay=0.02)],
                "d": [passes(delay=0.01)],
            }
        )
        recorder = Recorder()
        iterations = make_iterations(make_sets("a", "b", "c", "d"))

        results = await ParallelScheduler(executor, max_parallel=4, on_attempt=recorder).run(
            "run-1", definition, iterations, target
        )

        assert [r.iteration_index for r in recorder.attempts] == [3, 2, 1, 0]
        assert [r.iteration_index for r in results] == [0, 1, 2, 3]
        assert [r.parameter_set_id for r in results] == ["set-a", "set-b", "set-c", "set-d"]

    @pytest.mark.asyncio
    async def test_starts_in_resolution_order(self, target):
        """Test iterations are started in resolution order."""
        definition = _parallel_definition(2)
        executor = FakeStepExecutor(default=passes(delay=0.005))
        iterations = make_iterations(make_sets("a", "b", "c", "d", "e"))

        await ParallelScheduler(executor, max_parallel=2).run("run-1", definition, iterations, target)

        assert executor.cases_called == ["a", "b", "c", "d", "e"]

    @pytest.mark.asyncio
    async def test_stop_on_failure_lets_in_flight_finish(self, target):
        """Test stop-on-failure skips unstarted iterations while running ones complete."""
        definition = _parallel_definition(2, stop_on_failure=True)
        executor = FakeStepExecutor(
            {
                "a": [fails(delay=0.01)],
                "b": [passes(delay=0.1)],
            }
        )
        iterations = make_iterations(make_sets("a", "b", "c", "d"))

        scheduler = ParallelScheduler(executor, max_parallel=2)
        results = await scheduler.run("run-1", definition, iterations, target)

        assert executor.cases_called == ["a", "b"]
        assert [r.status for r in results] == [
            IterationStatus.FAILED,
            IterationStatus.PASSED,
            IterationStatus.SKIPPED,
            IterationStatus.SKIPPED,
        ]
        assert results[2].metadata["skip_reason"] == SKIP_STOP_ON_FAILURE
        assert scheduler.stopped_on_failure is True

    @pytest.mark.asyncio
    async def test_stop_on_failure_cancel_policy(self, target):
        """Test the cancel in-flight policy interrupts running iterations."""
        definition = _parallel_definition(2, stop_on_failure=True)
        executor = FakeStepExecutor(
            {
                "a": [fails(delay=0.01)],
                "b": [passes(delay=5)],
            }
        )
        iterations = make_iterations(make_sets("a", "b", "c", "d"))

        results = await ParallelScheduler(
            executor, max_parallel=2, in_flight_policy=InFlightPolicy.CANCEL
        ).run("run-1", definition, iterations, target)

        assert [r.status for r in results] == [
            IterationStatus.FAILED,
            IterationStatus.SKIPPED,
            IterationStatus.SKIPPED,
            IterationStatus.SKIPPED,
        ]
        assert results[1].failure_kind == FailureKind.CANCELLED
        assert results[1].metadata["skip_reason"] == SKIP_STOP_ON_FAILURE
        assert results[1].error_message.startswith("Interrupted")
        await asyncio.sleep(0)
        assert executor.interrupted == ["b"]

    @pytest.mark.asyncio
    async def test_external_cancellation_interrupts_running(self, target):
        """Test cancelling the token interrupts running attempts and skips the rest."""
        definition = _parallel_definition(2)
        token = CancellationToken()
        executor = FakeStepExecutor(default=passes(delay=5))
        iterations = make_iterations(make_sets("a", "b", "c"))

        task = asyncio.create_task(
            ParallelScheduler(executor, max_parallel=2, cancel_token=token).run(
                "run-1", definition, iterations, target
            )
        )
        await asyncio.sleep(0.02)
        token.cancel()
        results = await asyncio.wait_for(task, timeout=2)

        assert [r.status for r in results] == [IterationStatus.SKIPPED] * 3
        assert results[0].failure_kind == FailureKind.CANCELLED
        assert results[0].error_message == "Run cancelled while iteration was running"
        assert results[2].error_message == "Run cancelled"
        assert all(r.metadata["skip_reason"] == SKIP_CANCELLED for r in results)

    @pytest.mark.asyncio
    async def test_on_attempt_failure_cancels_outstanding(self, target):
        """Test a persistence failure aborts the run and cancels running tasks."""
        definition = _parallel_definition(2)
        executor = FakeStepExecutor({"a": [passes(delay=0.001)], "b": [passes(delay=5)]})

        async def broken_store(result):
            raise PersistenceError("insert failed", table="iteration_results")

        iterations = make_iterations(make_sets("a", "b", "c"))

        with pytest.raises(PersistenceError):
            await asyncio.wait_for(
                ParallelScheduler(executor, max_parallel=2, on_attempt=broken_store).run(
                    "run-1", definition, iterations, target
                ),
                timeout=2,
            )

        await asyncio.sleep(0)
        assert "b" in executor.interrupted
        assert "c" not in executor.cases_called
