"""Iteration scheduling for parameterized runs.

This module provides the IterationScheduler strategies which handle:
- Executing resolved iterations through a StepExecutorClient
- Retrying failed iterations as new, linked attempts
- Enforcing per-iteration deadlines
- Stop-on-failure and external cancellation
- Bounded concurrency in parallel mode

A scheduler is selected once per run from the definition's scheduling
policy with ``create_scheduler``.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Optional, Union

import structlog
from pydantic import ValidationError

from paramrun.errors import (
    AssertionFailure,
    ExecutorError,
    IterationTimeoutError,
)
from paramrun.parameterized.executor_client import StepExecutorClient
from paramrun.parameterized.models import (
    ExecutorOutcome,
    FailureKind,
    InFlightPolicy,
    IterationResult,
    IterationStatus,
    Parallel,
    ParameterizedTestDefinition,
    ResolvedIteration,
    Sequential,
    TargetConfig,
)
from paramrun.parameterized.substitution import expand_steps

logger = structlog.get_logger()

AttemptCallback = Callable[[IterationResult], Awaitable[None]]

SKIP_CANCELLED = "cancelled"
SKIP_STOP_ON_FAILURE = "stop_on_failure"

# Seconds an abandoned executor call gets to unwind after cancellation
CANCEL_GRACE_SECONDS = 5.0


class CancellationToken:
    """External cancellation signal for a run.

    Example:
        token = CancellationToken()
        task = asyncio.create_task(controller.run(..., cancel_token=token))
        token.cancel()
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation. Safe to call more than once."""
        if self._event.is_set():
            return
        self._event.set()
        for callback in list(self._callbacks):
            callback()

    async def wait(self) -> None:
        await self._event.wait()

    def add_callback(self, callback: Callable[[], None]) -> None:
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)


def _discard(task: asyncio.Future) -> None:
    """Cancel a task whose result is no longer wanted."""
    if not task.done():
        task.cancel()
    task.add_done_callback(lambda t: t.cancelled() or t.exception())


def _step_passed(step: dict[str, Any]) -> bool:
    return bool(step.get("success", step.get("passed", False)))


class IterationScheduler(ABC):
    """Runs resolved iterations according to a test's retry/stop policy.

    Every attempt, including retries and iterations that are never started,
    produces exactly one IterationResult which is handed to ``on_attempt``
    as soon as it exists. ``run`` returns the final result of every logical
    iteration, ordered by ``iteration_index``.
    """

    def __init__(
        self,
        client: StepExecutorClient,
        on_attempt: Optional[AttemptCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        in_flight_policy: InFlightPolicy = InFlightPolicy.FINISH,
        cancel_grace_seconds: float = CANCEL_GRACE_SECONDS,
    ):
        """Initialize the scheduler.

        Args:
            client: Step executor used for every attempt
            on_attempt: Awaited with each attempt result; exceptions abort the run
            cancel_token: Optional external cancellation signal
            in_flight_policy: Whether running iterations finish or are
                interrupted once stop-on-failure triggers
            cancel_grace_seconds: How long a timed-out or interrupted call
                is awaited after cancellation before it is abandoned
        """
        self.client = client
        self.on_attempt = on_attempt
        self.cancel_token = cancel_token
        self.in_flight_policy = in_flight_policy
        self.cancel_grace_seconds = cancel_grace_seconds
        self._stopped = False
        self._interrupt: Optional[asyncio.Event] = None

    @property
    def stopped_on_failure(self) -> bool:
        return self._stopped

    async def run(
        self,
        run_id: str,
        definition: ParameterizedTestDefinition,
        iterations: list[ResolvedIteration],
        target: TargetConfig,
    ) -> list[IterationResult]:
        """Execute all iterations and return their final results."""
        self._stopped = False
        self._interrupt = asyncio.Event()
        if self.cancel_token:
            if self.cancel_token.is_cancelled:
                self._interrupt.set()
            self.cancel_token.add_callback(self._interrupt.set)

        try:
            results = await self._schedule(run_id, definition, iterations, target)
        finally:
            if self.cancel_token:
                self.cancel_token.remove_callback(self._interrupt.set)

        return sorted(results, key=lambda r: r.iteration_index)

    @abstractmethod
    async def _schedule(
        self,
        run_id: str,
        definition: ParameterizedTestDefinition,
        iterations: list[ResolvedIteration],
        target: TargetConfig,
    ) -> list[IterationResult]:
        """Strategy-specific scheduling loop."""

    @property
    def _cancelled(self) -> bool:
        return bool(self.cancel_token and self.cancel_token.is_cancelled)

    @property
    def _halted(self) -> bool:
        """Whether no further attempt may start."""
        if self._cancelled:
            return True
        return self._stopped and self.in_flight_policy == InFlightPolicy.CANCEL

    def _skip_reason(self) -> tuple[str, str]:
        if self._cancelled:
            return SKIP_CANCELLED, "Run cancelled"
        return SKIP_STOP_ON_FAILURE, "Skipped after an earlier iteration failed (stop_on_failure)"

    def _trigger_stop(self, result: IterationResult) -> None:
        if self._stopped:
            return
        self._stopped = True
        logger.info(
            "Stopping execution on failure",
            iteration=result.iteration_index,
            status=result.status.value,
            in_flight_policy=self.in_flight_policy.value,
        )
        if self.in_flight_policy == InFlightPolicy.CANCEL:
            self._interrupt.set()

    async def _emit(self, result: IterationResult) -> None:
        if self.on_attempt:
            await self.on_attempt(result)

    async def _skip(self, run_id: str, iteration: ResolvedIteration) -> IterationResult:
        skip_reason, message = self._skip_reason()
        result = IterationResult.skipped(run_id, iteration, message, skip_reason=skip_reason)
        await self._emit(result)
        return result

    async def _skip_remaining(
        self,
        run_id: str,
        iterations: list[ResolvedIteration],
    ) -> list[IterationResult]:
        if iterations:
            skip_reason, _ = self._skip_reason()
            logger.info(
                "Skipping remaining iterations",
                count=len(iterations),
                reason=skip_reason,
            )
        return [await self._skip(run_id, iteration) for iteration in iterations]

    async def _run_iteration(
        self,
        run_id: str,
        definition: ParameterizedTestDefinition,
        iteration: ResolvedIteration,
        target: TargetConfig,
    ) -> IterationResult:
        """Run one logical iteration through its retry budget."""
        previous: Optional[IterationResult] = None
        retry_count = 0

        while True:
            if self._halted:
                if previous is not None:
                    return previous
                return await self._skip(run_id, iteration)

            attempt = await self._attempt(run_id, definition, iteration, target, retry_count, previous)
            await self._emit(attempt)

            if not attempt.is_failure or retry_count >= definition.retry_failed_iterations:
                return attempt

            logger.info(
                "Retrying failed iteration",
                index=iteration.iteration_index,
                retry=retry_count + 1,
                max_retries=definition.retry_failed_iterations,
                failure_kind=attempt.metadata.get("failure_kind"),
            )
            previous = attempt
            retry_count += 1

    async def _attempt(
        self,
        run_id: str,
        definition: ParameterizedTestDefinition,
        iteration: ResolvedIteration,
        target: TargetConfig,
        retry_count: int,
        previous: Optional[IterationResult],
    ) -> IterationResult:
        """Make a single executor call and turn its outcome into a result."""
        param_set = iteration.parameter_set
        values = dict(param_set.values)
        steps, assertions = expand_steps(definition, values)
        target = target.with_overrides(param_set.environment_overrides)
        timeout_ms = definition.timeout_per_iteration_ms

        logger.debug(
            "Executing iteration",
            index=iteration.iteration_index,
            param_set=param_set.display_name,
            retry=retry_count,
        )

        started_at = datetime.now(UTC)
        start_time = time.monotonic()
        deadline = start_time + timeout_ms / 1000

        call = asyncio.ensure_future(
            self.client.execute(steps, assertions, values, target, deadline)
        )
        interrupt = asyncio.ensure_future(self._interrupt.wait())
        try:
            done, _ = await asyncio.wait(
                {call, interrupt},
                timeout=max(deadline - time.monotonic(), 0),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            _discard(interrupt)
            if not call.done():
                call.cancel()

        elapsed_ms = int((time.monotonic() - start_time) * 1000)
        completed_at = datetime.now(UTC)
        if call not in done:
            await self._drain(call, iteration.iteration_index)

        fields: dict[str, Any] = {
            "run_id": run_id,
            "parameter_set_id": param_set.id,
            "iteration_index": iteration.iteration_index,
            "parameter_values": values,
            "retry_count": retry_count,
            "is_retry": retry_count > 0,
            "original_iteration_id": previous.id if previous else None,
            "started_at": started_at,
            "completed_at": completed_at,
        }
        metadata: dict[str, Any] = {
            "parameter_set_name": param_set.display_name,
            "expected_outcome": param_set.expected_outcome.value,
            "attempt": retry_count + 1,
        }
        if param_set.environment_overrides:
            metadata["environment_overrides"] = dict(param_set.environment_overrides)

        if call in done:
            try:
                outcome = call.result()
            except IterationTimeoutError:
                logger.warning("Iteration timed out", index=iteration.iteration_index)
                return self._timeout_result(fields, metadata, elapsed_ms, timeout_ms)
            except ExecutorError as e:
                logger.warning("Step executor failed", index=iteration.iteration_index, error=str(e))
                if e.status_code is not None:
                    metadata["status_code"] = e.status_code
                return self._executor_error_result(fields, metadata, elapsed_ms, e)
            except Exception as e:
                logger.exception(
                    "Iteration execution failed",
                    index=iteration.iteration_index,
                    error=str(e),
                )
                return self._executor_error_result(fields, metadata, elapsed_ms, e)

            try:
                return self._outcome_result(fields, metadata, outcome, elapsed_ms)
            except ValidationError as e:
                logger.warning(
                    "Step executor returned an invalid outcome",
                    index=iteration.iteration_index,
                    error=str(e),
                )
                metadata.pop("error_step", None)
                return self._executor_error_result(
                    fields, metadata, elapsed_ms, f"invalid outcome ({e.error_count()} errors)"
                )

        if interrupt in done:
            skip_reason, _ = self._skip_reason()
            message = (
                "Run cancelled while iteration was running"
                if skip_reason == SKIP_CANCELLED
                else "Interrupted after an earlier iteration failed (stop_on_failure)"
            )
            metadata["failure_kind"] = FailureKind.CANCELLED.value
            metadata["skip_reason"] = skip_reason
            return IterationResult(
                **fields,
                status=IterationStatus.SKIPPED,
                error_message=message,
                metadata=metadata,
            )

        logger.warning("Iteration deadline exceeded", index=iteration.iteration_index)
        return self._timeout_result(fields, metadata, elapsed_ms, timeout_ms)

    async def _drain(self, call: asyncio.Future, index: int) -> None:
        """Wait for a cancelled executor call to unwind.

        The caller keeps its concurrency slot until this returns, so a call
        that is slow to stop still counts against ``max_parallel``.
        """
        if not call.done():
            await asyncio.wait({call}, timeout=self.cancel_grace_seconds)
        if not call.done():
            logger.warning(
                "Step executor call still running after cancellation",
                index=index,
                grace_seconds=self.cancel_grace_seconds,
            )
        _discard(call)

    @staticmethod
    def _executor_error_result(
        fields: dict[str, Any],
        metadata: dict[str, Any],
        elapsed_ms: int,
        error: Union[Exception, str],
    ) -> IterationResult:
        metadata["failure_kind"] = FailureKind.EXECUTOR.value
        return IterationResult(
            **fields,
            status=IterationStatus.ERROR,
            duration_ms=elapsed_ms,
            error_message=f"Executor error: {error}",
            metadata=metadata,
        )

    @staticmethod
    def _timeout_result(
        fields: dict[str, Any],
        metadata: dict[str, Any],
        elapsed_ms: int,
        timeout_ms: int,
    ) -> IterationResult:
        metadata["failure_kind"] = FailureKind.TIMEOUT.value
        return IterationResult(
            **fields,
            status=IterationStatus.ERROR,
            duration_ms=elapsed_ms,
            error_message=f"Timeout after {timeout_ms}ms",
            metadata=metadata,
        )

    @staticmethod
    def _outcome_result(
        fields: dict[str, Any],
        metadata: dict[str, Any],
        outcome: ExecutorOutcome,
        elapsed_ms: int,
    ) -> IterationResult:
        step_results = outcome.step_results
        assertions_passed = sum(1 for step in step_results if _step_passed(step))
        duration_ms = outcome.duration_ms if outcome.duration_ms is not None else elapsed_ms

        if outcome.success:
            return IterationResult(
                **fields,
                status=IterationStatus.PASSED,
                duration_ms=duration_ms,
                step_results=step_results,
                assertions_passed=assertions_passed,
                assertions_failed=len(step_results) - assertions_passed,
                metadata=metadata,
            )

        failure = AssertionFailure(outcome.error or "One or more steps failed")
        for index, step in enumerate(step_results):
            if not _step_passed(step):
                failure = AssertionFailure(step.get("error") or str(failure), step_index=index)
                break

        metadata["failure_kind"] = FailureKind.ASSERTION.value
        if failure.step_index is not None:
            metadata["error_step"] = failure.step_index
        return IterationResult(
            **fields,
            status=IterationStatus.FAILED,
            duration_ms=duration_ms,
            step_results=step_results,
            assertions_passed=assertions_passed,
            assertions_failed=len(step_results) - assertions_passed,
            error_message=f"Assertion failed: {failure}",
            metadata=metadata,
        )


class SequentialScheduler(IterationScheduler):
    """Runs iterations one at a time in resolution order."""

    async def _schedule(
        self,
        run_id: str,
        definition: ParameterizedTestDefinition,
        iterations: list[ResolvedIteration],
        target: TargetConfig,
    ) -> list[IterationResult]:
        results: list[IterationResult] = []

        for position, iteration in enumerate(iterations):
            if self._cancelled or self._stopped:
                results.extend(await self._skip_remaining(run_id, iterations[position:]))
                break

            final = await self._run_iteration(run_id, definition, iteration, target)
            results.append(final)

            if final.is_failure and definition.stop_on_failure:
                self._trigger_stop(final)

        return results


class ParallelScheduler(IterationScheduler):
    """Runs up to ``max_parallel`` iterations at once.

    Iterations are started in resolution order as soon as a slot frees up.
    The semaphore is owned by the scheduler instance and held for the whole
    lifetime of an iteration, retries included.
    """

    def __init__(self, client: StepExecutorClient, max_parallel: int, **kwargs):
        super().__init__(client, **kwargs)
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self.max_parallel = max_parallel
        self._fatal: Optional[BaseException] = None

    async def _schedule(
        self,
        run_id: str,
        definition: ParameterizedTestDefinition,
        iterations: list[ResolvedIteration],
        target: TargetConfig,
    ) -> list[IterationResult]:
        semaphore = asyncio.Semaphore(self.max_parallel)
        self._fatal = None
        results: dict[int, IterationResult] = {}
        tasks: list[asyncio.Task] = []
        unstarted: list[ResolvedIteration] = []

        async def run_with_semaphore(iteration: ResolvedIteration):
            try:
                final = await self._run_iteration(run_id, definition, iteration, target)
                results[iteration.iteration_index] = final
                if final.is_failure and definition.stop_on_failure:
                    self._trigger_stop(final)
            except Exception as e:
                self._fatal = e
                raise
            finally:
                semaphore.release()

        try:
            for position, iteration in enumerate(iterations):
                await semaphore.acquire()
                if self._fatal is not None:
                    semaphore.release()
                    break
                if self._cancelled or self._stopped:
                    semaphore.release()
                    unstarted = iterations[position:]
                    break
                tasks.append(asyncio.create_task(run_with_semaphore(iteration)))

            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        skipped = await self._skip_remaining(run_id, unstarted)
        return list(results.values()) + skipped


def create_scheduler(
    policy: Union[Sequential, Parallel],
    client: StepExecutorClient,
    on_attempt: Optional[AttemptCallback] = None,
    cancel_token: Optional[CancellationToken] = None,
    in_flight_policy: InFlightPolicy = InFlightPolicy.FINISH,
) -> IterationScheduler:
    """Select the scheduling strategy for a run."""
    options = {
        "on_attempt": on_attempt,
        "cancel_token": cancel_token,
        "in_flight_policy": in_flight_policy,
    }
    if isinstance(policy, Parallel):
        return ParallelScheduler(client, max_parallel=policy.max_parallel, **options)
    if isinstance(policy, Sequential):
        return SequentialScheduler(client, **options)
    raise TypeError(f"Unsupported scheduling policy: {policy!r}")
