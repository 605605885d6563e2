"""Top-level entry point for executing a parameterized test run.

The RunController owns the lifecycle of one ParameterizedRunResult:
1. Insert the run row with status ``running`` before anything else
2. Resolve the parameter sets into ordered iterations
3. Schedule them, persisting every attempt as it completes
4. Aggregate the final results and finalize the run exactly once

Run-level errors (ResolutionError, PersistenceError) finalize the run as
``error`` where the store allows it and propagate to the caller.
"""

import time
from datetime import UTC, datetime
from typing import Iterable, Optional

import structlog
from pydantic import ValidationError

from paramrun.errors import (
    ParameterizedRunError,
    ResolutionError,
    RunAlreadyFinalizedError,
    TestDefinitionNotFoundError,
)
from paramrun.parameterized.aggregator import ResultAggregator, RunSummary
from paramrun.parameterized.executor_client import StepExecutorClient
from paramrun.parameterized.models import (
    InFlightPolicy,
    IterationMode,
    IterationResult,
    ParameterizedRunResult,
    ParameterizedTestDefinition,
    ParameterSet,
    RunStatus,
    TargetConfig,
)
from paramrun.parameterized.progress import (
    NullProgressNotifier,
    ProgressEvent,
    ProgressEventType,
    ProgressNotifier,
)
from paramrun.parameterized.resolver import ParameterSetResolver
from paramrun.parameterized.scheduler import (
    SKIP_CANCELLED,
    CancellationToken,
    create_scheduler,
)
from paramrun.services.store import (
    ITERATION_RESULTS,
    PARAMETER_SETS,
    PARAMETERIZED_RESULTS,
    PARAMETERIZED_TESTS,
    RowStore,
)
from paramrun.utils.logging import LogContext

logger = structlog.get_logger()


class RunController:
    """Executes parameterized tests and persists their results.

    Example:
        controller = RunController(
            store=SupabaseRowStore(),
            executor=HttpStepExecutorClient("https://worker.example.dev/test"),
        )

        run = await controller.run_test(
            "login-test",
            TargetConfig(app_url="https://app.example.com"),
        )

        print(f"Passed: {run.passed}/{run.total_iterations}")
    """

    def __init__(
        self,
        store: RowStore,
        executor: StepExecutorClient,
        notifier: Optional[ProgressNotifier] = None,
        resolver: Optional[ParameterSetResolver] = None,
        aggregator: Optional[ResultAggregator] = None,
        in_flight_policy: InFlightPolicy = InFlightPolicy.FINISH,
    ):
        """Initialize the controller.

        Args:
            store: Row store for runs, iterations, tests and parameter sets
            executor: Client for the external step executor
            notifier: Receives progress events (best-effort)
            resolver: Parameter set resolver
            aggregator: Result aggregator
            in_flight_policy: Whether running iterations finish or are
                interrupted when stop_on_failure triggers in parallel mode
        """
        self.store = store
        self.executor = executor
        self.notifier = notifier or NullProgressNotifier()
        self.resolver = resolver or ParameterSetResolver()
        self.aggregator = aggregator or ResultAggregator()
        self.in_flight_policy = in_flight_policy

    async def run(
        self,
        definition: ParameterizedTestDefinition,
        parameter_sets: Iterable[ParameterSet],
        target: TargetConfig,
        selected_set_ids: Optional[Iterable[str]] = None,
        cancel_token: Optional[CancellationToken] = None,
        triggered_by: Optional[str] = None,
        trigger_type: str = "manual",
    ) -> ParameterizedRunResult:
        """Execute a definition against the given parameter sets.

        Args:
            definition: The parameterized test to run
            parameter_sets: Every parameter set of the test
            target: Application URL, browser and environment
            selected_set_ids: Optional explicit subset of parameter set ids
            cancel_token: Optional external cancellation signal
            triggered_by: User or system that triggered the run
            trigger_type: Type of trigger (manual, scheduled, webhook)

        Returns:
            The finalized run with its final iteration results attached

        Raises:
            ResolutionError: If there is nothing to execute
            PersistenceError: If the store fails during the run
        """
        run = await self._start_run(definition.id, target, triggered_by, trigger_type)
        with LogContext(run_id=run.id, test_id=definition.id):
            return await self._execute(
                run, definition, list(parameter_sets), target, selected_set_ids, cancel_token
            )

    async def run_test(
        self,
        test_id: str,
        target: TargetConfig,
        selected_set_ids: Optional[Iterable[str]] = None,
        cancel_token: Optional[CancellationToken] = None,
        triggered_by: Optional[str] = None,
        trigger_type: str = "manual",
    ) -> ParameterizedRunResult:
        """Load a test and its parameter sets from the store, then run it.

        The test's ``last_run_at`` and ``last_run_status`` are updated once
        the run is finalized.

        Raises:
            TestDefinitionNotFoundError: If the test does not exist
            ResolutionError: If the test row is invalid or nothing is executable
            PersistenceError: If the store fails during the run
        """
        run = await self._start_run(test_id, target, triggered_by, trigger_type)
        with LogContext(run_id=run.id, test_id=test_id):
            rows = await self.store.select(PARAMETERIZED_TESTS, {"id": test_id})
            if not rows:
                error: ResolutionError = TestDefinitionNotFoundError(test_id)
                await self._fail_run(run, error)
                raise error

            set_rows = await self.store.select(PARAMETER_SETS, {"parameterized_test_id": test_id})
            try:
                definition = ParameterizedTestDefinition.from_row(rows[0])
                parameter_sets = [ParameterSet.from_row(row) for row in set_rows]
            except ValidationError as e:
                error = ResolutionError(f"Invalid parameterized test {test_id}: {e}")
                await self._fail_run(run, error)
                raise error from e

            run = await self._execute(
                run, definition, parameter_sets, target, selected_set_ids, cancel_token
            )
            await self.store.update(
                PARAMETERIZED_TESTS,
                test_id,
                {
                    "last_run_at": run.completed_at.isoformat() if run.completed_at else None,
                    "last_run_status": run.status.value,
                },
            )
            return run

    async def finalize(self, run: ParameterizedRunResult, summary: RunSummary) -> ParameterizedRunResult:
        """Write the final counts, timing and status of a run.

        Raises:
            RunAlreadyFinalizedError: If the run is already terminal; nothing
                is written in that case
        """
        if run.is_terminal:
            logger.error(
                "Attempted to finalize a terminal run",
                run_id=run.id,
                status=run.status.value,
            )
            raise RunAlreadyFinalizedError(run.id, run.status.value)

        completed_at = datetime.now(UTC)
        patch = {
            **summary.model_dump(mode="json"),
            "completed_at": completed_at.isoformat(),
            "metadata": run.metadata,
        }
        await self.store.update(PARAMETERIZED_RESULTS, run.id, patch)

        for field, value in summary:
            setattr(run, field, value)
        run.completed_at = completed_at
        return run

    async def _start_run(
        self,
        test_id: str,
        target: TargetConfig,
        triggered_by: Optional[str],
        trigger_type: str,
    ) -> ParameterizedRunResult:
        run = ParameterizedRunResult(
            test_id=test_id,
            app_url=target.app_url,
            browser=target.browser,
            environment=target.environment,
            triggered_by=triggered_by,
            trigger_type=trigger_type,
        )
        await self.store.insert(PARAMETERIZED_RESULTS, run.to_row())
        logger.info("Parameterized run created", run_id=run.id, test_id=test_id)
        return run

    async def _execute(
        self,
        run: ParameterizedRunResult,
        definition: ParameterizedTestDefinition,
        parameter_sets: list[ParameterSet],
        target: TargetConfig,
        selected_set_ids: Optional[Iterable[str]],
        cancel_token: Optional[CancellationToken],
    ) -> ParameterizedRunResult:
        try:
            iterations = self.resolver.resolve(definition, parameter_sets, selected_set_ids)
        except ResolutionError as e:
            await self._fail_run(run, e)
            raise

        run.total_iterations = len(iterations)
        run.iteration_mode = definition.iteration_mode
        if definition.iteration_mode == IterationMode.PARALLEL:
            run.parallel_workers = min(definition.max_parallel, len(iterations))
        await self.store.update(
            PARAMETERIZED_RESULTS,
            run.id,
            {
                "total_iterations": run.total_iterations,
                "iteration_mode": run.iteration_mode.value,
                "parallel_workers": run.parallel_workers,
            },
        )

        logger.info(
            "Starting parameterized test execution",
            test_name=definition.name,
            total_iterations=run.total_iterations,
            iteration_mode=definition.iteration_mode.value,
            parallel_workers=run.parallel_workers,
            app_url=target.app_url,
        )

        latest: dict[int, IterationResult] = {}
        attempts = 0

        async def record_attempt(result: IterationResult) -> None:
            nonlocal attempts
            await self.store.insert(ITERATION_RESULTS, result.to_row())
            attempts += 1
            latest[result.iteration_index] = result
            await self._notify(
                ProgressEvent(
                    event_type=ProgressEventType.ITERATION_COMPLETED,
                    run_id=run.id,
                    test_id=run.test_id,
                    status=result.status.value,
                    counts=self.aggregator.tally(latest.values()),
                    iteration=result.to_row(),
                )
            )

        scheduler = create_scheduler(
            definition.scheduling_policy,
            self.executor,
            on_attempt=record_attempt,
            cancel_token=cancel_token,
            in_flight_policy=self.in_flight_policy,
        )

        start_time = time.monotonic()
        try:
            results = await scheduler.run(run.id, definition, iterations, target)
        except Exception as e:
            run.metadata["attempts"] = attempts
            await self._fail_run(run, e, partial=list(latest.values()))
            raise

        summary = self.aggregator.aggregate(results)
        cancelled = cancel_token is not None and cancel_token.is_cancelled and any(
            r.metadata.get("skip_reason") == SKIP_CANCELLED for r in results
        )
        if cancelled:
            summary.status = RunStatus.CANCELLED

        run.metadata.update(
            attempts=attempts,
            wall_clock_ms=int((time.monotonic() - start_time) * 1000),
            stopped_on_failure=scheduler.stopped_on_failure,
        )
        await self.finalize(run, summary)
        run.iteration_results = results

        logger.info(
            "Parameterized test execution completed",
            test_name=definition.name,
            status=run.status.value,
            passed=run.passed,
            failed=run.failed,
            skipped=run.skipped,
            error=run.error,
            success_rate=round(run.success_rate, 1),
            duration_ms=run.duration_ms,
        )

        await self._notify(
            ProgressEvent(
                event_type=ProgressEventType.RUN_COMPLETED,
                run_id=run.id,
                test_id=run.test_id,
                status=run.status.value,
                counts=self.aggregator.tally(results),
            )
        )
        return run

    async def _fail_run(
        self,
        run: ParameterizedRunResult,
        error: Exception,
        partial: Optional[list[IterationResult]] = None,
    ) -> None:
        """Finalize a run as ``error`` after a run-level failure.

        Resolution failures keep the zeroed counts. For failures during
        scheduling the attempts recorded so far are tallied. If the store
        itself is failing the run row stays ``running`` and the original
        error is what the caller sees.
        """
        run.metadata["error"] = str(error)
        run.metadata["error_type"] = type(error).__name__

        counts = self.aggregator.tally(partial or [])
        summary = RunSummary(**counts.model_dump(), status=RunStatus.ERROR)
        if partial:
            run.metadata["planned_iterations"] = run.total_iterations

        logger.error(
            "Parameterized run failed",
            run_id=run.id,
            error=str(error),
            error_type=type(error).__name__,
        )
        try:
            await self.finalize(run, summary)
        except ParameterizedRunError as finalize_error:
            logger.error(
                "Could not mark run as failed",
                run_id=run.id,
                error=str(finalize_error),
            )
            return

        await self._notify(
            ProgressEvent(
                event_type=ProgressEventType.RUN_COMPLETED,
                run_id=run.id,
                test_id=run.test_id,
                status=run.status.value,
                counts=counts,
            )
        )

    async def _notify(self, event: ProgressEvent) -> None:
        """Deliver a progress event; failures are logged and dropped."""
        try:
            if event.event_type == ProgressEventType.ITERATION_COMPLETED:
                await self.notifier.iteration_completed(event)
            else:
                await self.notifier.run_completed(event)
        except Exception as e:
            logger.warning(
                "Progress notification failed",
                event_type=event.event_type.value,
                run_id=event.run_id,
                error=str(e),
            )
