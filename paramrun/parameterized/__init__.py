"""Parameterized/data-driven test execution.

This module provides functionality for:
- Resolving which parameter sets a run executes, and in what order
- Executing every iteration through an external step executor
- Sequential and bounded-parallel scheduling with retries and stop-on-failure
- Aggregating iteration outcomes into one run result
- Persisting runs and publishing progress events

Example usage:
    from paramrun.parameterized import (
        HttpStepExecutorClient,
        ParameterizedTestDefinition,
        ParameterSet,
        RunController,
        TargetConfig,
    )
    from paramrun.services.store import InMemoryRowStore

    definition = ParameterizedTestDefinition(
        id="login-test",
        name="Login Test",
        iteration_mode="parallel",
        max_parallel=2,
        steps=[
            {"action": "fill", "target": "#username", "value": "{{username}}"},
            {"action": "click", "target": "#submit"},
        ],
        assertions=[{"type": "url_contains", "expected": "{{expected}}"}],
    )
    parameter_sets = [
        ParameterSet(values={"username": "admin", "expected": "dashboard"}, order_index=0),
        ParameterSet(values={"username": "user", "expected": "home"}, order_index=1),
    ]

    controller = RunController(
        store=InMemoryRowStore(),
        executor=HttpStepExecutorClient("http://localhost:8000/api/v1/browser/test"),
    )
    run = await controller.run(
        definition, parameter_sets, TargetConfig(app_url="http://localhost:3000")
    )
"""

from paramrun.errors import (
    AssertionFailure,
    ExecutorError,
    IterationTimeoutError,
    NoIterationsError,
    ParameterizedRunError,
    PersistenceError,
    ResolutionError,
    RunAlreadyFinalizedError,
    TestDefinitionNotFoundError,
)
from paramrun.parameterized.aggregator import ResultAggregator, RunCounts, RunSummary
from paramrun.parameterized.controller import RunController
from paramrun.parameterized.executor_client import HttpStepExecutorClient, StepExecutorClient
from paramrun.parameterized.models import (
    ExecutorOutcome,
    ExpectedOutcome,
    FailureKind,
    InFlightPolicy,
    IterationMode,
    IterationResult,
    IterationStatus,
    Parallel,
    ParameterizedRunResult,
    ParameterizedTestDefinition,
    ParameterSet,
    ResolvedIteration,
    RunStatus,
    Sequential,
    TargetConfig,
    TestAssertion,
    TestStep,
)
from paramrun.parameterized.progress import (
    CallbackProgressNotifier,
    NullProgressNotifier,
    ProgressEvent,
    ProgressEventType,
    ProgressNotifier,
    WebhookProgressNotifier,
)
from paramrun.parameterized.resolver import ParameterSetResolver
from paramrun.parameterized.scheduler import (
    CancellationToken,
    IterationScheduler,
    ParallelScheduler,
    SequentialScheduler,
    create_scheduler,
)
from paramrun.parameterized.substitution import expand_steps, resolve_parameters

__all__ = [
    # Models
    "ParameterizedTestDefinition",
    "ParameterSet",
    "ResolvedIteration",
    "IterationResult",
    "ParameterizedRunResult",
    "TargetConfig",
    "ExecutorOutcome",
    "TestStep",
    "TestAssertion",
    "IterationMode",
    "IterationStatus",
    "RunStatus",
    "ExpectedOutcome",
    "FailureKind",
    "InFlightPolicy",
    "Sequential",
    "Parallel",
    # Errors
    "ParameterizedRunError",
    "ResolutionError",
    "NoIterationsError",
    "TestDefinitionNotFoundError",
    "ExecutorError",
    "IterationTimeoutError",
    "AssertionFailure",
    "PersistenceError",
    "RunAlreadyFinalizedError",
    # Resolution
    "ParameterSetResolver",
    "resolve_parameters",
    "expand_steps",
    # Execution
    "StepExecutorClient",
    "HttpStepExecutorClient",
    "IterationScheduler",
    "SequentialScheduler",
    "ParallelScheduler",
    "CancellationToken",
    "create_scheduler",
    # Aggregation
    "ResultAggregator",
    "RunCounts",
    "RunSummary",
    # Progress
    "ProgressNotifier",
    "ProgressEvent",
    "ProgressEventType",
    "NullProgressNotifier",
    "CallbackProgressNotifier",
    "WebhookProgressNotifier",
    # Controller
    "RunController",
]
