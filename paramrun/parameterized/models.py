"""Pydantic models for parameterized test runs.

This module defines the records the engine reads and writes:
- ParameterizedTestDefinition: the reusable test with its run policy
- ParameterSet: one row of input data
- IterationResult: one attempt against one parameter set (immutable)
- ParameterizedRunResult: the aggregate record for a whole run

Each persisted record converts to and from its store row with ``to_row`` /
``from_row``; the column names follow the ``parameterized_tests``,
``parameter_sets``, ``iteration_results`` and ``parameterized_results`` tables.
"""

import re
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _drop_nulls(row: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in row.items() if value is not None}


class IterationMode(str, Enum):
    """How the iterations of a run are scheduled."""

    SEQUENTIAL = "sequential"  # One iteration at a time, in order
    PARALLEL = "parallel"  # Up to max_parallel iterations at once
    RANDOM = "random"  # One at a time, in shuffled order


class IterationStatus(str, Enum):
    """Status of a single iteration attempt."""

    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    """Status of a parameterized run."""

    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class ExpectedOutcome(str, Enum):
    """Outcome a parameter set is expected to produce (reporting only)."""

    PASS = "pass"
    FAIL = "fail"


class FailureKind(str, Enum):
    """Why an attempt did not pass."""

    ASSERTION = "assertion"
    TIMEOUT = "timeout"
    EXECUTOR = "executor"
    CANCELLED = "cancelled"


class InFlightPolicy(str, Enum):
    """What happens to running iterations once stop-on-failure triggers."""

    FINISH = "finish"
    CANCEL = "cancel"


class Sequential(BaseModel):
    """Run iterations one at a time."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["sequential"] = "sequential"


class Parallel(BaseModel):
    """Run up to ``max_parallel`` iterations at once."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["parallel"] = "parallel"
    max_parallel: int = Field(..., ge=1)


SchedulingPolicy = Annotated[Union[Sequential, Parallel], Field(discriminator="kind")]


class TestStep(BaseModel):
    """A single step in a test.

    Supports parameter placeholders in the format {{param_name}}.
    """

    __test__ = False

    model_config = ConfigDict(frozen=True, extra="allow")

    action: str = Field(..., description="Action to perform (click, fill, etc.)")
    target: Optional[str] = Field(None, description="Target selector")
    value: Optional[str] = Field(None, description="Value for the action")
    timeout: Optional[int] = Field(None, ge=0, description="Timeout in milliseconds")
    description: Optional[str] = Field(None, description="Step description")

    def get_parameter_placeholders(self) -> set[str]:
        """Extract all parameter placeholders from this step."""
        placeholders: set[str] = set()
        for field_value in (self.target, self.value, self.description):
            if field_value:
                placeholders.update(PLACEHOLDER_PATTERN.findall(str(field_value)))
        return placeholders


class TestAssertion(BaseModel):
    """A test assertion with parameter support."""

    __test__ = False

    model_config = ConfigDict(frozen=True, extra="allow")

    type: str = Field(..., description="Assertion type (visible, url_contains, etc.)")
    target: Optional[str] = Field(None, description="Target selector")
    expected: Optional[str] = Field(None, description="Expected value")
    timeout: Optional[int] = Field(None, ge=0, description="Timeout for assertion")
    description: Optional[str] = Field(None, description="Assertion description")

    def get_parameter_placeholders(self) -> set[str]:
        """Extract all parameter placeholders from this assertion."""
        placeholders: set[str] = set()
        for field_value in (self.target, self.expected, self.description):
            if field_value:
                placeholders.update(PLACEHOLDER_PATTERN.findall(str(field_value)))
        return placeholders


class ParameterizedTestDefinition(BaseModel):
    """A reusable test plus the policy used to run it across parameter sets.

    Attributes:
        id: Unique test identifier
        name: Human-readable test name
        steps: Ordered test steps with {{param}} placeholders
        assertions: Test assertions with {{param}} placeholders
        setup: Steps sent first in every iteration
        before_each: Steps sent between setup and the main steps
        after_each: Steps sent between the main steps and teardown
        teardown: Steps sent last in every iteration
        iteration_mode: Sequential, parallel or random (shuffled sequential)
        max_parallel: Concurrency bound in parallel mode
        timeout_per_iteration_ms: Deadline for one executor call
        stop_on_failure: Stop issuing iterations after the first final failure
        retry_failed_iterations: Extra attempts for a failed/errored iteration

    Example:
        {
            "id": "login-test",
            "name": "Login Test",
            "iteration_mode": "parallel",
            "max_parallel": 3,
            "steps": [
                {"action": "fill", "target": "#username", "value": "{{username}}"},
                {"action": "click", "target": "#submit"}
            ],
            "assertions": [
                {"type": "url_contains", "expected": "{{expected}}"}
            ]
        }
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id, description="Unique test identifier")
    name: str = Field(..., min_length=1, description="Test name")
    description: Optional[str] = Field(None, description="Test description")
    project_id: Optional[str] = Field(None, description="Owning project")
    steps: list[TestStep] = Field(default_factory=list, description="Test steps")
    assertions: list[TestAssertion] = Field(default_factory=list, description="Test assertions")
    setup: list[TestStep] = Field(default_factory=list, description="Setup steps")
    before_each: list[TestStep] = Field(default_factory=list, description="Steps before each iteration")
    after_each: list[TestStep] = Field(default_factory=list, description="Steps after each iteration")
    teardown: list[TestStep] = Field(default_factory=list, description="Teardown steps")
    iteration_mode: IterationMode = Field(IterationMode.SEQUENTIAL, description="Iteration mode")
    max_parallel: int = Field(5, ge=1, description="Maximum concurrent iterations")
    timeout_per_iteration_ms: int = Field(60000, gt=0, description="Per-iteration deadline")
    stop_on_failure: bool = Field(False, description="Stop on first final failure")
    retry_failed_iterations: int = Field(0, ge=0, description="Retries per failed iteration")

    @field_validator("setup", "before_each", "after_each", "teardown", mode="before")
    @classmethod
    def validate_step_list(cls, v: Any) -> Any:
        """Accept the ``{}`` placeholder stored for an unused step column."""
        if isinstance(v, dict):
            if not v:
                return []
            if "steps" in v:
                return v["steps"]
        return v

    @property
    def scheduling_policy(self) -> Union[Sequential, Parallel]:
        """The closed scheduling variant for this definition.

        Random mode runs sequentially; its shuffled order is fixed when the
        parameter sets are resolved.
        """
        if self.iteration_mode == IterationMode.PARALLEL:
            return Parallel(max_parallel=self.max_parallel)
        return Sequential()

    @property
    def all_steps(self) -> list[TestStep]:
        """Every step of one iteration, in the order it is sent."""
        return self.setup + self.before_each + self.steps + self.after_each + self.teardown

    def get_all_parameter_placeholders(self) -> set[str]:
        """Get all parameter placeholders used in this test."""
        placeholders: set[str] = set()
        for step in self.all_steps:
            placeholders.update(step.get_parameter_placeholders())
        for assertion in self.assertions:
            placeholders.update(assertion.get_parameter_placeholders())
        return placeholders

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ParameterizedTestDefinition":
        """Build a definition from a ``parameterized_tests`` row."""
        return cls(
            **_drop_nulls(
                {
                    "id": row.get("id"),
                    "name": row.get("name"),
                    "description": row.get("description"),
                    "project_id": row.get("project_id"),
                    "steps": row.get("steps"),
                    "assertions": row.get("assertions"),
                    "setup": row.get("setup"),
                    "before_each": row.get("before_each"),
                    "after_each": row.get("after_each"),
                    "teardown": row.get("teardown"),
                    "iteration_mode": row.get("iteration_mode"),
                    "max_parallel": row.get("max_parallel"),
                    "timeout_per_iteration_ms": row.get("timeout_per_iteration_ms"),
                    "stop_on_failure": row.get("stop_on_failure"),
                    "retry_failed_iterations": row.get("retry_failed_iterations"),
                }
            )
        )

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ParameterSet(BaseModel):
    """One row of input data for a parameterized test.

    Attributes:
        id: Unique parameter set identifier
        test_id: Owning parameterized test
        name: Human-readable name
        values: Parameter name to value mapping
        order_index: Execution order (ascending)
        skip: Exclude this set from runs
        only: If any set has this flag, only flagged sets run
        expected_outcome: Expected pass/fail, used for reporting only
        environment_overrides: Target settings replaced for this set only
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id, description="Parameter set identifier")
    test_id: Optional[str] = Field(None, description="Owning test identifier")
    name: Optional[str] = Field(None, description="Human-readable name")
    description: Optional[str] = Field(None, description="Description of this case")
    values: dict[str, Any] = Field(default_factory=dict, description="Parameter values")
    order_index: int = Field(0, description="Execution order")
    skip: bool = Field(False, description="Whether to skip this parameter set")
    skip_reason: Optional[str] = Field(None, description="Reason for skipping")
    only: bool = Field(False, description="Run only flagged sets")
    expected_outcome: ExpectedOutcome = Field(ExpectedOutcome.PASS, description="Expected outcome")
    tags: list[str] = Field(default_factory=list, description="Tags for categorization")
    environment_overrides: dict[str, Any] = Field(
        default_factory=dict, description="Per-set target overrides"
    )

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ParameterSet":
        """Build a parameter set from a ``parameter_sets`` row."""
        return cls(
            **_drop_nulls(
                {
                    "id": row.get("id"),
                    "test_id": row.get("parameterized_test_id"),
                    "name": row.get("name"),
                    "description": row.get("description"),
                    "values": row.get("values"),
                    "order_index": row.get("order_index"),
                    "skip": row.get("skip"),
                    "skip_reason": row.get("skip_reason"),
                    "only": row.get("run_only"),
                    "expected_outcome": row.get("expected_outcome"),
                    "tags": row.get("tags"),
                    "environment_overrides": row.get("environment_overrides"),
                }
            )
        )

    def to_row(self) -> dict[str, Any]:
        row = self.model_dump(mode="json", exclude={"test_id", "only"})
        row["parameterized_test_id"] = self.test_id
        row["run_only"] = self.only
        return row


class ResolvedIteration(BaseModel):
    """A parameter set with its fixed position in the run."""

    model_config = ConfigDict(frozen=True)

    iteration_index: int = Field(..., ge=0)
    parameter_set: ParameterSet


class TargetConfig(BaseModel):
    """Where and how the step executor should run the test."""

    model_config = ConfigDict(frozen=True)

    app_url: str = Field(..., description="Base URL of the application under test")
    browser: str = Field("chromium", description="Browser type")
    environment: str = Field("staging", description="Environment name")
    extra: dict[str, Any] = Field(default_factory=dict, description="Executor-specific options")

    def with_overrides(self, overrides: dict[str, Any]) -> "TargetConfig":
        """Return a copy with a parameter set's environment overrides applied.

        ``app_url`` (or ``appUrl``), ``browser`` and ``environment`` replace
        the matching fields; any other key is merged into ``extra``.
        """
        if not overrides:
            return self
        remaining = dict(overrides)
        update: dict[str, Any] = {}
        for key, field_name in (
            ("appUrl", "app_url"),
            ("app_url", "app_url"),
            ("browser", "browser"),
            ("environment", "environment"),
        ):
            if key in remaining:
                update[field_name] = remaining.pop(key)
        if remaining:
            update["extra"] = {**self.extra, **remaining}
        return self.model_validate({**self.model_dump(), **update})

    def to_payload(self) -> dict[str, Any]:
        return {
            **self.extra,
            "appUrl": self.app_url,
            "browser": self.browser,
            "environment": self.environment,
        }


class ExecutorOutcome(BaseModel):
    """What the step executor reported for one attempt."""

    success: bool
    duration_ms: Optional[int] = None
    step_results: list[dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None


class IterationResult(BaseModel):
    """Result of one attempt of one iteration. Never mutated after creation.

    Retries produce new results linked to the attempt they replace through
    ``original_iteration_id``.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    run_id: str = Field(..., description="Owning parameterized run")
    parameter_set_id: str
    iteration_index: int = Field(..., ge=0)
    parameter_values: dict[str, Any] = Field(default_factory=dict)
    status: IterationStatus
    duration_ms: Optional[int] = Field(None, ge=0)
    step_results: list[dict[str, Any]] = Field(default_factory=list)
    assertions_passed: int = Field(0, ge=0)
    assertions_failed: int = Field(0, ge=0)
    error_message: Optional[str] = None
    retry_count: int = Field(0, ge=0)
    is_retry: bool = False
    original_iteration_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_failure(self) -> bool:
        return self.status in (IterationStatus.FAILED, IterationStatus.ERROR)

    @property
    def failure_kind(self) -> Optional[FailureKind]:
        kind = self.metadata.get("failure_kind")
        return FailureKind(kind) if kind else None

    @classmethod
    def skipped(
        cls,
        run_id: str,
        iteration: ResolvedIteration,
        reason: str,
        **metadata: Any,
    ) -> "IterationResult":
        """Create the record for an iteration that was never executed."""
        param_set = iteration.parameter_set
        return cls(
            run_id=run_id,
            parameter_set_id=param_set.id,
            iteration_index=iteration.iteration_index,
            parameter_values=dict(param_set.values),
            status=IterationStatus.SKIPPED,
            error_message=reason,
            completed_at=_utcnow(),
            metadata={
                "parameter_set_name": param_set.display_name,
                "expected_outcome": param_set.expected_outcome.value,
                **metadata,
            },
        )

    def to_row(self) -> dict[str, Any]:
        row = self.model_dump(mode="json", exclude={"run_id"})
        row["parameterized_result_id"] = self.run_id
        return row

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "IterationResult":
        data = {key: value for key, value in row.items() if key in cls.model_fields}
        data["run_id"] = row["parameterized_result_id"]
        return cls(**_drop_nulls(data))


class ParameterizedRunResult(BaseModel):
    """Aggregate record for one run of a parameterized test.

    Created with status ``running`` before any work starts and finalized
    exactly once by the RunController.
    """

    id: str = Field(default_factory=_new_id)
    test_id: str
    status: RunStatus = RunStatus.RUNNING
    total_iterations: int = Field(0, ge=0)
    passed: int = Field(0, ge=0)
    failed: int = Field(0, ge=0)
    skipped: int = Field(0, ge=0)
    error: int = Field(0, ge=0)
    duration_ms: int = Field(0, ge=0)
    avg_iteration_ms: float = Field(0.0, ge=0)
    min_iteration_ms: int = Field(0, ge=0)
    max_iteration_ms: int = Field(0, ge=0)
    iteration_mode: IterationMode = IterationMode.SEQUENTIAL
    parallel_workers: int = Field(1, ge=1)
    app_url: Optional[str] = None
    browser: Optional[str] = None
    environment: Optional[str] = None
    triggered_by: Optional[str] = None
    trigger_type: str = "manual"
    failure_summary: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    iteration_results: list[IterationResult] = Field(default_factory=list, exclude=True)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def success_rate(self) -> float:
        """Passed iterations as a percentage of all iterations."""
        if self.total_iterations == 0:
            return 0.0
        return (self.passed / self.total_iterations) * 100

    def to_row(self) -> dict[str, Any]:
        row = self.model_dump(mode="json", exclude={"test_id", "iteration_results"})
        row["parameterized_test_id"] = self.test_id
        return row

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ParameterizedRunResult":
        data = {key: value for key, value in row.items() if key in cls.model_fields}
        data["test_id"] = row["parameterized_test_id"]
        return cls(**_drop_nulls(data))
