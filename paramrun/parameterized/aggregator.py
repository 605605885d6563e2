"""Folds iteration results into the aggregate figures of a run."""

from typing import Any, Iterable

from pydantic import BaseModel, Field

from paramrun.parameterized.models import (
    ExpectedOutcome,
    IterationResult,
    IterationStatus,
    RunStatus,
)


class RunCounts(BaseModel):
    """Tally of iteration outcomes."""

    total_iterations: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    error: int = 0


class RunSummary(RunCounts):
    """Everything the RunController writes when finalizing a run."""

    duration_ms: int = 0
    avg_iteration_ms: float = 0.0
    min_iteration_ms: int = 0
    max_iteration_ms: int = 0
    status: RunStatus = RunStatus.PASSED
    failure_summary: dict[str, Any] = Field(default_factory=dict)


class ResultAggregator:
    """Computes counts, timing statistics and overall status of a run.

    Example:
        summary = ResultAggregator().aggregate(results)
        print(f"Passed: {summary.passed}/{summary.total_iterations}")
    """

    def __init__(self, max_examples: int = 5, group_key_length: int = 100):
        self.max_examples = max_examples
        self.group_key_length = group_key_length

    def tally(self, results: Iterable[IterationResult]) -> RunCounts:
        """Count results by status."""
        counts = RunCounts()
        for result in results:
            counts.total_iterations += 1
            if result.status == IterationStatus.PASSED:
                counts.passed += 1
            elif result.status == IterationStatus.FAILED:
                counts.failed += 1
            elif result.status == IterationStatus.SKIPPED:
                counts.skipped += 1
            else:
                counts.error += 1
        return counts

    def aggregate(self, results: list[IterationResult]) -> RunSummary:
        """Aggregate the final result of every iteration of a run."""
        counts = self.tally(results)

        executed = [r for r in results if r.status != IterationStatus.SKIPPED]
        durations = [r.duration_ms for r in results if r.duration_ms is not None]

        summary = RunSummary(
            **counts.model_dump(),
            duration_ms=sum(r.duration_ms or 0 for r in executed),
            status=self.overall_status(counts, executed),
            failure_summary=self.build_failure_summary(results),
        )
        if durations:
            summary.avg_iteration_ms = sum(durations) / len(durations)
            summary.min_iteration_ms = min(durations)
            summary.max_iteration_ms = max(durations)
        return summary

    @staticmethod
    def overall_status(counts: RunCounts, executed: list[IterationResult]) -> RunStatus:
        if counts.failed == 0 and counts.error == 0:
            return RunStatus.PASSED
        if executed and all(r.status == IterationStatus.ERROR for r in executed):
            return RunStatus.ERROR
        return RunStatus.FAILED

    def build_failure_summary(self, results: list[IterationResult]) -> dict[str, Any]:
        """Build a summary of failures for reporting."""
        failures = [r for r in results if r.is_failure]
        unexpected = [r for r in results if self._is_unexpected(r)]

        if not failures and not unexpected:
            return {}

        error_groups: dict[str, list[str]] = {}
        for failure in failures:
            error = (failure.error_message or "Unknown error")[: self.group_key_length]
            name = failure.metadata.get("parameter_set_name") or failure.parameter_set_id
            error_groups.setdefault(error, []).append(name)

        first = min(failures, key=lambda r: r.iteration_index) if failures else None
        return {
            "total_failures": len(failures),
            "error_groups": [
                {
                    "error": error,
                    "count": len(names),
                    "parameter_sets": names[: self.max_examples],
                }
                for error, names in error_groups.items()
            ],
            "first_failure": {
                "iteration_index": first.iteration_index,
                "parameter_set_id": first.parameter_set_id,
                "error": first.error_message,
            } if first else None,
            "unexpected_outcomes": len(unexpected),
        }

    @staticmethod
    def _is_unexpected(result: IterationResult) -> bool:
        """An executed iteration whose outcome contradicts its expected_outcome."""
        expected = result.metadata.get("expected_outcome")
        if expected is None or result.status == IterationStatus.SKIPPED:
            return False
        passed = result.status == IterationStatus.PASSED
        return passed != (expected == ExpectedOutcome.PASS.value)
