"""Shared fixtures for parameterized run tests."""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

import pytest

from paramrun.parameterized.executor_client import StepExecutorClient
from paramrun.parameterized.models import (
    ExecutorOutcome,
    ParameterizedTestDefinition,
    ParameterSet,
    ResolvedIteration,
    TargetConfig,
)
from paramrun.services.store import InMemoryRowStore


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


@dataclass
class Behaviour:
    """What the fake executor does for one attempt."""

    delay: float = 0.0
    success: bool = True
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    step_results: list[dict[str, Any]] = field(default_factory=list)
    raises: Optional[Exception] = None
    shutdown_delay: float = 0.0


def passes(delay: float = 0.0, **kwargs) -> Behaviour:
    return Behaviour(delay=delay, **kwargs)


def fails(delay: float = 0.0, error: str = "Expected element to be visible", **kwargs) -> Behaviour:
    return Behaviour(delay=delay, success=False, error=error, **kwargs)


def raises(exc: Exception, delay: float = 0.0) -> Behaviour:
    return Behaviour(delay=delay, raises=exc)


class FakeStepExecutor(StepExecutorClient):
    """Step executor driven by a script keyed on the ``case`` parameter value.

    Each case maps to a list of behaviours consumed one per attempt; the last
    behaviour is repeated. Peak concurrency and interrupted calls are tracked;
    ``in_flight`` stays raised until a cancelled call has finished unwinding.
    """

    def __init__(self, script: Optional[dict[str, list[Behaviour]]] = None, default: Optional[Behaviour] = None):
        self.script = {case: list(behaviours) for case, behaviours in (script or {}).items()}
        self.default = default or Behaviour()
        self.calls: list[dict[str, Any]] = []
        self.in_flight = 0
        self.peak = 0
        self.interrupted: list[str] = []
        self.closed = False

    def _next(self, case: Optional[str]) -> Behaviour:
        queue = self.script.get(case)
        if not queue:
            return self.default
        if len(queue) > 1:
            return queue.pop(0)
        return queue[0]

    async def execute(self, steps, assertions, parameter_values, target_config, deadline):
        case = parameter_values.get("case")
        self.calls.append(
            {
                "case": case,
                "steps": steps,
                "assertions": assertions,
                "parameter_values": parameter_values,
                "target_config": target_config,
                "deadline": deadline,
            }
        )
        behaviour = self._next(case)

        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(behaviour.delay)
        except asyncio.CancelledError:
            self.interrupted.append(case)
            if behaviour.shutdown_delay:
                await asyncio.sleep(behaviour.shutdown_delay)
            raise
        finally:
            self.in_flight -= 1

        if behaviour.raises is not None:
            raise behaviour.raises
        return ExecutorOutcome(
            success=behaviour.success,
            duration_ms=behaviour.duration_ms,
            step_results=behaviour.step_results,
            error=behaviour.error,
        )

    @property
    def cases_called(self) -> list[Optional[str]]:
        return [call["case"] for call in self.calls]

    async def close(self) -> None:
        self.closed = True


def make_sets(*cases: str, test_id: str = "login-test", **overrides) -> list[ParameterSet]:
    """One parameter set per case, ordered as given."""
    return [
        ParameterSet(
            id=f"set-{case}",
            test_id=test_id,
            name=f"Case {case}",
            values={"case": case, "username": f"user_{case}"},
            order_index=index,
            **overrides,
        )
        for index, case in enumerate(cases)
    ]


def make_iterations(parameter_sets: list[ParameterSet]) -> list[ResolvedIteration]:
    return [
        ResolvedIteration(iteration_index=index, parameter_set=param_set)
        for index, param_set in enumerate(parameter_sets)
    ]


def make_definition(**overrides) -> ParameterizedTestDefinition:
    data = {
        "id": "login-test",
        "name": "Login Test",
        "steps": [
            {"action": "goto", "target": "/login"},
            {"action": "fill", "target": "#username", "value": "{{username}}"},
            {"action": "click", "target": "#submit"},
        ],
        "assertions": [
            {"type": "text_contains", "target": ".welcome", "expected": "Hello {{username}}"},
        ],
        "timeout_per_iteration_ms": 5000,
    }
    data.update(overrides)
    return ParameterizedTestDefinition(**data)


@pytest.fixture
def definition():
    """A sequential login test with one placeholder."""
    return make_definition()


@pytest.fixture
def target():
    """Target application configuration."""
    return TargetConfig(app_url="http://localhost:3000")


@pytest.fixture
def executor():
    """A fake step executor where every attempt passes."""
    return FakeStepExecutor()


@pytest.fixture
def store():
    """An empty in-memory row store."""
    return InMemoryRowStore()
