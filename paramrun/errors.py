"""Exception hierarchy for parameterized test runs.

Run-level errors (resolution, persistence) abort the run and propagate to the
caller. Iteration-level errors (executor, timeout, assertion) are captured in
the iteration's result and execution continues according to the test policy.
"""


class ParameterizedRunError(Exception):
    """Base class for all parameterized run errors."""

    pass


class ResolutionError(ParameterizedRunError):
    """The run cannot be resolved into any executable iterations."""

    pass


class NoIterationsError(ResolutionError):
    """No parameter set survived filtering and selection."""

    def __init__(self, test_id: str | None, reason: str = "no parameter sets to execute"):
        self.test_id = test_id
        self.reason = reason
        super().__init__(f"Test {test_id}: {reason}")


class TestDefinitionNotFoundError(ResolutionError):
    """The parameterized test definition could not be loaded."""

    __test__ = False

    def __init__(self, test_id: str):
        self.test_id = test_id
        super().__init__(f"Parameterized test not found: {test_id}")


class ExecutorError(ParameterizedRunError):
    """Transport or service failure while calling the step executor."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class IterationTimeoutError(ExecutorError, TimeoutError):
    """The step executor did not answer before the iteration deadline."""

    def __init__(self, timeout_ms: int | None = None, message: str | None = None):
        self.timeout_ms = timeout_ms
        super().__init__(message or f"Timeout after {timeout_ms}ms")


class AssertionFailure(ParameterizedRunError):
    """Steps ran but one or more expectations failed."""

    def __init__(self, message: str, step_index: int | None = None):
        self.step_index = step_index
        super().__init__(message)


class PersistenceError(ParameterizedRunError):
    """The row store is unavailable or rejected a write."""

    def __init__(self, message: str, table: str | None = None):
        self.table = table
        super().__init__(message)


class RunAlreadyFinalizedError(ParameterizedRunError):
    """A terminal run was finalized a second time."""

    def __init__(self, run_id: str, status: str):
        self.run_id = run_id
        self.status = status
        super().__init__(f"Run {run_id} is already finalized with status '{status}'")
