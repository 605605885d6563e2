"""Client interface to the external step executor.

The step executor is a worker service that performs the browser actions of
one iteration and reports pass/fail with per-step detail. The engine only
depends on the abstract ``StepExecutorClient``; ``HttpStepExecutorClient``
talks to the worker over HTTP.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
import structlog

from paramrun.errors import ExecutorError, IterationTimeoutError
from paramrun.parameterized.models import ExecutorOutcome, TargetConfig

logger = structlog.get_logger()


class StepExecutorClient(ABC):
    """Executes one iteration's steps against a target."""

    @abstractmethod
    async def execute(
        self,
        steps: list[dict[str, Any]],
        assertions: list[dict[str, Any]],
        parameter_values: dict[str, Any],
        target_config: TargetConfig,
        deadline: float,
    ) -> ExecutorOutcome:
        """Run the steps and report the outcome.

        Args:
            steps: Steps with placeholders already substituted
            assertions: Assertions with placeholders already substituted
            parameter_values: The iteration's parameter values
            target_config: Application URL, browser and environment
            deadline: Absolute ``time.monotonic()`` value the call must finish by

        Raises:
            IterationTimeoutError: If the deadline passes before an answer
            ExecutorError: On transport or service failures
        """

    async def close(self) -> None:
        """Release any resources held by the client."""
        return None


class HttpStepExecutorClient(StepExecutorClient):
    """Step executor reached through a JSON POST endpoint.

    Request body: ``{steps, assertions, parameterValues, targetConfig}``.
    Response body: ``{success, durationMs, stepResults, error}``; the legacy
    worker keys ``duration`` and ``steps`` are accepted as well.

    Example:
        client = HttpStepExecutorClient("https://worker.example.dev/test")
        outcome = await client.execute(
            steps, assertions, {"username": "admin"}, target,
            deadline=time.monotonic() + 60,
        )
    """

    def __init__(
        self,
        endpoint_url: str,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            endpoint_url: Full URL of the worker's execution endpoint
            api_key: Optional bearer token for the worker
            transport: Optional httpx transport (used by tests)
        """
        self.endpoint_url = endpoint_url
        self._api_key = api_key
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._client = httpx.AsyncClient(headers=headers, transport=self._transport)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def execute(
        self,
        steps: list[dict[str, Any]],
        assertions: list[dict[str, Any]],
        parameter_values: dict[str, Any],
        target_config: TargetConfig,
        deadline: float,
    ) -> ExecutorOutcome:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise IterationTimeoutError(0, "Deadline passed before the request was sent")

        body = {
            "steps": steps,
            "assertions": assertions,
            "parameterValues": parameter_values,
            "targetConfig": target_config.to_payload(),
        }

        client = await self._get_client()
        try:
            response = await client.post(self.endpoint_url, json=body, timeout=remaining)
        except httpx.TimeoutException as e:
            logger.warning("Step executor timed out", url=self.endpoint_url, error=str(e))
            raise IterationTimeoutError(int(remaining * 1000)) from e
        except httpx.HTTPError as e:
            logger.warning("Step executor request failed", url=self.endpoint_url, error=str(e))
            raise ExecutorError(f"Step executor unreachable: {e}") from e

        if not response.is_success:
            logger.warning(
                "Step executor error response",
                url=self.endpoint_url,
                status=response.status_code,
            )
            raise ExecutorError(
                f"Step executor returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ExecutorError(f"Step executor returned invalid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise ExecutorError("Step executor returned an unexpected payload")

        return self._parse_outcome(payload)

    @staticmethod
    def _parse_outcome(payload: dict[str, Any]) -> ExecutorOutcome:
        """Validate a worker response body.

        Raises:
            ExecutorError: If a field has the wrong type or a duration is negative
        """
        success = payload.get("success")
        if not isinstance(success, bool):
            raise ExecutorError(f"Step executor returned a non-boolean success: {success!r}")

        duration = payload.get("durationMs", payload.get("duration"))
        if duration is not None:
            if isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration < 0:
                raise ExecutorError(f"Step executor returned an invalid duration: {duration!r}")
            duration = int(duration)

        step_results = payload.get("stepResults", payload.get("steps"))
        if step_results is None:
            step_results = []
        elif not isinstance(step_results, list):
            raise ExecutorError("Step executor returned step results that are not a list")

        error = payload.get("error")
        return ExecutorOutcome(
            success=success,
            duration_ms=duration,
            step_results=[step for step in step_results if isinstance(step, dict)],
            error=str(error) if error is not None else None,
        )
