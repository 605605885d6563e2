"""Progress notification for observers of a parameterized run.

One event is published per iteration attempt and one when the run is
finalized. Delivery is best-effort: the RunController logs and discards
notifier failures, so a run never depends on an observer being reachable.
"""

import inspect
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
import structlog
from pydantic import BaseModel, Field

from paramrun.parameterized.aggregator import RunCounts

logger = structlog.get_logger()


class ProgressEventType(str, Enum):
    """Kinds of progress events."""

    ITERATION_COMPLETED = "iteration.completed"
    RUN_COMPLETED = "run.completed"


class ProgressEvent(BaseModel):
    """Payload pushed to progress observers."""

    event_type: ProgressEventType
    run_id: str
    test_id: str
    status: str
    counts: RunCounts
    iteration: Optional[dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ProgressNotifier(ABC):
    """Receives progress events for a run."""

    @abstractmethod
    async def iteration_completed(self, event: ProgressEvent) -> None:
        """Called after each iteration attempt is recorded."""

    @abstractmethod
    async def run_completed(self, event: ProgressEvent) -> None:
        """Called once after the run is finalized."""

    async def close(self) -> None:
        return None


class NullProgressNotifier(ProgressNotifier):
    """Discards all events."""

    async def iteration_completed(self, event: ProgressEvent) -> None:
        return None

    async def run_completed(self, event: ProgressEvent) -> None:
        return None


ProgressCallback = Callable[[ProgressEvent], Union[None, Awaitable[None]]]


class CallbackProgressNotifier(ProgressNotifier):
    """Forwards events to plain or async callables."""

    def __init__(
        self,
        on_iteration_complete: Optional[ProgressCallback] = None,
        on_run_complete: Optional[ProgressCallback] = None,
    ):
        self.on_iteration_complete = on_iteration_complete
        self.on_run_complete = on_run_complete

    @staticmethod
    async def _call(callback: Optional[ProgressCallback], event: ProgressEvent) -> None:
        if callback is None:
            return
        outcome = callback(event)
        if inspect.isawaitable(outcome):
            await outcome

    async def iteration_completed(self, event: ProgressEvent) -> None:
        await self._call(self.on_iteration_complete, event)

    async def run_completed(self, event: ProgressEvent) -> None:
        await self._call(self.on_run_complete, event)


class WebhookProgressNotifier(ProgressNotifier):
    """POSTs every event as JSON to a webhook URL."""

    def __init__(
        self,
        webhook_url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"Content-Type": "application/json"},
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _post(self, event: ProgressEvent) -> None:
        client = await self._get_client()
        response = await client.post(self.webhook_url, json=event.model_dump(mode="json"))
        response.raise_for_status()
        logger.debug(
            "Progress event delivered",
            event_type=event.event_type.value,
            run_id=event.run_id,
        )

    async def iteration_completed(self, event: ProgressEvent) -> None:
        await self._post(event)

    async def run_completed(self, event: ProgressEvent) -> None:
        await self._post(event)
