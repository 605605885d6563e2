"""Supabase (PostgREST) implementation of the row store."""

from typing import Any, Optional

import httpx
import structlog

from paramrun.config import get_settings
from paramrun.errors import PersistenceError
from paramrun.services.store import RowStore

logger = structlog.get_logger()


class SupabaseRowStore(RowStore):
    """Row store backed by the Supabase REST API.

    Filters are sent as PostgREST ``eq.`` conditions and every write asks
    for ``return=representation`` so the stored row comes back.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        service_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.url = url or settings.supabase_url
        self.service_key = service_key or (
            settings.supabase_service_key.get_secret_value()
            if settings.supabase_service_key
            else None
        )
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        """Check if Supabase is configured."""
        return bool(self.url and self.service_key)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"{self.url}/rest/v1",
                headers={
                    "apikey": self.service_key,
                    "Authorization": f"Bearer {self.service_key}",
                    "Content-Type": "application/json",
                },
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        table: str,
        method: str = "GET",
        params: Optional[dict[str, str]] = None,
        body: Optional[dict] = None,
    ) -> Any:
        """Make a request to the Supabase REST API.

        Raises:
            PersistenceError: If Supabase is not configured, unreachable, or
                answers with an error status
        """
        if not self.is_configured:
            raise PersistenceError("Supabase not configured", table=table)

        client = await self._get_client()
        try:
            response = await client.request(
                method=method,
                url=f"/{table}",
                params=params,
                json=body,
                headers={"Prefer": "return=representation"},
            )
        except httpx.HTTPError as e:
            logger.error("Supabase request error", table=table, method=method, error=str(e))
            raise PersistenceError(f"Supabase unreachable: {e}", table=table) from e

        if not response.is_success:
            logger.error(
                "Supabase request failed",
                table=table,
                method=method,
                status=response.status_code,
                error=response.text,
            )
            raise PersistenceError(
                f"Supabase {method} {table} failed with HTTP {response.status_code}: {response.text}",
                table=table,
            )

        return response.json() if response.text else None

    @staticmethod
    def _eq_filters(filters: Optional[dict[str, Any]]) -> dict[str, str]:
        params = {}
        for key, value in (filters or {}).items():
            if isinstance(value, bool):
                value = str(value).lower()
            elif value is None:
                params[key] = "is.null"
                continue
            params[key] = f"eq.{value}"
        return params

    @staticmethod
    def _first(data: Any, table: str) -> dict[str, Any]:
        if isinstance(data, list):
            if not data:
                raise PersistenceError(f"Supabase returned no row for {table}", table=table)
            return data[0]
        if isinstance(data, dict):
            return data
        raise PersistenceError(f"Supabase returned an unexpected payload for {table}", table=table)

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        data = await self._request(table, method="POST", body=row)
        return self._first(data, table)

    async def update(self, table: str, row_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        data = await self._request(
            table,
            method="PATCH",
            params={"id": f"eq.{row_id}"},
            body=patch,
        )
        return self._first(data, table)

    async def select(
        self, table: str, filters: Optional[dict[str, Any]] = None
    ) -> list[dict[str, Any]]:
        params = {"select": "*", **self._eq_filters(filters)}
        data = await self._request(table, params=params)
        return data or []
