"""
Supabase PostgREST store.

Implements the Store interface over /rest/v1 with httpx. Equality filters
become `column=eq.value` query parameters; PostgREST error codes are mapped
onto the store error hierarchy so callers never see HTTP details.

Usage:
    store = SupabaseRestStore(url=settings.supabase_url, api_key=settings.supabase_anon_key)
    rows = await store.select("orders", {"session_id": sid}, order_by="created_at")
"""
import logging
from typing import Any, Dict, List, Optional, Union

import httpx

from ...store.base import (
    NotFoundError,
    Row,
    Store,
    StoreError,
    StoreTimeoutError,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)

# PostgREST: zero rows where exactly one was expected
NO_ROWS_CODE = "PGRST116"
# Postgres: foreign key violation (the session was deleted)
FOREIGN_KEY_VIOLATION = "23503"

NOT_FOUND_CODES = {NO_ROWS_CODE, FOREIGN_KEY_VIOLATION}


def encode_filters(filters: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Turn {"session_id": "abc"} into {"session_id": "eq.abc"}."""
    params = {}
    for column, value in (filters or {}).items():
        if value is None:
            params[column] = "is.null"
        elif isinstance(value, bool):
            params[column] = f"eq.{str(value).lower()}"
        else:
            params[column] = f"eq.{value}"
    return params


def error_from_response(response: httpx.Response) -> StoreError:
    """Build the store error matching a failed PostgREST response."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    code = body.get("code")
    message = body.get("message") or response.text or f"HTTP {response.status_code}"

    if response.status_code == 404 or code in NOT_FOUND_CODES:
        return NotFoundError(message, code=code)
    if response.status_code in (408, 504):
        return StoreTimeoutError(message, code=code)
    if response.status_code >= 500:
        return StoreUnavailableError(message, code=code)
    return StoreError(message, code=code)


class SupabaseRestStore(Store):
    """
    Store backed by a Supabase project's REST API.

    The anon key is sent both as `apikey` and as the bearer token, the way
    supabase-js does when no user session exists.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        schema: str = "public",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            url: Project URL, e.g. https://xyz.supabase.co
            api_key: Anon or service key.
            schema: Postgres schema exposed by PostgREST.
            timeout: Per-request timeout in seconds.
            transport: Custom httpx transport (tests pass a MockTransport).
        """
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.schema = schema
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept-Profile": self.schema,
            "Content-Profile": self.schema,
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"{self.url}/rest/v1",
                timeout=self.timeout,
                headers=self._headers(),
                transport=self._transport,
            )
        return self._client

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> httpx.Response:
        client = await self._get_client()
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = await client.request(
                method,
                f"/{table}",
                params=params,
                json=json,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            logger.warning(f"{method} {table} timed out")
            raise StoreTimeoutError(f"{method} {table} timed out") from e
        except httpx.TransportError as e:
            logger.warning(f"{method} {table} failed to connect: {e}")
            raise StoreUnavailableError(str(e) or type(e).__name__) from e

        if response.is_error:
            error = error_from_response(response)
            logger.error(f"{method} {table} failed: {response.status_code} {error}")
            raise error
        return response

    async def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        ascending: bool = True,
    ) -> List[Row]:
        params = {"select": "*", **encode_filters(filters)}
        if order_by:
            params["order"] = f"{order_by}.{'asc' if ascending else 'desc'}"
        response = await self._request("GET", table, params=params)
        return response.json()

    async def insert(self, table: str, rows: Union[Row, List[Row]]) -> None:
        await self._request("POST", table, json=rows, prefer="return=minimal")

    async def update(self, table: str, filters: Dict[str, Any], patch: Row) -> int:
        response = await self._request(
            "PATCH",
            table,
            params=encode_filters(filters),
            json=patch,
            prefer="return=representation",
        )
        return len(response.json() or [])

    async def delete(self, table: str, filters: Dict[str, Any]) -> None:
        if not filters:
            raise ValueError("Refusing to delete without filters")
        await self._request("DELETE", table, params=encode_filters(filters), prefer="return=minimal")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = ["SupabaseRestStore", "encode_filters", "error_from_response"]
