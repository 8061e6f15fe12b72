"""
Merchant catalog client.

Fetches a merchant's restaurant page through the catalog proxy and turns it
into MenuItem records. The payload is treated as opaque and stored as-is on
the merchant row; only the restaurant name and the menu cards are read.

Usage:
    client = CatalogClient(proxy_url=settings.catalog_proxy_url)
    payload = await client.fetch_merchant("https://gofood.co.id/jakarta/restaurant/...")
    items = parse_menu(payload, merchant_id="merchant_1")
"""
import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from ..core.errors import GroupOrderError
from ..core.rate_limiter import RateLimiter
from ..ordering.models import MenuItem

logger = logging.getLogger(__name__)

MERCHANT_URL_PATTERN = re.compile(
    r"^https://gofood\.co\.id/[^/]+/restaurant/[^/]+-[a-f0-9-]{36}$",
    re.IGNORECASE,
)


class CatalogError(GroupOrderError):
    """The catalog proxy could not return a merchant page."""
    pass


def is_valid_merchant_url(url: str) -> bool:
    """Check a merchant link looks like a GoFood restaurant page."""
    return bool(MERCHANT_URL_PATTERN.match((url or "").strip()))


def restaurant_name(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    """Name from data.page.restaurant_detail.name, if the payload has one."""
    if not payload or not payload.get("success"):
        return None
    try:
        name = payload["data"]["page"]["restaurant_detail"]["name"]
    except (KeyError, TypeError):
        return None
    return name or None


def parse_menu(payload: Optional[Dict[str, Any]], merchant_id: str) -> List[MenuItem]:
    """
    Flatten the payload's cards into menu items.

    Each card with `content.items` is one category, labelled by
    `content.title`. Inactive items and items without a price are skipped;
    an item listed under several cards is kept once.
    """
    if not payload:
        return []
    cards = ((payload.get("data") or {}).get("cards")) or []

    items: List[MenuItem] = []
    seen = set()
    for card in cards:
        content = (card or {}).get("content") or {}
        category = content.get("title") or None
        for raw in content.get("items") or []:
            if not isinstance(raw, dict) or raw.get("active") is False:
                continue
            item_id = raw.get("id")
            if not item_id or item_id in seen or raw.get("price") is None:
                continue
            try:
                price = int(raw["price"])
            except (TypeError, ValueError):
                logger.debug(f"Skipping item {item_id} with price {raw.get('price')!r}")
                continue
            seen.add(item_id)
            items.append(
                MenuItem(
                    id=str(item_id),
                    name=raw.get("name") or "",
                    price=price,
                    merchant_id=merchant_id,
                    description=raw.get("description") or None,
                    image=raw.get("image") or None,
                    category=category,
                )
            )
    return items


class CatalogClient:
    """Client for the catalog proxy's /get-restaurant endpoint."""

    def __init__(
        self,
        proxy_url: str,
        timeout: float = 30.0,
        requests_per_minute: int = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            proxy_url: Base URL of the catalog proxy.
            timeout: Per-request timeout in seconds.
            requests_per_minute: Pace of proxy calls.
            transport: Custom httpx transport (tests pass a MockTransport).
        """
        self.proxy_url = proxy_url.rstrip("/")
        self.timeout = timeout
        self.rate_limiter = RateLimiter(requests_per_minute)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.proxy_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def fetch_merchant(self, url: str) -> Dict[str, Any]:
        """
        Fetch the restaurant page for a merchant link.

        Raises:
            CatalogError: if the proxy is unreachable or answers with an error.
        """
        await self.rate_limiter.wait()
        client = await self._get_client()
        try:
            response = await client.get("/get-restaurant", params={"url": url})
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise CatalogError(
                f"Catalog proxy error: {e.response.status_code} {e.response.reason_phrase}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise CatalogError(f"Catalog proxy request failed: {e}") from e

        if not isinstance(payload, dict):
            raise CatalogError("Catalog proxy returned an unexpected document")
        logger.info(f"Fetched catalog for {url}")
        return payload

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = [
    "CatalogClient",
    "CatalogError",
    "is_valid_merchant_url",
    "parse_menu",
    "restaurant_name",
]
