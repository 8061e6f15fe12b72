"""
Ordering session lifecycle: create a session with its merchants, load it back,
refresh a merchant's catalog.
"""
import logging
from typing import Iterable, List, Optional

from ..core.errors import SessionNotFoundError
from ..integrations.catalog import CatalogClient, CatalogError, is_valid_merchant_url, parse_menu, restaurant_name
from ..store.base import Store
from .models import MERCHANTS_TABLE, SESSIONS_TABLE, MenuItem, Merchant, Session, generate_id

logger = logging.getLogger(__name__)

DEFAULT_SESSION_NAME = "Group Order"


def merchant_position(merchant_id: str) -> tuple:
    """Sort key for merchant ids; "merchant_10" comes after "merchant_9"."""
    _, _, suffix = merchant_id.rpartition("_")
    if suffix.isdigit():
        return (0, int(suffix), merchant_id)
    return (1, 0, merchant_id)


class SessionService:
    """
    Creates and loads ordering sessions.

    Merchants are inserted with placeholder names ("Merchant 1", ...) and
    renamed once their catalog has been fetched. A merchant whose catalog
    cannot be fetched keeps its placeholder; the session is still created.
    """

    def __init__(
        self,
        store: Store,
        catalog: Optional[CatalogClient] = None,
        default_name: Optional[str] = None,
    ):
        self.store = store
        self.catalog = catalog
        self.default_name = default_name or DEFAULT_SESSION_NAME

    async def create_session(
        self,
        name: Optional[str],
        merchant_links: Iterable[str],
        session_id: Optional[str] = None,
        validate_links: bool = True,
    ) -> Session:
        """
        Create a session and its merchants, then fetch each merchant's catalog.

        Raises:
            ValueError: no merchant links, or a link is not a merchant page.
        """
        links = [link.strip() for link in merchant_links if link and link.strip()]
        if not links:
            raise ValueError("A session needs at least one merchant link")
        if validate_links:
            invalid = [link for link in links if not is_valid_merchant_url(link)]
            if invalid:
                raise ValueError(f"Invalid merchant link(s): {', '.join(invalid)}")

        session = Session(
            id=session_id or generate_id()[:12],
            name=(name or "").strip() or self.default_name,
            merchants=[
                Merchant(id=f"merchant_{index + 1}", name=f"Merchant {index + 1}", link=link)
                for index, link in enumerate(links)
            ],
        )

        await self.store.insert(SESSIONS_TABLE, session.to_row())
        await self.store.insert(MERCHANTS_TABLE, [m.to_row(session.id) for m in session.merchants])
        logger.info(f"Created session {session.id} with {len(session.merchants)} merchant(s)")

        if self.catalog is not None:
            refreshed = []
            for merchant in session.merchants:
                try:
                    refreshed.append(await self.refresh_merchant(session.id, merchant))
                except CatalogError as e:
                    logger.error(f"Catalog fetch failed for {merchant.id}: {e}")
                    refreshed.append(merchant)
            session.merchants = refreshed

        return session

    async def load_session(self, session_id: str) -> Session:
        """
        Load a session and its merchants.

        Raises:
            SessionNotFoundError: if no such session exists.
        """
        rows = await self.store.select(SESSIONS_TABLE, {"session_id": session_id})
        if not rows:
            raise SessionNotFoundError(session_id)

        merchant_rows = await self.store.select(MERCHANTS_TABLE, {"session_id": session_id})
        merchants = sorted(
            (Merchant.from_row(r) for r in merchant_rows),
            key=lambda m: merchant_position(m.id),
        )
        return Session.from_row(rows[0], merchants)

    async def refresh_merchant(self, session_id: str, merchant: Merchant) -> Merchant:
        """
        Fetch a merchant's catalog and store it with the restaurant name.

        Raises:
            CatalogError: if the catalog could not be fetched.
        """
        if self.catalog is None:
            raise CatalogError("No catalog client configured")

        payload = await self.catalog.fetch_merchant(merchant.link)
        name = restaurant_name(payload) or merchant.name
        await self.store.update(
            MERCHANTS_TABLE,
            {"session_id": session_id, "merchant_id": merchant.id},
            {"merchant_data": payload, "name": name},
        )
        logger.info(f"Merchant {merchant.id} of {session_id} is {name}")
        return Merchant(id=merchant.id, name=name, link=merchant.link, merchant_data=payload)

    @staticmethod
    def menu(session: Session) -> List[MenuItem]:
        """Every menu item of every merchant in the session."""
        items: List[MenuItem] = []
        for merchant in session.merchants:
            items.extend(parse_menu(merchant.merchant_data, merchant.id))
        return items


__all__ = ["SessionService", "DEFAULT_SESSION_NAME"]
