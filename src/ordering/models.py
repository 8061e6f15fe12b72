"""
Domain models for group ordering sessions.

Each model maps to one store table through from_row/to_row. Rows use the
store's snake_case column names; models use the names the UI works with.
"""
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

SESSIONS_TABLE = "sessions"
MERCHANTS_TABLE = "merchants"
ORDERS_TABLE = "orders"
CHAT_MESSAGES_TABLE = "chat_messages"

MENTION_PATTERN = re.compile(r"@(\w+)")


def generate_id() -> str:
    """Client-side identifier, also used as the idempotency key."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse a store timestamp (ISO 8601, possibly with a trailing Z)."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value:
        return utcnow()
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class MenuItem:
    """An item from a merchant's catalog. Never edited by participants."""
    id: str
    name: str
    price: int
    merchant_id: str
    description: Optional[str] = None
    image: Optional[str] = None
    category: Optional[str] = None


@dataclass
class Merchant:
    """A merchant attached to a session, with its cached catalog payload."""
    id: str
    name: str
    link: str
    merchant_data: Optional[Dict[str, Any]] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Merchant":
        return cls(
            id=row["merchant_id"],
            name=row.get("name") or "",
            link=row.get("link") or "",
            merchant_data=row.get("merchant_data"),
        )

    def to_row(self, session_id: str) -> Dict[str, Any]:
        row = {
            "session_id": session_id,
            "merchant_id": self.id,
            "name": self.name,
            "link": self.link,
        }
        if self.merchant_data is not None:
            row["merchant_data"] = self.merchant_data
        return row


@dataclass
class Session:
    """An ordering session created by a host."""
    id: str
    name: str
    merchants: List[Merchant] = field(default_factory=list)

    def merchant(self, merchant_id: str) -> Optional[Merchant]:
        return next((m for m in self.merchants if m.id == merchant_id), None)

    @classmethod
    def from_row(cls, row: Dict[str, Any], merchants: Iterable[Merchant] = ()) -> "Session":
        return cls(
            id=row["session_id"],
            name=row.get("session_name") or "",
            merchants=list(merchants),
        )

    def to_row(self) -> Dict[str, Any]:
        return {"session_id": self.id, "session_name": self.name}


@dataclass(frozen=True)
class OrderItem:
    """A menu item and how many of it were ordered."""
    menu_item: MenuItem
    quantity: int

    @property
    def subtotal(self) -> int:
        return self.menu_item.price * self.quantity

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "OrderItem":
        return cls(
            menu_item=MenuItem(
                id=row["menu_item_id"],
                name=row["menu_item_name"],
                price=int(row["menu_item_price"]),
                merchant_id=row.get("merchant_id") or "",
                description=row.get("menu_item_description"),
            ),
            quantity=int(row["quantity"]),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "menu_item_id": self.menu_item.id,
            "menu_item_name": self.menu_item.name,
            "menu_item_price": self.menu_item.price,
            "menu_item_description": self.menu_item.description,
            "merchant_id": self.menu_item.merchant_id,
            "quantity": self.quantity,
        }


def calculate_order_total(items: Iterable[OrderItem]) -> int:
    """Sum of price x quantity over all items."""
    return sum(item.subtotal for item in items)


@dataclass(frozen=True)
class Order:
    """
    A participant's order within a session.

    Attributes:
        id: Client-generated order id.
        customer_name: Display name the order is placed under.
        items: Ordered (menu item, quantity) pairs.
        total: Sum of item subtotals at the last write.
        created_at: Store creation timestamp.
        notes: Optional free-text note.
    """
    id: str
    customer_name: str
    items: tuple
    total: int
    created_at: datetime
    notes: Optional[str] = None

    @classmethod
    def create(
        cls,
        customer_name: str,
        items: Iterable[OrderItem],
        notes: Optional[str] = None,
        order_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> "Order":
        """Build an order whose total is computed from its items."""
        items = tuple(items)
        return cls(
            id=order_id or generate_id(),
            customer_name=customer_name,
            items=items,
            total=calculate_order_total(items),
            created_at=created_at or utcnow(),
            notes=notes,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Order":
        return cls(
            id=row["order_id"],
            customer_name=row["customer_name"],
            items=tuple(OrderItem.from_row(i) for i in (row.get("items") or [])),
            total=int(row.get("total") or 0),
            created_at=parse_timestamp(row.get("created_at")),
            notes=row.get("notes"),
        )

    def to_row(self, session_id: str) -> Dict[str, Any]:
        return {
            "order_id": self.id,
            "session_id": session_id,
            "customer_name": self.customer_name,
            "notes": self.notes,
            "total": self.total,
            "items": [item.to_row() for item in self.items],
        }


@dataclass(frozen=True)
class ChatMessage:
    """
    A chat message. The id doubles as the idempotency key.

    ``optimistic`` only exists on the client: it is True from local creation
    until the store acknowledges the write or echoes the row back.
    """
    id: str
    sender_name: str
    body: str
    created_at: datetime
    mentions: tuple = ()
    optimistic: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ChatMessage":
        return cls(
            id=row["message_id"],
            sender_name=row["sender_name"],
            body=row["message"],
            created_at=parse_timestamp(row.get("created_at")),
            mentions=tuple(row.get("mentions") or ()),
        )

    def to_row(self, session_id: str) -> Dict[str, Any]:
        return {
            "message_id": self.id,
            "session_id": session_id,
            "sender_name": self.sender_name,
            "message": self.body,
            "mentions": list(self.mentions) or None,
        }


@dataclass(frozen=True)
class TypingSignal:
    """Ephemeral typing indicator. Never persisted."""
    sender_name: str
    typing: bool = True
    timestamp: float = 0.0

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TypingSignal":
        return cls(
            sender_name=str(payload["sender_name"]),
            typing=bool(payload.get("typing", True)),
            timestamp=float(payload.get("timestamp") or 0.0),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "sender_name": self.sender_name,
            "typing": self.typing,
            "timestamp": self.timestamp,
        }


def extract_mentions(text: str) -> List[str]:
    """Return the names mentioned as @name, in order, without duplicates."""
    seen: List[str] = []
    for name in MENTION_PATTERN.findall(text):
        if name not in seen:
            seen.append(name)
    return seen


def group_orders_by_merchant(
    orders: Iterable[Order],
    merchants: Iterable[Merchant],
) -> Dict[str, List[Order]]:
    """
    Split orders per merchant name for the overview page.

    An order spanning several merchants appears once under each, carrying
    only the items from that merchant.
    """
    names = {m.id: m.name for m in merchants}
    grouped: Dict[str, Dict[str, List[OrderItem]]] = {}
    by_id: Dict[str, Order] = {}

    for order in orders:
        by_id[order.id] = order
        for item in order.items:
            merchant_name = names.get(item.menu_item.merchant_id, "Unknown Merchant")
            grouped.setdefault(merchant_name, {}).setdefault(order.id, []).append(item)

    result: Dict[str, List[Order]] = {}
    for merchant_name, per_order in grouped.items():
        result[merchant_name] = [
            Order(
                id=order_id,
                customer_name=by_id[order_id].customer_name,
                items=tuple(items),
                total=calculate_order_total(items),
                created_at=by_id[order_id].created_at,
                notes=by_id[order_id].notes,
            )
            for order_id, items in per_order.items()
        ]
    return result


__all__ = [
    "SESSIONS_TABLE",
    "MERCHANTS_TABLE",
    "ORDERS_TABLE",
    "CHAT_MESSAGES_TABLE",
    "MenuItem",
    "Merchant",
    "Session",
    "OrderItem",
    "Order",
    "ChatMessage",
    "TypingSignal",
    "calculate_order_total",
    "extract_mentions",
    "generate_id",
    "group_orders_by_merchant",
    "parse_timestamp",
    "utcnow",
]
