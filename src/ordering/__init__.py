"""Group ordering domain models. The session service lives in src.ordering.sessions."""
from .models import (
    ChatMessage,
    MenuItem,
    Merchant,
    Order,
    OrderItem,
    Session,
    TypingSignal,
    calculate_order_total,
    extract_mentions,
    group_orders_by_merchant,
)

__all__ = [
    "ChatMessage",
    "MenuItem",
    "Merchant",
    "Order",
    "OrderItem",
    "Session",
    "TypingSignal",
    "calculate_order_total",
    "extract_mentions",
    "group_orders_by_merchant",
]
