# module marketplace.orders.models
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    PAYMENT_FAILED = "payment_failed"


# Arêtes autorisées: action -> (états de départ, état d'arrivée)
TRANSITIONS: Dict[str, tuple] = {
    "confirm": (frozenset({OrderStatus.PENDING}), OrderStatus.CONFIRMED),
    "process": (frozenset({OrderStatus.CONFIRMED}), OrderStatus.PROCESSING),
    "ship": (frozenset({OrderStatus.CONFIRMED, OrderStatus.PROCESSING}), OrderStatus.SHIPPED),
    "deliver": (frozenset({OrderStatus.SHIPPED}), OrderStatus.DELIVERED),
    "cancel": (frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED}), OrderStatus.CANCELLED),
    "payment_fail": (frozenset({OrderStatus.PENDING}), OrderStatus.PAYMENT_FAILED),
}

TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.PAYMENT_FAILED,
})


def allowed_sources(action: str) -> FrozenSet[OrderStatus]:
    return TRANSITIONS[action][0]


def target_status(action: str) -> OrderStatus:
    return TRANSITIONS[action][1]


def can_transition(current: str, action: str) -> bool:
    try:
        return OrderStatus(current) in allowed_sources(action)
    except ValueError:
        return False


@dataclass
class OrderLine:
    """Ligne de commande au prix catalogue (price_at_purchase)."""
    product_id: str
    quantity: int
    price: Decimal
    seller_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderLine":
        return cls(
            product_id=str(data.get("product_id") or ""),
            quantity=int(data.get("quantity") or 0),
            price=Decimal(str(data.get("price", data.get("price_at_purchase", data.get("unit_price"))) or 0)),
            seller_id=data.get("seller_id"),
        )

    def as_item_record(self, order_id: str) -> Dict[str, Any]:
        return {
            "order_id": order_id,
            "product_id": self.product_id,
            "seller_id": self.seller_id,
            "quantity": self.quantity,
            "price_at_purchase": float(self.price),
        }
