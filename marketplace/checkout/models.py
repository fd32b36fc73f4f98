# module marketplace.checkout.models
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CartItem(BaseModel):
    """
    Ligne de panier transmise par le client.
    - `price` (alias de unit_price) est le prix vu par le client: il n'est jamais utilisé
      pour calculer le total, uniquement comparé au prix catalogue.
    """
    model_config = ConfigDict(populate_by_name=True)

    product_id: str
    quantity: int
    unit_price: Decimal = Field(alias="price")
    seller_id: Optional[str] = None


class CheckoutRequest(BaseModel):
    items: List[CartItem] = Field(default_factory=list)
    destination: Optional[str] = None
    coupon_code: Optional[str] = None


@dataclass
class CartValidation:
    valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass
class PriceMismatch:
    product_id: str
    name: str
    client_price: Decimal
    server_price: Decimal

    @property
    def message(self) -> str:
        return f"Price mismatch for {self.name}: Item price {self.client_price} != Server price {self.server_price}"


@dataclass
class PriceVerification:
    valid: bool
    mismatches: List[PriceMismatch] = field(default_factory=list)


@dataclass
class OrderTotals:
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal

    @classmethod
    def build(cls, subtotal: Decimal, tax: Decimal, shipping: Decimal, discount: Decimal) -> "OrderTotals":
        return cls(subtotal, tax, shipping, discount, subtotal + tax + shipping - discount)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "OrderTotals":
        """Relit les montants tels qu'ils sont stockés sur la commande (pas de recalcul depuis le panier)."""
        def _d(key: str) -> Decimal:
            return Decimal(str(record.get(key) or 0))
        return cls(_d("subtotal"), _d("tax"), _d("shipping"), _d("discount"), _d("total"))

    def is_consistent(self) -> bool:
        return self.total == self.subtotal + self.tax + self.shipping - self.discount

    def check(self) -> "OrderTotals":
        if not self.is_consistent():
            from marketplace.errors import MarketplaceError
            raise MarketplaceError(
                f"Order totals do not reconcile: {self.subtotal} + {self.tax} + {self.shipping} - {self.discount} != {self.total}",
                status_code=500,
                code="totals_mismatch",
            )
        return self

    def as_record(self) -> Dict[str, float]:
        return {
            "subtotal": float(self.subtotal),
            "tax": float(self.tax),
            "shipping": float(self.shipping),
            "discount": float(self.discount),
            "total": float(self.total),
        }
