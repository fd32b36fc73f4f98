"""
Calculs de prix purs (pas de DB, pas de réseau).

Règles d'arrondi (Decimal, ROUND_HALF_UP):
- TVA et remise: au centime (0.01)
- Livraison: à l'unité monétaire entière
Les montants calculés ici utilisent toujours le prix catalogue, jamais celui du client.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Optional

from marketplace import config
from marketplace.checkout.models import OrderTotals
from marketplace.errors import NotFound

CENT = Decimal("0.01")
UNIT = Decimal("1")
LINE_SURCHARGE = Decimal("0.1")


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value if value is not None else 0))


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _line(item: Any) -> Dict[str, Any]:
    # Accepte indifféremment CartItem (pydantic) ou dict
    if isinstance(item, dict):
        return item
    return item.model_dump()


def calculate_subtotal(items: Iterable[Any], products: Dict[str, Dict[str, Any]]) -> Decimal:
    """Σ(prix catalogue × quantité)."""
    subtotal = Decimal("0")
    for item in items:
        line = _line(item)
        product = products.get(str(line.get("product_id")))
        if not product:
            raise NotFound(f"Product {line.get('product_id')} not found")
        subtotal += to_decimal(product.get("price")) * int(line.get("quantity") or 0)
    return subtotal


def calculate_tax(subtotal: Decimal, rate: Optional[Decimal] = None) -> Decimal:
    rate = config.TAX_RATE if rate is None else to_decimal(rate)
    return round_money(to_decimal(subtotal) * rate)


def region_multiplier(destination: Optional[str]) -> Decimal:
    """Multiplicateur de la région (insensible à la casse), 1.0 pour une région inconnue."""
    wanted = (destination or "").strip().lower()
    for region, multiplier in config.SHIPPING_REGION_MULTIPLIERS.items():
        if region.strip().lower() == wanted:
            return to_decimal(multiplier)
    return Decimal("1")


def calculate_shipping(items: Iterable[Any], destination: Optional[str] = None) -> Decimal:
    """base × multiplicateur de région × (1 + nombre_de_lignes × 0.1), arrondi à l'unité."""
    line_count = len(list(items))
    fee = config.SHIPPING_BASE_FEE * region_multiplier(destination) * (1 + line_count * LINE_SURCHARGE)
    return fee.quantize(UNIT, rounding=ROUND_HALF_UP)


def coupon_rate(coupon_code: Optional[str]) -> Decimal:
    code = (coupon_code or "").strip().upper()
    if not code:
        return Decimal("0")
    for known, rate in config.COUPON_RATES.items():
        if known.upper() == code:
            return to_decimal(rate)
    return Decimal("0")


def calculate_discount(subtotal: Decimal, coupon_code: Optional[str] = None) -> Decimal:
    # Un coupon inconnu donne 0, jamais une erreur
    return round_money(to_decimal(subtotal) * coupon_rate(coupon_code))


def compute_totals(
    items: Iterable[Any],
    products: Dict[str, Dict[str, Any]],
    destination: Optional[str] = None,
    coupon_code: Optional[str] = None,
) -> OrderTotals:
    items = list(items)
    subtotal = calculate_subtotal(items, products)
    totals = OrderTotals.build(
        subtotal=subtotal,
        tax=calculate_tax(subtotal),
        shipping=calculate_shipping(items, destination),
        discount=calculate_discount(subtotal, coupon_code),
    )
    return totals.check()


def ensure_total_invariant(order: Dict[str, Any]) -> OrderTotals:
    """Vérifie total = subtotal + tax + shipping - discount sur les champs stockés de la commande."""
    return OrderTotals.from_record(order).check()
