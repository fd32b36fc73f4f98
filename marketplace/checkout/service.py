"""Couche service du checkout.
Rôles:
- quote: aperçu des montants (résumé de commande) sans rien réserver.
- place_order: valide le panier, vérifie les prix, calcule les totaux au prix catalogue
  puis délègue la création (et la réservation) à orders.service.create_order.
"""
from typing import Any, Dict, List, Optional
import logging

from marketplace.checkout import pricing, repository, validation
from marketplace.checkout.models import OrderTotals
from marketplace.errors import CartValidationError
from marketplace.orders import service as orders_service
from marketplace.orders.models import OrderLine

logger = logging.getLogger(__name__)


def _prepare(items: List[Any], destination: Optional[str], coupon_code: Optional[str]):
    lines = [it if isinstance(it, dict) else it.model_dump() for it in (items or [])]
    ids = sorted({str(line.get("product_id")) for line in lines if line.get("product_id")})
    products = repository.fetch_products_by_ids(ids) if ids else {}

    checked = validation.validate_cart(lines, products)
    if not checked.valid:
        raise CartValidationError(checked.errors)

    prices = validation.verify_product_prices(lines, products)
    if not prices.valid:
        logger.warning("checkout.price_mismatch products=%s", [m.product_id for m in prices.mismatches])
        raise CartValidationError([m.message for m in prices.mismatches], message="Price verification failed")

    totals = pricing.compute_totals(lines, products, destination, coupon_code)
    return lines, products, totals


def _summary(totals: OrderTotals) -> Dict[str, float]:
    return totals.as_record()


def quote(items: List[Any], destination: Optional[str] = None, coupon_code: Optional[str] = None) -> Dict[str, Any]:
    _, _, totals = _prepare(items, destination, coupon_code)
    return {"totals": _summary(totals), "destination": destination, "coupon_code": coupon_code}


def place_order(
    buyer_id: str,
    items: List[Any],
    destination: Optional[str] = None,
    coupon_code: Optional[str] = None,
) -> Dict[str, Any]:
    lines, products, totals = _prepare(items, destination, coupon_code)
    # Prix et vendeur toujours repris du catalogue
    order_lines = [
        OrderLine(
            product_id=str(line["product_id"]),
            quantity=int(line["quantity"]),
            price=pricing.to_decimal(products[str(line["product_id"])].get("price")),
            seller_id=products[str(line["product_id"])].get("seller_id"),
        )
        for line in lines
    ]
    return orders_service.create_order(
        buyer_id,
        order_lines,
        totals=totals,
        coupon_code=coupon_code,
        shipping_region=destination,
    )
