"""
Grand livre des gains vendeurs.

Une ligne seller_earnings par order_item, créée uniquement quand le paiement de la
commande passe à `completed`. L'upsert sur order_item_id ignore les doublons.
"""
from decimal import Decimal
from typing import Any, Dict, List
import logging

from marketplace import config
from marketplace.checkout.pricing import round_money, to_decimal
from marketplace.reconciliation import repository

logger = logging.getLogger(__name__)


def commission_rate_for(seller_id: str) -> Decimal:
    """Taux du plan du vendeur, ou taux par défaut si la recherche échoue."""
    try:
        rate = repository.get_seller_commission_rate(seller_id)
    except Exception:
        logger.warning("earnings.commission_lookup_failed seller=%s", seller_id)
        rate = None
    return config.DEFAULT_COMMISSION_RATE if rate is None else rate


def build_earning(item: Dict[str, Any], order_id: str, rate: Decimal) -> Dict[str, Any]:
    amount = to_decimal(item.get("price_at_purchase")) * int(item.get("quantity") or 0)
    platform_fee = round_money(amount * rate)
    return {
        "seller_id": item.get("seller_id"),
        "order_item_id": item.get("id"),
        "order_id": order_id,
        "amount": float(amount),
        "platform_fee": float(platform_fee),
        "net_amount": float(amount - platform_fee),
        "status": "completed",
    }


def record_order_earnings(order_id: str) -> List[Dict[str, Any]]:
    items = repository.fetch_order_items(order_id)
    rates: Dict[str, Decimal] = {}
    rows = []
    for item in items:
        seller_id = item.get("seller_id")
        if seller_id not in rates:
            rates[seller_id] = commission_rate_for(seller_id)
        rows.append(build_earning(item, order_id, rates[seller_id]))
    inserted = repository.insert_earnings(rows)
    logger.info("earnings.recorded order=%s items=%s inserted=%s", order_id, len(rows), len(inserted))
    return inserted
