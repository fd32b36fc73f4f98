"""Couche service du cycle de vie des commandes.

Rôles:
- Créer une commande « pending » après réservation atomique du stock (tout-ou-rien).
- Appliquer les transitions de la machine à états (confirm, process, ship, deliver, cancel, payment_fail).
- Convertir ou libérer la réservation selon la transition.

Chaque transition est conditionnelle au statut courant: deux requêtes
concurrentes sur la même commande ne peuvent pas toutes deux réussir. Les transitions
qui déplacent du stock (confirm, cancel, libération) sont une seule fonction SQL.
"""
from typing import Any, Callable, Dict, Iterable, List, Optional
import logging

from marketplace.checkout import pricing
from marketplace.checkout.models import OrderTotals
from marketplace.errors import Conflict, InsufficientStock, NotFound, UpstreamError, ValidationFailed
from marketplace.orders import repository
from marketplace.orders.models import OrderLine, OrderStatus, allowed_sources, can_transition, target_status

logger = logging.getLogger(__name__)

_ACTION_LABELS = {
    "confirm": "confirm",
    "process": "process",
    "ship": "ship",
    "deliver": "deliver",
    "cancel": "cancel",
    "payment_fail": "mark payment failed for",
}


def _to_lines(items: Iterable[Any]) -> List[OrderLine]:
    lines: List[OrderLine] = []
    for it in items or []:
        if isinstance(it, OrderLine):
            lines.append(it)
        elif isinstance(it, dict):
            lines.append(OrderLine.from_dict(it))
        else:
            lines.append(OrderLine.from_dict(it.model_dump()))
    return lines


def _aggregate(lines: List[OrderLine]) -> List[Dict[str, Any]]:
    """Regroupe les quantités par produit (une ligne de réservation par produit)."""
    quantities: Dict[str, int] = {}
    for line in lines:
        quantities[line.product_id] = quantities.get(line.product_id, 0) + line.quantity
    return [{"product_id": pid, "quantity": qty} for pid, qty in quantities.items()]


def _default_totals(lines: List[OrderLine], shipping_region: Optional[str], coupon_code: Optional[str]) -> OrderTotals:
    subtotal = sum((line.price * line.quantity for line in lines), pricing.to_decimal(0))
    return OrderTotals.build(
        subtotal=subtotal,
        tax=pricing.calculate_tax(subtotal),
        shipping=pricing.calculate_shipping(lines, shipping_region),
        discount=pricing.calculate_discount(subtotal, coupon_code),
    )


def create_order(
    buyer_id: str,
    items: Iterable[Any],
    totals: Optional[OrderTotals] = None,
    coupon_code: Optional[str] = None,
    shipping_region: Optional[str] = None,
) -> Dict[str, Any]:
    """Crée une commande « pending » et réserve le stock.
    - Réservation atomique via repository.reserve_stock (aucune ligne réservée si une seule échoue).
    - Si l'insertion de la commande échoue, la réservation est relâchée (compensation).
    """
    buyer_id = (buyer_id or "").strip()
    if not buyer_id:
        raise ValidationFailed("Invalid user ID")
    lines = _to_lines(items)
    if not lines:
        raise ValidationFailed("Order must contain at least one item")
    for line in lines:
        if not line.product_id:
            raise ValidationFailed("Invalid product ID")
        if line.quantity <= 0:
            raise ValidationFailed(f"Invalid quantity for product {line.product_id}")

    reservation = _aggregate(lines)
    result = repository.reserve_stock(reservation)
    if not result.get("ok"):
        product_id = result.get("product_id") or "?"
        if result.get("reason") == "not_found":
            raise NotFound(f"Product {product_id} not found in inventory")
        raise InsufficientStock(product_id, int(result.get("available") or 0), int(result.get("requested") or 0))

    totals = (totals or _default_totals(lines, shipping_region, coupon_code)).check()
    order: Optional[Dict[str, Any]] = None
    try:
        order = repository.insert_order({
            "buyer_id": buyer_id,
            "status": OrderStatus.PENDING.value,
            "coupon_code": (coupon_code or "").strip().upper() or None,
            "shipping_region": shipping_region,
            "reservation_released": False,
            **totals.as_record(),
        })
        order["order_items"] = repository.insert_order_items([line.as_item_record(order["id"]) for line in lines])
    except Exception as e:
        logger.exception("Erreur create_order: compensation de la réservation")
        try:
            repository.release_stock(reservation)
        except Exception:
            logger.exception("Erreur release_stock pendant la compensation")
        if order and order.get("id"):
            try:
                repository.delete_order(order["id"])
            except Exception:
                logger.exception("Erreur delete_order pendant la compensation")
        raise UpstreamError("Unable to create order") from e

    logger.info("orders.create id=%s buyer=%s lines=%s total=%s", order.get("id"), buyer_id, len(lines), totals.total)
    return order


def _load(order_id: str) -> Dict[str, Any]:
    order = repository.get_order(order_id) if order_id else None
    if not order:
        raise NotFound("Order not found")
    pricing.ensure_total_invariant(order)
    return order


def _transition(order: Dict[str, Any], action: str) -> Dict[str, Any]:
    current = order.get("status")
    label = _ACTION_LABELS[action]
    if not can_transition(current, action):
        raise Conflict(f"Cannot {label} order with status {current}")
    updated = repository.update_order_status(
        order["id"],
        target_status(action).value,
        [s.value for s in allowed_sources(action)],
    )
    if not updated:
        # Perdu face à une requête concurrente: relire le statut réel
        fresh = repository.get_order(order["id"]) or {}
        raise Conflict(f"Cannot {label} order with status {fresh.get('status', current)}")
    logger.info("orders.%s id=%s %s -> %s", action, order["id"], current, updated.get("status"))
    return {**order, **updated}


def get_order(order_id: str, buyer_id: Optional[str] = None) -> Dict[str, Any]:
    order = _load(order_id)
    if buyer_id is not None and order.get("buyer_id") != buyer_id:
        raise NotFound("Order not found")
    return order


def get_order_history(buyer_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    orders = repository.list_orders(buyer_id, limit=limit)
    for order in orders:
        pricing.ensure_total_invariant(order)
    return orders


def _apply_stock_transition(order: Dict[str, Any], action: str, rpc: Callable[[str], Dict[str, Any]]) -> Dict[str, Any]:
    """
    Transition qui déplace du stock: statut et stock changent dans la même fonction SQL.
    Si l'appel échoue, rien n'a été appliqué et l'opération peut être rejouée.
    """
    current = order.get("status")
    label = _ACTION_LABELS[action]
    if not can_transition(current, action):
        raise Conflict(f"Cannot {label} order with status {current}")
    result = rpc(order["id"])
    if not result.get("ok"):
        if result.get("reason") == "not_found":
            raise NotFound("Order not found")
        raise Conflict(f"Cannot {label} order with status {result.get('status', current)}")
    status = result.get("status") or target_status(action).value
    logger.info("orders.%s id=%s %s -> %s", action, order["id"], current, status)
    updated = {**order, "status": status}
    if "reservation_released" in result:
        updated["reservation_released"] = result["reservation_released"]
    return updated


def confirm_order(order_id: str) -> Dict[str, Any]:
    """pending -> confirmed; la réservation devient une déduction définitive du stock."""
    return _apply_stock_transition(_load(order_id), "confirm", repository.confirm_order)


def cancel_order(order_id: str) -> Dict[str, Any]:
    """
    pending|confirmed -> cancelled.
    - Depuis pending: libère la réservation (plancher à zéro côté SQL).
    - Depuis confirmed: la réservation n'existe plus, les unités retournent au stock.
    """
    return _apply_stock_transition(_load(order_id), "cancel", repository.cancel_order)


def mark_payment_failed(order_id: str) -> Dict[str, Any]:
    """pending -> payment_failed. La réservation reste en place jusqu'à release_reservation."""
    return _transition(_load(order_id), "payment_fail")


def release_reservation(order_id: str) -> bool:
    """
    Libère explicitement la réservation d'une commande payment_failed.
    Idempotent: retourne False si la réservation a déjà été libérée.
    """
    order = _load(order_id)
    status = order.get("status")
    if status != OrderStatus.PAYMENT_FAILED.value:
        raise Conflict(f"Cannot release reservation for order with status {status}")
    result = repository.release_order_reservation(order["id"])
    if not result.get("ok"):
        if result.get("reason") == "not_found":
            raise NotFound("Order not found")
        raise Conflict(f"Cannot release reservation for order with status {result.get('status', status)}")
    released = bool(result.get("released"))
    if released:
        logger.info("orders.release id=%s", order["id"])
    return released


def start_processing(order_id: str) -> Dict[str, Any]:
    return _transition(_load(order_id), "process")


def ship_order(order_id: str) -> Dict[str, Any]:
    return _transition(_load(order_id), "ship")


def deliver_order(order_id: str) -> Dict[str, Any]:
    return _transition(_load(order_id), "deliver")
