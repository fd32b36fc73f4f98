import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from marketplace.errors import MarketplaceError, NotFound
from marketplace.orders import service as orders_service
from marketplace.utils.security import require_user

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/orders", tags=["Orders API"])


def _ensure_fulfilment_rights(order: Dict[str, Any], user: Dict[str, Any]) -> None:
    # Expédition/livraison: vendeur d'au moins une ligne, ou admin
    if user.get("role") == "admin":
        return
    sellers = {it.get("seller_id") for it in (order.get("order_items") or [])}
    if user.get("id") not in sellers:
        raise NotFound("Order not found")


def _run(label: str, fn, *args):
    try:
        return {"success": True, "data": fn(*args)}
    except (HTTPException, MarketplaceError):
        raise
    except Exception:
        logger.exception("Erreur %s", label)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("")
def list_my_orders(limit: int = 50, user: Dict[str, Any] = Depends(require_user)):
    """Historique des commandes de l'acheteur authentifié (plus récentes d'abord)."""
    return _run("list_my_orders", orders_service.get_order_history, user.get("id"), min(max(limit, 1), 200))


@router.get("/{order_id}")
def get_my_order(order_id: str, user: Dict[str, Any] = Depends(require_user)):
    return _run("get_my_order", orders_service.get_order, order_id, user.get("id"))


@router.post("/{order_id}/cancel")
def cancel_my_order(order_id: str, user: Dict[str, Any] = Depends(require_user)):
    """Annulation acheteur: autorisée depuis pending ou confirmed (409 sinon, statut courant dans le message)."""
    orders_service.get_order(order_id, user.get("id"))
    return _run("cancel_my_order", orders_service.cancel_order, order_id)


@router.post("/{order_id}/release")
def release_my_reservation(order_id: str, user: Dict[str, Any] = Depends(require_user)):
    """Libère le stock d'une commande payment_failed (idempotent)."""
    orders_service.get_order(order_id, user.get("id"))
    released = _run("release_my_reservation", orders_service.release_reservation, order_id)
    return {"success": True, "data": {"order_id": order_id, "released": released["data"]}}


@router.post("/{order_id}/process")
def process_order(order_id: str, user: Dict[str, Any] = Depends(require_user)):
    _ensure_fulfilment_rights(orders_service.get_order(order_id), user)
    return _run("process_order", orders_service.start_processing, order_id)


@router.post("/{order_id}/ship")
def ship_order(order_id: str, user: Dict[str, Any] = Depends(require_user)):
    _ensure_fulfilment_rights(orders_service.get_order(order_id), user)
    return _run("ship_order", orders_service.ship_order, order_id)


@router.post("/{order_id}/deliver")
def deliver_order(order_id: str, user: Dict[str, Any] = Depends(require_user)):
    _ensure_fulfilment_rights(orders_service.get_order(order_id), user)
    return _run("deliver_order", orders_service.deliver_order, order_id)
