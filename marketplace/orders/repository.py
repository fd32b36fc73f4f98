"""
Accès Supabase pour les commandes et le stock.

Le stock n'est jamais modifié par lecture-puis-écriture côté Python: chaque
mouvement passe par une fonction SQL atomique (voir supabase/migrations):
- reserve_stock: tout-ou-rien, gardé par `stock - reserved >= quantité`
- release_stock: reserved = greatest(0, reserved - q) (compensation de create_order)
- confirm_order, cancel_order, release_order_reservation: changement de statut et
  mouvement de stock dans la même transaction SQL (ligne de commande verrouillée)
Les autres transitions de statut sont des UPDATE conditionnels sur le statut courant.
"""
from typing import Any, Dict, List, Optional
import logging

from marketplace.infra.supabase_client import get_service_supabase
from marketplace.errors import UpstreamError

logger = logging.getLogger(__name__)

ORDER_COLUMNS = (
    "id, buyer_id, subtotal, tax, shipping, discount, total, status, coupon_code, "
    "shipping_region, reservation_released, created_at, "
    "order_items(id, product_id, seller_id, quantity, price_at_purchase)"
)


def _stock_payload(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{"product_id": str(it["product_id"]), "quantity": int(it["quantity"])} for it in items]


def _rpc(name: str, params: Dict[str, Any]) -> Any:
    try:
        res = get_service_supabase().rpc(name, params).execute()
    except Exception as e:
        logger.exception("Erreur RPC %s", name)
        raise UpstreamError(f"Stock operation {name} failed") from e
    return res.data


def reserve_stock(items: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Réserve le stock de toutes les lignes en une seule transaction.
    Retour: {"ok": True} ou {"ok": False, "reason": "insufficient"|"not_found",
             "product_id", "available", "requested"} (aucune réservation appliquée).
    """
    data = _rpc("reserve_stock", {"items": _stock_payload(items)})
    if isinstance(data, list):
        data = data[0] if data else {}
    return data or {"ok": False, "reason": "unknown"}


def release_stock(items: List[Dict[str, Any]]) -> None:
    _rpc("release_stock", {"items": _stock_payload(items)})


def _order_rpc(name: str, order_id: str) -> Dict[str, Any]:
    data = _rpc(name, {"p_order_id": order_id})
    if isinstance(data, list):
        data = data[0] if data else {}
    return data or {"ok": False, "reason": "unknown"}


def confirm_order(order_id: str) -> Dict[str, Any]:
    """
    pending -> confirmed et conversion de la réservation en déduction, en une transaction.
    Retour: {"ok": True, "status", "previous"} ou {"ok": False, "reason": "status"|"not_found", "status"}.
    """
    return _order_rpc("confirm_order", order_id)


def cancel_order(order_id: str) -> Dict[str, Any]:
    """pending|confirmed -> cancelled avec libération (pending) ou remise en stock (confirmed)."""
    return _order_rpc("cancel_order", order_id)


def release_order_reservation(order_id: str) -> Dict[str, Any]:
    """Libère la réservation d'une commande payment_failed; {"ok": True, "released": False} si déjà fait."""
    return _order_rpc("release_order_reservation", order_id)


def insert_order(row: Dict[str, Any]) -> Dict[str, Any]:
    res = get_service_supabase().table("orders").insert(row).execute()
    if not res.data:
        raise UpstreamError("Order insert returned no row")
    return res.data[0]


def insert_order_items(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    res = get_service_supabase().table("order_items").insert(rows).execute()
    return res.data or []


def delete_order(order_id: str) -> None:
    # Compensation: les order_items suivent par ON DELETE CASCADE
    get_service_supabase().table("orders").delete().eq("id", order_id).execute()


def get_order(order_id: str) -> Optional[Dict[str, Any]]:
    try:
        res = (
            get_service_supabase()
            .table("orders")
            .select(ORDER_COLUMNS)
            .eq("id", order_id)
            .limit(1)
            .execute()
        )
    except Exception as e:
        logger.exception("Erreur get_order")
        raise UpstreamError("Unable to load order") from e
    return res.data[0] if res.data else None


def list_orders(buyer_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    try:
        res = (
            get_service_supabase()
            .table("orders")
            .select(ORDER_COLUMNS)
            .eq("buyer_id", buyer_id)
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return res.data or []
    except Exception as e:
        logger.exception("Erreur list_orders")
        raise UpstreamError("Unable to load orders") from e


def update_order_status(order_id: str, new_status: str, from_statuses: List[str]) -> Optional[Dict[str, Any]]:
    """
    UPDATE conditionnel: ne s'applique que si le statut courant est dans `from_statuses`.
    Retourne la ligne mise à jour, ou None si une autre requête a changé le statut entre-temps.
    """
    res = (
        get_service_supabase()
        .table("orders")
        .update({"status": new_status})
        .eq("id", order_id)
        .in_("status", list(from_statuses))
        .execute()
    )
    return res.data[0] if res.data else None

