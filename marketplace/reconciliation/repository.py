"""
Accès Supabase pour la réconciliation des paiements.

- transition_transaction: UPDATE conditionnel sur les statuts de départ autorisés
  (une seule livraison concurrente gagne, un statut terminal ne régresse pas)
- insert_earnings: upsert sur order_item_id en ignorant les doublons
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from marketplace.infra.supabase_client import get_service_supabase
from marketplace.payments.models import transition_sources

logger = logging.getLogger(__name__)


def transition_transaction(reference: str, new_status: str, fields: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """
    Met à jour le statut seulement depuis un statut de départ autorisé (TRANSITION_SOURCES):
    jamais de retour d'un statut terminal vers pending/processing, jamais deux fois le même.
    Retourne la ligne si cette requête a gagné, sinon None.
    """
    sources = transition_sources(new_status)
    if not sources:
        return None
    res = (
        get_service_supabase()
        .table("payment_transactions")
        .update({"status": new_status, **(fields or {})})
        .eq("reference", reference)
        .in_("status", sources)
        .execute()
    )
    return res.data[0] if res.data else None


def fetch_order_items(order_id: str) -> List[Dict[str, Any]]:
    res = (
        get_service_supabase()
        .table("order_items")
        .select("id, seller_id, price_at_purchase, quantity")
        .eq("order_id", order_id)
        .execute()
    )
    return res.data or []


def get_seller_commission_rate(seller_id: str) -> Optional[Decimal]:
    """Taux de commission du plan du vendeur (fonction SQL); None si indisponible."""
    res = get_service_supabase().rpc("get_seller_commission_rate", {"p_seller_id": seller_id}).execute()
    data = res.data
    if isinstance(data, list):
        data = data[0] if data else None
    if isinstance(data, (int, float, str)) and not isinstance(data, bool):
        return Decimal(str(data))
    return None


def insert_earnings(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not rows:
        return []
    res = (
        get_service_supabase()
        .table("seller_earnings")
        .upsert(rows, on_conflict="order_item_id", ignore_duplicates=True)
        .execute()
    )
    return res.data or []


def activate_subscription(subscription_id: str, expires_at: datetime, payment_reference: Optional[str]) -> bool:
    res = (
        get_service_supabase()
        .table("seller_subscriptions")
        .update({
            "status": "active",
            "expires_at": expires_at.isoformat(),
            "payment_reference": payment_reference,
        })
        .eq("id", subscription_id)
        .execute()
    )
    return bool(res.data)
