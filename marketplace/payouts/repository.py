"""
Accès Supabase pour les retraits vendeurs.

- get_seller_balance / request_withdrawal: fonctions SQL (voir supabase/migrations);
  request_withdrawal contrôle le solde et insère sous verrou consultatif par vendeur
- transition_withdrawal: UPDATE conditionnel sur les statuts de départ autorisés
"""
from typing import Any, Dict, List, Optional
import logging
import uuid

from marketplace.infra.supabase_client import get_service_supabase
from marketplace.errors import UpstreamError
from marketplace.payouts.models import withdrawal_sources

logger = logging.getLogger(__name__)

WITHDRAWAL_COLUMNS = (
    "id, seller_id, amount, fee, net_amount, payment_method, phone_number, status, "
    "provider_reference, error_message, processed_at, created_at"
)


def _first(data: Any) -> Any:
    if isinstance(data, list):
        return data[0] if data else None
    return data


def get_seller_balance(seller_id: str) -> Optional[Dict[str, Any]]:
    try:
        res = get_service_supabase().rpc("get_seller_balance", {"p_seller_id": seller_id}).execute()
    except Exception as e:
        logger.exception("Erreur get_seller_balance seller=%s", seller_id)
        raise UpstreamError("Failed to check balance") from e
    return _first(res.data)


def request_withdrawal(row: Dict[str, Any]) -> Dict[str, Any]:
    """
    Contrôle du solde et création de la demande (statut pending) en une transaction.
    Retour: {"ok": True, "withdrawal": {...}} ou {"ok": False, "reason": "insufficient_balance", "available_balance"}.
    """
    params = {
        "p_seller_id": row["seller_id"],
        "p_amount": str(row["amount"]),
        "p_fee": str(row["fee"]),
        "p_net_amount": str(row["net_amount"]),
        "p_payment_method": row["payment_method"],
        "p_phone_number": row["phone_number"],
    }
    try:
        res = get_service_supabase().rpc("request_withdrawal", params).execute()
    except Exception as e:
        logger.exception("Erreur request_withdrawal seller=%s", row.get("seller_id"))
        raise UpstreamError("Failed to create withdrawal request") from e
    return _first(res.data) or {"ok": False, "reason": "unknown"}


def update_withdrawal(withdrawal_id: str, fields: Dict[str, Any], only_if_status: Optional[str] = None) -> Optional[Dict[str, Any]]:
    query = (
        get_service_supabase()
        .table("withdrawal_requests")
        .update(fields)
        .eq("id", withdrawal_id)
    )
    if only_if_status:
        query = query.eq("status", only_if_status)
    res = query.execute()
    return res.data[0] if res.data else None


def transition_withdrawal(withdrawal_id: str, new_status: str, fields: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """Applique le statut seulement depuis un statut de départ autorisé; None si une autre livraison a gagné."""
    sources = withdrawal_sources(new_status)
    if not sources:
        return None
    res = (
        get_service_supabase()
        .table("withdrawal_requests")
        .update({"status": new_status, **(fields or {})})
        .eq("id", withdrawal_id)
        .in_("status", sources)
        .execute()
    )
    return res.data[0] if res.data else None


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def find_withdrawal(reference: str) -> Optional[Dict[str, Any]]:
    """Référence du fournisseur d'abord, puis identifiant interne (référence envoyée au décaissement)."""
    try:
        res = (
            get_service_supabase()
            .table("withdrawal_requests")
            .select(WITHDRAWAL_COLUMNS)
            .eq("provider_reference", reference)
            .limit(1)
            .execute()
        )
        if res.data:
            return res.data[0]
        if not _is_uuid(reference):
            return None
        res = (
            get_service_supabase()
            .table("withdrawal_requests")
            .select(WITHDRAWAL_COLUMNS)
            .eq("id", reference)
            .limit(1)
            .execute()
        )
    except Exception as e:
        logger.exception("Erreur find_withdrawal reference=%s", reference)
        raise UpstreamError("Unable to load withdrawal request") from e
    return res.data[0] if res.data else None


def list_withdrawals(seller_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    try:
        res = (
            get_service_supabase()
            .table("withdrawal_requests")
            .select(WITHDRAWAL_COLUMNS)
            .eq("seller_id", seller_id)
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
    except Exception as e:
        logger.exception("Erreur list_withdrawals")
        raise UpstreamError("Unable to load withdrawal requests") from e
    return res.data or []
