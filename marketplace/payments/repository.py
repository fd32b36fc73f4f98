from typing import Any, Dict, Optional
import logging

from postgrest.exceptions import APIError

from marketplace.infra.supabase_client import get_service_supabase
from marketplace.errors import Conflict, UpstreamError

logger = logging.getLogger(__name__)

TRANSACTION_COLUMNS = (
    "id, user_id, order_id, subscription_id, provider, amount, currency, network, phone_number, "
    "email, reference, gateway_reference, status, description, error_message, checkout_url"
)
UNIQUE_VIOLATION = "23505"


def _pg_code(e: APIError) -> Optional[str]:
    code = getattr(e, "code", None)
    if code is None and e.args and isinstance(e.args[0], dict):
        code = e.args[0].get("code")
    return code


def insert_transaction(row: Dict[str, Any]) -> Dict[str, Any]:
    """
    Enregistre la transaction (clé d'idempotence: reference, contrainte UNIQUE).
    Ligne d'ancrage que le webhook retrouvera plus tard.
    - référence déjà utilisée -> Conflict (409): rejouer la même référence ne peut pas réussir
    """
    try:
        res = get_service_supabase().table("payment_transactions").insert(row).execute()
    except APIError as e:
        if _pg_code(e) == UNIQUE_VIOLATION:
            logger.warning("payments.duplicate_reference reference=%s", row.get("reference"))
            raise Conflict(f"Payment reference {row.get('reference')} is already used") from e
        logger.exception("Erreur insert_transaction reference=%s", row.get("reference"))
        raise UpstreamError("Unable to record payment transaction") from e
    except Exception as e:
        logger.exception("Erreur insert_transaction reference=%s", row.get("reference"))
        raise UpstreamError("Unable to record payment transaction") from e
    return res.data[0] if res.data else row


def get_transaction_by_reference(reference: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    try:
        query = (
            get_service_supabase()
            .table("payment_transactions")
            .select(TRANSACTION_COLUMNS)
            .eq("reference", reference)
        )
        if user_id:
            query = query.eq("user_id", user_id)
        res = query.limit(1).execute()
    except Exception as e:
        logger.exception("Erreur get_transaction_by_reference")
        raise UpstreamError("Unable to load payment transaction") from e
    return res.data[0] if res.data else None


def update_transaction(reference: str, fields: Dict[str, Any], only_if_status: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Complète la transaction (gateway_reference, checkout_url, erreur).
    - only_if_status: n'applique la mise à jour que si le statut courant correspond
      (évite d'écraser un statut déjà posé par un webhook arrivé entre-temps).
    """
    query = (
        get_service_supabase()
        .table("payment_transactions")
        .update(fields)
        .eq("reference", reference)
    )
    if only_if_status:
        query = query.eq("status", only_if_status)
    res = query.execute()
    return res.data[0] if res.data else None
