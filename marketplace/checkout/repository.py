from typing import Any, Dict, List
import logging

from marketplace.infra.supabase_client import get_service_supabase
from marketplace.errors import UpstreamError

logger = logging.getLogger(__name__)

PRODUCT_COLUMNS = "id, name, price, stock, reserved, seller_id, is_active"


def fetch_products_by_ids(ids: List[str]) -> Dict[str, Dict[str, Any]]:
    """
    Charge les produits du catalogue (source de vérité des prix et du stock).
    Retour: {product_id: product}
    """
    if not ids:
        return {}
    try:
        res = (
            get_service_supabase()
            .table("products")
            .select(PRODUCT_COLUMNS)
            .in_("id", list(ids))
            .execute()
        )
    except Exception as e:
        logger.exception("Erreur fetch_products_by_ids")
        raise UpstreamError("Unable to load products") from e
    return {str(p["id"]): p for p in (res.data or [])}
