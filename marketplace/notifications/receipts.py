"""Déclenchement de l'email de reçu (fonction Supabase payment-receipt-email)."""
from typing import Optional
import logging

import httpx

from marketplace import config
from marketplace.notifications.edge import call_function

logger = logging.getLogger(__name__)


def send_payment_receipt(transaction_id: Optional[str], user_id: Optional[str], client: Optional[httpx.Client] = None) -> bool:
    """
    Best-effort: un échec est journalisé et n'interrompt jamais la réconciliation.
    Retourne True si le service d'email a accepté la demande.
    """
    body = {"transaction_id": transaction_id, "user_id": user_id}
    if not call_function(config.RECEIPT_EMAIL_URL, body, "receipts", transaction_id, client):
        return False
    logger.info("receipts.sent transaction=%s user=%s", transaction_id, user_id)
    return True
