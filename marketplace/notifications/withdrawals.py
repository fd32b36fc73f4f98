"""Notification vendeur à l'issue d'un retrait (fonction Supabase withdrawal-notification)."""
from typing import Any, Optional
import logging

import httpx

from marketplace import config
from marketplace.notifications.edge import call_function

logger = logging.getLogger(__name__)


def send_withdrawal_notification(
    withdrawal_id: str,
    seller_id: Optional[str],
    status: str,
    amount: Any,
    message: Optional[str] = None,
    client: Optional[httpx.Client] = None,
) -> bool:
    body = {
        "withdrawal_id": withdrawal_id,
        "seller_id": seller_id,
        "status": status,
        "amount": amount,
        "message": message,
    }
    if not call_function(config.WITHDRAWAL_NOTIFICATION_URL, body, "withdrawals.notification", withdrawal_id, client):
        return False
    logger.info("withdrawals.notification_sent id=%s status=%s", withdrawal_id, status)
    return True
