"""Réconciliation d'un résultat de paiement avec la commande, les gains et l'abonnement.

Point de convergence unique du webhook et de la vérification active (check-status):
1. vérification du montant (tolérance AMOUNT_TOLERANCE)
2. porte d'idempotence: transaction déjà `completed` -> rien n'est rejoué
3. transition conditionnelle du statut (une seule livraison concurrente gagne)
4. effets de bord, uniquement pour la requête gagnante, chacun best-effort:
   - completed: reçu, abonnement (30 jours), confirmation commande + gains vendeurs
   - failed/cancelled: commande -> payment_failed (la réservation reste jusqu'à libération explicite)
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
import logging

from marketplace import config
from marketplace.errors import IntegrityMismatch
from marketplace.notifications import receipts
from marketplace.orders import service as orders_service
from marketplace.payments.models import PaymentStatus
from marketplace.reconciliation import earnings, repository

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationOutcome:
    reference: str
    status: PaymentStatus
    applied: bool = False
    already_processed: bool = False
    effects: Dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str:
        if self.already_processed:
            return "Already processed"
        return "Payment status updated" if self.applied else "No status change"


def verify_amount(transaction: Dict[str, Any], reported: Optional[Decimal], required: bool = True) -> None:
    """Lève IntegrityMismatch si le montant reçu s'écarte de plus de la tolérance (ou manque, si requis)."""
    reference = transaction.get("reference")
    if reported is None:
        if not required:
            return
        logger.error("reconciliation.amount_missing reference=%s", reference)
        raise IntegrityMismatch("Amount mismatch")
    expected = Decimal(str(transaction.get("amount") or 0))
    if abs(expected - reported) > config.AMOUNT_TOLERANCE:
        logger.error("reconciliation.amount_mismatch reference=%s expected=%s got=%s", reference, expected, reported)
        raise IntegrityMismatch("Amount mismatch")


def _send_receipt(transaction: Dict[str, Any], gateway_reference: Optional[str], background: Any) -> str:
    transaction_id = gateway_reference or transaction.get("gateway_reference") or transaction.get("id")
    if background is not None:
        # Différé après l'envoi de la réponse au fournisseur
        background.add_task(receipts.send_payment_receipt, transaction_id, transaction.get("user_id"))
        return "scheduled"
    return "sent" if receipts.send_payment_receipt(transaction_id, transaction.get("user_id")) else "failed"


def _on_completed(transaction: Dict[str, Any], gateway_reference: Optional[str], background: Any) -> Dict[str, Any]:
    effects: Dict[str, Any] = {}
    reference = transaction.get("reference")

    try:
        effects["receipt"] = _send_receipt(transaction, gateway_reference, background)
    except Exception:
        logger.exception("Erreur reçu de paiement reference=%s", reference)
        effects["receipt"] = "failed"

    subscription_id = transaction.get("subscription_id")
    if subscription_id:
        try:
            expires_at = datetime.now(timezone.utc) + timedelta(days=config.SUBSCRIPTION_VALIDITY_DAYS)
            effects["subscription"] = repository.activate_subscription(
                subscription_id, expires_at, gateway_reference or reference
            )
        except Exception:
            logger.exception("Erreur activation abonnement id=%s", subscription_id)
            effects["subscription"] = False

    order_id = transaction.get("order_id")
    if order_id:
        try:
            orders_service.confirm_order(order_id)
            effects["order"] = "confirmed"
        except Exception:
            logger.exception("Erreur confirmation commande id=%s", order_id)
            effects["order"] = "error"
        try:
            effects["earnings"] = len(earnings.record_order_earnings(order_id))
        except Exception:
            logger.exception("Erreur gains vendeurs commande id=%s", order_id)
            effects["earnings"] = "error"
    return effects


def _on_failed(transaction: Dict[str, Any]) -> Dict[str, Any]:
    order_id = transaction.get("order_id")
    if not order_id:
        return {}
    try:
        orders_service.mark_payment_failed(order_id)
        return {"order": "payment_failed"}
    except Exception:
        logger.exception("Erreur passage payment_failed commande id=%s", order_id)
        return {"order": "error"}


def reconcile(
    transaction: Dict[str, Any],
    new_status: PaymentStatus,
    gateway_reference: Optional[str] = None,
    message: Optional[str] = None,
    reported_amount: Optional[Decimal] = None,
    require_amount: bool = True,
    background: Any = None,
) -> ReconciliationOutcome:
    reference = transaction["reference"]
    verify_amount(transaction, reported_amount, required=require_amount)

    if transaction.get("status") == PaymentStatus.COMPLETED.value:
        return ReconciliationOutcome(reference, PaymentStatus.COMPLETED, already_processed=True)

    fields: Dict[str, Any] = {"error_message": message if new_status.outcome == "failed" else None}
    if gateway_reference:
        fields["gateway_reference"] = gateway_reference
    updated = repository.transition_transaction(reference, new_status.value, fields)
    if not updated:
        # Statut identique, ou une autre livraison a déjà appliqué la transition
        logger.info("reconciliation.noop reference=%s status=%s", reference, new_status.value)
        return ReconciliationOutcome(reference, new_status)

    logger.info("reconciliation.applied reference=%s %s -> %s", reference, transaction.get("status"), new_status.value)
    outcome = ReconciliationOutcome(reference, new_status, applied=True)
    if new_status is PaymentStatus.COMPLETED:
        outcome.effects = _on_completed(transaction, gateway_reference, background)
    elif new_status.outcome == "failed":
        outcome.effects = _on_failed(transaction)
    return outcome
