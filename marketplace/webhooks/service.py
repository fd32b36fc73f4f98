"""Traitement des webhooks de paiement (appelant externe, non authentifié, livraison au moins une fois).

Portes successives, chacune bloquante:
1. signature HMAC du corps brut (401); si aucun secret n'est configuré: avertissement puis on continue
2. schéma: reference + status (400)
3. transaction connue (404)
4. montant dans la tolérance (400), puis idempotence et transition (reconciliation.service)
"""
from typing import Any, Dict, Mapping
import json
import logging

from marketplace.errors import NotFound, Unauthorized, ValidationFailed
from marketplace.payments import repository as payments_repo
from marketplace.payments.providers import PaymentProvider, get_provider
from marketplace.reconciliation import service as reconciliation
from marketplace.webhooks.signature import verify_signature

logger = logging.getLogger(__name__)


def _parse_body(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body.decode("utf-8") or "null")
    except (ValueError, UnicodeDecodeError):
        return None


def authenticate(provider: PaymentProvider, raw_body: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
    """Portes 1 et 2 communes aux webhooks de paiement et de retrait: signature puis objet JSON."""
    payload = _parse_body(raw_body)

    if provider.webhook_secret:
        signature = provider.signature_from(headers, payload if isinstance(payload, dict) else None)
        if not verify_signature(raw_body, signature, provider.webhook_secret):
            logger.warning("webhooks.%s.invalid_signature present=%s", provider.name, bool(signature))
            raise Unauthorized("Invalid signature")
    else:
        logger.warning("webhooks.%s.signature_check_disabled (no webhook secret configured)", provider.name)

    if not isinstance(payload, dict):
        raise ValidationFailed("Invalid payload")
    return payload


def process_webhook(provider_name: str, raw_body: bytes, headers: Mapping[str, str], background: Any = None) -> Dict[str, Any]:
    provider = get_provider(provider_name)
    payload = authenticate(provider, raw_body, headers)
    event = provider.parse_webhook(payload)

    transaction = payments_repo.get_transaction_by_reference(event.reference)
    if not transaction:
        logger.error("webhooks.%s.unknown_reference reference=%s", provider.name, event.reference)
        raise NotFound("Transaction not found")

    outcome = reconciliation.reconcile(
        transaction,
        event.status,
        gateway_reference=event.gateway_reference,
        message=event.message,
        reported_amount=event.amount,
        require_amount=True,
        background=background,
    )
    logger.info(
        "webhooks.%s.processed reference=%s status=%s applied=%s",
        provider.name, event.reference, outcome.status.value, outcome.applied,
    )
    return {"success": True, "message": outcome.message, "status": outcome.status.outcome}
