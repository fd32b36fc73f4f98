"""Couche service des paiements (contrat commun aux fournisseurs).

Rôles:
- initiate / create_hosted_checkout: valide l'entrée, enregistre la transaction `pending`
  (ancre du futur webhook) puis appelle le fournisseur.
- check_status: interroge le fournisseur via gateway_reference puis applique la même
  réconciliation que le webhook.
- handle_action: point d'entrée de POST /api/v1/payments/{provider}; toute erreur devient
  un GatewayResult structuré (validation | not_found | transport ...).
"""
from decimal import Decimal
from typing import Any, Callable, Dict, Optional
import logging

from marketplace import config
from marketplace.errors import (
    Conflict,
    IntegrityMismatch,
    MarketplaceError,
    NotFound,
    Unauthorized,
    ValidationFailed,
)
from marketplace.orders import service as orders_service
from marketplace.orders.models import OrderStatus
from marketplace.payments import repository
from marketplace.payments.models import ChargeRequest, GatewayResult, PaymentAction, PaymentRequest, PaymentStatus
from marketplace.payments.providers import get_provider
from marketplace.payments.providers.base import PaymentProvider, normalize_charge
from marketplace.reconciliation import service as reconciliation

logger = logging.getLogger(__name__)


def _check_order(charge: ChargeRequest, user_id: str) -> None:
    """Le paiement d'une commande doit viser une commande pending de l'utilisateur, au bon montant."""
    if not charge.order_id:
        return
    order = orders_service.get_order(charge.order_id, user_id)
    if order.get("status") != OrderStatus.PENDING.value:
        raise Conflict(f"Cannot pay order with status {order.get('status')}")
    total = Decimal(str(order.get("total") or 0))
    if abs(total - charge.amount) > config.AMOUNT_TOLERANCE:
        raise ValidationFailed(f"Amount {charge.amount} does not match order total {total}")


def _record(provider: PaymentProvider, charge: ChargeRequest, user_id: str) -> Dict[str, Any]:
    return repository.insert_transaction({
        "user_id": user_id,
        "order_id": charge.order_id,
        "subscription_id": charge.subscription_id,
        "provider": provider.name,
        "amount": float(charge.amount),
        "currency": charge.currency,
        "network": charge.network,
        "phone_number": charge.phone_number,
        "email": charge.email,
        "reference": charge.reference,
        "status": PaymentStatus.PENDING.value,
        "description": charge.description,
    })


def _start(provider: PaymentProvider, charge: ChargeRequest, user_id: str, call: Callable[[ChargeRequest], Any]):
    _check_order(charge, user_id)
    transaction = _record(provider, charge, user_id)
    try:
        response = call(charge)
    except MarketplaceError as e:
        repository.update_transaction(
            charge.reference,
            {"status": PaymentStatus.FAILED.value, "error_message": e.message},
            only_if_status=PaymentStatus.PENDING.value,
        )
        raise
    fields = {}
    if response.gateway_reference:
        fields["gateway_reference"] = response.gateway_reference
    if response.checkout_url:
        fields["checkout_url"] = response.checkout_url
    if fields:
        repository.update_transaction(charge.reference, fields)
    return transaction, response


def initiate(provider_name: str, req: PaymentRequest, user_id: str) -> GatewayResult:
    provider = get_provider(provider_name)
    charge = normalize_charge(req)
    transaction, response = _start(provider, charge, user_id, provider.initiate)
    logger.info("payments.initiate provider=%s reference=%s gateway=%s", provider.name, charge.reference, response.gateway_reference)
    return GatewayResult.ok(
        transaction_id=response.gateway_reference or transaction.get("id"),
        reference=charge.reference,
        status=response.status.outcome,
        provider=provider.name,
    )


def create_hosted_checkout(provider_name: str, req: PaymentRequest, user_id: str) -> GatewayResult:
    provider = get_provider(provider_name)
    charge = normalize_charge(req, hosted=True)
    transaction, response = _start(provider, charge, user_id, provider.create_hosted_checkout)
    logger.info("payments.hosted_checkout provider=%s reference=%s", provider.name, charge.reference)
    return GatewayResult.ok(
        transaction_id=response.gateway_reference or transaction.get("id"),
        reference=charge.reference,
        status=response.status.outcome,
        checkout_url=response.checkout_url,
        provider=provider.name,
    )


def validate(provider_name: str, req: PaymentRequest, user_id: str) -> GatewayResult:
    provider = get_provider(provider_name)
    charge = normalize_charge(req)
    preview = provider.preview(charge)
    return GatewayResult.ok(reference=charge.reference, valid=True, preview=preview)


def check_status(provider_name: str, reference: Optional[str], user_id: str, background: Any = None) -> GatewayResult:
    if not reference:
        raise ValidationFailed("Missing required field: reference")
    provider = get_provider(provider_name)
    transaction = repository.get_transaction_by_reference(reference, user_id)
    if not transaction:
        raise NotFound("Transaction not found")

    stored = PaymentStatus(transaction.get("status") or PaymentStatus.PENDING.value)
    if stored is PaymentStatus.COMPLETED:
        return GatewayResult.ok(transaction_id=transaction.get("gateway_reference"), reference=reference, status=stored.outcome)

    remote = provider.query_status(transaction.get("gateway_reference"), reference)
    outcome = reconciliation.reconcile(
        transaction,
        remote.status,
        gateway_reference=remote.gateway_reference,
        message=remote.message,
        reported_amount=remote.amount,
        require_amount=False,
        background=background,
    )
    return GatewayResult.ok(
        transaction_id=remote.gateway_reference or transaction.get("gateway_reference"),
        reference=reference,
        status=outcome.status.outcome,
    )


_ERROR_KINDS = (
    (IntegrityMismatch, "integrity"),
    (ValidationFailed, "validation"),
    (NotFound, "not_found"),
    (Conflict, "conflict"),
    (Unauthorized, "unauthorized"),
)


def _error_kind(error: MarketplaceError) -> str:
    for cls, kind in _ERROR_KINDS:
        if isinstance(error, cls):
            return kind
    return "transport"


def handle_action(provider_name: str, req: PaymentRequest, user: Dict[str, Any], background: Any = None) -> GatewayResult:
    user_id = user.get("id") or ""
    try:
        action = PaymentAction(req.action)
    except ValueError:
        return GatewayResult.fail("Invalid action", kind="validation")
    try:
        if action is PaymentAction.INITIATE:
            return initiate(provider_name, req, user_id)
        if action is PaymentAction.CREATE_HOSTED_CHECKOUT:
            return create_hosted_checkout(provider_name, req, user_id)
        if action is PaymentAction.VALIDATE:
            return validate(provider_name, req, user_id)
        return check_status(provider_name, req.reference, user_id, background)
    except MarketplaceError as e:
        kind = _error_kind(e)
        if kind == "transport":
            logger.error("payments.%s failed provider=%s reference=%s err=%s", action.value, provider_name, req.reference, e.message)
        return GatewayResult.fail(e.message, kind=kind)
    except Exception:
        logger.exception("Erreur payments.%s provider=%s", action.value, provider_name)
        return GatewayResult.fail("Payment provider error", kind="transport")
