"""Retraits vendeurs: demande, décaissement mobile money et callback du fournisseur.

Demande (POST /api/v1/payouts/withdrawals):
1. validation (montant > 0, téléphone 255XXXXXXXXX, réseau connu)
2. frais WITHDRAWAL_FEE_RATE arrondis au centime, net = montant - frais
3. contrôle du solde et création `pending` (fonction SQL, verrou par vendeur)
4. décaissement du net: refus du fournisseur -> `failed` (400); fournisseur injoignable
   ou non configuré -> `processing`, traité manuellement

Callback (POST /api/v1/webhooks/{provider}/payouts): mêmes portes que le webhook de
paiement (signature, schéma, référence connue, montant), puis idempotence sur `completed`
et transition conditionnelle.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional
import logging

from marketplace import config
from marketplace.checkout.pricing import round_money
from marketplace.errors import InsufficientBalance, IntegrityMismatch, MarketplaceError, NotFound, UpstreamError, ValidationFailed
from marketplace.notifications import withdrawals as notifications
from marketplace.payments.models import PayoutRequest
from marketplace.payments.providers import ProviderRejected, get_provider
from marketplace.payments.providers.base import normalize_network, normalize_phone, parse_amount
from marketplace.payouts import repository
from marketplace.payouts.models import SellerBalance, WithdrawalRequest, WithdrawalStatus, translate_payout_status
from marketplace.webhooks import service as webhooks

logger = logging.getLogger(__name__)


def withdrawal_fee(amount: Decimal) -> Decimal:
    return round_money(amount * config.WITHDRAWAL_FEE_RATE)


def get_balance(seller_id: str) -> SellerBalance:
    return SellerBalance.from_row(repository.get_seller_balance(seller_id))


def list_withdrawals(seller_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    return repository.list_withdrawals(seller_id, limit)


def _validate(req: WithdrawalRequest) -> Dict[str, Any]:
    amount = parse_amount(req.amount)
    if amount is None or amount <= 0:
        raise ValidationFailed("Invalid amount")
    if not req.phone_number or not str(req.phone_number).strip():
        raise ValidationFailed("Phone number is required")
    phone = normalize_phone(str(req.phone_number).strip().lstrip("+"))
    network = normalize_network((req.payment_method or "MPESA").upper())
    amount = round_money(amount)
    fee = withdrawal_fee(amount)
    return {"amount": amount, "fee": fee, "net_amount": amount - fee, "phone_number": phone, "payment_method": network}


def _mark_failed(withdrawal_id: str, message: str) -> None:
    repository.update_withdrawal(
        withdrawal_id,
        {"status": WithdrawalStatus.FAILED.value, "error_message": message},
        only_if_status=WithdrawalStatus.PENDING.value,
    )


def _disburse(withdrawal: Dict[str, Any]) -> str:
    withdrawal_id = str(withdrawal["id"])
    payout = PayoutRequest(
        amount=Decimal(str(withdrawal["net_amount"])),
        currency=config.DEFAULT_CURRENCY,
        phone_number=withdrawal["phone_number"],
        network=withdrawal["payment_method"],
        reference=withdrawal_id,
        description=f"Blinno seller payout - {withdrawal_id}",
    )
    try:
        response = get_provider(config.PAYOUT_PROVIDER).disburse(payout)
    except (ProviderRejected, NotFound) as e:
        detail = getattr(e, "detail", None) or e.message
        logger.warning("payouts.rejected id=%s err=%s", withdrawal_id, detail)
        _mark_failed(withdrawal_id, detail)
        raise ValidationFailed("Payment processing failed", code="payout_rejected") from e
    except MarketplaceError as e:
        # Injoignable ou sans identifiants: la demande reste à traiter manuellement
        logger.warning("payouts.manual_processing id=%s err=%s", withdrawal_id, e.message)
        repository.update_withdrawal(
            withdrawal_id, {"status": WithdrawalStatus.PROCESSING.value}, only_if_status=WithdrawalStatus.PENDING.value
        )
        return WithdrawalStatus.PROCESSING.value

    if not response.gateway_reference:
        logger.warning("payouts.no_reference id=%s", withdrawal_id)
        _mark_failed(withdrawal_id, response.raw.get("message") or "Payment processing failed")
        raise ValidationFailed("Payment processing failed", code="payout_rejected")

    repository.update_withdrawal(
        withdrawal_id,
        {"status": WithdrawalStatus.PROCESSING.value, "provider_reference": response.gateway_reference},
        only_if_status=WithdrawalStatus.PENDING.value,
    )
    return WithdrawalStatus.PROCESSING.value


def request_withdrawal(seller_id: str, req: WithdrawalRequest) -> Dict[str, Any]:
    values = _validate(req)
    logger.info("payouts.request seller=%s amount=%s", seller_id, values["amount"])
    result = repository.request_withdrawal({"seller_id": seller_id, **values})
    if not result.get("ok"):
        if result.get("reason") == "insufficient_balance":
            raise InsufficientBalance(Decimal(str(result.get("available_balance") or 0)))
        raise UpstreamError("Failed to create withdrawal request")

    withdrawal = result["withdrawal"]
    status = _disburse(withdrawal)
    logger.info("payouts.created id=%s status=%s", withdrawal["id"], status)
    return {
        "id": withdrawal["id"],
        "amount": str(values["amount"]),
        "fee": str(values["fee"]),
        "net_amount": str(values["net_amount"]),
        "status": status,
    }


def _verify_amount(withdrawal: Dict[str, Any], reported: Optional[Decimal]) -> None:
    expected = Decimal(str(withdrawal.get("net_amount") or withdrawal.get("amount") or 0))
    if reported is None or abs(expected - reported) > config.AMOUNT_TOLERANCE:
        logger.error("payouts.amount_mismatch id=%s expected=%s got=%s", withdrawal.get("id"), expected, reported)
        raise IntegrityMismatch("Amount mismatch")


def _notify(withdrawal: Dict[str, Any], status: WithdrawalStatus, message: Optional[str], background: Any) -> None:
    args = (str(withdrawal["id"]), withdrawal.get("seller_id"), status.value, withdrawal.get("amount"), message)
    if background is not None:
        background.add_task(notifications.send_withdrawal_notification, *args)
        return
    try:
        notifications.send_withdrawal_notification(*args)
    except Exception:
        logger.exception("Erreur notification retrait id=%s", withdrawal.get("id"))


def process_payout_webhook(provider_name: str, raw_body: bytes, headers: Mapping[str, str], background: Any = None) -> Dict[str, Any]:
    provider = get_provider(provider_name)
    payload = webhooks.authenticate(provider, raw_body, headers)
    reference, raw_status = payload.get("reference"), payload.get("status")
    if not reference or not raw_status:
        raise ValidationFailed("Invalid payload")

    withdrawal = repository.find_withdrawal(str(reference))
    if not withdrawal:
        logger.error("payouts.%s.unknown_reference reference=%s", provider.name, reference)
        raise NotFound("Withdrawal request not found")

    _verify_amount(withdrawal, parse_amount(payload.get("amount")))

    if withdrawal.get("status") == WithdrawalStatus.COMPLETED.value:
        return {"success": True, "message": "Already processed", "status": WithdrawalStatus.COMPLETED.value}

    new_status = translate_payout_status(raw_status)
    message = payload.get("message")
    fields: Dict[str, Any] = {
        "error_message": message if new_status.is_terminal and new_status is not WithdrawalStatus.COMPLETED else None,
        "processed_at": datetime.now(timezone.utc).isoformat() if new_status.is_terminal else None,
    }
    if payload.get("transaction_id"):
        fields["provider_reference"] = str(payload["transaction_id"])

    updated = repository.transition_withdrawal(str(withdrawal["id"]), new_status.value, fields)
    if not updated:
        logger.info("payouts.noop id=%s status=%s", withdrawal["id"], new_status.value)
        return {"success": True, "message": "No status change", "status": new_status.value}

    logger.info("payouts.applied id=%s %s -> %s", withdrawal["id"], withdrawal.get("status"), new_status.value)
    if new_status.is_terminal:
        _notify(withdrawal, new_status, message, background)
    return {"success": True, "message": "Payout webhook processed successfully", "status": new_status.value}
