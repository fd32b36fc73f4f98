"""
Adaptateur Flutterwave (v3).

- Authentification: Authorization: Bearer <FLUTTERWAVE_SECRET_KEY>
- Mobile money Tanzanie: POST /charges?type=mobile_money_tanzania
- Lien de paiement hébergé: POST /payments (data.link)
- Vérification: GET /transactions/{id}/verify ou /transactions/verify_by_reference?tx_ref=
"""
from typing import Any, Dict, Optional
import logging

import httpx

from marketplace import config
from marketplace.errors import NotFound, ValidationFailed
from marketplace.payments.models import ChargeRequest, ChargeResponse, PaymentStatus, ProviderStatus, WebhookEvent
from marketplace.payments.providers.base import PaymentProvider, ProviderError, json_number, parse_amount

logger = logging.getLogger(__name__)

DEFAULT_CUSTOMER_EMAIL = "customer@blinno.app"
PAYMENT_OPTIONS = "card,mobilemoney,ussd,banktransfer"


class FlutterwaveProvider(PaymentProvider):
    name = "flutterwave"
    signature_headers = ("verif-hash", "verifhash", "x-flutterwave-signature")
    status_map = {
        "SUCCESSFUL": PaymentStatus.COMPLETED,
        "COMPLETED": PaymentStatus.COMPLETED,
        "FAILED": PaymentStatus.FAILED,
        "CANCELLED": PaymentStatus.CANCELLED,
        "PENDING": PaymentStatus.PENDING,
    }

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        base_url: Optional[str] = None,
    ):
        super().__init__(client, config.FLUTTERWAVE_WEBHOOK_SECRET if webhook_secret is None else webhook_secret)
        self.secret_key = config.FLUTTERWAVE_SECRET_KEY if secret_key is None else secret_key
        self.base_url = (base_url or config.FLUTTERWAVE_BASE_URL).rstrip("/")

    def _headers(self) -> Dict[str, str]:
        if not self.secret_key:
            raise ProviderError("Flutterwave credentials not configured")
        return {"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"}

    def _checked(self, result: Any, what: str) -> Dict[str, Any]:
        result = result or {}
        if not isinstance(result, dict):
            logger.error("flutterwave.%s_unexpected_response type=%s", what, type(result).__name__)
            raise ProviderError(f"Flutterwave {what} returned an unexpected response")
        if result.get("status") != "success":
            logger.error("flutterwave.%s_failed message=%s", what, result.get("message"))
            raise ProviderError(result.get("message") or f"Flutterwave {what} failed")
        data = result.get("data") or {}
        if not isinstance(data, dict):
            raise ProviderError(f"Flutterwave {what} returned an unexpected response")
        return data

    def initiate(self, charge: ChargeRequest) -> ChargeResponse:
        payload = {
            "tx_ref": charge.reference,
            "amount": json_number(charge.amount),
            "currency": charge.currency,
            "payment_type": "mobilemoney",
            "network": (charge.network or "").lower(),
            "phone_number": charge.phone_number,
            "email": charge.email or DEFAULT_CUSTOMER_EMAIL,
            "fullname": charge.customer_name or "Customer",
            "meta": {"order_id": charge.order_id, "description": charge.description},
        }
        result = self._send(
            "POST",
            f"{self.base_url}/charges",
            params={"type": "mobile_money_tanzania"},
            json=payload,
            headers=self._headers(),
        )
        data = self._checked(result, "charge")
        return ChargeResponse(
            gateway_reference=str(data["id"]) if data.get("id") is not None else None,
            status=self.translate_status(data.get("status") or "PENDING"),
            raw=data,
        )

    def create_hosted_checkout(self, charge: ChargeRequest) -> ChargeResponse:
        payload = {
            "tx_ref": charge.reference,
            "amount": json_number(charge.amount),
            "currency": charge.currency,
            "payment_options": PAYMENT_OPTIONS,
            "redirect_url": charge.redirect_url or f"{config.BASE_URL}/payments/callback",
            "customer": {
                "email": charge.email or DEFAULT_CUSTOMER_EMAIL,
                "name": charge.customer_name or "Customer",
                "phonenumber": charge.phone_number or "",
            },
            "customizations": {
                "title": "Blinno Payment",
                "description": charge.description or "Blinno Payment",
            },
            "meta": {"order_id": charge.order_id, "subscription_id": charge.subscription_id},
        }
        result = self._send("POST", f"{self.base_url}/payments", json=payload, headers=self._headers())
        data = self._checked(result, "checkout")
        if not data.get("link"):
            raise ProviderError("Flutterwave did not return a checkout link")
        # L'identifiant Flutterwave n'existe qu'après paiement: vérification par tx_ref
        return ChargeResponse(gateway_reference=None, status=PaymentStatus.PENDING, checkout_url=data["link"], raw=data)

    def query_status(self, gateway_reference: Optional[str], reference: Optional[str] = None) -> ProviderStatus:
        if gateway_reference:
            result = self._send("GET", f"{self.base_url}/transactions/{gateway_reference}/verify", headers=self._headers())
        elif reference:
            result = self._send(
                "GET",
                f"{self.base_url}/transactions/verify_by_reference",
                params={"tx_ref": reference},
                headers=self._headers(),
            )
        else:
            raise NotFound("Transaction ID not found")
        data = self._checked(result, "verify")
        return ProviderStatus(
            status=self.translate_status(data.get("status")),
            gateway_reference=str(data.get("id") or gateway_reference or ""),
            amount=parse_amount(data.get("amount")),
            currency=data.get("currency"),
            message=data.get("processor_response"),
            raw=data,
        )

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        if not isinstance(payload, dict):
            raise ValidationFailed("Invalid webhook payload")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        reference = data.get("tx_ref") or data.get("txRef") or data.get("reference")
        status = data.get("status")
        missing = [name for name, value in (("reference", reference), ("status", status)) if not value]
        if missing:
            raise ValidationFailed(f"Missing required fields: {', '.join(missing)}")
        return WebhookEvent(
            reference=str(reference),
            status=self.translate_status(status),
            gateway_reference=str(data["id"]) if data.get("id") is not None else None,
            amount=parse_amount(data.get("amount")),
            currency=data.get("currency"),
            message=data.get("processor_response"),
            raw=payload,
        )
