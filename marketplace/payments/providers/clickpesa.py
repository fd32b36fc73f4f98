"""
Adaptateur ClickPesa (Tanzanie).

- Authentification: POST /generate-token (en-têtes client-id / api-key), jeton brut dans Authorization
- Push USSD: /ussd-push/preview (échec toléré, simple avertissement) puis /ussd-push
- Checkout hébergé: /checkout-link/generate-checkout-url avec checksum HMAC-SHA256
  calculé sur le JSON canonique (clés triées récursivement, sans espaces)
- Statut: GET /transactions/{id}
- Retrait vendeur: POST /payouts/create-mobile-money-payout
"""
from typing import Any, Dict, Optional
import hashlib
import hmac
import json
import logging

import httpx

from marketplace import config
from marketplace.errors import NotFound, ValidationFailed
from marketplace.payments.models import (
    ChargeRequest,
    ChargeResponse,
    PaymentStatus,
    PayoutRequest,
    ProviderStatus,
    WebhookEvent,
)
from marketplace.payments.providers.base import (
    PaymentProvider,
    ProviderError,
    TokenCache,
    json_number,
    parse_amount,
)

logger = logging.getLogger(__name__)


def canonicalize(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {key: canonicalize(obj[key]) for key in sorted(obj)}
    if isinstance(obj, list):
        return [canonicalize(v) for v in obj]
    return obj


def canonical_json(obj: Any) -> str:
    return json.dumps(canonicalize(obj), separators=(",", ":"), ensure_ascii=False)


def create_payload_checksum(secret: str, payload: Dict[str, Any]) -> str:
    return hmac.new(secret.encode("utf-8"), canonical_json(payload).encode("utf-8"), hashlib.sha256).hexdigest()


class ClickPesaProvider(PaymentProvider):
    name = "clickpesa"
    signature_headers = ("X-ClickPesa-Signature",)
    status_map = {
        "COMPLETED": PaymentStatus.COMPLETED,
        "SUCCESS": PaymentStatus.COMPLETED,
        "SETTLED": PaymentStatus.COMPLETED,
        "PAYMENT_RECEIVED": PaymentStatus.COMPLETED,
        "FAILED": PaymentStatus.FAILED,
        "PAYMENT_FAILED": PaymentStatus.FAILED,
        "CANCELLED": PaymentStatus.CANCELLED,
        "PENDING": PaymentStatus.PENDING,
        "PROCESSING": PaymentStatus.PROCESSING,
    }

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        token_cache: Optional[TokenCache] = None,
        client_id: Optional[str] = None,
        api_key: Optional[str] = None,
        checksum_secret: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        base_url: Optional[str] = None,
    ):
        super().__init__(client, config.CLICKPESA_WEBHOOK_SECRET if webhook_secret is None else webhook_secret)
        self.token_cache = token_cache or TokenCache()
        self.client_id = config.CLICKPESA_CLIENT_ID if client_id is None else client_id
        self.api_key = config.CLICKPESA_API_KEY if api_key is None else api_key
        self.checksum_secret = config.CLICKPESA_CHECKSUM_SECRET if checksum_secret is None else checksum_secret
        self.base_url = (base_url or config.CLICKPESA_BASE_URL).rstrip("/")

    # --- Authentification ---

    def get_token(self) -> str:
        cached = self.token_cache.get()
        if cached:
            return cached
        if not self.client_id or not self.api_key:
            raise ProviderError("ClickPesa credentials not configured")
        data = self._send_object(
            "POST",
            f"{self.base_url}/generate-token",
            headers={"client-id": self.client_id, "api-key": self.api_key},
        )
        token = data.get("token")
        if not data.get("success") or not token:
            raise ProviderError("Failed to obtain ClickPesa token")
        self.token_cache.store(token, config.CLICKPESA_TOKEN_TTL_SECONDS)
        logger.info("clickpesa.token refreshed")
        return token

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": self.get_token(), "Content-Type": "application/json"}

    # --- Push USSD ---

    def _ussd_payload(self, charge: ChargeRequest) -> Dict[str, Any]:
        return {
            "amount": json_number(charge.amount),
            "currency": charge.currency,
            "phone_number": charge.phone_number,
            "network": charge.network,
            "reference": charge.reference,
            "description": charge.description,
        }

    def preview(self, charge: ChargeRequest) -> Dict[str, Any]:
        return self._send_object("POST", f"{self.base_url}/ussd-push/preview", json=self._ussd_payload(charge), headers=self._headers())

    def initiate(self, charge: ChargeRequest) -> ChargeResponse:
        try:
            self.preview(charge)
        except (ProviderError, NotFound) as e:
            # La pré-validation est optionnelle côté ClickPesa: on continue
            logger.warning("clickpesa.preview_failed reference=%s err=%s", charge.reference, e)
        data = self._send_object("POST", f"{self.base_url}/ussd-push", json=self._ussd_payload(charge), headers=self._headers())
        gateway_reference = data.get("transaction_id") or data.get("id") or data.get("reference")
        return ChargeResponse(
            gateway_reference=str(gateway_reference) if gateway_reference else None,
            status=self.translate_status(data.get("status") or "PENDING"),
            raw=data,
        )

    # --- Checkout hébergé ---

    def create_hosted_checkout(self, charge: ChargeRequest) -> ChargeResponse:
        if not self.checksum_secret:
            raise ProviderError("Checksum secret not configured")
        payload: Dict[str, Any] = {
            "totalPrice": json_number(charge.amount),
            "orderReference": charge.reference,
            "orderCurrency": charge.currency,
            "customerEmail": charge.email or "",
            "customerPhone": charge.phone_number or "",
            "description": charge.description or "Blinno Payment",
        }
        payload["checksum"] = create_payload_checksum(self.checksum_secret, payload)
        data = self._send_object(
            "POST",
            f"{self.base_url}/checkout-link/generate-checkout-url",
            json=payload,
            headers=self._headers(),
        )
        url = data.get("checkout_url") or data.get("payment_url") or data.get("checkoutLink")
        if not url:
            raise ProviderError("ClickPesa did not return a checkout link")
        gateway_reference = data.get("checkout_id") or data.get("reference")
        return ChargeResponse(
            gateway_reference=str(gateway_reference) if gateway_reference else None,
            status=PaymentStatus.PENDING,
            checkout_url=url,
            raw=data,
        )

    # --- Retrait vendeur ---

    def disburse(self, payout: PayoutRequest) -> ChargeResponse:
        payload = {
            "amount": json_number(payout.amount),
            "currency": payout.currency,
            "phoneNumber": payout.phone_number,
            "network": payout.network,
            "orderReference": payout.reference,
            "description": payout.description,
        }
        data = self._send_object(
            "POST",
            f"{self.base_url}/payouts/create-mobile-money-payout",
            json=payload,
            headers=self._headers(),
        )
        gateway_reference = data.get("id") or data.get("reference") or data.get("transaction_id")
        logger.info("clickpesa.payout reference=%s gateway=%s", payout.reference, gateway_reference)
        return ChargeResponse(
            gateway_reference=str(gateway_reference) if gateway_reference else None,
            status=self.translate_status(data.get("status") or "PROCESSING"),
            raw=data,
        )

    # --- Statut ---

    def query_status(self, gateway_reference: Optional[str], reference: Optional[str] = None) -> ProviderStatus:
        lookup = gateway_reference or reference
        if not lookup:
            raise NotFound("Transaction ID not found")
        data = self._send("GET", f"{self.base_url}/transactions/{lookup}", headers=self._headers())
        if isinstance(data, list):
            data = data[0] if data else {}
        data = data or {}
        if not isinstance(data, dict):
            raise ProviderError("clickpesa returned an unexpected response")
        return ProviderStatus(
            status=self.translate_status(data.get("status")),
            gateway_reference=str(data.get("id") or lookup),
            amount=parse_amount(data.get("collectedAmount", data.get("amount"))),
            currency=data.get("collectedCurrency") or data.get("currency"),
            message=data.get("message"),
            raw=data,
        )

    # --- Webhook ---

    def signature_from(self, headers: Any, payload: Optional[Dict[str, Any]] = None) -> Optional[str]:
        return super().signature_from(headers) or (payload or {}).get("signature")

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        if not isinstance(payload, dict):
            raise ValidationFailed("Invalid webhook payload")
        missing = [k for k in ("reference", "status") if not payload.get(k)]
        if missing:
            raise ValidationFailed(f"Missing required fields: {', '.join(missing)}")
        # event_type (PAYMENT RECEIVED / FAILED) prime sur le statut brut
        raw_status = payload.get("event_type") or payload.get("status")
        status = self.translate_status(str(raw_status).replace(" ", "_"))
        return WebhookEvent(
            reference=str(payload["reference"]),
            status=status,
            gateway_reference=str(payload.get("transaction_id") or "") or None,
            amount=parse_amount(payload.get("amount")),
            currency=payload.get("currency"),
            message=payload.get("message"),
            raw=payload,
        )
