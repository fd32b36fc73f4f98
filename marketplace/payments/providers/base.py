"""
Contrat commun des fournisseurs de paiement mobile money.

- PaymentProvider: interface (initiate, create_hosted_checkout, query_status, parse_webhook)
- normalize_charge: validation des entrées AVANT tout appel réseau
- TokenCache: cache de jeton avec expiration, rafraîchi avant l'échéance
- ProviderError: erreur de transport/credentials (HTTP 500 côté API)
- ProviderRejected: le fournisseur a répondu mais refusé la requête (statut HTTP d'erreur)
"""
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional, Sequence
import logging
import re
import threading
import time

import httpx

from marketplace import config
from marketplace.errors import NotFound, UpstreamError, ValidationFailed
from marketplace.payments.models import (
    ChargeRequest,
    ChargeResponse,
    PaymentRequest,
    PaymentStatus,
    PayoutRequest,
    ProviderStatus,
    VALID_NETWORKS,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r"^255\d{9}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class ProviderError(UpstreamError):
    code = "provider_error"


class ProviderRejected(ProviderError):
    code = "provider_rejected"

    def __init__(self, message: str, status: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.detail = detail


def parse_amount(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() else None


def json_number(value: Decimal) -> Any:
    """Décimal -> nombre JSON (entier si pas de partie fractionnaire, comme JSON.stringify)."""
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def normalize_network(network: Optional[str]) -> str:
    value = (network or "").strip().upper()
    if value not in VALID_NETWORKS:
        raise ValidationFailed(f"Invalid network: {network}. Must be one of: {', '.join(VALID_NETWORKS)}")
    return value


def normalize_phone(phone: Optional[str]) -> str:
    value = str(phone or "").strip()
    if not PHONE_PATTERN.match(value):
        raise ValidationFailed(f"Invalid phone number format: {value}. Expected format: 255XXXXXXXXX (12 digits)")
    return value


def normalize_email(email: Optional[str]) -> str:
    value = (email or "").strip()
    if not EMAIL_PATTERN.match(value):
        raise ValidationFailed(f"Invalid email address: {value}")
    return value


def normalize_charge(req: PaymentRequest, hosted: bool = False) -> ChargeRequest:
    """
    Valide et normalise une demande de paiement.
    - push USSD: montant, téléphone ^255\\d{9}$, réseau connu, référence
    - checkout hébergé: montant, référence; email/téléphone validés s'ils sont fournis
    Lève ValidationFailed (400) sans jamais toucher le réseau.
    """
    required = ["amount", "reference"] if hosted else ["amount", "phone_number", "network", "reference"]
    missing = [name for name in required if getattr(req, name) in (None, "")]
    if missing:
        raise ValidationFailed(f"Missing required payment fields: {', '.join(missing)}")

    amount = parse_amount(req.amount)
    if amount is None or amount <= 0:
        raise ValidationFailed(f"Invalid amount: {req.amount}. Amount must be a positive number")

    charge = ChargeRequest(
        amount=amount,
        currency=(req.currency or config.DEFAULT_CURRENCY).strip().upper(),
        reference=str(req.reference).strip(),
        description=req.description or "",
        customer_name=req.customer_name,
        redirect_url=req.redirect_url,
        order_id=req.order_id,
        subscription_id=req.subscription_id,
    )
    if hosted:
        charge.email = normalize_email(req.email) if req.email else None
        charge.phone_number = normalize_phone(req.phone_number) if req.phone_number else None
        charge.network = normalize_network(req.network) if req.network else None
    else:
        charge.phone_number = normalize_phone(req.phone_number)
        charge.network = normalize_network(req.network)
        charge.email = normalize_email(req.email) if req.email else None
    return charge


def _error_detail(resp: httpx.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return body.get("message") or body.get("error")
    return None


class TokenCache:
    """
    Cache de jeton d'authentification fournisseur, local au processus.
    Un cache vide est un état valide: get() renvoie alors None et l'appelant régénère le jeton.
    """

    def __init__(self, refresh_margin: float = None, clock: Callable[[], float] = time.monotonic):
        self.refresh_margin = config.TOKEN_REFRESH_MARGIN_SECONDS if refresh_margin is None else refresh_margin
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def get(self) -> Optional[str]:
        with self._lock:
            if self._token and self._clock() < self._expires_at - self.refresh_margin:
                return self._token
            return None

    def store(self, token: str, ttl: float) -> None:
        with self._lock:
            self._token = token
            self._expires_at = self._clock() + ttl

    def clear(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = 0.0


class PaymentProvider(ABC):
    name: str = ""
    signature_headers: Sequence[str] = ()
    status_map: Dict[str, PaymentStatus] = {}

    def __init__(self, client: Optional[httpx.Client] = None, webhook_secret: str = ""):
        self._client = client or httpx.Client(timeout=config.PROVIDER_TIMEOUT_SECONDS)
        self.webhook_secret = webhook_secret

    def close(self) -> None:
        self._client.close()

    def translate_status(self, raw: Any) -> PaymentStatus:
        """Traduit le statut brut du fournisseur; tout statut inconnu devient processing."""
        return self.status_map.get(str(raw or "").strip().upper(), PaymentStatus.PROCESSING)

    def signature_from(self, headers: Any, payload: Optional[Dict[str, Any]] = None) -> Optional[str]:
        for header in self.signature_headers:
            value = headers.get(header)
            if value:
                return value
        return None

    def _send(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            resp = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error("%s.transport_error url=%s err=%s", self.name, url, e)
            raise ProviderError(f"{self.name} is unreachable") from e
        if resp.status_code == 404:
            raise NotFound(f"Transaction not found at {self.name}")
        if resp.is_error:
            logger.error("%s.http_error url=%s status=%s body=%s", self.name, url, resp.status_code, resp.text[:500])
            raise ProviderRejected(
                f"{self.name} request failed with status {resp.status_code}",
                status=resp.status_code,
                detail=_error_detail(resp),
            )
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(f"{self.name} returned an invalid response") from e

    def _send_object(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        """Comme _send, mais exige un objet JSON (une liste ou un scalaire est une réponse invalide)."""
        data = self._send(method, url, **kwargs)
        if data is None:
            return {}
        if not isinstance(data, dict):
            logger.error("%s.unexpected_response url=%s type=%s", self.name, url, type(data).__name__)
            raise ProviderError(f"{self.name} returned an unexpected response")
        return data

    @abstractmethod
    def initiate(self, charge: ChargeRequest) -> ChargeResponse:
        """Déclenche un paiement push (invite USSD / mobile money sur le téléphone)."""

    @abstractmethod
    def create_hosted_checkout(self, charge: ChargeRequest) -> ChargeResponse:
        """Crée un lien de paiement hébergé par le fournisseur."""

    @abstractmethod
    def query_status(self, gateway_reference: Optional[str], reference: Optional[str] = None) -> ProviderStatus:
        """Interroge le fournisseur sur une transaction existante."""

    @abstractmethod
    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        """Valide le schéma du webhook et le traduit en WebhookEvent (ValidationFailed sinon)."""

    def preview(self, charge: ChargeRequest) -> Dict[str, Any]:
        """Pré-validation côté fournisseur; par défaut rien à vérifier."""
        return {"reference": charge.reference, "valid": True}

    def disburse(self, payout: PayoutRequest) -> ChargeResponse:
        """Envoie un paiement sortant (retrait vendeur) vers un portefeuille mobile money."""
        raise ProviderError(f"{self.name} does not support payouts")
