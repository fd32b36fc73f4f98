# module marketplace.payments.models
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict


class PaymentStatus(str, Enum):
    """Vocabulaire interne des transactions (jamais le vocabulaire brut d'un fournisseur)."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def outcome(self) -> str:
        """Résultat à trois états exposé aux appelants: pending | completed | failed."""
        if self is PaymentStatus.COMPLETED:
            return "completed"
        if self in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
            return "failed"
        return "pending"

    @property
    def is_terminal(self) -> bool:
        return self.outcome != "pending"


# Statuts de départ acceptés par statut cible. Un statut terminal ne redevient jamais
# pending/processing; completed reste atteignable depuis failed/cancelled (paiement tardif).
TRANSITION_SOURCES: Dict[PaymentStatus, Tuple[PaymentStatus, ...]] = {
    PaymentStatus.PENDING: (),
    PaymentStatus.PROCESSING: (PaymentStatus.PENDING,),
    PaymentStatus.FAILED: (PaymentStatus.PENDING, PaymentStatus.PROCESSING),
    PaymentStatus.CANCELLED: (PaymentStatus.PENDING, PaymentStatus.PROCESSING),
    PaymentStatus.COMPLETED: (
        PaymentStatus.PENDING,
        PaymentStatus.PROCESSING,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    ),
}


def transition_sources(new_status: Any) -> List[str]:
    return [s.value for s in TRANSITION_SOURCES[PaymentStatus(new_status)]]


class Network(str, Enum):
    MPESA = "MPESA"
    TIGOPESA = "TIGOPESA"
    AIRTELMONEY = "AIRTELMONEY"
    HALOPESA = "HALOPESA"


VALID_NETWORKS = [n.value for n in Network]


class PaymentAction(str, Enum):
    INITIATE = "initiate"
    CHECK_STATUS = "check-status"
    CREATE_HOSTED_CHECKOUT = "create-hosted-checkout"
    VALIDATE = "validate"


class PaymentRequest(BaseModel):
    """
    Corps de POST /api/v1/payments/{provider}.
    Les champs sont volontairement lâches: la validation métier (montant, téléphone,
    réseau, email) est faite par le fournisseur pour renvoyer un GatewayResult structuré.
    """
    model_config = ConfigDict(extra="ignore")

    action: str
    amount: Optional[Any] = None
    currency: Optional[str] = None
    phone_number: Optional[str] = None
    network: Optional[str] = None
    email: Optional[str] = None
    customer_name: Optional[str] = None
    reference: Optional[str] = None
    transaction_id: Optional[str] = None
    description: Optional[str] = None
    order_id: Optional[str] = None
    subscription_id: Optional[str] = None
    redirect_url: Optional[str] = None


@dataclass
class ChargeRequest:
    """Demande de paiement normalisée (après validation)."""
    amount: Decimal
    currency: str
    reference: str
    description: str = ""
    phone_number: Optional[str] = None
    network: Optional[str] = None
    email: Optional[str] = None
    customer_name: Optional[str] = None
    redirect_url: Optional[str] = None
    order_id: Optional[str] = None
    subscription_id: Optional[str] = None


@dataclass
class PayoutRequest:
    """Paiement sortant vers le portefeuille d'un vendeur (montant net, après frais)."""
    amount: Decimal
    currency: str
    phone_number: str
    network: str
    reference: str
    description: str = ""


@dataclass
class ChargeResponse:
    gateway_reference: Optional[str]
    status: PaymentStatus = PaymentStatus.PENDING
    checkout_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderStatus:
    """Statut d'une transaction tel que renvoyé par le fournisseur, déjà traduit."""
    status: PaymentStatus
    gateway_reference: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookEvent:
    reference: str
    status: PaymentStatus
    gateway_reference: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


ERROR_KIND_STATUS = {
    "validation": 400,
    "integrity": 400,
    "conflict": 409,
    "unauthorized": 401,
    "not_found": 404,
    "transport": 500,
}


@dataclass
class GatewayResult:
    """Résultat structuré d'une action de paiement (jamais d'exception non capturée vers l'API)."""
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @classmethod
    def ok(cls, **data: Any) -> "GatewayResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, kind: str = "transport") -> "GatewayResult":
        return cls(success=False, error=error, error_kind=kind)

    @property
    def status_code(self) -> int:
        if self.success:
            return 200
        return ERROR_KIND_STATUS.get(self.error_kind or "transport", 500)

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data}
        return {"success": False, "error": self.error, "error_kind": self.error_kind}
