# module marketplace.payouts.models
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    REVERSED = "reversed"

    @property
    def is_terminal(self) -> bool:
        return self is not WithdrawalStatus.PENDING and self is not WithdrawalStatus.PROCESSING


# Statut brut du callback de retrait -> statut interne (inconnu -> processing)
PAYOUT_STATUS_MAP: Dict[str, WithdrawalStatus] = {
    "INITIATED": WithdrawalStatus.PROCESSING,
    "COMPLETED": WithdrawalStatus.COMPLETED,
    "FAILED": WithdrawalStatus.FAILED,
    "REFUNDED": WithdrawalStatus.REFUNDED,
    "REVERSED": WithdrawalStatus.REVERSED,
}

# Statuts de départ autorisés pour chaque statut d'arrivée; completed est définitif
WITHDRAWAL_TRANSITION_SOURCES: Dict[WithdrawalStatus, tuple] = {
    WithdrawalStatus.PENDING: (),
    WithdrawalStatus.PROCESSING: (WithdrawalStatus.PENDING,),
    WithdrawalStatus.COMPLETED: (WithdrawalStatus.PENDING, WithdrawalStatus.PROCESSING, WithdrawalStatus.FAILED),
    WithdrawalStatus.FAILED: (WithdrawalStatus.PENDING, WithdrawalStatus.PROCESSING),
    WithdrawalStatus.REFUNDED: (WithdrawalStatus.PENDING, WithdrawalStatus.PROCESSING, WithdrawalStatus.FAILED),
    WithdrawalStatus.REVERSED: (WithdrawalStatus.PENDING, WithdrawalStatus.PROCESSING, WithdrawalStatus.FAILED),
}


def translate_payout_status(raw: Any) -> WithdrawalStatus:
    return PAYOUT_STATUS_MAP.get(str(raw or "").strip().upper(), WithdrawalStatus.PROCESSING)


def withdrawal_sources(new_status: Any) -> List[str]:
    return [s.value for s in WITHDRAWAL_TRANSITION_SOURCES[WithdrawalStatus(new_status)]]


class WithdrawalRequest(BaseModel):
    """Corps de POST /api/v1/payouts/withdrawals (camelCase accepté)."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: Any = None
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")
    payment_method: Optional[str] = Field(default="MPESA", alias="paymentMethod")


@dataclass
class SellerBalance:
    available_balance: Decimal = Decimal("0")
    pending_withdrawals: Decimal = Decimal("0")
    total_earnings: Decimal = Decimal("0")
    total_withdrawn: Decimal = Decimal("0")

    @classmethod
    def from_row(cls, row: Optional[Dict[str, Any]]) -> "SellerBalance":
        row = row or {}
        return cls(**{
            name: Decimal(str(row.get(name) or 0))
            for name in ("available_balance", "pending_withdrawals", "total_earnings", "total_withdrawn")
        })

    def to_dict(self) -> Dict[str, str]:
        return {name: str(value) for name, value in self.__dict__.items()}
