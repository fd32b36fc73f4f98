import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from marketplace.payouts import service as payouts_service
from marketplace.payouts.models import WithdrawalRequest
from marketplace.utils.rate_limit import optional_rate_limit
from marketplace.utils.security import require_user

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/payouts", tags=["Payouts API"])

# module marketplace.payouts.views
@router.get("/balance")
def get_my_balance(user: Dict[str, Any] = Depends(require_user)):
    """Solde du vendeur authentifié: gains confirmés moins retraits payés ou en cours."""
    return {"success": True, "data": payouts_service.get_balance(user.get("id")).to_dict()}


@router.post("/withdrawals", dependencies=[Depends(optional_rate_limit(times=5, seconds=60))])
def request_withdrawal(payload: WithdrawalRequest, user: Dict[str, Any] = Depends(require_user)):
    """
    Demande de retrait vers un portefeuille mobile money.
    - 200 {success, withdrawal: {id, amount, fee, net_amount, status}}
    - 400 saisie invalide, solde insuffisant (available_balance) ou refus du fournisseur
    """
    withdrawal = payouts_service.request_withdrawal(user.get("id"), payload)
    return {"success": True, "withdrawal": withdrawal}


@router.get("/withdrawals")
def list_my_withdrawals(limit: int = 50, user: Dict[str, Any] = Depends(require_user)):
    return {"success": True, "data": payouts_service.list_withdrawals(user.get("id"), min(max(limit, 1), 200))}
