import logging
from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from fastapi.responses import JSONResponse

from marketplace.errors import UpstreamError
from marketplace.payments import service as payments_service
from marketplace.payments.models import PaymentRequest
from marketplace.payments.poller import StatusPoller
from marketplace.utils.rate_limit import optional_rate_limit
from marketplace.utils.security import require_user

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/payments", tags=["Payments API"])

# module marketplace.payments.views
@router.post("/{provider}", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
def payment_action(
    provider: str,
    payload: PaymentRequest,
    background_tasks: BackgroundTasks,
    user: Dict[str, Any] = Depends(require_user),
):
    """
    Point d'entrée unique par fournisseur (clickpesa | flutterwave).
    - Entrée JSON: {action: initiate | check-status | create-hosted-checkout | validate, amount,
      currency, phone_number | email, network, reference, description, order_id?, subscription_id?}
    - Sécurité: require_user (Bearer) + rate limit (10 req / 60s)
    - Réponses: 200 {success: true, data: {transaction_id, status, ...}}
      ou {success: false, error} avec 400 (saisie), 404 (introuvable), 409 (conflit), 500 (fournisseur)
    """
    result = payments_service.handle_action(provider, payload, user, background_tasks)
    return JSONResponse(result.to_dict(), status_code=result.status_code)


@router.get("/{provider}/poll/{reference}")
def poll_payment(
    provider: str,
    reference: str,
    background_tasks: BackgroundTasks,
    attempt: int = Query(1, ge=1),
    user: Dict[str, Any] = Depends(require_user),
):
    """
    Fallback sans webhook: une tentative de vérification par appel, budget imposé côté serveur.
    - Le front rappelle avec attempt+1 après `next_poll_in` secondes tant que `terminal` est false.
    """
    def _check(ref: str) -> str:
        result = payments_service.check_status(provider, ref, user.get("id") or "", background_tasks)
        if not result.success:
            raise UpstreamError(result.error or "Status check failed")
        return result.data.get("status")

    poller = StatusPoller(_check)
    result = poller.poll_once(reference, attempt)
    return {"success": True, "data": {"reference": reference, **result.to_dict(interval=poller.interval)}}
