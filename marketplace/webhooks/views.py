import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from marketplace.errors import MarketplaceError
from marketplace.payouts import service as payouts_service
from marketplace.webhooks import service as webhooks_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhooks", tags=["Webhooks"])

# module marketplace.webhooks.views
@router.post("/{provider}/payouts", include_in_schema=False)
async def receive_payout_webhook(provider: str, request: Request, background_tasks: BackgroundTasks):
    """
    Callback de retrait vendeur (INITIATED, COMPLETED, FAILED, REFUNDED, REVERSED).
    Mêmes codes que le webhook de paiement; 404 si la demande de retrait est inconnue.
    """
    raw_body = await request.body()
    try:
        result = await run_in_threadpool(
            payouts_service.process_payout_webhook, provider, raw_body, request.headers, background_tasks
        )
        return JSONResponse(result)
    except (HTTPException, MarketplaceError):
        raise
    except Exception:
        logger.exception("Erreur receive_payout_webhook provider=%s", provider)
        return JSONResponse({"success": False, "error": "Internal error"}, status_code=500)


@router.post("/{provider}", include_in_schema=False)
async def receive_webhook(provider: str, request: Request, background_tasks: BackgroundTasks):
    """
    Webhook fournisseur (ClickPesa, Flutterwave): pas d'authentification utilisateur,
    l'authenticité repose sur la signature HMAC du corps brut.
    - 200 {success: true} (y compris "Already processed" en cas de re-livraison)
    - 401 signature invalide, 400 schéma/montant, 404 référence inconnue, 500 erreur interne
    """
    raw_body = await request.body()
    try:
        result = await run_in_threadpool(
            webhooks_service.process_webhook, provider, raw_body, request.headers, background_tasks
        )
        return JSONResponse(result)
    except (HTTPException, MarketplaceError):
        raise
    except Exception:
        logger.exception("Erreur receive_webhook provider=%s", provider)
        return JSONResponse({"success": False, "error": "Internal error"}, status_code=500)
