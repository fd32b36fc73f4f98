import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from marketplace.checkout import service as checkout_service
from marketplace.checkout.models import CheckoutRequest
from marketplace.errors import MarketplaceError
from marketplace.utils.rate_limit import optional_rate_limit
from marketplace.utils.security import require_user

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/checkout", tags=["Checkout API"])

# module marketplace.checkout.views
@router.post("/quote")
def quote_checkout(payload: CheckoutRequest, user: Dict[str, Any] = Depends(require_user)):
    """
    Résumé de commande (sous-total, TVA, livraison, remise, total) sans réservation.
    - Erreurs: 400 {success:false, error, errors[]} si le panier est invalide
    """
    try:
        data = checkout_service.quote(payload.items, payload.destination, payload.coupon_code)
        return {"success": True, "data": data}
    except (HTTPException, MarketplaceError):
        raise
    except Exception:
        logger.exception("Erreur quote_checkout")
        raise HTTPException(status_code=500, detail="Internal error")

@router.post("", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
def place_order(payload: CheckoutRequest, user: Dict[str, Any] = Depends(require_user)):
    """
    Crée la commande « pending » (stock réservé) à partir du panier de l'utilisateur.
    - Sécurité: require_user + rate limit (10 req / 60s)
    - Les montants sont recalculés côté serveur au prix catalogue.
    - Réponses: 201 {success, data: order}; 400 panier invalide; 409 stock insuffisant
    """
    try:
        order = checkout_service.place_order(
            user.get("id", ""),
            payload.items,
            destination=payload.destination,
            coupon_code=payload.coupon_code,
        )
        return JSONResponse({"success": True, "data": order}, status_code=201)
    except (HTTPException, MarketplaceError):
        raise
    except Exception:
        logger.exception("Erreur place_order")
        raise HTTPException(status_code=500, detail="Internal error")
