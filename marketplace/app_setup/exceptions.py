"""
Gestionnaires d'exceptions.
- MarketplaceError (et sous-classes): {"success": false, "error", "code"} avec le code HTTP porté par l'erreur.
- HTTPException: corps {"detail"} conservé pour les clients programmatiques.
"""
import logging
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from marketplace.errors import MarketplaceError

logger = logging.getLogger(__name__)

def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(MarketplaceError)
    async def marketplace_error(request: Request, exc: MarketplaceError):
        if exc.status_code >= 500:
            logger.error("api.error path=%s code=%s msg=%s", request.url.path, exc.code, exc.message)
        else:
            logger.info("api.rejected path=%s status=%s code=%s", request.url.path, exc.status_code, exc.code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=getattr(exc, "headers", None))
