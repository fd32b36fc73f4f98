"""
Middlewares transverses de l'application.
- register_cors_middleware: CORS à liste blanche explicite. Une origine inconnue reçoit
  l'origine canonique de production (jamais "*"); pré-vol OPTIONS -> 204.
  Starlette CORSMiddleware omet l'en-tête pour une origine refusée et ne sait pas
  renvoyer l'origine canonique à la place, d'où ce middleware dédié.
- register_security_middleware: en-têtes de sécurité de base sur toutes les réponses.
"""
from fastapi import FastAPI, Request
from fastapi.responses import Response
from marketplace.config import ALLOWED_ORIGINS, CANONICAL_ORIGIN

CORS_ALLOW_HEADERS = "authorization, x-client-info, apikey, content-type"
CORS_ALLOW_METHODS = "GET, POST, OPTIONS"
CORS_MAX_AGE = "86400"

def resolve_origin(origin: str | None) -> str:
    if origin and origin in ALLOWED_ORIGINS:
        return origin
    return CANONICAL_ORIGIN

def cors_headers(origin: str | None) -> dict:
    return {
        "Access-Control-Allow-Origin": resolve_origin(origin),
        "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
        "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
        "Access-Control-Max-Age": CORS_MAX_AGE,
        "Vary": "Origin",
    }

def register_cors_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def cors(request: Request, call_next):
        headers = cors_headers(request.headers.get("origin"))
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=headers)
        response = await call_next(request)
        for key, value in headers.items():
            response.headers[key] = value
        return response

def register_security_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        if "X-Frame-Options" not in response.headers:
            response.headers["X-Frame-Options"] = "DENY"
        if "X-Content-Type-Options" not in response.headers:
            response.headers["X-Content-Type-Options"] = "nosniff"
        if "Referrer-Policy" not in response.headers:
            response.headers["Referrer-Policy"] = "no-referrer"
        return response
