"""
Factory d'application utilisée par les entrypoints (marketplace.asgi, marketplace.app).
Ordonne les étapes d'initialisation de manière lisible et testable.
"""
from fastapi import FastAPI
from .lifespan import lifespan
from .middlewares import register_cors_middleware, register_security_middleware
from .exceptions import register_exception_handlers
from .routers import register_routers

def create_app() -> FastAPI:
    """
    Construit l'app FastAPI avec le lifespan et enregistre:
      - en-têtes de sécurité puis CORS (ajouté en dernier pour s'exécuter en premier,
        afin que les pré-vols OPTIONS et les réponses d'erreur portent les en-têtes CORS)
      - gestionnaires d'exceptions
      - routers (checkout, orders, payments, webhooks, health)
    """
    app = FastAPI(title="Marketplace Payments API", lifespan=lifespan)
    register_security_middleware(app)
    register_cors_middleware(app)
    register_exception_handlers(app)
    register_routers(app)
    return app
