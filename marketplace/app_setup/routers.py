"""
Registre central des routers.
- API v1: checkout, orders, payments, payouts, webhooks
- Health: health_router
"""
from fastapi import FastAPI
from marketplace.checkout import views as checkout_views
from marketplace.orders import views as orders_views
from marketplace.payments import views as payments_views
from marketplace.payouts import views as payouts_views
from marketplace.webhooks import views as webhooks_views
from marketplace.health.router import router as health_router

def register_routers(app: FastAPI) -> None:
    # API v1
    app.include_router(checkout_views.router)
    app.include_router(orders_views.router)
    app.include_router(payments_views.router)
    app.include_router(payouts_views.router)
    app.include_router(webhooks_views.router)
    # Health & monitoring
    app.include_router(health_router)
