"""
Registre central des routers.
- API v1: caisse (panier, encaissement, statut de paiement)
- Health: health_router
"""
from fastapi import FastAPI
from caisse.api import views as pos_views
from caisse.health.router import router as health_router

def register_routers(app: FastAPI) -> None:
    app.include_router(pos_views.router)
    app.include_router(health_router)
