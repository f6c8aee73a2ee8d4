"""
Middlewares transverses de l’application.
- register_basic_middlewares: CORS (écrans de caisse servis depuis une autre origine).
- register_no_cache_middleware: aucune mise en cache des réponses /api/v1/pos (panier, statut).
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from caisse.config import CORS_ORIGINS

def register_basic_middlewares(app: FastAPI) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials="*" not in CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

def register_no_cache_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def no_cache_pos(request: Request, call_next):
        response = await call_next(request)
        if request.url.path.startswith("/api/v1/pos"):
            response.headers["Cache-Control"] = "no-store"
        return response
