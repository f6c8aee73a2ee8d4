"""
ASGI entrypoint: expose `app` for process managers / deployments.

- En production, un process manager (ex: uvicorn, gunicorn -k uvicorn.workers.UvicornWorker)
  importe `caisse.asgi:app`.
- Toute la configuration (routes, middlewares, exceptions, lifespan) est centralisée
  dans caisse.app_setup.factory, ce fichier ne fait qu’exposer l’instance `app`.
"""

from caisse.app_setup.factory import create_app

app = create_app()
