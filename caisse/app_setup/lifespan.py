"""
Lifespan FastAPI: initialisation/arrêt des ressources partagées.
- Configure les logs.
- Ouvre les clients HTTP (backend + passerelle M-Pesa) et le registre des terminaux.
- À l'arrêt: annule les encaissements en cours puis ferme les clients.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from caisse.infra.http_client import get_backend_client, get_gateway_client
from caisse.logging_setup import configure_logging
from caisse.payments import MpesaGateway
from caisse.receipts import TextReceiptEmitter
from caisse.sales import SalesRepository
from caisse.terminals import TerminalRegistry

@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger = logging.getLogger("uvicorn.error")

    backend_client = get_backend_client()
    gateway_client = get_gateway_client()
    app.state.terminals = TerminalRegistry(
        sales=SalesRepository(backend_client),
        gateway=MpesaGateway(gateway_client),
        receipt_emitter=TextReceiptEmitter(),
    )
    logger.info("POS ready backend=%s gateway=%s", backend_client.base_url, gateway_client.base_url)
    try:
        yield
    finally:
        app.state.terminals.close_all()
        await backend_client.aclose()
        await gateway_client.aclose()
