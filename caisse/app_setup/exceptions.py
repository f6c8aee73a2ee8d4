"""
Gestionnaires d’exceptions utilisés par la factory.
- Traduit la taxonomie caisse.errors en réponses JSON {detail, code} stables.
- OrderSubmissionError: 500 + reconciliation_required, journalisée en CRITICAL
  (paiement potentiellement encaissé sans vente enregistrée).
"""
import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from caisse.errors import (
    CaisseError,
    CheckoutInProgress,
    GatewayError,
    OrderSubmissionError,
    PaymentCancelled,
    PaymentDeclined,
    PaymentTimeout,
    PreconditionError,
    StaleAttempt,
    ValidationError,
)

logger = logging.getLogger(__name__)

STATUS_BY_ERROR = (
    (OrderSubmissionError, 500),
    (ValidationError, 400),
    (PreconditionError, 400),
    (PaymentDeclined, 402),
    (CheckoutInProgress, 409),
    (StaleAttempt, 409),
    (PaymentCancelled, 409),
    (PaymentTimeout, 504),
    (GatewayError, 502),
)

def status_for(exc: CaisseError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500

def register_exception_handlers(app: FastAPI) -> None:
    """
    Enregistre le handler CaisseError.
    - Les erreurs de validation/précondition ne sont pas journalisées au-delà de INFO.
    """
    @app.exception_handler(CaisseError)
    async def caisse_error_handler(request: Request, exc: CaisseError):
        status_code = status_for(exc)
        if isinstance(exc, OrderSubmissionError) and exc.reconciliation_required:
            logger.critical("pos.reconciliation_required path=%s detail=%s", request.url.path, exc.message)
        elif status_code >= 500:
            logger.error("pos.error path=%s code=%s detail=%s", request.url.path, exc.code, exc.message)
        else:
            logger.info("pos.rejected path=%s code=%s detail=%s", request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=status_code, content=exc.to_dict())
