"""
Adaptateur M-Pesa: centralise les appels STK Push et la vérification de statut.
"""
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from caisse.errors import GatewayError
from caisse.logging_setup import mask_phone
from .models import PaymentStatusResponse, StkPushRequest, StkPushResponse

logger = logging.getLogger(__name__)

INITIATE_PATH = "/mpesa/stkpush/initiate"
STATUS_PATH = "/mpesa/payment-status"

def _provider_message(response: httpx.Response, fallback: str) -> str:
    """Message d'erreur du fournisseur, tel quel, sinon le message par défaut."""
    try:
        body = response.json()
    except ValueError:
        return fallback
    if isinstance(body, dict):
        return str(body.get("message") or body.get("errorMessage") or body.get("detail") or fallback)
    return fallback


class MpesaGateway:
    """Client de la passerelle de paiement mobile (STK Push)."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def _request(self, method: str, path: str, *, fallback: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise GatewayError(f"{fallback}: {e}", transient=True) from e
        if response.status_code >= 400:
            raise GatewayError(
                _provider_message(response, f"{fallback} (HTTP {response.status_code})"),
                status_code=response.status_code,
                transient=response.status_code >= 500 or response.status_code == 429,
            )
        try:
            body = response.json()
        except ValueError as e:
            raise GatewayError("Réponse invalide du serveur", status_code=response.status_code) from e
        if not isinstance(body, dict):
            raise GatewayError("Réponse invalide du serveur", status_code=response.status_code)
        return body

    async def initiate_stk_push(self, request: StkPushRequest) -> StkPushResponse:
        """
        POST /mpesa/stkpush/initiate -> {CheckoutRequestID, MerchantRequestID}.
        Un échec d'initiation n'est jamais relancé: l'invite a pu partir.
        """
        logger.info(
            "payments.initiate phone=%s amount=%s reference=%s",
            mask_phone(request.phone_number), request.amount, request.account_reference,
        )
        body = await self._request(
            "POST",
            INITIATE_PATH,
            fallback="Échec de l'initiation du paiement M-Pesa",
            json=request.model_dump(by_alias=True),
        )
        try:
            return StkPushResponse.model_validate(body)
        except PydanticValidationError as e:
            raise GatewayError("Réponse M-Pesa invalide: champs requis manquants") from e

    async def get_payment_status(
        self, checkout_request_id: str, merchant_request_id: Optional[str] = None
    ) -> PaymentStatusResponse:
        """GET /mpesa/payment-status?checkout_id=... -> {status: PENDING|COMPLETED|FAILED}."""
        params = {"checkout_id": checkout_request_id}
        if merchant_request_id:
            params["merchant_id"] = merchant_request_id
        body = await self._request(
            "GET", STATUS_PATH, fallback="Échec de la vérification du paiement", params=params,
        )
        try:
            return PaymentStatusResponse.model_validate(body)
        except PydanticValidationError as e:
            raise GatewayError("Format de réponse invalide du serveur", transient=True) from e
