"""
Accès au backend pour la feature 'sales'.
"""
import logging
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from caisse.errors import GatewayError
from .models import Sale, SaleRequest

logger = logging.getLogger(__name__)

SALES_PATH = "/sales"

def unwrap_envelope(payload: Any) -> Any:
    """
    Normalise les enveloppes du backend: objet nu, {data: ...} ou {content: ...}.
    Seul cet adaptateur connaît ces variantes.
    """
    if isinstance(payload, dict):
        for key in ("data", "content"):
            inner = payload.get(key)
            if isinstance(inner, (dict, list)):
                return inner
    return payload


class SalesRepository:
    """POST /sales. Jamais de relance: un doublon de vente coûte plus qu'une erreur."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def create_sale(self, request: SaleRequest) -> Sale:
        payload = request.to_payload()
        try:
            response = await self.client.post(SALES_PATH, json=payload)
        except httpx.HTTPError as e:
            logger.exception("sales.repository.create_sale failed customer_id=%s", request.customer_id)
            raise GatewayError(f"Échec de l'enregistrement de la vente: {e}", transient=True) from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            message = (body.get("message") if isinstance(body, dict) else None) or "Checkout failed"
            raise GatewayError(str(message), status_code=response.status_code)

        try:
            sale = Sale.model_validate(unwrap_envelope(response.json()))
        except (ValueError, PydanticValidationError) as e:
            raise GatewayError("Réponse de vente invalide", status_code=response.status_code) from e
        logger.info("sales.created sale_id=%s method=%s", sale.id, sale.payment_method.value)
        return sale
