import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from caisse.checkout import CheckoutRequest
from caisse.terminals import TerminalRegistry, TerminalSession

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/pos/{terminal_id}", tags=["POS API"])


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AddItemBody(_Body):
    product_id: str
    name: str = "Product"
    unit_price: Decimal
    quantity: int = 1
    available_stock: Optional[int] = None


class QuantityBody(_Body):
    quantity: int


class DiscountBody(_Body):
    amount: Decimal = Field(default=Decimal("0"))


async def get_registry(request: Request) -> TerminalRegistry:
    return request.app.state.terminals

async def get_session(terminal_id: str, registry: TerminalRegistry = Depends(get_registry)) -> TerminalSession:
    """Ouvre la session du terminal au besoin (routes qui modifient le panier)."""
    return registry.get(terminal_id)

async def get_existing_session(terminal_id: str, registry: TerminalRegistry = Depends(get_registry)) -> TerminalSession:
    # les lectures n'ouvrent jamais de session
    session = registry.find(terminal_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Terminal inconnu")
    return session

def _cart(session: TerminalSession) -> Dict[str, Any]:
    return session.ledger.as_dict()

# module caisse.api.views
@router.get("/cart")
async def get_cart(session: TerminalSession = Depends(get_existing_session)):
    """Panier courant et totaux dérivés du terminal."""
    return _cart(session)

@router.post("/cart/items")
async def add_item(body: AddItemBody, session: TerminalSession = Depends(get_session)):
    """
    Ajoute un article (quantités additives). Le stock, s'il est fourni par
    l'écran appelant, est vérifié sans plafonnement silencieux (400 sinon).
    """
    session.ledger.add_item(
        body.product_id, body.name, body.unit_price, body.quantity, available_stock=body.available_stock,
    )
    return _cart(session)

@router.put("/cart/items/{product_id}")
async def set_quantity(product_id: str, body: QuantityBody, session: TerminalSession = Depends(get_session)):
    session.ledger.set_quantity(product_id, body.quantity)
    return _cart(session)

@router.delete("/cart/items/{product_id}")
async def remove_item(product_id: str, session: TerminalSession = Depends(get_session)):
    session.ledger.remove_item(product_id)
    return _cart(session)

@router.put("/cart/items/{product_id}/discount")
async def set_line_discount(product_id: str, body: DiscountBody, session: TerminalSession = Depends(get_session)):
    session.ledger.set_line_discount(product_id, body.amount)
    return _cart(session)

@router.post("/cart/discount")
async def apply_discount(body: DiscountBody, session: TerminalSession = Depends(get_session)):
    session.ledger.apply_discount(body.amount)
    return _cart(session)

@router.delete("/cart")
async def clear_cart(session: TerminalSession = Depends(get_session)):
    session.ledger.clear()
    return _cart(session)

@router.post("/checkout")
async def checkout(body: CheckoutRequest, session: TerminalSession = Depends(get_session)):
    """
    Encaisse le panier du terminal.
    - Espèces/carte/virement: vente envoyée immédiatement.
    - M-Pesa: la requête reste ouverte jusqu'à confirmation, refus, délai ou annulation
      (POST /checkout/cancel depuis un autre appel).
    - Erreurs: voir caisse.app_setup.exceptions (400/402/409/502/504/500).
    """
    result = await session.orchestrator.checkout(body)
    session.last_receipt = result.receipt
    logger.info("pos.checkout terminal_id=%s sale_id=%s", session.terminal_id, result.sale.id)
    return result.model_dump(by_alias=True, mode="json")

@router.post("/checkout/cancel")
async def cancel_checkout(session: TerminalSession = Depends(get_existing_session)):
    cancelled = session.orchestrator.cancel()
    return {"cancelled": cancelled}

@router.get("/checkout/status")
async def checkout_status(session: TerminalSession = Depends(get_existing_session)):
    """État du paiement en cours (dernière vérification, message) pour l'affichage."""
    payment = session.orchestrator.payment
    return {
        "inProgress": session.orchestrator.in_progress,
        "payment": payment.model_dump(by_alias=True, mode="json") if payment else None,
    }

@router.get("/receipt")
async def last_receipt(session: TerminalSession = Depends(get_existing_session)):
    return {"receipt": session.last_receipt}

@router.delete("")
async def close_terminal(terminal_id: str, registry: TerminalRegistry = Depends(get_registry)):
    """Ferme la session: paiement en cours annulé, panier oublié."""
    closed = registry.close(terminal_id)
    return {"closed": closed}
