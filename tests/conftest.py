import asyncio
import json
from decimal import Decimal
from typing import Any, Callable, Dict, Generator, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock

from caisse.errors import GatewayError
from caisse.ledger import PriceLedger
from caisse.payments import PaymentStatusResponse, StkPushResponse
from caisse.sales import Sale

# Marquage automatique selon le dossier
def pytest_collection_modifyitems(config, items):
    for item in items:
        nodeid = item.nodeid.replace("\\", "/")
        if "/tests/unit/" in nodeid or nodeid.startswith("tests/unit/") or nodeid.startswith("unit/"):
            item.add_marker(pytest.mark.unit)
        elif "/tests/integration/" in nodeid or nodeid.startswith("tests/integration/") or nodeid.startswith("integration/"):
            item.add_marker(pytest.mark.integration)


class ScriptedGateway:
    """
    Passerelle simulée: rejoue une suite de statuts (PENDING, COMPLETED, ...).
    - Une entrée Exception est levée telle quelle (erreur transitoire).
    - Une entrée asyncio.Event suspend la vérification jusqu'à ce que l'événement soit posé,
      puis rejoue l'entrée suivante (réponse « en vol »).
    - Script épuisé: PENDING indéfiniment.
    """

    def __init__(self, statuses: Optional[List[Any]] = None, checkout_id: str = "ws_CO_123", receipt: str = "QKT4ABC123"):
        self.statuses = list(statuses or [])
        self.checkout_id = checkout_id
        self.receipt = receipt
        self.initiate_calls: List[Any] = []
        self.status_calls: List[Dict[str, Any]] = []
        self.initiate_error: Optional[Exception] = None

    async def initiate_stk_push(self, request):
        self.initiate_calls.append(request)
        if self.initiate_error is not None:
            raise self.initiate_error
        return StkPushResponse.model_validate({"CheckoutRequestID": self.checkout_id, "MerchantRequestID": "mr-1"})

    async def get_payment_status(self, checkout_request_id, merchant_request_id=None):
        self.status_calls.append({"checkout_id": checkout_request_id, "merchant_id": merchant_request_id})
        entry = self.statuses.pop(0) if self.statuses else "PENDING"
        if isinstance(entry, asyncio.Event):
            await entry.wait()
            entry = self.statuses.pop(0) if self.statuses else "PENDING"
        if isinstance(entry, Exception):
            raise entry
        body: Dict[str, Any] = {"status": entry}
        if entry == "COMPLETED":
            body["transaction"] = {"mpesaReceiptNumber": self.receipt}
        if entry == "FAILED":
            body["transaction"] = {"stkResponseDescription": "Request cancelled by user"}
        return PaymentStatusResponse.model_validate(body)


def make_sale(**overrides) -> Sale:
    data = {
        "id": 501,
        "customerId": 7,
        "paymentMethod": "CASH",
        "items": [{"productId": "p1", "quantity": 2, "unitPrice": 100, "discount": 0, "name": "Sugar 1kg"}],
        "subtotal": 200,
        "discountAmount": 0,
        "taxAmount": 32,
        "total": 232,
    }
    data.update(overrides)
    return Sale.model_validate(data)


@pytest.fixture
def ledger() -> PriceLedger:
    ledger = PriceLedger(tax_rate=Decimal("0.16"))
    ledger.add_item("p1", "Sugar 1kg", 100, 2)
    return ledger

@pytest.fixture
def gateway_factory() -> Callable[..., ScriptedGateway]:
    return ScriptedGateway

@pytest.fixture
def sales_repo():
    repo = AsyncMock()
    repo.create_sale = AsyncMock(side_effect=lambda request: make_sale(paymentMethod=request.payment_method.value))
    return repo

@pytest.fixture
def transient_error() -> GatewayError:
    return GatewayError("Connection reset", transient=True)


class FakeBackend:
    """Backend + passerelle HTTP simulés pour httpx.MockTransport."""

    def __init__(self, statuses: Optional[List[str]] = None):
        self.statuses = list(statuses or [])
        self.requests: List[httpx.Request] = []
        self.sales_payloads: List[Dict[str, Any]] = []
        self.sales_status = 201
        self.initiate_error: Optional[str] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/mpesa/stkpush/initiate"):
            if self.initiate_error:
                return httpx.Response(400, json={"errorMessage": self.initiate_error})
            return httpx.Response(200, json={"CheckoutRequestID": "ws_CO_999", "MerchantRequestID": "mr-9"})
        if path.endswith("/mpesa/payment-status"):
            status = self.statuses.pop(0) if self.statuses else "PENDING"
            body: Dict[str, Any] = {"status": status}
            if status == "COMPLETED":
                body["transaction"] = {"mpesaReceiptNumber": "QKT4XYZ789"}
            return httpx.Response(200, json=body)
        if path.endswith("/sales") and request.method == "POST":
            payload = json.loads(request.content)
            self.sales_payloads.append(payload)
            if self.sales_status >= 400:
                return httpx.Response(self.sales_status, json={"message": "Database unavailable"})
            return httpx.Response(self.sales_status, json={"data": {"id": 900 + len(self.sales_payloads), **payload}})
        return httpx.Response(404, json={"message": "not found"})

    def count(self, suffix: str) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith(suffix))


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()

def _registry(fake_backend: FakeBackend, poll_interval: float, timeout: float):
    from caisse.infra.http_client import build_async_client
    from caisse.payments import MpesaGateway
    from caisse.receipts import TextReceiptEmitter
    from caisse.sales import SalesRepository
    from caisse.terminals import TerminalRegistry

    transport = httpx.MockTransport(fake_backend)
    return TerminalRegistry(
        sales=SalesRepository(build_async_client("http://backend.test/api", transport=transport)),
        gateway=MpesaGateway(build_async_client("http://backend.test/api", transport=transport)),
        receipt_emitter=TextReceiptEmitter(),
        poll_interval=poll_interval,
        timeout=timeout,
    )

@pytest.fixture()
def client(fake_backend) -> Generator[TestClient, None, None]:
    """TestClient dont le registre de terminaux parle au FakeBackend (polling accéléré)."""
    from caisse.app_setup.factory import create_app

    app = create_app()
    with TestClient(app) as c:
        app.state.terminals = _registry(fake_backend, poll_interval=0.01, timeout=0.3)
        yield c

@pytest.fixture()
def asgi_app(fake_backend):
    """
    Application servie dans la boucle du test (httpx.ASGITransport), pour lancer
    plusieurs requêtes concurrentes. Échéance longue: seule l'annulation termine le paiement.
    """
    from caisse.app_setup.factory import create_app

    app = create_app()
    app.state.terminals = _registry(fake_backend, poll_interval=0.02, timeout=10)
    return app
