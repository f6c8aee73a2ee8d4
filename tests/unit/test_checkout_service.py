import asyncio
from decimal import Decimal

import pytest
from unittest.mock import AsyncMock, MagicMock

from caisse.checkout import CheckoutOrchestrator, CheckoutRequest
from caisse.errors import (
    CheckoutInProgress,
    GatewayError,
    OrderSubmissionError,
    PaymentCancelled,
    PaymentDeclined,
    PaymentTimeout,
    PreconditionError,
)
from caisse.payments import PaymentState
from caisse.ledger import PriceLedger
from caisse.receipts import TextReceiptEmitter
from caisse.sales import PaymentMethod, Sale

D = Decimal


def _orchestrator(ledger, sales_repo, gateway, **kwargs) -> CheckoutOrchestrator:
    kwargs.setdefault("poll_interval", 0)
    kwargs.setdefault("timeout", 5)
    return CheckoutOrchestrator(ledger, sales_repo, gateway, **kwargs)

def _mpesa(**overrides) -> CheckoutRequest:
    data = {"customerId": 7, "customerName": "Jane", "paymentMethod": "MPESA", "phoneNumber": "0712345678"}
    data.update(overrides)
    return CheckoutRequest.model_validate(data)

def _sale(request) -> Sale:
    return Sale.model_validate({
        "id": 77,
        "customerId": request.customer_id,
        "paymentMethod": request.payment_method.value,
        "items": [i.model_dump(by_alias=True) for i in request.items],
        "mpesaTransactionId": request.mpesa_transaction_id,
        "mpesaReceiptNumber": request.mpesa_receipt_number,
    })

async def _until(predicate, rounds: int = 200):
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0.001)
    raise AssertionError("condition jamais atteinte")


# ----- préconditions -----
@pytest.mark.asyncio
async def test_missing_customer_is_rejected_without_network(ledger, sales_repo, gateway_factory):
    gateway = gateway_factory()
    orchestrator = _orchestrator(ledger, sales_repo, gateway)

    with pytest.raises(PreconditionError) as exc:
        await orchestrator.checkout(CheckoutRequest(payment_method=PaymentMethod.CASH))

    assert "client" in exc.value.message
    sales_repo.create_sale.assert_not_called()
    assert gateway.initiate_calls == []

@pytest.mark.asyncio
async def test_empty_cart_is_rejected(sales_repo, gateway_factory):
    orchestrator = _orchestrator(PriceLedger(), sales_repo, gateway_factory())
    with pytest.raises(PreconditionError):
        await orchestrator.checkout(CheckoutRequest(customer_id=7))
    sales_repo.create_sale.assert_not_called()

@pytest.mark.asyncio
@pytest.mark.parametrize("phone", [None, "", "12345", "254112345678"])
async def test_mpesa_requires_valid_phone(ledger, sales_repo, gateway_factory, phone):
    gateway = gateway_factory()
    orchestrator = _orchestrator(ledger, sales_repo, gateway)

    with pytest.raises(PreconditionError):
        await orchestrator.checkout(_mpesa(phoneNumber=phone))

    assert gateway.initiate_calls == []
    assert orchestrator.in_progress is False

def test_validate_returns_normalized_phone(ledger, sales_repo, gateway_factory):
    orchestrator = _orchestrator(ledger, sales_repo, gateway_factory())
    assert orchestrator.validate(_mpesa(phoneNumber="0712 345 678")) == "254712345678"
    assert orchestrator.validate(CheckoutRequest(customer_id=7)) is None


# ----- espèces et assimilés -----
@pytest.mark.asyncio
@pytest.mark.parametrize("method", [PaymentMethod.CASH, PaymentMethod.CARD, PaymentMethod.BANK_TRANSFER])
async def test_synchronous_methods_submit_once_and_clear(ledger, sales_repo, gateway_factory, method):
    gateway = gateway_factory()
    emitter = MagicMock()
    emitter.emit.return_value = "RECU"
    orchestrator = _orchestrator(ledger, sales_repo, gateway, receipt_emitter=emitter)

    result = await orchestrator.checkout(CheckoutRequest(customer_id=7, payment_method=method))

    sales_repo.create_sale.assert_awaited_once()
    body = sales_repo.create_sale.await_args.args[0]
    assert body.payment_method is method
    assert body.mpesa_transaction_id is None
    assert [i.product_id for i in body.items] == ["p1"]
    assert gateway.initiate_calls == []
    assert ledger.is_empty()
    assert result.receipt == "RECU"
    assert result.payment is None
    assert orchestrator.in_progress is False


# ----- M-Pesa -----
@pytest.mark.asyncio
async def test_mpesa_pending_pending_completed_submits_one_order(ledger, sales_repo, gateway_factory):
    gateway = gateway_factory(["PENDING", "PENDING", "COMPLETED"])
    orchestrator = _orchestrator(ledger, sales_repo, gateway)

    result = await orchestrator.checkout(_mpesa())

    assert len(gateway.status_calls) == 3
    sales_repo.create_sale.assert_awaited_once()
    body = sales_repo.create_sale.await_args.args[0]
    assert body.payment_method is PaymentMethod.MPESA
    assert body.mpesa_number == "254712345678"
    assert body.mpesa_transaction_id == "ws_CO_123"
    assert body.mpesa_receipt_number == "QKT4ABC123"
    assert result.payment.state is PaymentState.CONFIRMED
    assert result.sale.mpesa_receipt_number == "QKT4ABC123"
    assert ledger.is_empty()

@pytest.mark.asyncio
async def test_stk_push_uses_ledger_total_and_customer_description(ledger, sales_repo, gateway_factory):
    gateway = gateway_factory(["COMPLETED"])
    orchestrator = _orchestrator(ledger, sales_repo, gateway)

    await orchestrator.checkout(_mpesa(accountReference="INV-42"))

    request = gateway.initiate_calls[0]
    assert request.amount == 232
    assert request.account_reference == "INV-42"
    assert request.transaction_desc == "Payment for Jane"

@pytest.mark.asyncio
async def test_guest_description_when_no_customer_name(ledger, sales_repo, gateway_factory):
    gateway = gateway_factory(["COMPLETED"])
    orchestrator = _orchestrator(ledger, sales_repo, gateway)
    await orchestrator.checkout(_mpesa(customerName=None))
    assert gateway.initiate_calls[0].transaction_desc == "Payment for guest"

@pytest.mark.asyncio
async def test_declined_payment_leaves_cart_untouched(ledger, sales_repo, gateway_factory):
    gateway = gateway_factory(["FAILED"])
    orchestrator = _orchestrator(ledger, sales_repo, gateway)
    before = ledger.as_dict()

    with pytest.raises(PaymentDeclined):
        await orchestrator.checkout(_mpesa())

    sales_repo.create_sale.assert_not_called()
    assert ledger.as_dict() == before
    assert orchestrator.in_progress is False

@pytest.mark.asyncio
async def test_timeout_creates_no_order(ledger, sales_repo, gateway_factory):
    gateway = gateway_factory()
    orchestrator = _orchestrator(ledger, sales_repo, gateway, poll_interval=0.02, timeout=0.1)

    with pytest.raises(PaymentTimeout):
        await orchestrator.checkout(_mpesa())

    sales_repo.create_sale.assert_not_called()
    assert ledger.totals.total == D("232.00")
    assert orchestrator.payment.state is PaymentState.TIMED_OUT

@pytest.mark.asyncio
async def test_initiation_failure_surfaces_gateway_error(ledger, sales_repo, gateway_factory):
    gateway = gateway_factory()
    gateway.initiate_error = GatewayError("Invalid Access Token", status_code=400)
    orchestrator = _orchestrator(ledger, sales_repo, gateway)

    with pytest.raises(GatewayError) as exc:
        await orchestrator.checkout(_mpesa())

    assert exc.value.message == "Invalid Access Token"
    sales_repo.create_sale.assert_not_called()
    assert not ledger.is_empty()

@pytest.mark.asyncio
async def test_retry_after_failure_uses_fresh_attempt(ledger, sales_repo, gateway_factory):
    gateway = gateway_factory(["FAILED", "COMPLETED"])
    orchestrator = _orchestrator(ledger, sales_repo, gateway)

    with pytest.raises(PaymentDeclined):
        await orchestrator.checkout(_mpesa())
    first = orchestrator.payment
    result = await orchestrator.checkout(_mpesa())

    assert result.payment is not first
    assert len(gateway.initiate_calls) == 2
    sales_repo.create_sale.assert_awaited_once()


# ----- concurrence et annulation -----
@pytest.mark.asyncio
async def test_second_checkout_while_in_progress_is_rejected(ledger, sales_repo, gateway_factory):
    gateway = gateway_factory()
    orchestrator = _orchestrator(ledger, sales_repo, gateway, poll_interval=10, timeout=60)
    task = asyncio.ensure_future(orchestrator.checkout(_mpesa()))
    await _until(lambda: len(gateway.status_calls) == 1)

    with pytest.raises(CheckoutInProgress):
        await orchestrator.checkout(_mpesa())

    assert orchestrator.cancel() is True
    with pytest.raises(PaymentCancelled):
        await task
    assert len(gateway.initiate_calls) == 1

@pytest.mark.asyncio
async def test_cancel_mid_poll_creates_no_order_even_if_payment_completes(ledger, sales_repo, gateway_factory):
    release = asyncio.Event()
    gateway = gateway_factory([release, "COMPLETED"])
    orchestrator = _orchestrator(ledger, sales_repo, gateway)
    task = asyncio.ensure_future(orchestrator.checkout(_mpesa()))
    await _until(lambda: len(gateway.status_calls) == 1)

    assert orchestrator.cancel("Client parti") is True
    release.set()
    with pytest.raises(PaymentCancelled):
        await task

    sales_repo.create_sale.assert_not_called()
    assert orchestrator.payment.state is not PaymentState.CONFIRMED
    assert not ledger.is_empty()

@pytest.mark.asyncio
async def test_cancel_without_checkout_returns_false(ledger, sales_repo, gateway_factory):
    orchestrator = _orchestrator(ledger, sales_repo, gateway_factory())
    assert orchestrator.cancel() is False

@pytest.mark.asyncio
async def test_cancel_during_submission_is_refused(ledger, gateway_factory):
    submitted = asyncio.Event()
    release = asyncio.Event()

    sales = AsyncMock()

    async def create_sale(request):
        submitted.set()
        await release.wait()
        return _sale(request)

    sales.create_sale = AsyncMock(side_effect=create_sale)
    orchestrator = _orchestrator(ledger, sales, gateway_factory(["COMPLETED"]))
    task = asyncio.ensure_future(orchestrator.checkout(_mpesa()))
    await asyncio.wait_for(submitted.wait(), timeout=1)

    # le paiement est confirmé et la vente part: l'annulation est refusée
    assert orchestrator.cancel() is False
    release.set()
    result = await task

    assert result.payment.state is PaymentState.CONFIRMED
    sales.create_sale.assert_awaited_once()


# ----- échec d'enregistrement de la vente -----
@pytest.mark.asyncio
async def test_submission_failure_after_payment_requires_reconciliation(ledger, gateway_factory, caplog):
    sales = AsyncMock()
    sales.create_sale = AsyncMock(side_effect=GatewayError("Database unavailable", status_code=500))
    orchestrator = _orchestrator(ledger, sales, gateway_factory(["COMPLETED"]))

    with pytest.raises(OrderSubmissionError) as exc:
        await orchestrator.checkout(_mpesa())

    err = exc.value
    assert err.reconciliation_required is True
    assert err.payment_reference == "ws_CO_123"
    assert err.receipt_number == "QKT4ABC123"
    assert "Database unavailable" in err.message
    # jamais rejouée automatiquement
    sales.create_sale.assert_awaited_once()
    assert not ledger.is_empty()
    assert orchestrator.in_progress is False
    assert any(r.levelname == "CRITICAL" for r in caplog.records)

@pytest.mark.asyncio
async def test_cash_submission_failure_needs_no_reconciliation(ledger, gateway_factory):
    sales = AsyncMock()
    sales.create_sale = AsyncMock(side_effect=GatewayError("Checkout failed", status_code=400))
    orchestrator = _orchestrator(ledger, sales, gateway_factory())

    with pytest.raises(OrderSubmissionError) as exc:
        await orchestrator.checkout(CheckoutRequest(customer_id=7))

    assert exc.value.reconciliation_required is False
    assert exc.value.to_dict()["reconciliation_required"] is False


# ----- reçu -----
@pytest.mark.asyncio
async def test_receipt_failure_does_not_fail_checkout(ledger, sales_repo, gateway_factory):
    emitter = MagicMock()
    emitter.emit.side_effect = RuntimeError("imprimante hors ligne")
    orchestrator = _orchestrator(ledger, sales_repo, gateway_factory(), receipt_emitter=emitter)

    result = await orchestrator.checkout(CheckoutRequest(customer_id=7, customer_name="Jane"))

    assert result.receipt is None
    emitter.emit.assert_called_once()
    assert emitter.emit.call_args.args[1] == "Jane"
    assert ledger.is_empty()

@pytest.mark.asyncio
async def test_receipt_shows_the_ledger_tax_rate(sales_repo, gateway_factory):
    # Arrange: taux du terminal différent du taux par défaut
    ledger = PriceLedger(tax_rate=D("0.08"))
    ledger.add_item("p1", "Sugar 1kg", 100, 2)
    orchestrator = _orchestrator(ledger, sales_repo, gateway_factory(), receipt_emitter=TextReceiptEmitter())

    # Act
    result = await orchestrator.checkout(CheckoutRequest(customer_id=7))

    # Assert
    assert "Tax (8%):" in result.receipt
    assert "Tax (16%)" not in result.receipt

@pytest.mark.asyncio
async def test_sale_missing_totals_is_completed_from_snapshot(ledger, gateway_factory):
    sales = AsyncMock()
    sales.create_sale = AsyncMock(return_value=Sale.model_validate({"id": 78, "paymentMethod": "CASH"}))
    orchestrator = _orchestrator(ledger, sales, gateway_factory())

    result = await orchestrator.checkout(CheckoutRequest(customer_id=7, customer_name="Jane"))

    assert result.sale.total == D("232.00")
    assert result.sale.tax_amount == D("32.00")
    assert result.sale.customer_name == "Jane"
    assert result.sale.items[0].product_id == "p1"
