"""
Cas d'usage 'checkout': orchestre ledger, paiement M-Pesa, vente et reçu.

Protocole:
  1) préconditions (client, panier non vide, numéro M-Pesa valide), sans réseau
  2) jeton de tentative + instantané figé du panier
  3) M-Pesa: initiation puis confirmation; toute issue autre que CONFIRMED
     interrompt l'encaissement et laisse le panier intact
  4) POST /sales une seule fois, si le jeton est toujours valide
  5) succès: vidage du panier, reçu, résultat à l'appelant
Une vente refusée après paiement confirmé lève OrderSubmissionError
(rapprochement requis), jamais rejouée automatiquement.
"""
import logging
from typing import Callable, Optional, Set

from caisse.errors import (
    CheckoutInProgress,
    GatewayError,
    InvalidPhoneNumber,
    OrderSubmissionError,
    PaymentCancelled,
    PaymentDeclined,
    PaymentTimeout,
    PreconditionError,
    StaleAttempt,
)
from caisse.ledger import LedgerSnapshot, PriceLedger
from caisse.logging_setup import mask_phone
from caisse.payments import MpesaGateway, PaymentAttempt, PaymentPoller, PaymentState, normalize_phone
from caisse.receipts import ReceiptEmitter
from caisse.sales import Sale, SaleLineRequest, SaleRequest, SalesRepository
from .models import AttemptToken, CheckoutRequest, CheckoutResult

logger = logging.getLogger(__name__)


class CheckoutOrchestrator:

    def __init__(
        self,
        ledger: PriceLedger,
        sales: SalesRepository,
        gateway: MpesaGateway,
        *,
        receipt_emitter: Optional[ReceiptEmitter] = None,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        on_payment_update: Optional[Callable[[PaymentAttempt], None]] = None,
    ):
        self.ledger = ledger
        self.sales = sales
        self.gateway = gateway
        self.receipt_emitter = receipt_emitter
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.on_payment_update = on_payment_update
        self._token: Optional[AttemptToken] = None
        self._consumed: Set[str] = set()
        self._poller: Optional[PaymentPoller] = None

    @property
    def in_progress(self) -> bool:
        return self._token is not None

    @property
    def payment(self) -> Optional[PaymentAttempt]:
        return self._poller.attempt if self._poller else None

    # ----- préconditions -----
    def validate(self, request: CheckoutRequest) -> Optional[str]:
        """Vérifie les préconditions; retourne le numéro M-Pesa normalisé le cas échéant."""
        if request.customer_id in (None, ""):
            raise PreconditionError("Veuillez sélectionner un client")
        if self.ledger.is_empty():
            raise PreconditionError("Le panier est vide")
        if not request.payment_method.requires_confirmation:
            return None
        if not request.phone_number:
            raise PreconditionError("Veuillez saisir le numéro M-Pesa")
        try:
            return normalize_phone(request.phone_number)
        except InvalidPhoneNumber as e:
            raise PreconditionError(e.message) from e

    # ----- encaissement -----
    async def checkout(self, request: CheckoutRequest) -> CheckoutResult:
        phone = self.validate(request)
        if self.in_progress:
            raise CheckoutInProgress("Un encaissement est déjà en cours")

        token = AttemptToken()
        self._token = token
        self._poller = None
        snapshot = self.ledger.snapshot()
        logger.info(
            "checkout.start token=%s method=%s total=%s items=%s",
            token.value, request.payment_method.value, snapshot.totals.total, len(snapshot.items),
        )
        try:
            attempt = None
            if request.payment_method.requires_confirmation:
                attempt = await self._confirm_payment(token, request, phone, snapshot)
            sale = await self._submit(token, request, snapshot, phone, attempt)
        finally:
            self._release(token)

        self.ledger.clear()
        receipt = self._emit(sale, request.customer_name)
        logger.info("checkout.completed token=%s sale_id=%s total=%s", token.value, sale.id, sale.total)
        return CheckoutResult(sale=sale, payment=attempt, receipt=receipt)

    def cancel(self, reason: Optional[str] = None) -> bool:
        """
        Abandon de l'encaissement en cours par l'opérateur.
        - Refusé (False) si la vente est en cours d'envoi ou si le paiement est déjà résolu.
        - Sinon le polling s'arrête et le jeton est révoqué: la tentative ne peut plus aboutir.
        """
        token = self._token
        if token is None or token.value in self._consumed:
            return False
        if self._poller is not None and not self._poller.cancel(reason):
            return False
        self._token = None
        logger.info("checkout.cancelled token=%s", token.value)
        return True

    # ----- étapes -----
    async def _confirm_payment(
        self, token: AttemptToken, request: CheckoutRequest, phone: str, snapshot: LedgerSnapshot
    ) -> PaymentAttempt:
        poller = PaymentPoller(
            self.gateway,
            poll_interval=self.poll_interval,
            timeout=self.timeout,
            on_update=self.on_payment_update,
        )
        self._poller = poller
        self._ensure_current(token)
        await poller.initiate(
            phone,
            snapshot.totals.total,
            reference=request.account_reference,
            description=f"Payment for {request.customer_name or 'guest'}",
        )
        attempt = await poller.await_confirmation(poller.attempt.id)

        if attempt.state is PaymentState.CONFIRMED:
            return attempt
        if attempt.state is PaymentState.DECLINED:
            raise PaymentDeclined(attempt.message or "Paiement refusé")
        if attempt.state is PaymentState.TIMED_OUT:
            raise PaymentTimeout(attempt.message or "Délai de paiement dépassé")
        if attempt.cancelled:
            raise PaymentCancelled(attempt.message or "Paiement annulé")
        raise GatewayError(attempt.message or "Paiement M-Pesa non abouti")

    async def _submit(
        self,
        token: AttemptToken,
        request: CheckoutRequest,
        snapshot: LedgerSnapshot,
        phone: Optional[str],
        attempt: Optional[PaymentAttempt],
    ) -> Sale:
        self._consume(token)
        body = SaleRequest(
            customer_id=request.customer_id,
            payment_method=request.payment_method,
            items=[
                SaleLineRequest(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    price=item.unit_price,
                    discount=item.discount,
                    name=item.name,
                )
                for item in snapshot.items
            ],
            mpesa_number=phone,
            mpesa_transaction_id=attempt.id if attempt else None,
            mpesa_receipt_number=attempt.receipt_number if attempt else None,
        )
        try:
            sale = await self.sales.create_sale(body)
        except GatewayError as e:
            if attempt is not None:
                logger.critical(
                    "checkout.reconciliation_required token=%s checkout_id=%s receipt=%s phone=%s amount=%s error=%s",
                    token.value, attempt.id, attempt.receipt_number,
                    mask_phone(attempt.phone_number), attempt.amount, e.message,
                )
                message = (
                    f"Paiement M-Pesa reçu ({attempt.receipt_number or attempt.id}) "
                    f"mais vente non enregistrée: {e.message}"
                )
            else:
                logger.error("checkout.submission_failed token=%s error=%s", token.value, e.message)
                message = f"Vente non enregistrée: {e.message}"
            raise OrderSubmissionError(
                message,
                reconciliation_required=attempt is not None,
                payment_reference=attempt.id if attempt else None,
                receipt_number=attempt.receipt_number if attempt else None,
            ) from e
        return self._complete(sale, request, snapshot, attempt)

    def _complete(
        self, sale: Sale, request: CheckoutRequest, snapshot: LedgerSnapshot, attempt: Optional[PaymentAttempt]
    ) -> Sale:
        """Complète la copie locale avec l'instantané quand le backend omet des champs."""
        totals = snapshot.totals
        updates = {}
        for field, value in (
            ("subtotal", totals.subtotal),
            ("discount_amount", totals.discount_amount),
            ("tax_amount", totals.tax_amount),
            ("total", totals.total),
            ("customer_id", request.customer_id),
            ("customer_name", request.customer_name),
        ):
            if getattr(sale, field) is None:
                updates[field] = value
        if not sale.items:
            updates["items"] = [
                {"productId": i.product_id, "quantity": i.quantity, "unitPrice": i.unit_price,
                 "discount": i.discount, "name": i.name}
                for i in snapshot.items
            ]
        if attempt is not None:
            updates.setdefault("payment_reference", sale.payment_reference or attempt.id)
            updates.setdefault("mpesa_receipt_number", sale.mpesa_receipt_number or attempt.receipt_number)
        if not updates:
            return sale
        return Sale.model_validate({**sale.model_dump(), **updates})

    def _emit(self, sale: Sale, customer_name: Optional[str]) -> Optional[str]:
        if self.receipt_emitter is None:
            return None
        try:
            return self.receipt_emitter.emit(sale, customer_name, tax_rate=self.ledger.tax_rate)
        except Exception:
            # l'impression ne remet jamais en cause une vente enregistrée
            logger.exception("checkout.receipt failed sale_id=%s", sale.id)
            return None

    # ----- jeton de tentative -----
    def _ensure_current(self, token: AttemptToken) -> None:
        if self._token is None or self._token.value != token.value:
            raise StaleAttempt("Tentative d'encaissement périmée")

    def _consume(self, token: AttemptToken) -> None:
        self._ensure_current(token)
        if token.value in self._consumed:
            raise StaleAttempt("Tentative d'encaissement déjà utilisée")
        self._consumed.add(token.value)

    def _release(self, token: AttemptToken) -> None:
        if self._token is not None and self._token.value == token.value:
            self._token = None
