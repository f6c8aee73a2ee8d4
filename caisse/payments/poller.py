"""
PaymentPoller: un cycle de confirmation STK Push par instance.

IDLE -> INITIATING -> AWAITING_CONFIRMATION -> CONFIRMED | DECLINED | TIMED_OUT | ERROR

- Chaque appel réseau et chaque attente entre deux vérifications est une
  suspension interrompable: cancel() (ou l'annulation de la tâche appelante)
  interrompt immédiatement l'attente en cours.
- Un état terminal est définitif: toute réponse arrivée ensuite est ignorée.
- Une seule requête de statut en vol à la fois: les réponses sont traitées
  dans l'ordre des requêtes.
- Les erreurs réseau pendant le polling sont relancées jusqu'à l'échéance.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Awaitable, Callable, Optional

from caisse.config import PAYMENT_POLL_INTERVAL, PAYMENT_TIMEOUT
from caisse.errors import GatewayError, InvalidAmount, PaymentCancelled, StaleAttempt
from caisse.logging_setup import mask_phone
from .gateway import MpesaGateway
from .models import GatewayStatus, PaymentAttempt, PaymentState, PaymentStatusResponse, StkPushRequest
from .phone import normalize_phone

logger = logging.getLogger(__name__)

INITIATING_MESSAGE = "Initiation du paiement M-Pesa..."
AWAITING_MESSAGE = "Paiement initié. Validez le paiement sur votre téléphone..."
CONFIRMED_MESSAGE = "Paiement confirmé."
DECLINED_MESSAGE = "Paiement refusé. Veuillez réessayer."
TIMEOUT_MESSAGE = "Délai de vérification dépassé. Consultez vos SMS M-Pesa avant de réessayer."
CANCELLED_MESSAGE = "Paiement annulé par l'opérateur."


class _DeadlineReached(Exception):
    pass


def stk_amount(amount: Any) -> int:
    """Montant STK Push: arrondi au shilling entier, strictement positif."""
    if isinstance(amount, bool):
        raise InvalidAmount("Montant de paiement invalide")
    try:
        value = Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount("Montant de paiement invalide")
    if value <= 0:
        raise InvalidAmount("Montant de paiement invalide")
    return int(value)


class PaymentPoller:

    def __init__(
        self,
        gateway: MpesaGateway,
        *,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        on_update: Optional[Callable[[PaymentAttempt], None]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.poll_interval = PAYMENT_POLL_INTERVAL if poll_interval is None else poll_interval
        self.timeout = PAYMENT_TIMEOUT if timeout is None else timeout
        self.on_update = on_update
        self._sleep = sleep
        self.state = PaymentState.IDLE
        self.attempt: Optional[PaymentAttempt] = None
        self._cancel_event = asyncio.Event()
        self._cancel_reason: Optional[str] = None
        self._confirmation: Optional[asyncio.Future] = None

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # ----- API publique -----
    async def initiate(
        self,
        phone_number: str,
        amount: Any,
        reference: Optional[str] = None,
        description: Optional[str] = None,
    ) -> PaymentAttempt:
        """
        Valide le numéro et le montant (sans réseau), puis pousse l'invite STK.
        - Succès: AWAITING_CONFIRMATION avec le CheckoutRequestID.
        - Échec passerelle: ERROR, message du fournisseur conservé tel quel, GatewayError relevée.
        """
        if self.cancelled:
            raise PaymentCancelled(self._cancel_reason or CANCELLED_MESSAGE)
        if self.state is not PaymentState.IDLE:
            raise RuntimeError(f"PaymentPoller déjà utilisé (état {self.state.value})")

        phone = normalize_phone(phone_number)
        value = stk_amount(amount)
        reference = reference or f"INV-{int(time.time() * 1000)}"
        request = StkPushRequest(
            amount=value,
            phone_number=phone,
            account_reference=reference,
            transaction_desc=description or f"Payment for {reference}",
        )
        self.attempt = PaymentAttempt(phone_number=phone, amount=value, account_reference=reference)
        self._transition(PaymentState.INITIATING, INITIATING_MESSAGE)

        try:
            response = await self._guarded(self.gateway.initiate_stk_push(request))
        except GatewayError as e:
            self._settle(PaymentState.ERROR, e.message)
            raise
        except PaymentCancelled as e:
            self.attempt.cancelled = True
            self._settle(PaymentState.ERROR, e.message)
            raise
        except asyncio.CancelledError:
            self.cancel("Encaissement interrompu")
            raise

        self.attempt.id = response.checkout_request_id
        self.attempt.merchant_request_id = response.merchant_request_id
        self._transition(PaymentState.AWAITING_CONFIRMATION, AWAITING_MESSAGE)
        logger.info(
            "payments.awaiting checkout_id=%s phone=%s amount=%s",
            self.attempt.id, mask_phone(phone), value,
        )
        return self.attempt

    async def await_confirmation(
        self,
        checkout_request_id: Optional[str] = None,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> PaymentAttempt:
        """
        Vérifie immédiatement le statut puis toutes les `poll_interval` secondes
        jusqu'à COMPLETED (CONFIRMED), FAILED/CANCELLED (DECLINED), l'échéance
        (TIMED_OUT) ou une annulation (ERROR).
        Réentrant: les appels suivants partagent le même cycle et, une fois
        résolu, retournent l'issue sans nouvelle requête.
        """
        if self.attempt is None:
            if self.cancelled:
                raise PaymentCancelled(self._cancel_reason or CANCELLED_MESSAGE)
            raise RuntimeError("Aucun paiement initié")
        if checkout_request_id and checkout_request_id != self.attempt.id:
            raise StaleAttempt("Identifiant de paiement inattendu")

        if self._confirmation is None:
            if self.state.is_terminal:
                return self.attempt
            if self.state is not PaymentState.AWAITING_CONFIRMATION:
                raise RuntimeError(f"Confirmation impossible dans l'état {self.state.value}")
            self._confirmation = asyncio.ensure_future(self._poll(
                self.poll_interval if poll_interval is None else poll_interval,
                self.timeout if timeout is None else timeout,
            ))

        try:
            return await asyncio.shield(self._confirmation)
        except asyncio.CancelledError:
            # l'appelant abandonne: le polling s'arrête avec lui
            self.cancel("Encaissement interrompu")
            raise

    def cancel(self, reason: Optional[str] = None) -> bool:
        """
        Annulation coopérative et définitive: l'attente en cours est interrompue,
        aucune requête n'est plus émise, aucune réponse tardive n'est appliquée.
        Retourne False si un état terminal était déjà atteint.
        """
        if self.state.is_terminal:
            return False
        self._cancel_reason = reason or CANCELLED_MESSAGE
        self._cancel_event.set()
        if self.attempt is not None:
            self.attempt.cancelled = True
        self._settle(PaymentState.ERROR, self._cancel_reason)
        logger.info("payments.cancelled checkout_id=%s reason=%s", self.attempt.id if self.attempt else None, self._cancel_reason)
        return True

    # ----- boucle de polling -----
    async def _poll(self, poll_interval: float, timeout: float) -> PaymentAttempt:
        attempt = self.attempt
        deadline = self._now() + timeout
        try:
            while True:
                try:
                    status = await self._guarded(
                        self.gateway.get_payment_status(attempt.id, attempt.merchant_request_id),
                        deadline,
                    )
                except GatewayError as e:
                    logger.warning("payments.poll transient checkout_id=%s error=%s", attempt.id, e.message)
                    status = None
                self._observe(status)
                if status is not None and self._resolve(status):
                    break
                if self._now() >= deadline:
                    raise _DeadlineReached()
                await self._guarded(self._sleep(poll_interval), deadline)
        except _DeadlineReached:
            self._settle(PaymentState.TIMED_OUT, TIMEOUT_MESSAGE)
        except PaymentCancelled as e:
            # sans effet si cancel() a déjà fixé l'état ERROR
            attempt.cancelled = True
            self._settle(PaymentState.ERROR, e.message)
            logger.debug("payments.poll stopped checkout_id=%s", attempt.id)
        except Exception as e:
            self._settle(PaymentState.ERROR, str(e))
            raise
        return attempt

    async def _guarded(self, awaitable: Awaitable[Any], deadline: Optional[float] = None) -> Any:
        """
        Attend `awaitable` en concurrence avec le signal d'annulation et l'échéance.
        L'annulation l'emporte toujours, même si la réponse est arrivée au même tour.
        """
        task = asyncio.ensure_future(awaitable)
        cancel_waiter = asyncio.ensure_future(self._cancel_event.wait())
        timeout = None if deadline is None else max(0.0, deadline - self._now())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancel_waiter.cancel()
            if not task.done():
                task.cancel()
        if self.cancelled:
            if task in done and not task.cancelled():
                # réponse tardive: consommée puis ignorée
                task.exception()
            raise PaymentCancelled(self._cancel_reason or CANCELLED_MESSAGE)
        if task not in done:
            raise _DeadlineReached()
        return task.result()

    def _observe(self, status: Optional[PaymentStatusResponse]) -> None:
        if self.state.is_terminal:
            return
        self.attempt.polls += 1
        self.attempt.last_checked_at = datetime.now(timezone.utc)
        if status is not None:
            self.attempt.last_status = status.status
        logger.debug(
            "payments.poll checkout_id=%s status=%s polls=%s",
            self.attempt.id, status.status.value if status else None, self.attempt.polls,
        )
        self._notify()

    def _resolve(self, status: PaymentStatusResponse) -> bool:
        transaction = status.transaction
        if status.status is GatewayStatus.COMPLETED:
            receipt = transaction.mpesa_receipt_number if transaction else None
            self._settle(PaymentState.CONFIRMED, CONFIRMED_MESSAGE, receipt_number=receipt)
            return True
        if status.status in (GatewayStatus.FAILED, GatewayStatus.CANCELLED):
            reason = (transaction.stk_response_description if transaction else None) or DECLINED_MESSAGE
            self._settle(PaymentState.DECLINED, reason)
            return True
        return False

    # ----- transitions -----
    def _transition(self, state: PaymentState, message: str) -> bool:
        if self.state.is_terminal:
            return False
        self.state = state
        if self.attempt is not None:
            self.attempt.state = state
            self.attempt.message = message
        self._notify()
        return True

    def _settle(self, state: PaymentState, message: str, **updates: Any) -> bool:
        if self.state.is_terminal:
            logger.debug("payments.discarded state=%s current=%s", state.value, self.state.value)
            return False
        if self.attempt is not None:
            for key, value in updates.items():
                setattr(self.attempt, key, value)
        self._transition(state, message)
        logger.info(
            "payments.settled checkout_id=%s state=%s",
            self.attempt.id if self.attempt else None, state.value,
        )
        return True

    def _notify(self) -> None:
        if self.on_update is None or self.attempt is None:
            return
        try:
            self.on_update(self.attempt)
        except Exception:
            logger.exception("payments.on_update callback failed")

    @staticmethod
    def _now() -> float:
        return asyncio.get_running_loop().time()
