"""
Taxonomie des erreurs de la caisse.

- ValidationError / PreconditionError / InvalidPhoneNumber / InvalidAmount:
  levées avant tout appel réseau.
- GatewayError: échec HTTP/réseau vers la passerelle ou le backend.
- PaymentDeclined / PaymentTimeout / PaymentCancelled: issues non abouties
  d'une confirmation M-Pesa; le panier est conservé.
- OrderSubmissionError: paiement confirmé mais vente non enregistrée.
  Jamais rejouée automatiquement (risque de doublon), toujours remontée.
"""
from typing import Any, Dict, Optional


class CaisseError(Exception):
    code = "caisse_error"

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class ValidationError(CaisseError):
    code = "validation_error"


class PreconditionError(CaisseError):
    code = "precondition_failed"


class InvalidPhoneNumber(ValidationError):
    code = "invalid_phone_number"


class InvalidAmount(ValidationError):
    code = "invalid_amount"


class GatewayError(CaisseError):
    code = "gateway_error"

    def __init__(self, message: str = "", *, status_code: Optional[int] = None, transient: bool = False, **context: Any):
        super().__init__(message, **context)
        self.status_code = status_code
        self.transient = transient


class PaymentDeclined(CaisseError):
    code = "payment_declined"


class PaymentTimeout(CaisseError):
    code = "payment_timeout"


class PaymentCancelled(CaisseError):
    code = "payment_cancelled"


class CheckoutInProgress(CaisseError):
    code = "checkout_in_progress"


class StaleAttempt(CaisseError):
    code = "stale_attempt"


class OrderSubmissionError(CaisseError):
    code = "order_submission_failed"

    def __init__(
        self,
        message: str = "",
        *,
        reconciliation_required: bool = False,
        payment_reference: Optional[str] = None,
        receipt_number: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message, **context)
        self.reconciliation_required = reconciliation_required
        self.payment_reference = payment_reference
        self.receipt_number = receipt_number

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["reconciliation_required"] = self.reconciliation_required
        if self.payment_reference:
            data["payment_reference"] = self.payment_reference
        if self.receipt_number:
            data["receipt_number"] = self.receipt_number
        return data
