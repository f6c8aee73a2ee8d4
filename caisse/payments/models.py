"""
Modèles du flux STK Push (M-Pesa): requêtes/réponses passerelle et tentative de paiement.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class PaymentState(str, Enum):
    IDLE = "IDLE"
    INITIATING = "INITIATING"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    CONFIRMED = "CONFIRMED"
    DECLINED = "DECLINED"
    TIMED_OUT = "TIMED_OUT"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    PaymentState.CONFIRMED,
    PaymentState.DECLINED,
    PaymentState.TIMED_OUT,
    PaymentState.ERROR,
})


class GatewayStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    # le payeur a refusé l'invite sur son téléphone
    CANCELLED = "CANCELLED"


class StkPushRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    amount: int = Field(gt=0)
    phone_number: str
    account_reference: str
    transaction_desc: str


class StkPushResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    checkout_request_id: str = Field(validation_alias=AliasChoices("CheckoutRequestID", "checkoutRequestId"))
    merchant_request_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("MerchantRequestID", "merchantRequestId")
    )
    customer_message: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("CustomerMessage", "customerMessage")
    )


class GatewayTransaction(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    mpesa_receipt_number: Optional[str] = None
    stk_response_description: Optional[str] = None


class PaymentStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: GatewayStatus
    transaction: Optional[GatewayTransaction] = None

    @field_validator("status", mode="before")
    @classmethod
    def _upper(cls, v):
        return str(v or "").strip().upper()


class PaymentAttempt(BaseModel):
    """
    Tentative de paiement STK Push, possédée par un unique PaymentPoller.
    Jamais réutilisée: une nouvelle tentative = un nouveau poller.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    phone_number: str
    amount: int
    account_reference: str
    state: PaymentState = PaymentState.IDLE
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_checked_at: Optional[datetime] = None
    last_status: Optional[GatewayStatus] = None
    polls: int = 0
    receipt_number: Optional[str] = None
    message: Optional[str] = None
    cancelled: bool = False
