from datetime import datetime, timezone
from typing import Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from caisse.payments.models import PaymentAttempt
from caisse.sales.models import PaymentMethod, Sale


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    customer_id: Optional[Union[int, str]] = None
    customer_name: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.CASH
    phone_number: Optional[str] = None
    account_reference: Optional[str] = None


class AttemptToken(BaseModel):
    """Jeton à usage unique émis au début d'un encaissement."""
    model_config = ConfigDict(frozen=True)

    value: str = Field(default_factory=lambda: uuid4().hex)
    minted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CheckoutResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    sale: Sale
    payment: Optional[PaymentAttempt] = None
    receipt: Optional[str] = None
