"""
Modèles de vente: requête POST /sales et vente renvoyée par le backend.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

# Montant sérialisé en nombre JSON (le backend n'accepte pas les chaînes)
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class PaymentMethod(str, Enum):
    CASH = "CASH"
    CARD = "CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    MPESA = "MPESA"

    @property
    def requires_confirmation(self) -> bool:
        # espèces/carte/virement: réglés de façon synchrone
        return self is PaymentMethod.MPESA

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class SaleLineRequest(CamelModel):
    product_id: str
    quantity: int
    price: Money
    discount: Money = Decimal("0")
    name: Optional[str] = None


class SaleRequest(CamelModel):
    customer_id: Union[int, str]
    payment_method: PaymentMethod
    items: List[SaleLineRequest]
    mpesa_number: Optional[str] = None
    mpesa_transaction_id: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class SaleItem(CamelModel):
    product_id: Union[int, str] = Field(validation_alias=AliasChoices("productId", "product_id"))
    quantity: int
    unit_price: Money = Field(validation_alias=AliasChoices("unitPrice", "price", "unit_price"))
    discount: Money = Decimal("0")
    name: Optional[str] = Field(default=None, validation_alias=AliasChoices("name", "productName"))

    @property
    def net_unit_price(self) -> Decimal:
        return self.unit_price - self.discount

    @property
    def line_total(self) -> Decimal:
        return self.net_unit_price * self.quantity


class Sale(CamelModel):
    """
    Vente finalisée. Le backend en est propriétaire; la caisse n'en garde
    qu'une copie transitoire pour le reçu.
    """
    id: Union[int, str]
    customer_id: Optional[Union[int, str]] = None
    customer_name: Optional[str] = None
    payment_method: PaymentMethod
    items: List[SaleItem] = []
    subtotal: Optional[Money] = None
    discount_amount: Optional[Money] = Field(
        default=None, validation_alias=AliasChoices("discountAmount", "discount", "discount_amount")
    )
    tax_amount: Optional[Money] = Field(
        default=None, validation_alias=AliasChoices("taxAmount", "tax", "tax_amount")
    )
    total: Optional[Money] = Field(default=None, validation_alias=AliasChoices("total", "totalAmount"))
    payment_reference: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("paymentReference", "mpesaTransactionId", "payment_reference")
    )
    mpesa_receipt_number: Optional[str] = None
    created_at: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("createdAt", "date", "saleDate", "created_at")
    )
