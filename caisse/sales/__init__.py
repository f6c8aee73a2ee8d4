from .models import PaymentMethod, Sale, SaleItem, SaleLineRequest, SaleRequest
from .repository import SalesRepository, unwrap_envelope

__all__ = [
    "PaymentMethod",
    "Sale",
    "SaleItem",
    "SaleLineRequest",
    "SaleRequest",
    "SalesRepository",
    "unwrap_envelope",
]
