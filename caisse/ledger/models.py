"""
Modèles du panier: lignes, totaux dérivés et instantané figé pour l'encaissement.
"""
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

def to_money(value: Any) -> Decimal:
    """Convertit en Decimal arrondi au centime (demi-supérieur)."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LineItem(CamelModel):
    """Ligne de panier (immuable: le ledger remplace la ligne à chaque mise à jour)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    product_id: str
    name: str
    unit_price: Decimal
    quantity: int = Field(ge=1)
    # remise unitaire (par article), 0 par défaut
    discount: Decimal = ZERO

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class CartTotals(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    subtotal: Decimal = ZERO
    discount_amount: Decimal = ZERO
    tax_amount: Decimal = ZERO
    total: Decimal = ZERO

    @property
    def taxable_amount(self) -> Decimal:
        return self.total - self.tax_amount


class LedgerSnapshot(CamelModel):
    """
    Copie figée du panier prise au début d'un encaissement.
    Les mutations ultérieures du panier vivant n'ont aucun effet dessus.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    items: Tuple[LineItem, ...] = ()
    totals: CartTotals = CartTotals()
    taken_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, Any]:
        data = self.totals.model_dump(by_alias=True, mode="json")
        data["items"] = [item.model_dump(by_alias=True, mode="json") for item in self.items]
        return data
