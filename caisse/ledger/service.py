"""
PriceLedger: panier d'une session de caisse et calcul des totaux.

Règles de calcul (recalcul complet après chaque mutation, jamais incrémental):
- subtotal = Σ(prix unitaire × quantité)
- remise = remise panier + Σ(remise unitaire × quantité)
- montant taxable = max(subtotal - remise, 0)   (voir clamp_taxable_amount)
- TVA = montant taxable × taux, arrondie au centime
- total = montant taxable + TVA
"""
import logging
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from caisse.config import TAX_RATE
from caisse.errors import ValidationError
from .models import CENT, ZERO, CartTotals, LedgerSnapshot, LineItem, to_money

logger = logging.getLogger(__name__)

def clamp_taxable_amount(subtotal: Decimal, discount_amount: Decimal) -> Decimal:
    """
    Règle « la remise ne crée pas de chiffre d'affaires négatif ».
    Une remise supérieure au sous-total n'est ni rejetée ni plafonnée ailleurs:
    seul le montant taxable est ramené à zéro (TVA et total nuls).
    """
    return max(subtotal - discount_amount, ZERO)

def compute_totals(items: Iterable[LineItem], cart_discount: Decimal, tax_rate: Decimal) -> CartTotals:
    items = list(items)
    subtotal = sum((item.line_total for item in items), ZERO)
    line_discounts = sum((item.discount * item.quantity for item in items), ZERO)
    discount_amount = cart_discount + line_discounts
    taxable = clamp_taxable_amount(subtotal, discount_amount)
    tax_amount = (taxable * tax_rate).quantize(CENT, rounding=ROUND_HALF_UP)
    return CartTotals(
        subtotal=subtotal.quantize(CENT),
        discount_amount=discount_amount.quantize(CENT),
        tax_amount=tax_amount,
        total=(taxable + tax_amount).quantize(CENT),
    )

def _money(value: Any, field: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field} invalide")
    try:
        amount = to_money(value)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field} invalide")
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"{field} doit être positif ou nul")
    return amount

def _quantity(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("La quantité doit être un entier")
    return value


class PriceLedger:
    """
    Panier possédé par une session de caisse (pas de singleton de processus).
    Muté uniquement par la boucle propriétaire; l'encaissement lit un instantané.
    """

    def __init__(self, tax_rate: Optional[Decimal] = None):
        self.tax_rate = Decimal(str(TAX_RATE if tax_rate is None else tax_rate))
        self._items: Dict[str, LineItem] = {}
        self._cart_discount = ZERO
        self._totals = CartTotals()

    # ----- lecture -----
    @property
    def items(self) -> List[LineItem]:
        return list(self._items.values())

    @property
    def totals(self) -> CartTotals:
        return self._totals

    @property
    def cart_discount(self) -> Decimal:
        return self._cart_discount

    def is_empty(self) -> bool:
        return not self._items

    def get(self, product_id: str) -> Optional[LineItem]:
        return self._items.get(str(product_id))

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(items=tuple(self._items.values()), totals=self._totals)

    def as_dict(self) -> Dict[str, Any]:
        return self.snapshot().as_dict()

    # ----- mutations -----
    def add_item(
        self,
        product_id: str,
        name: str,
        unit_price: Any,
        quantity: int = 1,
        available_stock: Optional[int] = None,
    ) -> LineItem:
        """
        Ajoute un article; si la ligne existe, les quantités s'additionnent
        et le prix unitaire est rafraîchi. Jamais de plafonnement silencieux:
        une quantité hors stock lève ValidationError.
        """
        product_id = str(product_id or "").strip()
        if not product_id:
            raise ValidationError("Identifiant produit manquant")
        quantity = _quantity(quantity)
        if quantity < 1:
            raise ValidationError("La quantité doit être au moins 1")
        price = _money(unit_price, "Prix unitaire")

        existing = self._items.get(product_id)
        new_quantity = quantity + (existing.quantity if existing else 0)
        if available_stock is not None and new_quantity > available_stock:
            raise ValidationError(
                f"Stock insuffisant pour {name or product_id} ({new_quantity} > {available_stock})"
            )

        if existing:
            line = existing.model_copy(update={"quantity": new_quantity, "unit_price": price})
        else:
            line = LineItem(product_id=product_id, name=name or "Product", unit_price=price, quantity=quantity)
        self._items[product_id] = line
        self._recompute()
        logger.debug("ledger.add product_id=%s quantity=%s", product_id, new_quantity)
        return line

    def set_quantity(self, product_id: str, quantity: int) -> Optional[LineItem]:
        """Remplace la quantité; en dessous de 1, équivaut à remove_item."""
        quantity = _quantity(quantity)
        if quantity < 1:
            self.remove_item(product_id)
            return None
        line = self._require(product_id)
        line = line.model_copy(update={"quantity": quantity})
        self._items[line.product_id] = line
        self._recompute()
        return line

    def remove_item(self, product_id: str) -> None:
        # Retrait idempotent: une ligne absente n'est pas une erreur
        self._items.pop(str(product_id), None)
        self._recompute()

    def apply_discount(self, amount: Any) -> CartTotals:
        """Fixe la remise panier (montant absolu, pas un pourcentage)."""
        self._cart_discount = _money(amount, "Remise")
        self._recompute()
        return self._totals

    def set_line_discount(self, product_id: str, discount: Any) -> LineItem:
        line = self._require(product_id)
        line = line.model_copy(update={"discount": _money(discount, "Remise")})
        self._items[line.product_id] = line
        self._recompute()
        return line

    def clear(self) -> None:
        self._items.clear()
        self._cart_discount = ZERO
        self._totals = CartTotals()

    # ----- interne -----
    def _require(self, product_id: str) -> LineItem:
        line = self._items.get(str(product_id))
        if line is None:
            raise ValidationError(f"Article {product_id} absent du panier")
        return line

    def _recompute(self) -> None:
        self._totals = compute_totals(self._items.values(), self._cart_discount, self.tax_rate)
