"""
Reçus de caisse: contrat du collaborateur externe et rendu texte 80 mm.
"""
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from caisse.config import CURRENCY, STORE_ADDRESS, STORE_NAME, STORE_PHONE, TAX_RATE
from caisse.sales.models import Sale

WIDTH = 42


class ReceiptEmitter(ABC):
    """
    Consomme une vente finalisée et produit une représentation imprimable.
    Aucune logique métier: les montants sont ceux de la vente.
    """

    @abstractmethod
    def emit(self, sale: Sale, customer_name: Optional[str] = None, tax_rate: Optional[Decimal] = None) -> str:
        """`tax_rate`: taux appliqué par le panier qui a produit la vente."""


def receipt_number(sale: Sale) -> str:
    if sale.id not in (None, ""):
        return str(sale.id)
    if sale.mpesa_receipt_number:
        return sale.mpesa_receipt_number
    return f"TEMP-{str(int(time.time() * 1000))[-6:]}"

def _money(value: Optional[Decimal]) -> str:
    return f"{CURRENCY} {Decimal(value or 0):.2f}"

def _percent(rate: Decimal) -> str:
    return format((Decimal(str(rate)) * 100).normalize(), "f")

def _row(left: str, right: str, width: int = WIDTH) -> str:
    space = max(1, width - len(left) - len(right))
    return f"{left}{' ' * space}{right}"


class TextReceiptEmitter(ReceiptEmitter):
    """Reçu texte à largeur fixe (imprimante thermique 80 mm)."""

    def __init__(self, width: int = WIDTH, cashier_name: Optional[str] = None, tax_rate: Optional[Decimal] = None):
        self.width = width
        self.cashier_name = cashier_name
        self.tax_rate = tax_rate

    def emit(self, sale: Sale, customer_name: Optional[str] = None, tax_rate: Optional[Decimal] = None) -> str:
        w = self.width
        rate = next(r for r in (tax_rate, self.tax_rate, TAX_RATE) if r is not None)
        rule = "-" * w
        issued = sale.created_at or datetime.now(timezone.utc)
        lines: List[str] = [
            STORE_NAME.center(w).rstrip(),
            STORE_ADDRESS.center(w).rstrip(),
            f"Tel: {STORE_PHONE}".center(w).rstrip(),
            rule,
            _row(f"Date: {issued:%Y-%m-%d %H:%M}", f"Receipt #: {receipt_number(sale)}", w),
        ]
        if self.cashier_name:
            lines.append(f"Cashier: {self.cashier_name}")
        lines += [rule, _row("ITEM", "QTY     PRICE     TOTAL", w), rule]

        for item in sale.items:
            name = (item.name or str(item.product_id) or "Item")[: w - 26]
            figures = f"{item.quantity:>3} {item.net_unit_price:>9.2f} {item.line_total:>9.2f}"
            lines.append(_row(name, figures, w))
            if item.discount > 0:
                lines.append(_row(f"  - Discount ({item.name or item.product_id})", f"-{item.discount * item.quantity:.2f}", w))

        lines += [
            rule,
            _row("Subtotal:", _money(sale.subtotal), w),
            _row("Discount:", f"- {_money(sale.discount_amount)}", w),
            _row(f"Tax ({_percent(rate)}%):", _money(sale.tax_amount), w),
            _row("TOTAL:", _money(sale.total), w),
            _row("Payment Method:", sale.payment_method.label, w),
        ]
        if sale.mpesa_receipt_number:
            lines.append(_row("M-Pesa Receipt:", sale.mpesa_receipt_number, w))
        lines.append(rule)

        name = customer_name or sale.customer_name
        if name:
            lines.append(f"Customer: {name}".center(w).rstrip())
        lines += [
            "Thank you for your business!".center(w).rstrip(),
            "* Items cannot be returned/exchanged *".center(w).rstrip(),
        ]
        return "\n".join(lines) + "\n"
