"""
Module 'ledger': panier et calcul des totaux (pas de réseau, pas de stockage).
"""

from .models import CartTotals, LedgerSnapshot, LineItem, to_money
from .service import PriceLedger, clamp_taxable_amount, compute_totals

__all__ = [
    "CartTotals",
    "LedgerSnapshot",
    "LineItem",
    "to_money",
    "PriceLedger",
    "clamp_taxable_amount",
    "compute_totals",
]
