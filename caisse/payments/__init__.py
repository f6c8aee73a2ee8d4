"""
Module 'payments' (feature-first): point d'entrée public.
Réunit normalisation des numéros, client passerelle M-Pesa et PaymentPoller.
"""

from .phone import normalize_phone, is_valid_phone
from .models import (
    GatewayStatus,
    PaymentAttempt,
    PaymentState,
    PaymentStatusResponse,
    StkPushRequest,
    StkPushResponse,
)
from .gateway import MpesaGateway
from .poller import PaymentPoller, stk_amount

__all__ = [
    # phone
    "normalize_phone",
    "is_valid_phone",
    # models
    "GatewayStatus",
    "PaymentAttempt",
    "PaymentState",
    "PaymentStatusResponse",
    "StkPushRequest",
    "StkPushResponse",
    # gateway
    "MpesaGateway",
    # poller
    "PaymentPoller",
    "stk_amount",
]
