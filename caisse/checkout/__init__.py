from .models import AttemptToken, CheckoutRequest, CheckoutResult
from .service import CheckoutOrchestrator

__all__ = ["AttemptToken", "CheckoutRequest", "CheckoutResult", "CheckoutOrchestrator"]
