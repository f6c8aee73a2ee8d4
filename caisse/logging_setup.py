import logging
import sys
from typing import Optional

from caisse.config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

def configure_logging(level: Optional[str] = None) -> None:
    """
    Installe un unique handler console sur le logger racine.
    - Idempotent: les handlers existants (basicConfig, reload uvicorn) sont retirés.
    """
    root = logging.getLogger()
    root.setLevel((level or LOG_LEVEL).upper())
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)

def mask_phone(phone: Optional[str]) -> str:
    """Masque un numéro pour les logs: 254712345678 -> 2547****5678."""
    if not phone:
        return "-"
    if len(phone) <= 8:
        return "****"
    return f"{phone[:4]}****{phone[-4:]}"
