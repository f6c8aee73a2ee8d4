# caisse.config
from decimal import Decimal
from pathlib import Path
import os
from dotenv import load_dotenv

# Calculer le chemin du projet puis charger .env de manière explicite
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH, override=False)

"""
Configuration centrale de la caisse.

- Charge le fichier .env à la racine du projet (BASE_DIR/.env)
- Normalise et expose les URLs/secrets du backend et de la passerelle M-Pesa
- Expose les constantes de tarification (TVA) et du protocole de confirmation
  (intervalle de polling, délai maximal), surchargées par instance dans les tests
"""

def _clean_env(v: str) -> str:
    """
    Nettoie une valeur d'environnement:
    - supprime les espaces et guillemets (simples, doubles) et backticks
    - retourne toujours une chaîne (jamais None)
    """
    return (v or "").strip().strip("'").strip('"').strip("`")

def _clean_url(v: str) -> str:
    url = _clean_env(v)
    if url and not url.startswith("http"):
        url = "http://" + url
    return url.rstrip("/")

def _float_env(name: str, default: float) -> float:
    raw = _clean_env(os.getenv(name) or "")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default

# Backend (ventes) : POST /sales
API_BASE_URL = _clean_url(os.getenv("API_BASE_URL") or "http://localhost:8080/api")
API_TOKEN = _clean_env(os.getenv("API_TOKEN") or "")

# Passerelle M-Pesa : par défaut proxifiée par le backend (/mpesa/...)
MPESA_BASE_URL = _clean_url(os.getenv("MPESA_BASE_URL") or API_BASE_URL)

# Timeout réseau par requête HTTP (secondes)
HTTP_TIMEOUT = _float_env("HTTP_TIMEOUT", 30.0)

# Tarification: TVA kényane 16 %
TAX_RATE = Decimal(_clean_env(os.getenv("TAX_RATE") or "") or "0.16")

# Confirmation STK Push: 5 s entre deux vérifications, 120 s au total
PAYMENT_POLL_INTERVAL = _float_env("PAYMENT_POLL_INTERVAL", 5.0)
PAYMENT_TIMEOUT = _float_env("PAYMENT_TIMEOUT", 120.0)

# En-tête du reçu
CURRENCY = _clean_env(os.getenv("CURRENCY") or "Ksh")
STORE_NAME = _clean_env(os.getenv("STORE_NAME") or "INVENTORY STORE")
STORE_ADDRESS = _clean_env(os.getenv("STORE_ADDRESS") or "123 Business Street, Nairobi")
STORE_PHONE = _clean_env(os.getenv("STORE_PHONE") or "+254 700 000000")

# Logs et CORS (dev)
LOG_LEVEL = _clean_env(os.getenv("LOG_LEVEL") or "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
