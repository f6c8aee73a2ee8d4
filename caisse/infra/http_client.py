from typing import Dict, Optional

import httpx

from caisse.config import API_BASE_URL, API_TOKEN, HTTP_TIMEOUT, MPESA_BASE_URL

def _headers(token: Optional[str]) -> Dict[str, str]:
    headers = {"Accept": "application/json", "Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers

def build_async_client(
    base_url: str,
    token: Optional[str] = None,
    timeout: float = HTTP_TIMEOUT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Client HTTP asynchrone partagé (backend ou passerelle).
    - transport: injecté dans les tests (httpx.MockTransport).
    - Aucune relance automatique: les relances relèvent de l'appelant.
    """
    return httpx.AsyncClient(
        base_url=base_url,
        headers=_headers(token),
        timeout=timeout,
        transport=transport,
    )

def get_backend_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    return build_async_client(API_BASE_URL, API_TOKEN, transport=transport)

def get_gateway_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """
    Client 'passerelle' M-Pesa; par défaut la même origine que le backend
    (les routes /mpesa/... y sont proxifiées), même jeton.
    """
    return build_async_client(MPESA_BASE_URL, API_TOKEN, transport=transport)
