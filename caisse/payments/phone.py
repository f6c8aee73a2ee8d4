import re
from typing import Optional

from caisse.errors import InvalidPhoneNumber

# Format attendu par la passerelle: 2547XXXXXXXX (12 chiffres)
MSISDN_PATTERN = re.compile(r"^2547\d{8}$")

def normalize_phone(phone: Optional[str]) -> str:
    """
    Normalise un numéro M-Pesa au format 2547XXXXXXXX.
    - 0XXXXXXXXX      -> 254XXXXXXXXX
    - 7XXXXXXXX       -> 2547XXXXXXXX
    - 254XXXXXXXXX    -> inchangé
    Les séparateurs (espaces, tirets, +) sont ignorés. Tout autre format lève
    InvalidPhoneNumber, avant tout appel réseau.
    """
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) == 10 and digits.startswith("0"):
        digits = "254" + digits[1:]
    elif len(digits) == 9 and digits.startswith("7"):
        digits = "254" + digits
    if not MSISDN_PATTERN.match(digits):
        raise InvalidPhoneNumber("Numéro invalide. Utilisez 07XXXXXXXX ou 2547XXXXXXXX")
    return digits

def is_valid_phone(phone: Optional[str]) -> bool:
    try:
        normalize_phone(phone)
    except InvalidPhoneNumber:
        return False
    return True
