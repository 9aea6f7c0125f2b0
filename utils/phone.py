"""
Phone number helpers — E.164 validation and normalisation.

    validate_phone("+91 70416-68245")   → "+917041668245"
    normalize_order_phone("7041668245") → "+917041668245"
    to_whatsapp_address("+91704...")    → "whatsapp:+91704..."
"""
from __future__ import annotations

import re
from typing import Iterable, Optional

from core.errors import ValidationError

E164_PATTERN = re.compile(r"^\+[1-9]\d{6,14}$")
_SEPARATORS = re.compile(r"[\s\-().]")
_WHATSAPP_PREFIX = re.compile(r"^whatsapp:", re.IGNORECASE)


def is_e164(phone: str) -> bool:
    return bool(phone) and bool(E164_PATTERN.match(phone))


def validate_phone(raw: str) -> str:
    """Strip separators, add a missing '+', and require E.164."""
    phone = _SEPARATORS.sub("", str(raw or ""))
    if not phone.startswith("+"):
        phone = f"+{phone}"
    if not is_e164(phone):
        raise ValidationError(
            "Invalid phone number. Must be E.164 format, e.g. +917041668245 "
            "or +12125551234 (country code required)."
        )
    return phone


def check_allowed_prefix(phone: str, prefixes: Iterable[str]) -> None:
    """Empty prefix list allows every number."""
    allowed = [p.strip() for p in prefixes or [] if p and p.strip()]
    if allowed and not any(phone.startswith(p) for p in allowed):
        raise ValidationError(
            f"Number is outside your allowed calling region. Must start with: {', '.join(allowed)}."
        )


def normalize_order_phone(raw: Optional[str], country_code: str = "+91") -> Optional[str]:
    """
    Lenient normalisation for commerce-platform phone fields.
    10 bare digits get the default country code; "91" + 10 digits gets a '+'.
    """
    if not raw:
        return None
    phone = _SEPARATORS.sub("", str(raw))
    if phone.startswith("+"):
        return phone if is_e164(phone) else None
    if re.fullmatch(r"\d{10}", phone):
        return f"{country_code}{phone}"
    digits = country_code.lstrip("+")
    if re.fullmatch(rf"{digits}\d{{10}}", phone):
        return f"+{phone}"
    return None


def strip_whatsapp_prefix(address: Optional[str]) -> Optional[str]:
    if not address:
        return None
    phone = _WHATSAPP_PREFIX.sub("", str(address)).strip()
    return phone or None


def to_whatsapp_address(phone: str) -> str:
    return phone if phone.startswith("whatsapp:") else f"whatsapp:{phone}"
