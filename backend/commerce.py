"""
Commerce order events — Admission of platform "order created" payloads
into the confirmation workflow.

Only cash-on-delivery orders with a resolvable phone number are admitted.
Phone candidates are tried in order: billing address, shipping address,
customer record. A configured default agent phone replaces the customer's
number for every admitted order (useful on test stores).
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from config.settings import OrdersConfig
from models.schemas import OrderInput
from utils.phone import is_e164, normalize_order_phone

COD_GATEWAYS = frozenset({"cash_on_delivery", "cod"})


def is_cod(payload: dict[str, Any]) -> bool:
    gateway = str(payload.get("gateway") or "").lower()
    names = [str(n).lower() for n in payload.get("payment_gateway_names") or []]
    return gateway in COD_GATEWAYS or any(n in COD_GATEWAYS for n in names)


def phone_candidates(payload: dict[str, Any]) -> list[Any]:
    return [
        (payload.get("billing_address") or {}).get("phone"),
        (payload.get("shipping_address") or {}).get("phone"),
        (payload.get("customer") or {}).get("phone"),
    ]


def extract_phone(payload: dict[str, Any], country_code: str = "+91") -> Optional[str]:
    for raw in phone_candidates(payload):
        phone = normalize_order_phone(raw, country_code)
        if phone:
            return phone
    return None


def _customer_name(payload: dict[str, Any]) -> str:
    customer = payload.get("customer") or {}
    first, last = customer.get("first_name"), customer.get("last_name")
    if first and last:
        return f"{first} {last}".strip()
    return (
        (payload.get("billing_address") or {}).get("name")
        or (payload.get("shipping_address") or {}).get("name")
        or "Customer"
    )


def _placed_at(payload: dict[str, Any]) -> datetime:
    raw = payload.get("created_at")
    if raw:
        try:
            parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except ValueError:
            pass
    return datetime.now(timezone.utc)


def build_order_input(shop: str, payload: dict[str, Any], config: OrdersConfig) -> Optional[OrderInput]:
    """
    Map an order-created payload to OrderInput.
    Returns None when the order is not COD or no phone can be resolved.
    """
    if not is_cod(payload) or payload.get("id") is None:
        return None

    agent_phone = (config.default_agent_phone or "").strip()
    phone = agent_phone if is_e164(agent_phone) else extract_phone(payload, config.default_country_code)
    if not phone:
        return None

    external_id = str(payload["id"])
    order_number = payload.get("order_number") or payload.get("name") or external_id
    return OrderInput(
        external_order_id=external_id,
        order_number=str(order_number),
        customer_name=_customer_name(payload),
        phone_number=phone,
        store_name=str(shop or "").replace(".myshopify.com", ""),
        total_price=str(payload.get("total_price") or "0"),
        order_placed_at=_placed_at(payload),
    )
