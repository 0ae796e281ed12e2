"""Map WooCommerce REST payloads onto ``orders``, ``order_items`` and ``products`` rows."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional

from dateutil import parser

MAX_AMOUNT = Decimal("999999999999.99")
MAX_INT = 2147483647


class MalformedEntityError(ValueError):
    """The payload lacks what is needed to store it."""


def parse_amount(value: Any, default: Optional[Decimal] = Decimal("0")) -> Optional[Decimal]:
    if value is None or value == "":
        return default
    try:
        parsed = Decimal(str(value).replace(",", "").strip())
    except (InvalidOperation, ValueError):
        return default
    if not parsed.is_finite():
        return default
    return min(max(parsed, -MAX_AMOUNT), MAX_AMOUNT).quantize(Decimal("0.01"))


def parse_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value is None or value == "" or isinstance(value, bool):
        return default
    try:
        parsed = int(float(str(value).strip()))
    except (TypeError, ValueError, OverflowError):
        return default
    return min(max(parsed, -MAX_INT), MAX_INT)


def parse_timestamp(payload: Mapping[str, Any], field: str) -> Optional[datetime]:
    """Prefer the ``<field>_gmt`` variant; WooCommerce omits the offset from both."""

    raw = payload.get(f"{field}_gmt") or payload.get(field)
    if not raw:
        return None
    try:
        parsed = parser.parse(str(raw))
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def remote_id(payload: Mapping[str, Any]) -> int:
    value = parse_int(payload.get("id"))
    if value is None or value <= 0:
        raise MalformedEntityError(f"entity without a usable id: {payload.get('id')!r}")
    return value


def _customer_name(billing: Mapping[str, Any]) -> Optional[str]:
    parts = [str(billing.get(key) or "").strip() for key in ("first_name", "last_name")]
    name = " ".join(part for part in parts if part)
    return name or None


def order_row(site_id: str, payload: Mapping[str, Any], *, synced_at: datetime) -> Dict[str, Any]:
    order_id = remote_id(payload)
    billing = payload.get("billing") or {}
    email = str(billing.get("email") or "").strip().lower() or None
    return {
        "site_id": site_id,
        "order_id": order_id,
        "order_number": str(payload.get("number") or order_id),
        "status": payload.get("status"),
        "currency": payload.get("currency"),
        "total": parse_amount(payload.get("total")),
        "customer_email": email,
        "customer_name": _customer_name(billing),
        "date_created": parse_timestamp(payload, "date_created"),
        "date_modified": parse_timestamp(payload, "date_modified"),
        "raw": dict(payload),
        "synced_at": synced_at,
    }


def order_item_rows(site_id: str, payload: Mapping[str, Any]) -> List[Dict[str, Any]]:
    order_id = remote_id(payload)
    rows: List[Dict[str, Any]] = []
    for item in payload.get("line_items") or []:
        item_id = parse_int(item.get("id"))
        if item_id is None:
            raise MalformedEntityError(f"order {order_id} has a line item without id")
        rows.append(
            {
                "site_id": site_id,
                "order_id": order_id,
                "item_id": item_id,
                "product_id": parse_int(item.get("product_id")),
                "variation_id": parse_int(item.get("variation_id")),
                "sku": (str(item.get("sku") or "").strip() or None),
                "name": item.get("name"),
                "quantity": parse_int(item.get("quantity"), 0),
                "price": parse_amount(item.get("price")),
                "total": parse_amount(item.get("total")),
            }
        )
    return rows


def product_row(
    site_id: str,
    payload: Mapping[str, Any],
    *,
    synced_at: datetime,
    parent_id: Optional[int] = None,
) -> Dict[str, Any]:
    product_id = remote_id(payload)
    manage_stock = payload.get("manage_stock")
    stock_quantity = parse_int(payload.get("stock_quantity")) if manage_stock is not False else None
    return {
        "site_id": site_id,
        "product_id": product_id,
        "parent_id": parent_id if parent_id is not None else (parse_int(payload.get("parent_id")) or None),
        "sku": (str(payload.get("sku") or "").strip() or None),
        "name": payload.get("name"),
        "product_type": payload.get("type") or ("variation" if parent_id else None),
        "status": payload.get("status"),
        "stock_status": payload.get("stock_status"),
        "stock_quantity": stock_quantity,
        "price": parse_amount(payload.get("price"), default=None),
        "date_modified": parse_timestamp(payload, "date_modified"),
        "raw": dict(payload),
        "synced_at": synced_at,
    }
