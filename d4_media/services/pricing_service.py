from __future__ import annotations

from datetime import datetime
import math
from typing import Iterable


def _amount(value) -> float:
    if value is None:
        return 0.0
    if isinstance(value, dict):
        return float(value.get("amount") or 0)
    return float(value)


def compute_total(
    base_rate: float,
    duration_units: float,
    line_items: Iterable | None = None,
    additional_charges: Iterable | None = None,
    discount: float | None = 0,
) -> dict:
    """Price a booking.

    ``line_items`` are ``{"rate", "quantity"}`` mappings (or objects with
    ``Rate``/``Quantity``); ``additional_charges`` are plain amounts or
    ``{"description", "amount"}`` mappings. The total is clamped at zero.
    """
    base_amount = float(base_rate or 0) * float(duration_units or 0)

    equipment_cost = 0.0
    for item in line_items or []:
        if isinstance(item, dict):
            rate = item.get("rate")
            quantity = item.get("quantity")
        else:
            rate = getattr(item, "Rate", None)
            quantity = getattr(item, "Quantity", None)
        equipment_cost += float(rate or 0) * int(quantity or 0)

    additional_total = sum(_amount(charge) for charge in additional_charges or [])
    discount_value = float(discount or 0)

    subtotal = base_amount + equipment_cost + additional_total
    total = max(0.0, subtotal - discount_value)
    return {
        "baseAmount": round(base_amount, 2),
        "equipmentCost": round(equipment_cost, 2),
        "additionalChargesTotal": round(additional_total, 2),
        "discount": round(discount_value, 2),
        "subtotal": round(subtotal, 2),
        "total": round(total, 2),
    }


def duration_days(start: datetime, end: datetime) -> int:
    days = math.ceil((end - start).total_seconds() / 86400)
    return max(1, days)


def duration_hours(start: datetime, end: datetime) -> float:
    return round((end - start).total_seconds() / 3600, 2)


def format_amount(value) -> str:
    return f"{float(value or 0):.2f}"
