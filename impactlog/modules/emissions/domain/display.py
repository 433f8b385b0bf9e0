"""Presentation-independent formatting for CO2e values and scopes."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from impactlog.modules.emissions.domain.calculator import kg_to_tonnes
from impactlog.modules.emissions.domain.models import SCOPE_LABELS, ActivityRecord
from impactlog.shared.core.config import get_settings

CALCULATING_MARKER = "Calculating..."
UNAVAILABLE_MARKER = "unavailable"


def _quantize(value: Decimal, places: int) -> str:
    exponent = Decimal(1).scaleb(-places)
    return str(value.quantize(exponent, rounding=ROUND_HALF_UP))


def format_co2e_kg(co2e_kg: Decimal, places: int | None = None) -> str:
    if places is None:
        places = get_settings().KG_DISPLAY_DECIMALS
    return _quantize(Decimal(co2e_kg), places)


def format_co2e_tonnes(co2e_kg: Decimal, places: int | None = None) -> str:
    if places is None:
        places = get_settings().TONNE_DISPLAY_DECIMALS
    return _quantize(kg_to_tonnes(Decimal(co2e_kg)), places)


def scope_label(scope: Any) -> str:
    try:
        number = int(scope)
    except (TypeError, ValueError):
        return "Unknown scope"
    label = SCOPE_LABELS.get(number)
    if label is None:
        return "Unknown scope"
    return f"Scope {number} ({label})"


def display_co2e(record: ActivityRecord, *, calculating: bool = False) -> str:
    """
    Text shown next to an activity.

    A record that was never calculated reads "unavailable", not zero, so an
    error never understates emissions.
    """
    if calculating:
        return CALCULATING_MARKER
    if record.co2e_kg is None:
        return UNAVAILABLE_MARKER
    return (
        f"{format_co2e_kg(record.co2e_kg)} kg CO2e "
        f"(~{format_co2e_tonnes(record.co2e_kg)} tCO2e)"
    )
