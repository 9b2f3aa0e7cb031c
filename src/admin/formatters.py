"""Jinja2 custom filters for Italian locale formatting.

All filters are registered on the Jinja2 environment in web.py.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from src.membership.states import state_label
from src.models.enums import SystemState


def format_currency(value: Decimal | float | int | None) -> str:
    """Format as Italian currency: 1234.50 -> "1.234,50"."""
    if value is None:
        return "-"
    d = Decimal(str(value))
    # Format with 2 decimal places, then swap separators for Italian locale
    formatted = f"{d:,.2f}"
    # US: 1,234.50 -> Italian: 1.234,50
    formatted = formatted.replace(",", "X").replace(".", ",").replace("X", ".")
    return formatted


def format_cents(value: int | None) -> str:
    """Cents as euro: 2500 -> "€ 25,00"."""
    if value is None:
        return "-"
    return f"€ {format_currency(Decimal(value) / 100)}"


def format_date(value: date | datetime | None) -> str:
    """Format as DD/MM/YYYY."""
    if value is None:
        return "-"
    return value.strftime("%d/%m/%Y")


def format_datetime(value: datetime | None) -> str:
    """Format as DD/MM/YYYY HH:MM."""
    if value is None:
        return "-"
    return value.strftime("%d/%m/%Y %H:%M")


def format_state(value: SystemState | str | None) -> str:
    """Italian label of a system state, e.g. "S5_ACTIVE" -> "Attivo"."""
    if value is None:
        return "-"
    try:
        return state_label(SystemState(value))
    except ValueError:
        return str(value)
