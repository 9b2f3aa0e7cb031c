"""Manage association years (membership periods and their fee).

Usage:
    python -m src.scripts.association_year create 2026-01-01 2026-12-31 25
    python -m src.scripts.association_year activate <year-id>
    python -m src.scripts.association_year list
"""

from __future__ import annotations

import argparse
import asyncio
import uuid
from datetime import date
from decimal import Decimal, InvalidOperation

from src.admin.formatters import format_cents, format_date
from src.db.engine import script_session
from src.membership.settings_store import activate_year, create_year, list_years


def euro_to_cents(value: str) -> int:
    """"25", "25.50" or "25,50" → cents. Raises ValueError."""
    try:
        amount = Decimal(value.strip().replace(",", "."))
    except InvalidOperation as exc:
        raise ValueError(f"Importo non valido: {value}") from exc
    return int((amount * 100).quantize(Decimal("1")))


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage association years")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create an (inactive) association year")
    create.add_argument("start", type=date.fromisoformat, help="YYYY-MM-DD")
    create.add_argument("end", type=date.fromisoformat, help="YYYY-MM-DD")
    create.add_argument("fee", help="Fee in euro, e.g. 25 or 25,50")

    activate = sub.add_parser("activate", help="Make a year the active one")
    activate.add_argument("year_id", type=uuid.UUID)

    sub.add_parser("list", help="List all years")
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> None:
    async with script_session() as db:
        if args.command == "create":
            year = await create_year(db, args.start, args.end, euro_to_cents(args.fee))
            print(f"Anno creato: {year.id} ({format_date(year.start_date)} - {format_date(year.end_date)})")
            print("Usa 'activate' per renderlo attivo.")
        elif args.command == "activate":
            year = await activate_year(db, args.year_id)
            if year is None:
                raise SystemExit(f"Anno non trovato: {args.year_id}")
            print(f"Anno attivo: {format_date(year.start_date)} - {format_date(year.end_date)}")
        else:
            years = await list_years(db)
            if not years:
                print("Nessun anno associativo configurato")
            for year in years:
                marker = "*" if year.is_active else " "
                print(
                    f"{marker} {year.id}  {format_date(year.start_date)} - {format_date(year.end_date)}  "
                    f"{format_cents(year.membership_fee)}"
                )


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    try:
        asyncio.run(_run(args))
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc


if __name__ == "__main__":
    main()
