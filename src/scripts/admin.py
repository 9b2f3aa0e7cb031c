"""Manage admin accounts for the web dashboard.

Usage:
    python -m src.scripts.admin create <email> <password> [--name NAME]
    python -m src.scripts.admin reset-password <email> <password>
"""

from __future__ import annotations

import argparse
import asyncio

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.engine import script_session
from src.models.admin import Admin
from src.security.passwords import hash_password

MIN_PASSWORD_LENGTH = 8


class AdminCommandError(Exception):
    """Invalid input or conflicting state; the message is shown to the operator."""


async def _find(db: AsyncSession, email: str) -> Admin | None:
    result = await db.execute(select(Admin).where(func.lower(Admin.email) == email.strip().lower()))
    return result.scalar_one_or_none()


def _check_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise AdminCommandError(f"La password deve avere almeno {MIN_PASSWORD_LENGTH} caratteri")


async def create_admin(db: AsyncSession, email: str, password: str, name: str | None = None) -> Admin:
    _check_password(password)
    if await _find(db, email) is not None:
        raise AdminCommandError(f"Admin già esistente con email: {email}")
    admin = Admin(email=email.strip().lower(), name=name, password_hash=hash_password(password))
    db.add(admin)
    await db.flush()
    return admin


async def reset_password(db: AsyncSession, email: str, password: str) -> Admin:
    _check_password(password)
    admin = await _find(db, email)
    if admin is None:
        raise AdminCommandError(f"Nessun admin con email: {email}")
    admin.password_hash = hash_password(password)
    await db.flush()
    return admin


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage admin accounts")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create an admin account")
    create.add_argument("email")
    create.add_argument("password")
    create.add_argument("--name", default=None)

    reset = sub.add_parser("reset-password", help="Change an admin password")
    reset.add_argument("email")
    reset.add_argument("password")
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> None:
    async with script_session() as db:
        if args.command == "create":
            admin = await create_admin(db, args.email, args.password, args.name)
            print(f"Admin creato: {admin.email} ({admin.name or 'N/A'})")
        else:
            admin = await reset_password(db, args.email, args.password)
            print(f"Password aggiornata per {admin.email}")


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    try:
        asyncio.run(_run(args))
    except AdminCommandError as exc:
        raise SystemExit(str(exc)) from exc


if __name__ == "__main__":
    main()
