"""Runtime settings (key/value table) and association-year helpers."""

from __future__ import annotations

import logging
import uuid
from datetime import date, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.models.admin import Setting
from src.models.membership import AssociationYear

logger = logging.getLogger(__name__)

MEMBERSHIP_FEE_KEY = "MEMBERSHIP_FEE"
DEFAULT_PERIOD = timedelta(days=365)


async def get_setting(db: AsyncSession, key: str) -> str | None:
    result = await db.execute(select(Setting).where(Setting.key == key))
    row = result.scalar_one_or_none()
    return row.value if row else None


async def set_setting(db: AsyncSession, key: str, value: str, description: str | None = None) -> Setting:
    """Insert or update a setting."""
    result = await db.execute(select(Setting).where(Setting.key == key))
    row = result.scalar_one_or_none()
    if row is None:
        row = Setting(key=key, value=value, description=description)
        db.add(row)
    else:
        row.value = value
        if description is not None:
            row.description = description
    await db.flush()
    return row


async def get_membership_fee(db: AsyncSession) -> int:
    """Fee in cents: active year, then the MEMBERSHIP_FEE setting, then config default."""
    year = await get_active_year(db)
    if year is not None and year.membership_fee > 0:
        return year.membership_fee

    raw = await get_setting(db, MEMBERSHIP_FEE_KEY)
    if raw is not None:
        try:
            fee = int(raw)
        except ValueError:
            fee = 0
        if fee > 0:
            return fee
        logger.warning("Ignoring invalid %s setting: %r", MEMBERSHIP_FEE_KEY, raw)
    return settings.association.default_membership_fee


# ── Association years ────────────────────────────────────────────────


async def get_active_year(db: AsyncSession) -> AssociationYear | None:
    result = await db.execute(
        select(AssociationYear)
        .where(AssociationYear.is_active.is_(True))
        .order_by(AssociationYear.start_date.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_years(db: AsyncSession) -> list[AssociationYear]:
    result = await db.execute(select(AssociationYear).order_by(AssociationYear.start_date.desc()))
    return list(result.scalars().all())


async def create_year(db: AsyncSession, start: date, end: date, fee_cents: int) -> AssociationYear:
    """Create an inactive year. Activation is a separate step."""
    if end < start:
        raise ValueError("La data di fine deve essere successiva alla data di inizio")
    if fee_cents <= 0:
        raise ValueError("La quota deve essere maggiore di zero")
    year = AssociationYear(start_date=start, end_date=end, membership_fee=fee_cents, is_active=False)
    db.add(year)
    await db.flush()
    return year


async def activate_year(db: AsyncSession, year_id: uuid.UUID) -> AssociationYear | None:
    """Deactivate every year, then activate `year_id`. Returns None if not found."""
    year = await db.get(AssociationYear, year_id)
    if year is None:
        return None
    await db.execute(
        update(AssociationYear).where(AssociationYear.is_active.is_(True)).values(is_active=False)
    )
    year.is_active = True
    await db.flush()
    logger.info("Association year %s activated (%s..%s)", year.id, year.start_date, year.end_date)
    return year


def membership_period(year: AssociationYear | None) -> timedelta:
    """Length of one membership: the active year's span, or 365 days."""
    if year is None:
        return DEFAULT_PERIOD
    return (year.end_date - year.start_date) + timedelta(days=1)
