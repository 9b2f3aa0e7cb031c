"""Generic member export (CSV and Excel).

The AICS registry format lives in src.admin.aics; both share the loader
and filters defined here.
"""

from __future__ import annotations

import csv
import io
import logging
import uuid
from collections.abc import Sequence
from datetime import date, datetime, time, timedelta, timezone

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.models.enums import ExportFormat, MembershipStatus, PaymentStatus
from src.models.user import Profile, User

logger = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
CSV_MEDIA_TYPE = "text/csv; charset=utf-8"
EMPTY_CSV = "No data to export"

CSV_HEADERS = [
    "Email",
    "Phone",
    "Newsletter Subscribed",
    "Registration Date",
    "Last Updated",
    "First Name",
    "Last Name",
    "Birth Date",
    "Tax Code",
    "Address",
    "City",
    "Postal Code",
    "Province",
    "Document Type",
    "Document Number",
    "Privacy Consent",
    "Data Consent",
    "Profile Complete",
    "Membership Number",
    "Membership Status",
    "Payment Status",
    "Membership Start Date",
    "Membership End Date",
    "Payment Amount",
]

STATUS_FILTERS = ("all", "active", "pending", "expired", "canceled", "awaiting_card", "no_membership")

_HEADER_FILL = PatternFill(fill_type="solid", fgColor="FFE0E0E0")
_MAX_COLUMN_WIDTH = 50


class ExportFilters(BaseModel):
    """Admin list/export filters. An explicit user_ids list overrides the rest."""

    search: str = ""
    status: str = "all"
    date_from: date | None = None
    date_to: date | None = None
    user_ids: list[uuid.UUID] = Field(default_factory=list)

    @field_validator("search")
    @classmethod
    def sanitize_search(cls, v: str) -> str:
        return v.strip()[:100].replace("<", "").replace(">", "")

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        value = (v or "all").strip().lower()
        return value if value in STATUS_FILTERS else "all"


def matches_status(user: User, status: str) -> bool:
    """Filter on the user's current membership."""
    if status == "all":
        return True
    membership = user.current_membership
    if status == "no_membership":
        return membership is None
    if membership is None:
        return False
    if status == "awaiting_card":
        return membership.payment_status == PaymentStatus.SUCCEEDED.value and not membership.membership_number
    return membership.status == MembershipStatus(status.upper()).value


async def load_export_rows(db: AsyncSession, filters: ExportFilters) -> list[User]:
    """Users with profile and memberships, newest registration first.

    With explicit user_ids the caller's order is preserved and the other
    filters are ignored.
    """
    stmt = select(User).options(selectinload(User.profile), selectinload(User.memberships))

    if filters.user_ids:
        result = await db.execute(stmt.where(User.id.in_(filters.user_ids)))
        by_id = {u.id: u for u in result.scalars().all()}
        return [by_id[uid] for uid in filters.user_ids if uid in by_id]

    if filters.search:
        pattern = f"%{filters.search}%"
        stmt = stmt.outerjoin(Profile, Profile.user_id == User.id).where(
            or_(
                User.email.ilike(pattern),
                Profile.first_name.ilike(pattern),
                Profile.last_name.ilike(pattern),
                Profile.tax_code.ilike(pattern),
            )
        )
    if filters.date_from:
        stmt = stmt.where(User.created_at >= datetime.combine(filters.date_from, time.min, tzinfo=timezone.utc))
    if filters.date_to:
        end = datetime.combine(filters.date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
        stmt = stmt.where(User.created_at < end)

    result = await db.execute(stmt.order_by(User.created_at.desc()))
    users = list(result.scalars().unique().all())
    return [u for u in users if matches_status(u, filters.status)]


# ── Row formatting ───────────────────────────────────────────────────


def _iso(value: date | datetime | None) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


def _yes_no(value: bool | None) -> str:
    if value is None:
        return ""
    return "Yes" if value else "No"


def export_row(user: User) -> list[str]:
    """One CSV/Excel row, in CSV_HEADERS order."""
    profile = user.profile
    membership = user.current_membership
    return [
        user.email,
        user.phone or "",
        _yes_no(bool(user.newsletter_subscribed)),
        _iso(user.created_at),
        _iso(user.updated_at),
        (profile.first_name if profile else None) or "",
        (profile.last_name if profile else None) or "",
        _iso(profile.birth_date) if profile else "",
        (profile.tax_code if profile else None) or "",
        (profile.address if profile else None) or "",
        (profile.city if profile else None) or "",
        (profile.postal_code if profile else None) or "",
        (profile.province if profile else None) or "",
        (profile.document_type if profile else None) or "",
        (profile.document_number if profile else None) or "",
        _yes_no(profile.privacy_consent) if profile else "",
        _yes_no(profile.data_consent) if profile else "",
        _yes_no(bool(profile and profile.profile_complete)),
        (membership.membership_number if membership else None) or "",
        membership.status if membership else "",
        membership.payment_status if membership else "",
        _iso(membership.start_date) if membership else "",
        _iso(membership.end_date) if membership else "",
        f"€{membership.payment_amount / 100:.2f}" if membership and membership.payment_amount else "",
    ]


def build_csv(users: Sequence[User]) -> str:
    if not users:
        return EMPTY_CSV
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for user in users:
        writer.writerow(export_row(user))
    return buffer.getvalue().rstrip("\n")


def autosize_columns(ws, min_width: int = 10) -> None:
    """Fit column widths to the longest cell value."""
    for column in ws.iter_cols():
        longest = max((len(str(c.value)) for c in column if c.value is not None), default=0)
        letter = get_column_letter(column[0].column)
        ws.column_dimensions[letter].width = min(max(longest + 2, min_width), _MAX_COLUMN_WIDTH)


def build_xlsx(users: Sequence[User]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Users Export"
    ws.append(CSV_HEADERS)
    for cell in ws[1]:
        cell.font = Font(bold=True)
        cell.fill = _HEADER_FILL
        cell.alignment = Alignment(horizontal="center", vertical="center")
    for user in users:
        ws.append(export_row(user))

    ws.freeze_panes = "A2"
    ws.auto_filter.ref = f"A1:{get_column_letter(len(CSV_HEADERS))}{len(users) + 1}"
    autosize_columns(ws)

    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def export_filename(kind: ExportFormat | str, today: date | None = None) -> str:
    today = today or date.today()
    fmt = ExportFormat(kind)
    if fmt == ExportFormat.AICS:
        return f"aics-export-{today.isoformat()}.xlsx"
    return f"users-export-{today.isoformat()}.{fmt.value}"
