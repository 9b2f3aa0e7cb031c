"""Admin web dashboard: FastAPI router with Jinja2.

Pages for members, card number ranges, card assignment and association
settings, plus the CSV/XLSX/AICS exports. All routes require HTTP Basic
Auth via the verify_admin dependency.
"""
# ruff: noqa: B008

from __future__ import annotations

import logging
import uuid
from datetime import date
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from src.admin.aics import build_aics_export, build_aics_workbook
from src.admin.auth import AdminIdentity, verify_admin
from src.admin.events import emit
from src.admin.export import (
    CSV_MEDIA_TYPE,
    XLSX_MEDIA_TYPE,
    ExportFilters,
    build_csv,
    build_xlsx,
    export_filename,
    load_export_rows,
)
from src.admin.formatters import format_cents, format_currency, format_date, format_datetime, format_state
from src.admin.queries import get_audit_log_paginated, get_membership_stats
from src.cards.allocator import AssignmentResult, CardAllocator, card_allocator
from src.db.engine import get_session
from src.membership.profile import save_profile
from src.membership.service import ERR_NOT_FOUND, MembershipService, membership_service
from src.membership.settings_store import (
    MEMBERSHIP_FEE_KEY,
    get_active_year,
    get_membership_fee,
    list_years,
    set_setting,
)
from src.models.enums import ExportFormat, MembershipStatus, PaymentStatus
from src.models.membership import Membership
from src.models.user import User
from src.notifications.mailer import EmailError, Mailer, mailer
from src.schemas.events import EventType, SystemEvent
from src.schemas.profile import ProfileUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])

# Jinja2 templates
_template_dir = Path(__file__).parent / "templates"
templates = Jinja2Templates(directory=str(_template_dir))

# Register custom filters
templates.env.filters["currency"] = format_currency
templates.env.filters["cents"] = format_cents
templates.env.filters["date"] = format_date
templates.env.filters["datetime"] = format_datetime
templates.env.filters["state"] = format_state


def get_card_allocator() -> CardAllocator:
    return card_allocator


def get_membership_service() -> MembershipService:
    return membership_service


def get_mailer() -> Mailer:
    return mailer


async def _emit_access(admin: AdminIdentity, page: str) -> None:
    """Emit ADMIN_ACCESS audit event for each page view."""
    await emit(SystemEvent(
        event_type=EventType.ADMIN_ACCESS,
        actor_id=admin.id,
        actor_role="admin",
        data={"page": page, "interface": "web"},
        source_module="admin.web",
    ))


def _page_range(current: int, total_pages: int) -> list[int]:
    """Generate a page number range for pagination."""
    if total_pages <= 7:
        return list(range(1, total_pages + 1))
    if current <= 4:
        return list(range(1, 8))
    if current >= total_pages - 3:
        return list(range(total_pages - 6, total_pages + 1))
    return list(range(current - 3, current + 4))


# ── Full pages ───────────────────────────────────────────────────────


@router.get("/", response_class=HTMLResponse)
async def dashboard(
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: AdminIdentity = Depends(verify_admin),
    allocator: CardAllocator = Depends(get_card_allocator),
    memberships: MembershipService = Depends(get_membership_service),
) -> HTMLResponse:
    """Dashboard: membership counters, awaiting cards, free numbers."""
    await _emit_access(admin, "dashboard")

    stats = await get_membership_stats(db)
    year = await get_active_year(db)
    available = await allocator.get_available_numbers_count(db, year.id) if year else 0
    awaiting = await memberships.get_users_awaiting_card(db)

    return templates.TemplateResponse(request, "dashboard.html", {
        "admin": admin,
        "stats": stats,
        "year": year,
        "available_numbers": available,
        "awaiting": awaiting[:10],
        "awaiting_total": len(awaiting),
        "expired": request.query_params.get("expired"),
    })


@router.get("/members", response_class=HTMLResponse)
async def members_page(
    request: Request,
    search: str = Query(default=""),
    status: str = Query(default="all"),
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    db: AsyncSession = Depends(get_session),
    admin: AdminIdentity = Depends(verify_admin),
    memberships: MembershipService = Depends(get_membership_service),
) -> HTMLResponse:
    """Filterable member list with derived state."""
    await _emit_access(admin, "members")

    filters = ExportFilters(search=search, status=status, date_from=date_from, date_to=date_to)
    users = await load_export_rows(db, filters)
    per_page = 50
    total = len(users)
    total_pages = max(1, (total + per_page - 1) // per_page)
    page_users = users[(page - 1) * per_page: page * per_page]

    rows = [{"user": u, "summary": memberships.summarize(u)} for u in page_users]
    return templates.TemplateResponse(request, "members.html", {
        "admin": admin,
        "rows": rows,
        "filters": filters,
        "total": total,
        "page": page,
        "total_pages": total_pages,
        "page_range": _page_range(page, total_pages),
    })


# ── Member detail ────────────────────────────────────────────────────

_CHECKBOXES = ("has_foreign_tax_code", "privacy_consent", "data_consent")
ERR_USER_NOT_FOUND = "Utente non trovato"
ERR_BAD_DATE = "Data non valida"


def _profile_form(data: Any) -> ProfileUpdate:
    """Build the form model from submitted fields. Unchecked boxes are absent."""
    values: dict[str, Any] = {
        name: data.get(name) or "" for name in ProfileUpdate.model_fields if name not in _CHECKBOXES
    }
    values.update({name: data.get(name) in ("true", "on", "1") for name in _CHECKBOXES})
    values["country"] = values["country"] or "IT"
    return ProfileUpdate(**values)


def _render_member(
    request: Request,
    admin: AdminIdentity,
    user: User,
    memberships: MembershipService,
    *,
    values: Any = None,
    errors: dict[str, str] | None = None,
    status_error: str | None = None,
    status_code: int = 200,
) -> HTMLResponse:
    return templates.TemplateResponse(request, "member_detail.html", {
        "admin": admin,
        "user": user,
        "membership": user.current_membership,
        "summary": memberships.summarize(user),
        "values": values if values is not None else user.profile,
        "errors": errors or {},
        "status_error": status_error,
        "saved": request.query_params.get("saved"),
        "membership_statuses": [s.value for s in MembershipStatus],
        "payment_statuses": [s.value for s in PaymentStatus],
    }, status_code=status_code)


async def _load_member(db: AsyncSession, memberships: MembershipService, user_id: uuid.UUID) -> User:
    user = await memberships.load_user(db, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail=ERR_USER_NOT_FOUND)
    return user


@router.get("/members/{user_id}", response_class=HTMLResponse)
async def member_detail(
    request: Request,
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_session),
    admin: AdminIdentity = Depends(verify_admin),
    memberships: MembershipService = Depends(get_membership_service),
) -> HTMLResponse:
    """One member: profile form, current membership and status override."""
    await _emit_access(admin, "member_detail")
    user = await _load_member(db, memberships, user_id)
    return _render_member(request, admin, user, memberships)


@router.post("/members/{user_id}/profile", response_class=HTMLResponse)
async def update_member_profile(
    request: Request,
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_session),
    admin: AdminIdentity = Depends(verify_admin),
    memberships: MembershipService = Depends(get_membership_service),
) -> Response:
    """Admin edit of a profile: only names are required, the fiscal code is still checked."""
    user = await _load_member(db, memberships, user_id)
    data = await request.form()
    try:
        form = _profile_form(data)
    except ValidationError:
        return _render_member(
            request, admin, user, memberships,
            values=data, errors={"birth_date": ERR_BAD_DATE}, status_code=400,
        )

    result = await save_profile(db, user, form, actor_id=admin.id, strict=False)
    if not result.success:
        return _render_member(request, admin, user, memberships, values=form, errors=result.errors, status_code=400)
    logger.info("Profile of user %s updated by %s", user_id, admin.email)
    return RedirectResponse(url=f"/admin/members/{user_id}?saved=1", status_code=303)


@router.post("/members/{user_id}/status", response_class=HTMLResponse)
async def update_member_status(
    request: Request,
    user_id: uuid.UUID,
    membership_id: uuid.UUID = Form(...),
    status: str = Form(default=""),
    payment_status: str = Form(default=""),
    db: AsyncSession = Depends(get_session),
    admin: AdminIdentity = Depends(verify_admin),
    memberships: MembershipService = Depends(get_membership_service),
) -> Response:
    """Set status and/or payment status of the member's membership."""
    result = await memberships.update_statuses(
        db, membership_id, admin.id, status=status or None, payment_status=payment_status or None
    )
    if not result.success:
        user = await _load_member(db, memberships, user_id)
        code = 404 if result.error == ERR_NOT_FOUND else 400
        return _render_member(request, admin, user, memberships, status_error=result.error, status_code=code)
    return RedirectResponse(url=f"/admin/members/{user_id}?saved=1", status_code=303)


# ── Card number ranges ───────────────────────────────────────────────


async def _render_ranges(
    request: Request,
    db: AsyncSession,
    allocator: CardAllocator,
    admin: AdminIdentity,
    error: str | None = None,
    conflicts: list[str] | None = None,
    status_code: int = 200,
) -> HTMLResponse:
    year = await get_active_year(db)
    ranges = await allocator.get_ranges_with_stats(db, year.id) if year else []
    return templates.TemplateResponse(request, "card_ranges.html", {
        "admin": admin,
        "year": year,
        "ranges": ranges,
        "error": error,
        "conflicts": conflicts or [],
    }, status_code=status_code)


@router.get("/card-ranges", response_class=HTMLResponse)
async def card_ranges_page(
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: AdminIdentity = Depends(verify_admin),
    allocator: CardAllocator = Depends(get_card_allocator),
) -> HTMLResponse:
    await _emit_access(admin, "card_ranges")
    return await _render_ranges(request, db, allocator, admin)


@router.post("/card-ranges", response_class=HTMLResponse)
async def add_card_range(
    request: Request,
    start_number: int = Form(...),
    end_number: int = Form(...),
    db: AsyncSession = Depends(get_session),
    admin: AdminIdentity = Depends(verify_admin),
    allocator: CardAllocator = Depends(get_card_allocator),
) -> Response:
    year = await get_active_year(db)
    if year is None:
        return await _render_ranges(
            request, db, allocator, admin, error="Nessun anno associativo attivo", status_code=400
        )

    result = await allocator.add_range(db, start_number, end_number, year.id, admin.id)
    if not result.success:
        return await _render_ranges(
            request, db, allocator, admin, error=result.error, conflicts=result.conflicts, status_code=400
        )
    return RedirectResponse(url="/admin/card-ranges", status_code=303)


@router.post("/card-ranges/{range_id}/delete", response_class=HTMLResponse)
async def delete_card_range(
    request: Request,
    range_id: uuid.UUID,
    db: AsyncSession = Depends(get_session),
    admin: AdminIdentity = Depends(verify_admin),
    allocator: CardAllocator = Depends(get_card_allocator),
) -> Response:
    result = await allocator.delete_range(db, range_id, admin.id)
    if not result.success:
        status_code = 404 if result.range is None else 409
        return await _render_ranges(
            request, db, allocator, admin, error=result.error, conflicts=result.conflicts,
            status_code=status_code,
        )
    return RedirectResponse(url="/admin/card-ranges", status_code=303)


# ── Card assignment ──────────────────────────────────────────────────


async def notify_assigned_cards(db: AsyncSession, email: Mailer, outcome: AssignmentResult) -> int:
    """Email every newly assigned number. Returns how many emails failed."""
    failed = 0
    for card in outcome.assigned:
        user = await db.get(User, card.user_id)
        membership = await db.get(Membership, card.membership_id)
        if user is None or membership is None or membership.end_date is None:
            continue
        first_name = user.profile.first_name if user.profile and user.profile.first_name else ""
        try:
            await email.send_membership_number(user.email, first_name, card.membership_number, membership.end_date)
        except EmailError as exc:
            failed += 1
            await emit(SystemEvent(
                event_type=EventType.EMAIL_FAILED,
                user_id=user.id,
                membership_id=membership.id,
                data={"kind": "membership_number", "transient": exc.is_transient},
                source_module="admin.web",
            ))
    return failed


@router.get("/assign-cards", response_class=HTMLResponse)
async def assign_cards_page(
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: AdminIdentity = Depends(verify_admin),
    allocator: CardAllocator = Depends(get_card_allocator),
    memberships: MembershipService = Depends(get_membership_service),
) -> HTMLResponse:
    await _emit_access(admin, "assign_cards")
    year = await get_active_year(db)
    return templates.TemplateResponse(request, "assign_cards.html", {
        "admin": admin,
        "year": year,
        "users": await memberships.get_users_awaiting_card(db),
        "available_numbers": await allocator.get_available_numbers_count(db, year.id) if year else 0,
        "result": None,
        "email_failures": 0,
    })


@router.post("/assign-cards", response_class=HTMLResponse)
async def assign_cards(
    request: Request,
    user_ids: list[uuid.UUID] = Form(...),
    db: AsyncSession = Depends(get_session),
    admin: AdminIdentity = Depends(verify_admin),
    allocator: CardAllocator = Depends(get_card_allocator),
    memberships: MembershipService = Depends(get_membership_service),
    email: Mailer = Depends(get_mailer),
) -> HTMLResponse:
    """Assign the lowest free numbers in the order the users were selected."""
    outcome = await allocator.auto_assign_membership_numbers(db, user_ids, admin.id)
    # Numbers are committed before any email leaves
    await db.commit()
    failures = await notify_assigned_cards(db, email, outcome)

    year = await get_active_year(db)
    return templates.TemplateResponse(request, "assign_cards.html", {
        "admin": admin,
        "year": year,
        "users": await memberships.get_users_awaiting_card(db),
        "available_numbers": await allocator.get_available_numbers_count(db, year.id) if year else 0,
        "result": outcome,
        "email_failures": failures,
    })


# ── Memberships ──────────────────────────────────────────────────────


@router.post("/memberships/expire")
async def expire_sweep(
    db: AsyncSession = Depends(get_session),
    admin: AdminIdentity = Depends(verify_admin),
    memberships: MembershipService = Depends(get_membership_service),
) -> RedirectResponse:
    count = await memberships.expire_memberships(db)
    logger.info("Expiration sweep triggered by %s: %d expired", admin.email, count)
    return RedirectResponse(url=f"/admin/?expired={count}", status_code=303)


@router.post("/memberships/{membership_id}/{action}")
async def change_membership_status(
    membership_id: uuid.UUID,
    action: str,
    db: AsyncSession = Depends(get_session),
    admin: AdminIdentity = Depends(verify_admin),
    memberships: MembershipService = Depends(get_membership_service),
) -> Response:
    """Manual cancel or expire of a single membership."""
    if action == "cancel":
        result = await memberships.cancel_membership(db, membership_id, admin.id)
    elif action == "expire":
        result = await memberships.expire_membership(db, membership_id, admin.id)
    else:
        return Response("Azione non valida", status_code=400)
    if not result.success:
        return Response(result.error or "", status_code=404)
    return RedirectResponse(url="/admin/members", status_code=303)


# ── Settings ─────────────────────────────────────────────────────────


@router.get("/settings", response_class=HTMLResponse)
async def settings_page(
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: AdminIdentity = Depends(verify_admin),
) -> HTMLResponse:
    await _emit_access(admin, "settings")
    return templates.TemplateResponse(request, "settings.html", {
        "admin": admin,
        "years": await list_years(db),
        "fee": await get_membership_fee(db),
        "error": None,
    })


@router.post("/settings/fee", response_class=HTMLResponse)
async def update_fee(
    request: Request,
    fee_euro: str = Form(...),
    db: AsyncSession = Depends(get_session),
    admin: AdminIdentity = Depends(verify_admin),
) -> Response:
    """Fallback fee, used when the active year has none."""
    try:
        cents = round(float(fee_euro.replace(",", ".")) * 100)
    except ValueError:
        cents = 0
    if cents <= 0:
        return templates.TemplateResponse(request, "settings.html", {
            "admin": admin,
            "years": await list_years(db),
            "fee": await get_membership_fee(db),
            "error": "Importo non valido",
        }, status_code=400)
    await set_setting(db, MEMBERSHIP_FEE_KEY, str(cents), "Quota associativa in centesimi")
    logger.info("Membership fee set to %d cents by %s", cents, admin.email)
    return RedirectResponse(url="/admin/settings", status_code=303)


# ── Audit ────────────────────────────────────────────────────────────


@router.get("/audit", response_class=HTMLResponse)
async def audit_page(
    request: Request,
    page: int = Query(default=1, ge=1),
    event_type: str | None = Query(default=None),
    db: AsyncSession = Depends(get_session),
    admin: AdminIdentity = Depends(verify_admin),
) -> HTMLResponse:
    """Paginated audit log, filterable by event type."""
    await _emit_access(admin, "audit")

    logs, total = await get_audit_log_paginated(db, page=page, event_type=event_type)
    total_pages = max(1, (total + 49) // 50)
    return templates.TemplateResponse(request, "audit.html", {
        "admin": admin,
        "logs": logs,
        "total": total,
        "page": page,
        "total_pages": total_pages,
        "page_range": _page_range(page, total_pages),
        "event_type": event_type,
        "event_types": [e.value for e in EventType],
    })


# ── Export ───────────────────────────────────────────────────────────


def build_export(users: list[User], fmt: ExportFormat, today: date) -> tuple[bytes, str, dict[str, Any]]:
    """File content, media type and summary for one export format."""
    if fmt == ExportFormat.CSV:
        return build_csv(users).encode("utf-8"), CSV_MEDIA_TYPE, {"rows": len(users)}
    if fmt == ExportFormat.XLSX:
        return build_xlsx(users), XLSX_MEDIA_TYPE, {"rows": len(users)}
    aics = build_aics_export(users, today)
    summary = {"rows": len(aics.rows), "excluded": len(aics.exclusions)}
    return build_aics_workbook(aics.rows, aics.exclusions), XLSX_MEDIA_TYPE, summary


async def _export(db: AsyncSession, admin: AdminIdentity, fmt: str, filters: ExportFilters) -> Response:
    try:
        export_format = ExportFormat(fmt.strip().lower())
    except ValueError:
        return Response("Formato non valido", status_code=400)

    users = await load_export_rows(db, filters)
    today = date.today()
    content, media_type, summary = build_export(users, export_format, today)

    await emit(SystemEvent(
        event_type=EventType.ADMIN_EXPORT,
        actor_id=admin.id,
        actor_role="admin",
        data={"format": export_format.value, "status": filters.status, **summary},
        source_module="admin.web",
    ))
    filename = export_filename(export_format, today)
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/export")
async def export_get(
    format: str = Query(default="csv"),
    search: str = Query(default=""),
    status: str = Query(default="all"),
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    db: AsyncSession = Depends(get_session),
    admin: AdminIdentity = Depends(verify_admin),
) -> Response:
    filters = ExportFilters(search=search, status=status, date_from=date_from, date_to=date_to)
    return await _export(db, admin, format, filters)


@router.post("/export")
async def export_post(
    format: str = Form(default="csv"),
    user_ids: list[uuid.UUID] = Form(default=[]),
    status: str = Form(default="all"),
    db: AsyncSession = Depends(get_session),
    admin: AdminIdentity = Depends(verify_admin),
) -> Response:
    """Export of an explicit selection, in the order the ids were sent."""
    filters = ExportFilters(status=status, user_ids=user_ids)
    return await _export(db, admin, format, filters)
