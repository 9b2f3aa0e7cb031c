"""Tests for the admin web dashboard.

Covers:
- HTTP Basic Auth (401 without creds, 401 wrong password, 200 shared password)
- Dashboard, members, card ranges, card assignment, settings, audit pages
- Manual membership transitions and the expiration sweep
- CSV/XLSX/AICS export responses
- Italian locale formatting functions
"""

from __future__ import annotations

import base64
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.admin.auth import AdminIdentity, verify_admin
from src.admin.formatters import format_cents, format_currency, format_date, format_datetime, format_state
from src.admin.web import get_card_allocator, get_mailer, get_membership_service, router
from src.cards.allocator import AssignedCard, AssignmentResult, RangeResult
from src.config import settings
from src.db.engine import get_session
from src.membership.service import MembershipResult
from src.models.enums import MembershipStatus, PaymentStatus, SystemState
from src.notifications.mailer import EmailError
from src.schemas.events import EventType
from src.schemas.membership import MembershipSummary
from src.security.rate_limiter import RateLimiter, get_rate_limiter

ADMIN = AdminIdentity(id="admin-1", email="admin@example.org")

# ── Formatter unit tests ─────────────────────────────────────────────


class TestFormatCurrency:
    def test_integer(self):
        assert format_currency(1000) == "1.000,00"

    def test_decimal(self):
        assert format_currency(Decimal("1750.50")) == "1.750,50"

    def test_large(self):
        assert format_currency(Decimal("1234567.89")) == "1.234.567,89"

    def test_none(self):
        assert format_currency(None) == "-"


class TestFormatCents:
    def test_fee(self):
        assert format_cents(2500) == "€ 25,00"

    def test_thousands(self):
        assert format_cents(123450) == "€ 1.234,50"

    def test_none(self):
        assert format_cents(None) == "-"


class TestFormatDate:
    def test_datetime(self):
        assert format_date(datetime(2026, 2, 16, 14, 30, tzinfo=timezone.utc)) == "16/02/2026"

    def test_date(self):
        assert format_date(date(2026, 12, 31)) == "31/12/2026"

    def test_none(self):
        assert format_date(None) == "-"


class TestFormatDatetime:
    def test_datetime(self):
        assert format_datetime(datetime(2026, 2, 16, 14, 30, tzinfo=timezone.utc)) == "16/02/2026 14:30"

    def test_none(self):
        assert format_datetime(None) == "-"


class TestFormatState:
    def test_enum(self):
        assert format_state(SystemState.S4_AWAITING_NUMBER) == "Pagato"

    def test_raw_value(self):
        assert format_state("S6_EXPIRED") == "Scaduto"

    def test_unknown(self):
        assert format_state("S9") == "S9"

    def test_none(self):
        assert format_state(None) == "-"


# ── Web route integration tests ──────────────────────────────────────


def _make_auth_header(username: str = "admin@example.org", password: str = "testpass123") -> dict[str, str]:
    """Build HTTP Basic Auth header."""
    credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {credentials}"}


def _year() -> SimpleNamespace:
    return SimpleNamespace(
        id=uuid.uuid4(),
        start_date=date(2026, 1, 1),
        end_date=date(2026, 12, 31),
        membership_fee=2500,
        is_active=True,
    )


def _member() -> SimpleNamespace:
    membership = SimpleNamespace(
        id=uuid.uuid4(),
        status=MembershipStatus.ACTIVE.value,
        payment_status=PaymentStatus.SUCCEEDED.value,
        membership_number="150",
        end_date=datetime(2027, 3, 1, tzinfo=timezone.utc),
    )
    return SimpleNamespace(
        id=uuid.uuid4(),
        email="maria@example.org",
        profile=SimpleNamespace(first_name="Maria", last_name="Rossi"),
        current_membership=membership,
    )


class FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, int] = {}

    async def incr(self, key: str) -> int:
        self.values[key] = self.values.get(key, 0) + 1
        return self.values[key]

    async def expire(self, key: str, seconds: int) -> bool:
        return True

    async def ttl(self, key: str) -> int:
        return 60

    async def get(self, key: str) -> str | None:
        value = self.values.get(key)
        return None if value is None else str(value)


@pytest.fixture
def mock_db():
    session = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def mock_queries():
    """Patch the query helpers used by the web routes."""
    with (
        patch("src.admin.web.get_membership_stats", new_callable=AsyncMock) as mock_stats,
        patch("src.admin.web.get_active_year", new_callable=AsyncMock) as mock_year,
        patch("src.admin.web.load_export_rows", new_callable=AsyncMock) as mock_rows,
        patch("src.admin.web.get_audit_log_paginated", new_callable=AsyncMock) as mock_audit,
        patch("src.admin.web.list_years", new_callable=AsyncMock) as mock_years,
        patch("src.admin.web.get_membership_fee", new_callable=AsyncMock) as mock_fee,
        patch("src.admin.web.set_setting", new_callable=AsyncMock) as mock_set,
        patch("src.admin.web.emit", new_callable=AsyncMock) as mock_emit,
    ):
        mock_stats.return_value = {
            "users": 42,
            "new_today": 3,
            "active": 30,
            "expired": 5,
            "canceled": 1,
            "pending_payment": 2,
            "awaiting_card": 4,
            "revenue_cents": 87500,
        }
        mock_year.return_value = _year()
        mock_rows.return_value = []
        mock_audit.return_value = ([], 0)
        mock_years.return_value = [_year()]
        mock_fee.return_value = 2500
        yield {
            "stats": mock_stats,
            "year": mock_year,
            "rows": mock_rows,
            "audit": mock_audit,
            "years": mock_years,
            "fee": mock_fee,
            "set_setting": mock_set,
            "emit": mock_emit,
        }


@pytest.fixture
def allocator():
    mock = AsyncMock()
    mock.get_available_numbers_count.return_value = 97
    mock.get_ranges_with_stats.return_value = []
    return mock


@pytest.fixture
def memberships():
    mock = AsyncMock()
    mock.get_users_awaiting_card.return_value = []
    mock.summarize = MagicMock(
        return_value=MembershipSummary(
            system_state=SystemState.S5_ACTIVE,
            italian_label="Attivo",
            has_active_membership=True,
            membership_number="150",
        )
    )
    return mock


@pytest.fixture
def email():
    return AsyncMock()


@pytest.fixture
def app(mock_db, mock_queries, allocator, memberships, email):
    test_app = FastAPI()
    test_app.include_router(router)

    async def fake_session():
        yield mock_db

    test_app.dependency_overrides[get_session] = fake_session
    test_app.dependency_overrides[get_card_allocator] = lambda: allocator
    test_app.dependency_overrides[get_membership_service] = lambda: memberships
    test_app.dependency_overrides[get_mailer] = lambda: email
    return test_app


@pytest.fixture
def client(app):
    """Client with admin auth bypassed."""
    app.dependency_overrides[verify_admin] = lambda: ADMIN
    return TestClient(app)


class TestAuth:
    @pytest.fixture
    def auth_client(self, app, mock_db, monkeypatch):
        monkeypatch.setattr(settings.security, "admin_web_password", "testpass123")
        no_admin = MagicMock()
        no_admin.scalar_one_or_none.return_value = None
        mock_db.execute.return_value = no_admin
        mock_db.scalar.return_value = 0
        app.dependency_overrides[get_rate_limiter] = lambda: RateLimiter(FakeRedis())
        return TestClient(app)

    def test_401_without_credentials(self, auth_client):
        resp = auth_client.get("/admin/")
        assert resp.status_code == 401

    def test_401_wrong_password(self, auth_client):
        with patch("src.security.rate_limiter.emit", new_callable=AsyncMock):
            resp = auth_client.get("/admin/", headers=_make_auth_header(password="wrong"))
        assert resp.status_code == 401

    def test_200_shared_password(self, auth_client):
        resp = auth_client.get("/admin/", headers=_make_auth_header())
        assert resp.status_code == 200


class TestDashboard:
    def test_renders(self, client, mock_queries):
        resp = client.get("/admin/")
        assert resp.status_code == 200
        assert "Dashboard" in resp.text
        assert "€ 875,00" in resp.text
        assert "97" in resp.text
        event = mock_queries["emit"].call_args[0][0]
        assert event.event_type == EventType.ADMIN_ACCESS
        assert event.actor_id == "admin-1"

    def test_no_active_year(self, client, mock_queries):
        mock_queries["year"].return_value = None
        resp = client.get("/admin/")
        assert "Nessun anno associativo attivo" in resp.text

    def test_sweep_result_shown(self, client):
        resp = client.get("/admin/?expired=3")
        assert "Membership scadute: 3" in resp.text


class TestMembers:
    def test_lists_members_with_state(self, client, mock_queries):
        member = _member()
        mock_queries["rows"].return_value = [member]
        resp = client.get("/admin/members?status=active&search=rossi")
        assert resp.status_code == 200
        assert "Soci (1)" in resp.text
        assert "maria@example.org" in resp.text
        assert "Attivo" in resp.text
        assert f"/admin/memberships/{member.current_membership.id}/cancel" in resp.text
        filters = mock_queries["rows"].call_args[0][1]
        assert filters.status == "active"
        assert filters.search == "rossi"

    def test_empty(self, client):
        resp = client.get("/admin/members")
        assert "Nessun risultato" in resp.text


def _detailed_member() -> SimpleNamespace:
    membership = SimpleNamespace(
        id=uuid.uuid4(),
        status=MembershipStatus.PENDING.value,
        payment_status=PaymentStatus.SUCCEEDED.value,
        payment_provider_id="ORDER-1",
        payment_amount=2500,
        membership_number=None,
        card_assigned_at=None,
        start_date=None,
        end_date=None,
        updated_by="webhook",
    )
    profile = SimpleNamespace(
        first_name="Maria",
        last_name="Rossi",
        birth_date=date(1985, 6, 12),
        tax_code=None,
        gender=None,
        profile_complete=False,
        privacy_consent=True,
        data_consent=True,
    )
    return SimpleNamespace(
        id=uuid.uuid4(),
        email="maria@example.org",
        phone="+39 333 1234567",
        profile=profile,
        current_membership=membership,
    )


class TestMemberDetail:
    @pytest.fixture
    def member(self, memberships):
        member = _detailed_member()
        memberships.load_user.return_value = member
        return member

    def test_renders(self, client, member, mock_queries):
        resp = client.get(f"/admin/members/{member.id}")
        assert resp.status_code == 200
        assert "maria@example.org" in resp.text
        assert "ORDER-1" in resp.text
        assert "€ 25,00" in resp.text
        assert 'value="Maria"' in resp.text
        assert 'value="+39 333 1234567"' in resp.text
        assert f'value="{member.current_membership.id}"' in resp.text
        assert mock_queries["emit"].call_args[0][0].data["page"] == "member_detail"

    def test_unknown_user(self, client, memberships):
        memberships.load_user.return_value = None
        resp = client.get(f"/admin/members/{uuid.uuid4()}")
        assert resp.status_code == 404

    def test_profile_tax_code_rejected(self, client, member, mock_db):
        with patch("src.membership.profile.emit", new_callable=AsyncMock) as mock_emit:
            resp = client.post(
                f"/admin/members/{member.id}/profile",
                data={
                    "first_name": "Maria",
                    "last_name": "Rossi",
                    "birth_date": "1985-06-12",
                    "tax_code": "RSSMRA85H52F205X",
                },
            )
        assert resp.status_code == 400
        assert "Carattere di controllo non valido" in resp.text
        assert 'value="RSSMRA85H52F205X"' in resp.text
        assert member.profile.tax_code is None
        mock_db.flush.assert_not_called()
        mock_emit.assert_not_called()

    def test_profile_bad_date(self, client, member):
        resp = client.post(
            f"/admin/members/{member.id}/profile",
            data={"first_name": "Maria", "last_name": "Rossi", "birth_date": "12 giugno"},
        )
        assert resp.status_code == 400
        assert "Data non valida" in resp.text

    def test_profile_saved(self, client, member, mock_db):
        with patch("src.membership.profile.emit", new_callable=AsyncMock) as mock_emit:
            resp = client.post(
                f"/admin/members/{member.id}/profile",
                data={
                    "first_name": "Maria",
                    "last_name": "Rossi",
                    "birth_date": "1985-06-12",
                    "tax_code": "rssmra85h52f205c",
                    "gender": "M",
                    "nationality": "IT",
                    "address": "Via Roma 1",
                    "city": "Milano",
                    "postal_code": "20121",
                    "province": "MI",
                    "privacy_consent": "true",
                    "data_consent": "true",
                },
                follow_redirects=False,
            )
        assert resp.status_code == 303
        assert resp.headers["location"] == f"/admin/members/{member.id}?saved=1"
        assert member.profile.tax_code == "RSSMRA85H52F205C"
        assert member.profile.gender == "F"
        assert member.profile.birth_city == "Milano"
        assert member.profile.profile_complete is True
        mock_db.flush.assert_awaited_once()
        event = mock_emit.call_args[0][0]
        assert event.actor_id == "admin-1"
        assert event.actor_role == "admin"

    def test_unchecked_consents_are_saved_as_false(self, client, member):
        with patch("src.membership.profile.emit", new_callable=AsyncMock):
            resp = client.post(
                f"/admin/members/{member.id}/profile",
                data={"first_name": "Maria", "last_name": "Rossi"},
                follow_redirects=False,
            )
        assert resp.status_code == 303
        assert member.profile.privacy_consent is False
        assert member.profile.birth_date is None
        assert member.profile.profile_complete is False

    def test_status_update(self, client, member, memberships):
        memberships.update_statuses.return_value = MembershipResult(success=True)
        membership_id = member.current_membership.id
        resp = client.post(
            f"/admin/members/{member.id}/status",
            data={"membership_id": str(membership_id), "status": "ACTIVE", "payment_status": ""},
            follow_redirects=False,
        )
        assert resp.status_code == 303
        memberships.update_statuses.assert_awaited_once()
        call = memberships.update_statuses.call_args
        assert call[0][1:] == (membership_id, "admin-1")
        assert call[1] == {"status": "ACTIVE", "payment_status": None}

    def test_status_invalid(self, client, member, memberships):
        memberships.update_statuses.return_value = MembershipResult(success=False, error="Stato non valido")
        resp = client.post(
            f"/admin/members/{member.id}/status",
            data={"membership_id": str(member.current_membership.id), "status": "ARCHIVED"},
        )
        assert resp.status_code == 400
        assert "Stato non valido" in resp.text


class TestCardRanges:
    def test_renders(self, client):
        resp = client.get("/admin/card-ranges")
        assert resp.status_code == 200
        assert "Range numeri tessera" in resp.text

    def test_add_redirects(self, client, allocator, mock_queries):
        allocator.add_range.return_value = RangeResult(success=True)
        resp = client.post("/admin/card-ranges", data={"start_number": "1", "end_number": "100"}, follow_redirects=False)
        assert resp.status_code == 303
        assert resp.headers["location"] == "/admin/card-ranges"
        year = mock_queries["year"].return_value
        allocator.add_range.assert_awaited_once()
        assert allocator.add_range.call_args[0][1:] == (1, 100, year.id, "admin-1")

    def test_add_conflict_shows_error(self, client, allocator):
        allocator.add_range.return_value = RangeResult(
            success=False, conflicts=["8", "9"], error="Il range si sovrappone con range esistenti: 5-10"
        )
        resp = client.post("/admin/card-ranges", data={"start_number": "8", "end_number": "20"})
        assert resp.status_code == 400
        assert "si sovrappone" in resp.text
        assert "2 numeri in conflitto" in resp.text

    def test_add_without_year(self, client, allocator, mock_queries):
        mock_queries["year"].return_value = None
        resp = client.post("/admin/card-ranges", data={"start_number": "1", "end_number": "10"})
        assert resp.status_code == 400
        allocator.add_range.assert_not_called()

    def test_delete_used_range(self, client, allocator):
        allocator.delete_range.return_value = RangeResult(
            success=False, range=SimpleNamespace(), conflicts=["3"], error="Impossibile eliminare"
        )
        resp = client.post(f"/admin/card-ranges/{uuid.uuid4()}/delete")
        assert resp.status_code == 409

    def test_delete_missing_range(self, client, allocator):
        allocator.delete_range.return_value = RangeResult(success=False, error="Range non trovato")
        resp = client.post(f"/admin/card-ranges/{uuid.uuid4()}/delete")
        assert resp.status_code == 404

    def test_delete_redirects(self, client, allocator):
        allocator.delete_range.return_value = RangeResult(success=True)
        resp = client.post(f"/admin/card-ranges/{uuid.uuid4()}/delete", follow_redirects=False)
        assert resp.status_code == 303


class TestAssignCards:
    def _outcome(self, user_id, membership_id) -> AssignmentResult:
        return AssignmentResult(
            assigned=[AssignedCard(user_id, membership_id, "101")],
            available_count=10,
            requested_count=1,
        )

    def test_page(self, client):
        resp = client.get("/admin/assign-cards")
        assert resp.status_code == 200
        assert "Nessun utente in attesa di tessera" in resp.text

    def test_assign_commits_then_emails(self, client, allocator, email, mock_db):
        user_id, membership_id = uuid.uuid4(), uuid.uuid4()
        allocator.auto_assign_membership_numbers.return_value = self._outcome(user_id, membership_id)
        user = SimpleNamespace(id=user_id, email="maria@example.org", profile=SimpleNamespace(first_name="Maria"))
        end = datetime(2027, 3, 1, tzinfo=timezone.utc)
        mock_db.get.side_effect = [user, SimpleNamespace(id=membership_id, end_date=end)]

        resp = client.post("/admin/assign-cards", data={"user_ids": [str(user_id)]})

        assert resp.status_code == 200
        assert "Assegnate: 1 su 1" in resp.text
        assert allocator.auto_assign_membership_numbers.call_args[0][1:] == ([user_id], "admin-1")
        mock_db.commit.assert_awaited()
        email.send_membership_number.assert_awaited_once_with("maria@example.org", "Maria", "101", end)

    def test_email_failure_reported(self, client, allocator, email, mock_db, mock_queries):
        user_id, membership_id = uuid.uuid4(), uuid.uuid4()
        allocator.auto_assign_membership_numbers.return_value = self._outcome(user_id, membership_id)
        mock_db.get.side_effect = [
            SimpleNamespace(id=user_id, email="maria@example.org", profile=None),
            SimpleNamespace(id=membership_id, end_date=datetime(2027, 3, 1, tzinfo=timezone.utc)),
        ]
        email.send_membership_number.side_effect = EmailError("bounced", is_transient=False)

        resp = client.post("/admin/assign-cards", data={"user_ids": [str(user_id)]})

        assert "Email non inviate: 1" in resp.text
        kinds = [c[0][0].event_type for c in mock_queries["emit"].call_args_list]
        assert EventType.EMAIL_FAILED in kinds

    def test_order_preserved(self, client, allocator):
        ids = [uuid.uuid4() for _ in range(3)]
        allocator.auto_assign_membership_numbers.return_value = AssignmentResult(requested_count=3)
        client.post("/admin/assign-cards", data={"user_ids": [str(i) for i in ids]})
        assert allocator.auto_assign_membership_numbers.call_args[0][1] == ids


class TestMembershipActions:
    def test_expire_sweep(self, client, memberships):
        memberships.expire_memberships.return_value = 2
        resp = client.post("/admin/memberships/expire", follow_redirects=False)
        assert resp.status_code == 303
        assert resp.headers["location"] == "/admin/?expired=2"

    def test_cancel(self, client, memberships):
        membership_id = uuid.uuid4()
        memberships.cancel_membership.return_value = MembershipResult(success=True)
        resp = client.post(f"/admin/memberships/{membership_id}/cancel", follow_redirects=False)
        assert resp.status_code == 303
        memberships.cancel_membership.assert_awaited_once()
        assert memberships.cancel_membership.call_args[0][1:] == (membership_id, "admin-1")

    def test_expire_single(self, client, memberships):
        memberships.expire_membership.return_value = MembershipResult(success=True)
        resp = client.post(f"/admin/memberships/{uuid.uuid4()}/expire", follow_redirects=False)
        assert resp.status_code == 303

    def test_unknown_action(self, client):
        resp = client.post(f"/admin/memberships/{uuid.uuid4()}/delete")
        assert resp.status_code == 400

    def test_not_found(self, client, memberships):
        memberships.cancel_membership.return_value = MembershipResult(success=False, error="Membership non trovata")
        resp = client.post(f"/admin/memberships/{uuid.uuid4()}/cancel")
        assert resp.status_code == 404


class TestSettings:
    def test_renders(self, client):
        resp = client.get("/admin/settings")
        assert resp.status_code == 200
        assert "€ 25,00" in resp.text
        assert "31/12/2026" in resp.text

    def test_update_fee(self, client, mock_queries):
        resp = client.post("/admin/settings/fee", data={"fee_euro": "30,50"}, follow_redirects=False)
        assert resp.status_code == 303
        assert mock_queries["set_setting"].call_args[0][1:3] == ("MEMBERSHIP_FEE", "3050")

    @pytest.mark.parametrize("value", ["abc", "0", "-5"])
    def test_invalid_fee(self, client, mock_queries, value):
        resp = client.post("/admin/settings/fee", data={"fee_euro": value})
        assert resp.status_code == 400
        assert "Importo non valido" in resp.text
        mock_queries["set_setting"].assert_not_called()


class TestAudit:
    def test_renders(self, client, mock_queries):
        resp = client.get("/admin/audit?event_type=admin.export")
        assert resp.status_code == 200
        assert "Audit log (0)" in resp.text
        assert mock_queries["audit"].call_args.kwargs["event_type"] == "admin.export"


class TestExport:
    def test_csv(self, client, mock_queries):
        resp = client.get("/admin/export?format=csv&status=active")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert resp.headers["content-disposition"].startswith('attachment; filename="users-export-')
        assert resp.text == "No data to export"
        event = mock_queries["emit"].call_args[0][0]
        assert event.event_type == EventType.ADMIN_EXPORT
        assert event.data["format"] == "csv"
        assert event.data["status"] == "active"

    def test_xlsx(self, client):
        resp = client.get("/admin/export?format=xlsx")
        assert resp.headers["content-type"] == "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
        assert resp.content[:2] == b"PK"

    def test_aics_filename(self, client):
        resp = client.get("/admin/export?format=AICS")
        assert resp.status_code == 200
        assert 'filename="aics-export-' in resp.headers["content-disposition"]

    def test_invalid_format(self, client):
        resp = client.get("/admin/export?format=pdf")
        assert resp.status_code == 400

    def test_selected_ids(self, client, mock_queries):
        ids = [uuid.uuid4(), uuid.uuid4()]
        resp = client.post("/admin/export", data={"format": "csv", "user_ids": [str(i) for i in ids]})
        assert resp.status_code == 200
        filters = mock_queries["rows"].call_args[0][1]
        assert filters.user_ids == ids
