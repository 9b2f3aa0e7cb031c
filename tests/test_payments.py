"""Tests for the PayPal client, the webhook processor and the checkout flows.

The PayPal API is faked with httpx.MockTransport; the database session is an
AsyncMock whose begin_nested() yields a no-op savepoint.
"""

from __future__ import annotations

import json
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy.exc import IntegrityError

from src.membership.service import MembershipResult
from src.models.enums import MembershipStatus, PaymentStatus
from src.notifications.mailer import EmailError
from src.payments.checkout import (
    ERR_NOT_COMPLETED,
    ERR_ORDER_NOT_FOUND,
    ERR_PROFILE_INCOMPLETE,
    ERR_PROVIDER,
    CheckoutService,
)
from src.payments.paypal import CaptureResult, CreatedOrder, PayPalClient, PayPalError, euros_to_cents
from src.payments.webhook import MAX_BODY_SIZE, WebhookProcessor, record_payment_event
from src.schemas.events import EventType


class _Savepoint:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


def _db() -> AsyncMock:
    db = AsyncMock()
    db.add = MagicMock()
    db.begin_nested = MagicMock(return_value=_Savepoint())
    return db


def _scalar(value) -> MagicMock:
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    return result


def _duplicate() -> IntegrityError:
    return IntegrityError("INSERT INTO payment_logs", {}, Exception("duplicate key"))


def _membership(**overrides) -> SimpleNamespace:
    values = {
        "id": uuid.uuid4(),
        "user_id": uuid.uuid4(),
        "status": MembershipStatus.PENDING.value,
        "payment_status": PaymentStatus.PENDING.value,
        "payment_provider_id": "ORDER-1",
        "payment_amount": 2500,
        "membership_number": None,
        "end_date": None,
        "updated_by": None,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _payer() -> SimpleNamespace:
    return SimpleNamespace(id=uuid.uuid4(), email="maria@example.org", profile=SimpleNamespace(first_name="Maria"))


def _profile() -> SimpleNamespace:
    return SimpleNamespace(profile_complete=True, privacy_consent=True, data_consent=True)


# ── PayPal client ────────────────────────────────────────────────────


def _paypal(handler) -> PayPalClient:
    return PayPalClient(
        client_id="cid",
        client_secret="secret",
        base_url="https://paypal.test",
        webhook_id="WH-1",
        app_url="https://soci.example.org/",
        brand_name="Associazione",
        transport=httpx.MockTransport(handler),
    )


def _token_response() -> httpx.Response:
    return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})


class TestEurosToCents:
    def test_string_amount(self):
        assert euros_to_cents("25.00") == 2500

    def test_rounding(self):
        assert euros_to_cents("19.99") == 1999

    def test_garbage(self):
        assert euros_to_cents(None) == 0
        assert euros_to_cents("abc") == 0


class TestPayPalClient:
    @pytest.mark.asyncio()
    async def test_create_order(self):
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/oauth2/token":
                return _token_response()
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                201,
                json={
                    "id": "ORDER-9",
                    "links": [
                        {"rel": "self", "href": "https://paypal.test/self"},
                        {"rel": "approve", "href": "https://paypal.test/approve"},
                    ],
                },
            )

        order = await _paypal(handler).create_order("m-1", 2500, "Quota associativa")

        assert order == CreatedOrder(order_id="ORDER-9", approval_url="https://paypal.test/approve")
        assert seen["auth"] == "Bearer tok"
        unit = seen["body"]["purchase_units"][0]
        assert unit["reference_id"] == "m-1"
        assert unit["amount"] == {"currency_code": "EUR", "value": "25.00"}
        assert seen["body"]["application_context"]["return_url"] == (
            "https://soci.example.org/membership/payment/success"
        )

    @pytest.mark.asyncio()
    async def test_token_cached(self):
        calls = {"token": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/oauth2/token":
                calls["token"] += 1
                return _token_response()
            return httpx.Response(200, json={"verification_status": "SUCCESS"})

        client = _paypal(handler)
        await client.verify_webhook_signature({}, {"id": "E1"})
        await client.verify_webhook_signature({}, {"id": "E2"})
        assert calls["token"] == 1

    @pytest.mark.asyncio()
    async def test_missing_approval_link(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/oauth2/token":
                return _token_response()
            return httpx.Response(201, json={"id": "ORDER-9", "links": []})

        with pytest.raises(PayPalError):
            await _paypal(handler).create_order("m-1", 2500, "Quota")

    @pytest.mark.asyncio()
    async def test_auth_failure(self):
        client = _paypal(lambda request: httpx.Response(401, text="invalid_client"))
        with pytest.raises(PayPalError) as exc_info:
            await client.get_access_token()
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio()
    async def test_capture_order(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/oauth2/token":
                return _token_response()
            assert request.url.path == "/v2/checkout/orders/ORDER-9/capture"
            return httpx.Response(
                201,
                json={
                    "purchase_units": [
                        {"payments": {"captures": [{"id": "CAP-1", "status": "COMPLETED", "amount": {"value": "25.00"}}]}}
                    ]
                },
            )

        capture = await _paypal(handler).capture_order("ORDER-9")
        assert capture == CaptureResult(status="COMPLETED", capture_id="CAP-1", amount=2500)

    @pytest.mark.asyncio()
    async def test_malformed_capture(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/oauth2/token":
                return _token_response()
            return httpx.Response(201, json={"purchase_units": []})

        with pytest.raises(PayPalError):
            await _paypal(handler).capture_order("ORDER-9")

    @pytest.mark.asyncio()
    async def test_verify_signature_sends_headers(self):
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/oauth2/token":
                return _token_response()
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"verification_status": "FAILURE"})

        headers = {"PAYPAL-TRANSMISSION-ID": "T-1", "Paypal-Auth-Algo": "SHA256withRSA"}
        assert await _paypal(handler).verify_webhook_signature(headers, {"id": "E1"}) is False
        assert seen["transmission_id"] == "T-1"
        assert seen["auth_algo"] == "SHA256withRSA"
        assert seen["webhook_id"] == "WH-1"
        assert seen["webhook_event"] == {"id": "E1"}

    @pytest.mark.asyncio()
    async def test_verify_signature_http_error_is_false(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/oauth2/token":
                return _token_response()
            return httpx.Response(400, json={"name": "VALIDATION_ERROR"})

        assert await _paypal(handler).verify_webhook_signature({}, {}) is False


# ── Webhook processor ────────────────────────────────────────────────


def _capture_event(event_type: str = "PAYMENT.CAPTURE.COMPLETED", order_id: str = "ORDER-1") -> dict:
    return {
        "id": "WH-EVT-1",
        "event_type": event_type,
        "resource": {
            "id": "CAP-1",
            "amount": {"value": "25.00", "currency_code": "EUR"},
            "supplementary_data": {"related_ids": {"order_id": order_id}},
        },
    }


def _raw(event: dict) -> bytes:
    return json.dumps(event).encode()


@pytest.fixture
def paypal():
    client = AsyncMock()
    client.verify_webhook_signature.return_value = True
    return client


@pytest.fixture
def email():
    return AsyncMock()


@pytest.fixture
def processor(paypal, email):
    return WebhookProcessor(paypal, email)


class TestRecordPaymentEvent:
    @pytest.mark.asyncio()
    async def test_inserted(self):
        db = _db()
        assert await record_payment_event(db, uuid.uuid4(), "PAYMENT.CAPTURE.COMPLETED", {}, "E1", 2500) is True
        db.add.assert_called_once()

    @pytest.mark.asyncio()
    async def test_duplicate_returns_false(self):
        db = _db()
        db.flush.side_effect = _duplicate()
        assert await record_payment_event(db, uuid.uuid4(), "PAYMENT.CAPTURE.COMPLETED", {}, "E1") is False


class TestWebhookRejections:
    @pytest.mark.asyncio()
    async def test_declared_length_too_large(self, processor, paypal):
        outcome = await processor.process(_db(), b"{}", {"Content-Length": str(MAX_BODY_SIZE + 1)})
        assert outcome.status_code == 413
        paypal.verify_webhook_signature.assert_not_called()

    @pytest.mark.asyncio()
    async def test_actual_body_too_large(self, processor):
        outcome = await processor.process(_db(), b"x" * (MAX_BODY_SIZE + 1), {})
        assert outcome.status_code == 413

    @pytest.mark.asyncio()
    async def test_invalid_signature(self, processor, paypal):
        paypal.verify_webhook_signature.return_value = False
        with patch("src.payments.webhook.emit", new_callable=AsyncMock) as mock_emit:
            outcome = await processor.process(_db(), _raw(_capture_event()), {})
        assert outcome.status_code == 401
        assert outcome.body == {"error": "Invalid signature"}
        assert mock_emit.call_args[0][0].event_type == EventType.WEBHOOK_REJECTED

    @pytest.mark.asyncio()
    async def test_verification_transport_error(self, processor, paypal):
        paypal.verify_webhook_signature.side_effect = PayPalError("boom")
        outcome = await processor.process(_db(), _raw(_capture_event()), {})
        assert outcome.status_code == 500

    @pytest.mark.asyncio()
    async def test_invalid_json_after_signature(self, processor):
        outcome = await processor.process(_db(), b"not json", {})
        assert outcome.status_code == 400
        assert outcome.body == {"error": "Invalid JSON"}

    @pytest.mark.asyncio()
    async def test_unexpected_event_type(self, processor):
        outcome = await processor.process(_db(), _raw({"id": "E", "event_type": "BILLING.PLAN.CREATED"}), {})
        assert outcome.status_code == 400
        assert outcome.body == {"error": "Unexpected event type"}

    @pytest.mark.asyncio()
    async def test_unknown_order_asks_for_retry(self, processor):
        db = _db()
        db.execute.return_value = _scalar(None)
        outcome = await processor.process(db, _raw(_capture_event()), {})
        assert outcome.status_code == 500


class TestWebhookCaptureCompleted:
    @pytest.mark.asyncio()
    async def test_marks_paid_and_emails(self, processor, email):
        membership = _membership()
        payer = _payer()
        db = _db()
        db.execute.return_value = _scalar(membership)
        db.get.return_value = payer

        with patch("src.payments.webhook.emit", new_callable=AsyncMock) as mock_emit:
            outcome = await processor.process(db, _raw(_capture_event()), {})

        assert outcome.status_code == 200
        assert outcome.body == {"success": True}
        assert membership.payment_status == PaymentStatus.SUCCEEDED.value
        assert membership.status == MembershipStatus.PENDING.value
        assert membership.payment_amount == 2500
        assert membership.updated_by == "webhook"
        email.send_payment_confirmation.assert_awaited_once_with("maria@example.org", "Maria", 2500)
        assert mock_emit.call_args_list[0][0][0].event_type == EventType.PAYMENT_COMPLETED

    @pytest.mark.asyncio()
    async def test_redelivery_is_duplicate(self, processor, email):
        membership = _membership()
        db = _db()
        db.execute.return_value = _scalar(membership)
        db.flush.side_effect = _duplicate()

        with patch("src.payments.webhook.emit", new_callable=AsyncMock) as mock_emit:
            outcome = await processor.process(db, _raw(_capture_event()), {})

        assert outcome.status_code == 200
        assert outcome.duplicate is True
        assert membership.payment_status == PaymentStatus.PENDING.value
        email.send_payment_confirmation.assert_not_called()
        assert mock_emit.call_args[0][0].event_type == EventType.WEBHOOK_DUPLICATE

    @pytest.mark.asyncio()
    async def test_already_paid_is_duplicate(self, processor):
        db = _db()
        db.execute.return_value = _scalar(_membership(payment_status=PaymentStatus.SUCCEEDED.value))
        with patch("src.payments.webhook.emit", new_callable=AsyncMock):
            outcome = await processor.process(db, _raw(_capture_event()), {})
        assert outcome.duplicate is True
        db.add.assert_not_called()

    @pytest.mark.asyncio()
    async def test_email_failure_does_not_fail_webhook(self, processor, email):
        db = _db()
        db.execute.return_value = _scalar(_membership())
        db.get.return_value = _payer()
        email.send_payment_confirmation.side_effect = EmailError("down", is_transient=True)

        with patch("src.payments.webhook.emit", new_callable=AsyncMock) as mock_emit:
            outcome = await processor.process(db, _raw(_capture_event()), {})

        assert outcome.status_code == 200
        kinds = [call[0][0].event_type for call in mock_emit.call_args_list]
        assert EventType.EMAIL_FAILED in kinds


class TestWebhookOtherEvents:
    @pytest.mark.asyncio()
    async def test_order_approved_sets_provider_id(self, processor):
        membership = _membership(payment_provider_id=None)
        db = _db()
        db.get.return_value = membership
        event = {
            "id": "WH-EVT-2",
            "event_type": "CHECKOUT.ORDER.APPROVED",
            "resource": {"id": "ORDER-7", "purchase_units": [{"reference_id": str(membership.id)}]},
        }
        with patch("src.payments.webhook.emit", new_callable=AsyncMock):
            outcome = await processor.process(db, _raw(event), {})
        assert outcome.status_code == 200
        assert membership.payment_provider_id == "ORDER-7"

    @pytest.mark.asyncio()
    async def test_order_approved_bad_reference(self, processor):
        event = {
            "id": "WH-EVT-2",
            "event_type": "CHECKOUT.ORDER.APPROVED",
            "resource": {"id": "ORDER-7", "purchase_units": [{"reference_id": "not-a-uuid"}]},
        }
        outcome = await processor.process(_db(), _raw(event), {})
        assert outcome.status_code == 500

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("event_type", ["PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"])
    async def test_capture_failed(self, processor, event_type):
        membership = _membership()
        db = _db()
        db.execute.return_value = _scalar(membership)
        with patch("src.payments.webhook.emit", new_callable=AsyncMock):
            outcome = await processor.process(db, _raw(_capture_event(event_type)), {})
        assert outcome.status_code == 200
        assert membership.payment_status == PaymentStatus.FAILED.value

    @pytest.mark.asyncio()
    async def test_refund_expires_membership(self, processor):
        membership = _membership(payment_status=PaymentStatus.SUCCEEDED.value, status=MembershipStatus.ACTIVE.value)
        db = _db()
        db.execute.return_value = _scalar(membership)
        with patch("src.payments.webhook.emit", new_callable=AsyncMock):
            outcome = await processor.process(db, _raw(_capture_event("PAYMENT.CAPTURE.REFUNDED")), {})
        assert outcome.status_code == 200
        assert membership.payment_status == PaymentStatus.CANCELED.value
        assert membership.status == MembershipStatus.EXPIRED.value


# ── Checkout ─────────────────────────────────────────────────────────


@pytest.fixture
def memberships():
    return AsyncMock()


@pytest.fixture
def checkout(paypal, email, memberships):
    return CheckoutService(paypal, email, memberships)


class TestCreateOrder:
    @pytest.mark.asyncio()
    async def test_blocked_when_active(self, checkout):
        active = _membership(
            status=MembershipStatus.ACTIVE.value,
            payment_status=PaymentStatus.SUCCEEDED.value,
            membership_number="12",
        )
        user = SimpleNamespace(id=uuid.uuid4(), profile=_profile(), current_membership=active)
        result = await checkout.create_order(_db(), user)
        assert result.success is False
        assert result.status_code == 400
        assert result.error == "Hai già una tessera attiva"

    @pytest.mark.asyncio()
    async def test_incomplete_profile(self, checkout):
        user = SimpleNamespace(id=uuid.uuid4(), profile=None, current_membership=None)
        result = await checkout.create_order(_db(), user)
        assert result.status_code == 400
        assert result.error == ERR_PROFILE_INCOMPLETE

    @pytest.mark.asyncio()
    async def test_success(self, checkout, paypal, memberships):
        membership = _membership(payment_provider_id=None)
        memberships.create_membership_for_payment.return_value = MembershipResult(success=True, membership=membership)
        paypal.create_order.return_value = CreatedOrder(order_id="ORDER-5", approval_url="https://paypal.test/a")
        user = SimpleNamespace(id=membership.user_id, profile=_profile(), current_membership=None)
        db = _db()

        with patch("src.payments.checkout.emit", new_callable=AsyncMock) as mock_emit:
            result = await checkout.create_order(db, user)

        assert result.success is True
        assert result.order_id == "ORDER-5"
        assert result.approval_url == "https://paypal.test/a"
        assert result.membership_id == membership.id
        paypal.create_order.assert_awaited_once_with(str(membership.id), 2500, "Quota associativa")
        memberships.attach_order.assert_awaited_once_with(db, membership, "ORDER-5")
        assert mock_emit.call_args[0][0].event_type == EventType.ORDER_CREATED

    @pytest.mark.asyncio()
    async def test_provider_error_hidden(self, checkout, paypal, memberships):
        memberships.create_membership_for_payment.return_value = MembershipResult(
            success=True, membership=_membership(payment_provider_id=None)
        )
        paypal.create_order.side_effect = PayPalError("HTTP 500 internal details")
        user = SimpleNamespace(id=uuid.uuid4(), profile=_profile(), current_membership=None)
        result = await checkout.create_order(_db(), user)
        assert result.status_code == 502
        assert result.error == ERR_PROVIDER
        memberships.attach_order.assert_not_called()


class TestCaptureOrder:
    @pytest.mark.asyncio()
    async def test_not_found(self, checkout):
        db = _db()
        db.execute.return_value = _scalar(None)
        result = await checkout.capture_order(db, SimpleNamespace(id=uuid.uuid4()), "ORDER-1")
        assert result.status_code == 404
        assert result.error == ERR_ORDER_NOT_FOUND

    @pytest.mark.asyncio()
    async def test_already_captured_by_webhook(self, checkout, paypal):
        membership = _membership(payment_status=PaymentStatus.SUCCEEDED.value)
        db = _db()
        db.execute.return_value = _scalar(membership)
        result = await checkout.capture_order(db, SimpleNamespace(id=membership.user_id), "ORDER-1")
        assert result.success is True
        assert result.already_captured is True
        paypal.capture_order.assert_not_called()

    @pytest.mark.asyncio()
    async def test_capture_success(self, checkout, paypal, email):
        membership = _membership()
        db = _db()
        db.execute.return_value = _scalar(membership)
        db.get.return_value = _payer()
        paypal.capture_order.return_value = CaptureResult(status="COMPLETED", capture_id="CAP-1", amount=2500)

        with (
            patch("src.payments.checkout.get_membership_fee", new_callable=AsyncMock, return_value=2500),
            patch("src.payments.checkout.emit", new_callable=AsyncMock),
            patch("src.payments.webhook.emit", new_callable=AsyncMock),
        ):
            result = await checkout.capture_order(db, SimpleNamespace(id=membership.user_id), "ORDER-1")

        assert result.success is True
        assert result.already_captured is False
        assert membership.payment_status == PaymentStatus.SUCCEEDED.value
        email.send_payment_confirmation.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_capture_raced_by_webhook(self, checkout, paypal, email):
        membership = _membership()
        db = _db()
        db.execute.return_value = _scalar(membership)
        db.flush.side_effect = _duplicate()
        paypal.capture_order.return_value = CaptureResult(status="COMPLETED", capture_id="CAP-1", amount=2500)

        with patch("src.payments.checkout.get_membership_fee", new_callable=AsyncMock, return_value=2500):
            result = await checkout.capture_order(db, SimpleNamespace(id=membership.user_id), "ORDER-1")

        assert result.already_captured is True
        email.send_payment_confirmation.assert_not_called()

    @pytest.mark.asyncio()
    async def test_not_completed(self, checkout, paypal):
        db = _db()
        db.execute.return_value = _scalar(_membership())
        paypal.capture_order.return_value = CaptureResult(status="PENDING", capture_id="CAP-1", amount=2500)
        result = await checkout.capture_order(db, SimpleNamespace(id=uuid.uuid4()), "ORDER-1")
        assert result.status_code == 400
        assert result.error == ERR_NOT_COMPLETED


class TestCancelOrder:
    @pytest.mark.asyncio()
    async def test_nothing_pending(self, checkout, memberships):
        db = _db()
        db.execute.return_value = _scalar(None)
        result = await checkout.cancel_order(db, SimpleNamespace(id=uuid.uuid4()))
        assert result.success is True
        assert result.membership_id is None
        memberships.cancel_order.assert_not_called()

    @pytest.mark.asyncio()
    async def test_resets_pending_order(self, checkout, memberships):
        membership = _membership()
        db = _db()
        db.execute.return_value = _scalar(membership)
        result = await checkout.cancel_order(db, SimpleNamespace(id=membership.user_id))
        assert result.membership_id == membership.id
        memberships.cancel_order.assert_awaited_once_with(db, membership)
