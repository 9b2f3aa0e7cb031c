"""Async httpx client for the PayPal REST API (Orders v2 + webhook verification)."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx

from src.config import settings

logger = logging.getLogger(__name__)

# Refresh the cached OAuth token this many seconds before PayPal expires it
_TOKEN_EXPIRY_MARGIN = 60

_VERIFY_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


class PayPalError(Exception):
    """PayPal call failed (transport error or non-2xx answer)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class CreatedOrder:
    order_id: str
    approval_url: str


@dataclass
class CaptureResult:
    status: str
    capture_id: str
    amount: int  # cents


def euros_to_cents(value: str | float | None) -> int:
    """'25.00' → 2500. Missing or garbage values count as zero."""
    try:
        return round(float(value or 0) * 100)
    except (TypeError, ValueError):
        return 0


class PayPalClient:
    """Thin async wrapper around the PayPal endpoints the checkout needs.

    Auth: OAuth2 client credentials, access token cached in memory.
    A `transport` can be injected (httpx.MockTransport in tests).
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str,
        webhook_id: str = "",
        app_url: str = "",
        brand_name: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._base_url = base_url.rstrip("/")
        self._webhook_id = webhook_id
        self._app_url = app_url.rstrip("/")
        self._brand_name = brand_name
        self._transport = transport
        self._timeout = httpx.Timeout(15.0, connect=5.0)
        self._token: str | None = None
        self._token_expires_at = 0.0

    @classmethod
    def from_settings(cls) -> PayPalClient:
        return cls(
            client_id=settings.paypal.paypal_client_id,
            client_secret=settings.paypal.paypal_client_secret,
            base_url=settings.paypal.base_url,
            webhook_id=settings.paypal.paypal_webhook_id,
            app_url=settings.association.app_url,
            brand_name=settings.association.association_name,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout, transport=self._transport)

    # ── Auth ─────────────────────────────────────────────────────────

    async def get_access_token(self) -> str:
        """Return a cached token, fetching a new one when expired."""
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        try:
            async with self._client() as client:
                response = await client.post(
                    "/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self._client_id, self._client_secret),
                )
        except httpx.HTTPError as exc:
            raise PayPalError(f"PayPal auth transport error: {exc}") from exc

        if response.status_code >= 400:
            raise PayPalError(f"PayPal auth failed: {response.text}", response.status_code)

        payload = response.json()
        self._token = payload["access_token"]
        expires_in = int(payload.get("expires_in", 0))
        self._token_expires_at = time.monotonic() + max(expires_in - _TOKEN_EXPIRY_MARGIN, 0)
        return self._token

    async def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> httpx.Response:
        token = await self.get_access_token()
        try:
            async with self._client() as client:
                return await client.request(
                    method,
                    path,
                    json=json,
                    headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                )
        except httpx.HTTPError as exc:
            raise PayPalError(f"PayPal transport error on {path}: {exc}") from exc

    # ── Orders ───────────────────────────────────────────────────────

    async def create_order(self, membership_id: str, amount_cents: int, description: str) -> CreatedOrder:
        """Create a CAPTURE order; the membership id travels as reference_id."""
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": membership_id,
                    "description": description,
                    "amount": {"currency_code": "EUR", "value": f"{amount_cents / 100:.2f}"},
                }
            ],
            "application_context": {
                "brand_name": self._brand_name,
                "landing_page": "NO_PREFERENCE",
                "user_action": "PAY_NOW",
                "return_url": f"{self._app_url}/membership/payment/success",
                "cancel_url": f"{self._app_url}/membership/payment/cancel",
            },
        }
        response = await self._request("POST", "/v2/checkout/orders", json=body)
        if response.status_code >= 400:
            raise PayPalError(f"Failed to create PayPal order: {response.text}", response.status_code)

        order = response.json()
        approval = next((link["href"] for link in order.get("links", []) if link.get("rel") == "approve"), None)
        if not approval:
            raise PayPalError("No approval URL in PayPal response")

        logger.info("PayPal order %s created for membership %s", order["id"], membership_id)
        return CreatedOrder(order_id=order["id"], approval_url=approval)

    async def capture_order(self, order_id: str) -> CaptureResult:
        response = await self._request("POST", f"/v2/checkout/orders/{order_id}/capture")
        if response.status_code >= 400:
            raise PayPalError(f"Failed to capture PayPal order: {response.text}", response.status_code)

        payload = response.json()
        try:
            capture = payload["purchase_units"][0]["payments"]["captures"][0]
        except (KeyError, IndexError, TypeError) as exc:
            raise PayPalError("Malformed capture response") from exc

        return CaptureResult(
            status=capture.get("status", ""),
            capture_id=capture.get("id", ""),
            amount=euros_to_cents(capture.get("amount", {}).get("value")),
        )

    # ── Webhooks ─────────────────────────────────────────────────────

    async def verify_webhook_signature(self, headers: dict[str, str], event: dict[str, Any]) -> bool:
        """Ask PayPal to verify a webhook delivery.

        Returns False on a non-2xx answer or a non-SUCCESS verdict. Transport
        failures raise PayPalError.
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        body: dict[str, Any] = {field: lowered.get(header) for field, header in _VERIFY_HEADERS.items()}
        body["webhook_id"] = self._webhook_id
        body["webhook_event"] = event

        response = await self._request("POST", "/v1/notifications/verify-webhook-signature", json=body)
        if response.status_code >= 400:
            logger.warning("PayPal signature verification answered HTTP %d", response.status_code)
            return False
        return response.json().get("verification_status") == "SUCCESS"


# Module-level default, built from settings
paypal_client = PayPalClient.from_settings()
