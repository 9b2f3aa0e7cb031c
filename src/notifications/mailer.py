"""Transactional email via the Resend HTTP API.

No retries here: callers decide what a failure means. Every failure is
raised as EmailError with an `is_transient` flag so callers (and logs) can
tell a provider hiccup from a bad address or credentials.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime

import httpx
from jinja2 import Environment

from src.config import settings

logger = logging.getLogger(__name__)

_TRANSIENT_MESSAGES = (
    "connection timeout",
    "socket hang up",
    "temporary",
    "try again",
    "service unavailable",
    "too many connections",
    "rate limit",
)
_SMTP_4XX = re.compile(r"\b4\d{2}\b")

_env = Environment(autoescape=True)

_MAGIC_LINK_HTML = _env.from_string(
    "<h1>Accedi a {{ association }}</h1>"
    "<p>Clicca sul link qui sotto per accedere:</p>"
    '<p><a href="{{ link }}">Accedi</a></p>'
    "<p>Oppure copia questo indirizzo: {{ link }}</p>"
    "<p>Il link scade tra {{ minutes }} minuti.</p>"
)
_PAYMENT_HTML = _env.from_string(
    "<h1>Pagamento confermato</h1>"
    "<p>Ciao {{ first_name }},</p>"
    "<p>Il pagamento di € {{ amount }} è stato ricevuto.</p>"
    "<p>Il numero della tua tessera verrà assegnato a breve.</p>"
    "<p>Grazie per esserti associato a {{ association }}!</p>"
)
_CARD_HTML = _env.from_string(
    "<h1>Benvenuto in {{ association }}!</h1>"
    "<p>Ciao {{ first_name }},</p>"
    "<p>Il tuo numero di tessera è <strong>{{ number }}</strong>.</p>"
    "<p>La tessera è valida fino al {{ end_date }}.</p>"
)


class EmailError(Exception):
    """Sending failed. `is_transient` is True when a later retry may succeed."""

    def __init__(self, message: str, is_transient: bool) -> None:
        super().__init__(message)
        self.is_transient = is_transient


def classify_email_error(exc: BaseException) -> bool:
    """Return True for transient failures (network, throttling, provider 5xx)."""
    if isinstance(exc, (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or code >= 500
    message = str(exc).lower()
    if any(pattern in message for pattern in _TRANSIENT_MESSAGES):
        return True
    return bool(_SMTP_4XX.search(message))


def mask_email(email: str) -> str:
    """mario.rossi@example.org → ma***@example.org"""
    local, _, domain = email.partition("@")
    return f"{local[:2]}***@{domain}" if domain else "***"


def format_euro(cents: int) -> str:
    """2500 → '25,00'"""
    return f"{cents / 100:.2f}".replace(".", ",")


class Mailer:
    """Resend client. Without an API key it only logs (dev/test bypass)."""

    def __init__(
        self,
        api_key: str,
        api_url: str,
        sender: str,
        association_name: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._api_url = api_url
        self._sender = sender
        self._association = association_name
        self._transport = transport
        self._timeout = httpx.Timeout(10.0, connect=5.0)

    @classmethod
    def from_settings(cls) -> Mailer:
        return cls(
            api_key=settings.email.resend_api_key,
            api_url=settings.email.resend_api_url,
            sender=settings.email.email_from,
            association_name=settings.association.association_name,
        )

    @property
    def _bypass_mode(self) -> bool:
        return not self._api_key

    async def send(self, to: str, subject: str, html: str) -> None:
        """Send one email. Raises EmailError on any failure."""
        if self._bypass_mode:
            logger.info("Email bypass mode: '%s' to %s not sent", subject, mask_email(to))
            return

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    self._api_url,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    json={"from": self._sender, "to": [to], "subject": subject, "html": html},
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            transient = classify_email_error(exc)
            log = logger.warning if transient else logger.error
            log(
                "Failed to send '%s' to %s (%s): %s",
                subject,
                mask_email(to),
                "transient" if transient else "permanent",
                exc,
            )
            raise EmailError(f"Failed to send email: {subject}", transient) from exc

        logger.info("Email '%s' sent to %s", subject, mask_email(to))

    async def send_magic_link(self, email: str, link: str, expiry_minutes: int) -> None:
        html = _MAGIC_LINK_HTML.render(association=self._association, link=link, minutes=expiry_minutes)
        await self.send(email, f"Accedi a {self._association}", html)

    async def send_payment_confirmation(self, email: str, first_name: str, amount_cents: int) -> None:
        html = _PAYMENT_HTML.render(
            association=self._association, first_name=first_name, amount=format_euro(amount_cents)
        )
        await self.send(email, "Pagamento confermato", html)

    async def send_membership_number(
        self, email: str, first_name: str, number: str, end_date: datetime
    ) -> None:
        html = _CARD_HTML.render(
            association=self._association,
            first_name=first_name,
            number=number,
            end_date=end_date.strftime("%d/%m/%Y"),
        )
        await self.send(email, "Il tuo numero di tessera", html)


# Module-level default, built from settings
mailer = Mailer.from_settings()
