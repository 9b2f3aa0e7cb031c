"""Membership state derivation: table-driven.

The user-facing SystemState is never stored: it is derived from the profile
and the current membership by walking RULES in order and returning the
first match. Negative and terminal states come before positive ones, so a
canceled or expired membership is never reported as active whatever its
other fields say.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from src.models.enums import MembershipStatus, PaymentStatus, SystemState

STATE_LABELS: dict[SystemState, str] = {
    SystemState.S0_NO_MEMBERSHIP: "Interrotto",
    SystemState.S1_PROFILE_COMPLETE: "In attesa di pagamento",
    SystemState.S2_PROCESSING_PAYMENT: "In attesa di pagamento",
    SystemState.S3_PAYMENT_FAILED: "Pagamento fallito",
    SystemState.S4_AWAITING_NUMBER: "Pagato",
    SystemState.S5_ACTIVE: "Attivo",
    SystemState.S6_EXPIRED: "Scaduto",
    SystemState.S7_CANCELED: "Cancellato",
}

STATE_MESSAGES: dict[SystemState, str] = {
    SystemState.S0_NO_MEMBERSHIP: "Completa il profilo e procedi al pagamento per ottenere la tessera.",
    SystemState.S1_PROFILE_COMPLETE: "Profilo completo. Procedi al pagamento della quota associativa.",
    SystemState.S2_PROCESSING_PAYMENT: "Pagamento in elaborazione.",
    SystemState.S3_PAYMENT_FAILED: "Il pagamento non è andato a buon fine. Puoi riprovare.",
    SystemState.S4_AWAITING_NUMBER: "Pagamento ricevuto. La tessera verrà assegnata a breve.",
    SystemState.S5_ACTIVE: "La tua tessera è attiva.",
    SystemState.S6_EXPIRED: "La tua tessera è scaduta. Puoi rinnovarla.",
    SystemState.S7_CANCELED: "La tua tessera è stata cancellata.",
}

PURCHASABLE_STATES: frozenset[SystemState] = frozenset({
    SystemState.S0_NO_MEMBERSHIP,
    SystemState.S1_PROFILE_COMPLETE,
    SystemState.S3_PAYMENT_FAILED,
})

_REQUIRED_PROFILE_FIELDS = (
    "first_name",
    "last_name",
    "birth_date",
    "address",
    "city",
    "postal_code",
    "province",
)


def is_profile_complete(profile: Any | None) -> bool:
    """True if the explicit flag is set or every required field and both consents are present."""
    if profile is None:
        return False
    if getattr(profile, "profile_complete", False) is True:
        return True
    if not all(getattr(profile, name, None) for name in _REQUIRED_PROFILE_FIELDS):
        return False
    return bool(profile.privacy_consent) and bool(profile.data_consent)


def _status(membership: Any) -> str:
    value = membership.status
    return value.value if isinstance(value, MembershipStatus) else value


def _payment(membership: Any) -> str:
    value = membership.payment_status
    return value.value if isinstance(value, PaymentStatus) else value


def _lapsed(membership: Any, now: datetime) -> bool:
    """Active membership whose end date has passed but the sweep has not run yet."""
    end = membership.end_date
    if not isinstance(end, datetime):
        return False
    if end.tzinfo is None:
        now = now.replace(tzinfo=None)
    return end < now


Rule = Callable[[Any, Any, datetime], bool]

# Ordered (predicate, state). Membership is guaranteed non-None after the first rule.
RULES: tuple[tuple[Rule, SystemState], ...] = (
    (lambda p, m, now: m is None, SystemState.S0_NO_MEMBERSHIP),
    (lambda p, m, now: _status(m) == MembershipStatus.CANCELED.value, SystemState.S7_CANCELED),
    (lambda p, m, now: _status(m) == MembershipStatus.EXPIRED.value or _lapsed(m, now), SystemState.S6_EXPIRED),
    (
        lambda p, m, now: _payment(m) in (PaymentStatus.FAILED.value, PaymentStatus.CANCELED.value),
        SystemState.S3_PAYMENT_FAILED,
    ),
    (
        lambda p, m, now: _payment(m) == PaymentStatus.PENDING.value and not m.payment_provider_id,
        SystemState.S1_PROFILE_COMPLETE,
    ),
    (lambda p, m, now: _payment(m) == PaymentStatus.PENDING.value, SystemState.S2_PROCESSING_PAYMENT),
    (
        lambda p, m, now: _payment(m) == PaymentStatus.SUCCEEDED.value and not m.membership_number,
        SystemState.S4_AWAITING_NUMBER,
    ),
    (lambda p, m, now: _payment(m) == PaymentStatus.SUCCEEDED.value, SystemState.S5_ACTIVE),
)


def derive_state(
    profile: Any | None,
    membership: Any | None,
    now: datetime | None = None,
) -> SystemState:
    """Map persisted profile + current membership to exactly one SystemState.

    An incomplete profile does not change the result: once a membership row
    exists the user has already passed profile completion, and a pending
    attempt without an order still reads as S1.
    """
    now = now or datetime.now(timezone.utc)
    for predicate, state in RULES:
        if predicate(profile, membership, now):
            return state
    # Unknown payment status value: treat as not yet checked out
    return SystemState.S1_PROFILE_COMPLETE


def can_purchase(state: SystemState) -> bool:
    return state in PURCHASABLE_STATES


def state_label(state: SystemState) -> str:
    return STATE_LABELS[state]
