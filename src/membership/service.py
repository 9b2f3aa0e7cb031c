"""Membership lifecycle service.

Stateless: the AsyncSession is passed per call so the same instance serves
requests, webhooks, admin actions, and CLI scripts. Transitions:

    profile saved          S0 → S1
    checkout started       S1 → S2  (attach_order)
    webhook completed      S2 → S4  (payments.webhook)
    number assigned        S4 → S5  (activate_membership)
    end date passed        S5 → S6  (expire_memberships)
    admin cancel/expire    *  → S7 / S6
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.admin.events import emit
from src.membership.settings_store import get_active_year, get_membership_fee, membership_period
from src.membership.states import (
    STATE_LABELS,
    STATE_MESSAGES,
    can_purchase,
    derive_state,
    is_profile_complete,
)
from src.models.enums import MembershipStatus, PaymentStatus, SystemState
from src.models.membership import AssociationYear, Membership
from src.models.user import User
from src.schemas.events import EventType, SystemEvent
from src.schemas.membership import MembershipSummary

logger = logging.getLogger(__name__)

ERR_ALREADY_MEMBER = "Hai già una tessera attiva o un pagamento in corso"
ERR_NOT_FOUND = "Membership non trovata"
ERR_INVALID_STATUS = "Stato non valido"
ERR_INVALID_PAYMENT_STATUS = "Stato pagamento non valido"


@dataclass
class MembershipResult:
    """Outcome of a membership mutation."""

    success: bool = False
    membership: Membership | None = None
    error: str | None = None


@dataclass
class RenewalStatus:
    can_renew: bool = False
    previous_membership: Membership | None = None
    reason: str | None = None


class MembershipService:
    """Reads and transitions memberships."""

    # ── Reads ────────────────────────────────────────────────────────

    async def get_current_membership(self, db: AsyncSession, user_id: uuid.UUID) -> Membership | None:
        """Newest membership of the user, or None."""
        result = await db.execute(
            select(Membership)
            .where(Membership.user_id == user_id)
            .order_by(Membership.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def load_user(self, db: AsyncSession, user_id: uuid.UUID) -> User | None:
        result = await db.execute(
            select(User)
            .where(User.id == user_id)
            .options(selectinload(User.profile), selectinload(User.memberships))
        )
        return result.scalar_one_or_none()

    def summarize(self, user: User, now: datetime | None = None) -> MembershipSummary:
        """Build the derived summary from an already loaded user."""
        membership = user.current_membership
        state = derive_state(user.profile, membership, now)
        has_number = state in (SystemState.S5_ACTIVE, SystemState.S6_EXPIRED)
        return MembershipSummary(
            system_state=state,
            italian_label=STATE_LABELS[state],
            has_active_membership=state == SystemState.S5_ACTIVE,
            membership_number=membership.membership_number if membership and has_number else None,
            start_date=membership.start_date if membership else None,
            end_date=membership.end_date if membership else None,
            profile_complete=is_profile_complete(user.profile),
            can_purchase=can_purchase(state),
            message=STATE_MESSAGES[state],
        )

    async def get_membership_summary(self, db: AsyncSession, user_id: uuid.UUID) -> MembershipSummary | None:
        user = await self.load_user(db, user_id)
        if user is None:
            return None
        return self.summarize(user)

    async def get_users_awaiting_card(self, db: AsyncSession) -> list[User]:
        """Users with a succeeded payment and no number, oldest payment first."""
        result = await db.execute(
            select(User)
            .join(Membership, Membership.user_id == User.id)
            .where(
                Membership.payment_status == PaymentStatus.SUCCEEDED.value,
                Membership.membership_number.is_(None),
                Membership.status != MembershipStatus.CANCELED.value,
            )
            .order_by(Membership.created_at.asc())
            .options(selectinload(User.profile))
        )
        return list(result.scalars().unique().all())

    async def check_user_renewal_status(self, db: AsyncSession, user_id: uuid.UUID) -> RenewalStatus:
        """Whether the user may buy a new membership after a previous one."""
        current = await self.get_current_membership(db, user_id)
        if current is None:
            return RenewalStatus(can_renew=False, reason="Nessuna membership precedente")
        state = derive_state(None, current)
        if state in (SystemState.S6_EXPIRED, SystemState.S3_PAYMENT_FAILED):
            return RenewalStatus(can_renew=True, previous_membership=current)
        return RenewalStatus(
            can_renew=False,
            previous_membership=current,
            reason=f"Stato attuale: {STATE_LABELS[state]}",
        )

    # ── Checkout ─────────────────────────────────────────────────────

    async def create_membership_for_payment(self, db: AsyncSession, user: User) -> MembershipResult:
        """Return the pending membership to pay for, creating it if needed.

        A PENDING membership that never reached checkout is reused so an
        abandoned attempt does not pile up rows.
        """
        result = await db.execute(
            select(Membership).where(
                Membership.user_id == user.id,
                or_(
                    Membership.status == MembershipStatus.ACTIVE.value,
                    Membership.payment_status == PaymentStatus.SUCCEEDED.value,
                    Membership.payment_status == PaymentStatus.PENDING.value,
                ),
                Membership.status.notin_([MembershipStatus.CANCELED.value, MembershipStatus.EXPIRED.value]),
            )
        )
        existing = list(result.scalars().all())
        for membership in existing:
            reusable = (
                membership.payment_status == PaymentStatus.PENDING.value
                and not membership.payment_provider_id
                and membership.status == MembershipStatus.PENDING.value
            )
            if not reusable:
                return MembershipResult(success=False, membership=membership, error=ERR_ALREADY_MEMBER)
        if existing:
            return MembershipResult(success=True, membership=existing[0])

        year = await get_active_year(db)
        fee = await get_membership_fee(db)
        membership = Membership(
            user_id=user.id,
            association_year_id=year.id if year else None,
            status=MembershipStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            payment_amount=fee,
        )
        db.add(membership)
        await db.flush()

        await emit(SystemEvent(
            event_type=EventType.MEMBERSHIP_CREATED,
            user_id=user.id,
            membership_id=membership.id,
            data={"amount": fee},
            source_module="membership.service",
        ))
        logger.info("Membership %s created for user %s (fee=%d)", membership.id, user.id, fee)
        return MembershipResult(success=True, membership=membership)

    async def attach_order(self, db: AsyncSession, membership: Membership, order_id: str) -> None:
        """Record the provider order id: S1 → S2."""
        membership.payment_provider_id = order_id
        await db.flush()
        logger.info("Order %s attached to membership %s", order_id, membership.id)

    async def cancel_order(self, db: AsyncSession, membership: Membership) -> bool:
        """Drop an unpaid order so the user can check out again: S2 → S1."""
        if membership.payment_status != PaymentStatus.PENDING.value or not membership.payment_provider_id:
            return False
        order_id = membership.payment_provider_id
        membership.payment_provider_id = None
        await db.flush()
        await emit(SystemEvent(
            event_type=EventType.ORDER_CANCELED,
            user_id=membership.user_id,
            membership_id=membership.id,
            data={"order_id": order_id},
            source_module="membership.service",
        ))
        return True

    # ── Admin transitions ────────────────────────────────────────────

    async def activate_membership(
        self,
        db: AsyncSession,
        membership: Membership,
        number: str,
        admin_id: str,
        now: datetime | None = None,
        year: AssociationYear | None = None,
    ) -> Membership:
        """Assign a card number and open the membership period: S4 → S5.

        The year sizing the period is read through the session, never through
        the lazy relationship, so a membership expired by a rolled-back
        SAVEPOINT can still be activated.
        """
        now = now or datetime.now(timezone.utc)
        if year is None:
            if membership.association_year_id:
                year = await db.get(AssociationYear, membership.association_year_id)
            else:
                year = await get_active_year(db)
        membership.membership_number = number
        membership.status = MembershipStatus.ACTIVE.value
        membership.start_date = now
        membership.end_date = now + membership_period(year)
        membership.card_assigned_at = now
        membership.updated_by = admin_id
        await db.flush()
        await emit(SystemEvent(
            event_type=EventType.MEMBERSHIP_ACTIVATED,
            user_id=membership.user_id,
            membership_id=membership.id,
            actor_id=admin_id,
            actor_role="admin",
            data={"membership_number": number, "end_date": membership.end_date.isoformat()},
            source_module="membership.service",
        ))
        logger.info("Membership %s activated with number %s", membership.id, number)
        return membership

    async def expire_memberships(self, db: AsyncSession, now: datetime | None = None) -> int:
        """Sweep ACTIVE memberships whose end date has passed. Returns the count."""
        now = now or datetime.now(timezone.utc)
        result = await db.execute(
            update(Membership)
            .where(and_(Membership.status == MembershipStatus.ACTIVE.value, Membership.end_date < now))
            .values(status=MembershipStatus.EXPIRED.value, updated_by="system")
        )
        count = result.rowcount or 0
        if count:
            await emit(SystemEvent(
                event_type=EventType.MEMBERSHIP_EXPIRED,
                actor_id="system",
                actor_role="system",
                data={"count": count},
                source_module="membership.service",
            ))
        logger.info("Expiration sweep: %d memberships expired", count)
        return count

    async def cancel_membership(
        self, db: AsyncSession, membership_id: uuid.UUID, admin_id: str
    ) -> MembershipResult:
        return await self._set_status(db, membership_id, admin_id, MembershipStatus.CANCELED)

    async def expire_membership(
        self, db: AsyncSession, membership_id: uuid.UUID, admin_id: str
    ) -> MembershipResult:
        return await self._set_status(db, membership_id, admin_id, MembershipStatus.EXPIRED)

    async def update_statuses(
        self,
        db: AsyncSession,
        membership_id: uuid.UUID,
        admin_id: str,
        status: str | None = None,
        payment_status: str | None = None,
    ) -> MembershipResult:
        """Admin override of either status column. Blank values are left as they are."""
        if status and status not in {s.value for s in MembershipStatus}:
            return MembershipResult(success=False, error=ERR_INVALID_STATUS)
        if payment_status and payment_status not in {s.value for s in PaymentStatus}:
            return MembershipResult(success=False, error=ERR_INVALID_PAYMENT_STATUS)

        membership = await db.get(Membership, membership_id)
        if membership is None:
            return MembershipResult(success=False, error=ERR_NOT_FOUND)

        previous = {"status": membership.status, "payment_status": membership.payment_status}
        if status:
            membership.status = status
        if payment_status:
            membership.payment_status = payment_status
        membership.updated_by = admin_id
        await db.flush()

        await emit(SystemEvent(
            event_type=EventType.MEMBERSHIP_STATUS_CHANGED,
            user_id=membership.user_id,
            membership_id=membership.id,
            actor_id=admin_id,
            actor_role="admin",
            data={
                "previous": previous,
                "status": membership.status,
                "payment_status": membership.payment_status,
            },
            source_module="membership.service",
        ))
        logger.info(
            "Membership %s set to %s/%s by %s", membership.id, membership.status, membership.payment_status, admin_id
        )
        return MembershipResult(success=True, membership=membership)

    async def _set_status(
        self,
        db: AsyncSession,
        membership_id: uuid.UUID,
        admin_id: str,
        status: MembershipStatus,
    ) -> MembershipResult:
        membership = await db.get(Membership, membership_id)
        if membership is None:
            return MembershipResult(success=False, error=ERR_NOT_FOUND)

        previous: Any = membership.status
        membership.status = status.value
        membership.updated_by = admin_id
        await db.flush()

        event_type = (
            EventType.MEMBERSHIP_CANCELED if status == MembershipStatus.CANCELED else EventType.MEMBERSHIP_EXPIRED
        )
        await emit(SystemEvent(
            event_type=event_type,
            user_id=membership.user_id,
            membership_id=membership.id,
            actor_id=admin_id,
            actor_role="admin",
            data={"previous_status": previous},
            source_module="membership.service",
        ))
        logger.info("Membership %s: %s → %s by %s", membership.id, previous, status.value, admin_id)
        return MembershipResult(success=True, membership=membership)


# Module-level singleton
membership_service = MembershipService()
