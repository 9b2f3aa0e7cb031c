"""Card number allocator.

Admins load inclusive numeric ranges per association year; numbers are
handed out in ascending order across ranges. A number is "assigned" as soon
as any membership (of any year) carries it, so the set of assigned numbers
is always read from memberships, never stored on the range.

Numbers are stored as plain decimal strings ("42", never "042").
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.admin.events import emit
from src.membership.service import MembershipService, membership_service
from src.membership.settings_store import get_active_year
from src.models.card_range import CardNumberRange
from src.models.enums import MembershipStatus, PaymentStatus
from src.models.membership import AssociationYear, Membership
from src.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

MAX_RANGE_SIZE = 1000
_MAX_LISTED = 10

ERR_START_POSITIVE = "Il numero iniziale deve essere maggiore di zero"
ERR_START_AFTER_END = "Il numero iniziale deve essere minore o uguale al numero finale"
ERR_TOO_LARGE = f"Il range non può contenere più di {MAX_RANGE_SIZE} numeri"
ERR_RANGE_NOT_FOUND = "Range non trovato"
REASON_NOT_ELIGIBLE = "Nessun pagamento completato in attesa di tessera"


@dataclass
class RangeResult:
    """Outcome of add/delete. `conflicts` holds every offending number."""

    success: bool
    range: CardNumberRange | None = None
    conflicts: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class RangeStats:
    range: CardNumberRange
    total: int
    used: int
    available: int


@dataclass
class AssignedCard:
    user_id: uuid.UUID
    membership_id: uuid.UUID
    membership_number: str


@dataclass
class SkippedUser:
    user_id: uuid.UUID
    reason: str


@dataclass
class AssignmentResult:
    """Batch outcome: partial success is normal, nothing is rolled back."""

    assigned: list[AssignedCard] = field(default_factory=list)
    users_without_card: list[uuid.UUID] = field(default_factory=list)
    skipped: list[SkippedUser] = field(default_factory=list)
    available_count: int = 0
    requested_count: int = 0


def numbers_in_range(start: int, end: int) -> list[str]:
    return [str(n) for n in range(start, end + 1)]


def _summarize_numbers(numbers: Sequence[str]) -> str:
    listed = ", ".join(numbers[:_MAX_LISTED])
    extra = len(numbers) - _MAX_LISTED
    return f"{listed} e altri {extra}" if extra > 0 else listed


class CardAllocator:
    """Range CRUD and number assignment. Stateless, session per call."""

    def __init__(self, memberships: MembershipService) -> None:
        self._memberships = memberships

    # ── Reads ────────────────────────────────────────────────────────

    async def _assigned_numbers(self, db: AsyncSession, candidates: Sequence[str] | None = None) -> set[str]:
        stmt = select(Membership.membership_number).where(Membership.membership_number.is_not(None))
        if candidates is not None:
            stmt = stmt.where(Membership.membership_number.in_(list(candidates)))
        result = await db.execute(stmt)
        return {n for n in result.scalars().all() if n}

    async def list_ranges(self, db: AsyncSession, year_id: uuid.UUID) -> list[CardNumberRange]:
        result = await db.execute(
            select(CardNumberRange)
            .where(CardNumberRange.association_year_id == year_id)
            .order_by(CardNumberRange.start_number.asc())
        )
        return list(result.scalars().all())

    async def get_ranges_with_stats(self, db: AsyncSession, year_id: uuid.UUID) -> list[RangeStats]:
        ranges = await self.list_ranges(db, year_id)
        assigned = await self._assigned_numbers(db)
        stats = []
        for card_range in ranges:
            used = sum(1 for n in numbers_in_range(card_range.start_number, card_range.end_number) if n in assigned)
            stats.append(RangeStats(card_range, card_range.size, used, card_range.size - used))
        return stats

    async def get_available_numbers(
        self, db: AsyncSession, year_id: uuid.UUID, limit: int | None = None
    ) -> list[str]:
        """Unassigned numbers of the year's ranges, ascending by range start."""
        ranges = await self.list_ranges(db, year_id)
        if not ranges:
            return []
        assigned = await self._assigned_numbers(db)
        available: list[str] = []
        for card_range in ranges:
            for number in numbers_in_range(card_range.start_number, card_range.end_number):
                if number in assigned:
                    continue
                available.append(number)
                if limit is not None and len(available) >= limit:
                    return available
        return available

    async def get_available_numbers_count(self, db: AsyncSession, year_id: uuid.UUID) -> int:
        return len(await self.get_available_numbers(db, year_id))

    # ── Range management ─────────────────────────────────────────────

    async def add_range(
        self,
        db: AsyncSession,
        start: int,
        end: int,
        year_id: uuid.UUID,
        creator_id: str | None = None,
    ) -> RangeResult:
        if start < 1:
            return RangeResult(success=False, error=ERR_START_POSITIVE)
        if start > end:
            return RangeResult(success=False, error=ERR_START_AFTER_END)
        if end - start + 1 > MAX_RANGE_SIZE:
            return RangeResult(success=False, error=ERR_TOO_LARGE)

        result = await db.execute(
            select(CardNumberRange)
            .where(
                CardNumberRange.association_year_id == year_id,
                CardNumberRange.start_number <= end,
                CardNumberRange.end_number >= start,
            )
            .order_by(CardNumberRange.start_number.asc())
        )
        overlapping = list(result.scalars().all())
        if overlapping:
            conflicts = sorted(
                {n for r in overlapping for n in range(max(start, r.start_number), min(end, r.end_number) + 1)}
            )
            labels = ", ".join(f"{r.start_number}-{r.end_number}" for r in overlapping)
            return RangeResult(
                success=False,
                conflicts=[str(n) for n in conflicts],
                error=f"Il range si sovrappone con range esistenti: {labels}",
            )

        taken = await self._assigned_numbers(db, numbers_in_range(start, end))
        if taken:
            conflicts = sorted(taken, key=int)
            return RangeResult(
                success=False,
                conflicts=conflicts,
                error=f"I seguenti numeri sono già assegnati: {_summarize_numbers(conflicts)}",
            )

        card_range = CardNumberRange(
            association_year_id=year_id,
            start_number=start,
            end_number=end,
            created_by=creator_id,
        )
        db.add(card_range)
        await db.flush()

        await emit(SystemEvent(
            event_type=EventType.CARD_RANGE_ADDED,
            actor_id=creator_id,
            actor_role="admin",
            data={"start": start, "end": end, "year_id": str(year_id)},
            source_module="cards.allocator",
        ))
        logger.info("Card range %d-%d added by %s", start, end, creator_id)
        return RangeResult(success=True, range=card_range)

    async def delete_range(self, db: AsyncSession, range_id: uuid.UUID, admin_id: str | None = None) -> RangeResult:
        card_range = await db.get(CardNumberRange, range_id)
        if card_range is None:
            return RangeResult(success=False, error=ERR_RANGE_NOT_FOUND)

        used = await self._assigned_numbers(db, numbers_in_range(card_range.start_number, card_range.end_number))
        if used:
            return RangeResult(
                success=False,
                range=card_range,
                conflicts=sorted(used, key=int),
                error=f"Impossibile eliminare: {len(used)} numeri di questo range sono già stati assegnati",
            )

        await db.delete(card_range)
        await db.flush()
        await emit(SystemEvent(
            event_type=EventType.CARD_RANGE_DELETED,
            actor_id=admin_id,
            actor_role="admin",
            data={"start": card_range.start_number, "end": card_range.end_number},
            source_module="cards.allocator",
        ))
        logger.info("Card range %d-%d deleted", card_range.start_number, card_range.end_number)
        return RangeResult(success=True, range=card_range)

    # ── Assignment ───────────────────────────────────────────────────

    async def _awaiting_membership(self, db: AsyncSession, user_id: uuid.UUID) -> Membership | None:
        result = await db.execute(
            select(Membership)
            .where(
                Membership.user_id == user_id,
                Membership.payment_status == PaymentStatus.SUCCEEDED.value,
                Membership.membership_number.is_(None),
                Membership.status != MembershipStatus.CANCELED.value,
            )
            .order_by(Membership.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def auto_assign_membership_numbers(
        self,
        db: AsyncSession,
        user_ids: Sequence[uuid.UUID],
        admin_id: str,
        year_id: uuid.UUID | None = None,
    ) -> AssignmentResult:
        """Give each user, in input order, the lowest free number.

        Each activation runs in its own SAVEPOINT: a number taken concurrently
        only costs that number, and running out of numbers only affects the
        users after that point.
        """
        if year_id is None:
            year = await get_active_year(db)
            year_id = year.id if year else None
        else:
            year = await db.get(AssociationYear, year_id)
        available = await self.get_available_numbers(db, year_id) if year_id else []
        outcome = AssignmentResult(available_count=len(available), requested_count=len(user_ids))
        cursor = 0

        for user_id in user_ids:
            membership = await self._awaiting_membership(db, user_id)
            if membership is None:
                outcome.skipped.append(SkippedUser(user_id, REASON_NOT_ELIGIBLE))
                continue

            assigned_number: str | None = None
            while cursor < len(available) and assigned_number is None:
                number = available[cursor]
                cursor += 1
                try:
                    async with db.begin_nested():
                        await self._memberships.activate_membership(db, membership, number, admin_id, year=year)
                except IntegrityError:
                    logger.warning("Card number %s taken concurrently, trying the next one", number)
                    # the rolled-back savepoint expired the row
                    await db.refresh(membership)
                    continue
                assigned_number = number

            if assigned_number is None:
                outcome.users_without_card.append(user_id)
                continue
            outcome.assigned.append(AssignedCard(user_id, membership.id, assigned_number))

        await emit(SystemEvent(
            event_type=EventType.CARDS_ASSIGNED,
            actor_id=admin_id,
            actor_role="admin",
            data={
                "assigned": len(outcome.assigned),
                "without_card": len(outcome.users_without_card),
                "skipped": len(outcome.skipped),
            },
            source_module="cards.allocator",
        ))
        logger.info(
            "Card batch by %s: %d assigned, %d without card, %d skipped",
            admin_id,
            len(outcome.assigned),
            len(outcome.users_without_card),
            len(outcome.skipped),
        )
        return outcome


# Module-level default wiring
card_allocator = CardAllocator(membership_service)
