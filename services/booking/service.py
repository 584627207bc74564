"""
services/booking/service.py
Booking lifecycle state machine.

Every transition is one conditional UPDATE whose WHERE clause carries the
booking id, the required current status and the actor's ownership filter.
A zero row count means "not found or already processed"; the two cases are
deliberately indistinguishable to the caller. Side effects (audit row,
vendor ledger) run in the same session, so they commit or roll back with
the transition.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Callable, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import (
    TERMINAL_BOOKING_STATUSES,
    AccountKind,
    Booking,
    BookingAuditLog,
    BookingStatus,
    BorewellResult,
    PaymentStatus,
    Vendor,
)
from shared.schemas.schemas import TIME_PATTERN
from shared.utils.exceptions import NotFoundOrIllegalState, ValidationFailed

logger = logging.getLogger(__name__)

REASON_MIN_LENGTH = 10
REASON_MAX_LENGTH = 500

NOT_FOUND_MESSAGE = "Booking not found or already processed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Actor:
    kind: AccountKind
    id: uuid.UUID

    def scope(self) -> tuple:
        """Ownership filter: vendors see assigned bookings, users their own, admins all."""
        if self.kind == AccountKind.VENDOR:
            return (Booking.vendor_id == self.id,)
        if self.kind == AccountKind.USER:
            return (Booking.user_id == self.id,)
        return ()


def validate_reason(reason: Optional[str], field: str = "Reason") -> str:
    reason = (reason or "").strip()
    if not REASON_MIN_LENGTH <= len(reason) <= REASON_MAX_LENGTH:
        raise ValidationFailed(
            f"{field} must be between {REASON_MIN_LENGTH} and {REASON_MAX_LENGTH} characters"
        )
    return reason


def validate_time(value: Optional[str]) -> str:
    if not value or not TIME_PATTERN.match(value):
        raise ValidationFailed("Scheduled time must be in HH:MM format")
    return value


class BookingStateMachine:
    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    # ── Core ─────────────────────────────────────────────────

    async def _transition(
        self,
        booking_id: uuid.UUID,
        actor: Actor,
        from_statuses: Iterable[BookingStatus],
        to_status: BookingStatus,
        values: Optional[dict] = None,
        reason: Optional[str] = None,
    ) -> Booking:
        from_statuses = tuple(from_statuses)
        result = await self.db.execute(
            update(Booking)
            .where(
                Booking.id == booking_id,
                Booking.status.in_(from_statuses),
                *actor.scope(),
            )
            .values(status=to_status, **(values or {})),
            execution_options={"synchronize_session": False},
        )
        if result.rowcount != 1:
            logger.info(
                f"Booking {booking_id} transition to {to_status.value} refused "
                f"for {actor.kind.value} {actor.id}"
            )
            raise NotFoundOrIllegalState(NOT_FOUND_MESSAGE)

        from_label = from_statuses[0].value if len(from_statuses) == 1 else None
        self._audit(booking_id, from_label, to_status, actor, reason)
        logger.info(
            f"Booking {booking_id}: {from_label or '*'} -> {to_status.value} "
            f"by {actor.kind.value} {actor.id}"
        )
        return await self.get(booking_id)

    def _audit(
        self,
        booking_id: uuid.UUID,
        from_status: Optional[str],
        to_status: BookingStatus,
        actor: Actor,
        reason: Optional[str],
    ) -> None:
        self.db.add(
            BookingAuditLog(
                booking_id=booking_id,
                from_status=from_status,
                to_status=to_status.value,
                actor_kind=actor.kind,
                actor_id=actor.id,
                reason=reason,
            )
        )

    async def _apply_completion_ledger(self, booking: Booking) -> None:
        """Fold the booking's payment into the assigned vendor's running totals."""
        amount = Decimal(booking.payment_amount or 0)
        values = {
            "total_earnings": Vendor.total_earnings + amount,
            "last_payment_date": self.clock(),
        }
        if booking.payment_status == PaymentStatus.SUCCESS:
            values["collected_amount"] = Vendor.collected_amount + amount
        else:
            values["pending_amount"] = Vendor.pending_amount + amount

        await self.db.execute(
            update(Vendor).where(Vendor.id == booking.vendor_id).values(**values),
            execution_options={"synchronize_session": False},
        )
        logger.info(
            f"Vendor {booking.vendor_id} ledger +{amount} "
            f"({'collected' if 'collected_amount' in values else 'pending'})"
        )

    async def get(self, booking_id: uuid.UUID) -> Booking:
        result = await self.db.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFoundOrIllegalState(NOT_FOUND_MESSAGE)
        return booking

    async def get_visible(self, booking_id: uuid.UUID, actor: Actor) -> Booking:
        result = await self.db.execute(
            select(Booking).where(Booking.id == booking_id, *actor.scope())
        )
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFoundOrIllegalState("Booking not found")
        return booking

    async def list_for(
        self,
        actor: Actor,
        status: Optional[BookingStatus] = None,
        page: int = 1,
        page_size: int = 10,
    ) -> tuple[list[Booking], int]:
        query = select(Booking).where(*actor.scope())
        if status is not None:
            query = query.where(Booking.status == status)
        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))
        result = await self.db.execute(
            query.order_by(Booking.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total or 0

    # ── Vendor Operations ────────────────────────────────────

    async def accept(self, booking_id: uuid.UUID, vendor_id: uuid.UUID) -> Booking:
        return await self._transition(
            booking_id,
            Actor(AccountKind.VENDOR, vendor_id),
            [BookingStatus.PENDING],
            BookingStatus.ACCEPTED,
            {"accepted_at": self.clock()},
        )

    async def reject(
        self, booking_id: uuid.UUID, vendor_id: uuid.UUID, rejection_reason: Optional[str]
    ) -> Booking:
        reason = validate_reason(rejection_reason, "Rejection reason")
        return await self._transition(
            booking_id,
            Actor(AccountKind.VENDOR, vendor_id),
            [BookingStatus.PENDING],
            BookingStatus.REJECTED,
            {"rejection_reason": reason},
            reason=reason,
        )

    async def mark_visited(self, booking_id: uuid.UUID, vendor_id: uuid.UUID) -> Booking:
        return await self._transition(
            booking_id,
            Actor(AccountKind.VENDOR, vendor_id),
            [BookingStatus.ACCEPTED],
            BookingStatus.VISITED,
            {"visited_at": self.clock()},
        )

    async def mark_completed(self, booking_id: uuid.UUID, vendor_id: uuid.UUID) -> Booking:
        booking = await self._transition(
            booking_id,
            Actor(AccountKind.VENDOR, vendor_id),
            [BookingStatus.VISITED],
            BookingStatus.COMPLETED,
            {"completed_at": self.clock()},
        )
        await self._apply_completion_ledger(booking)
        return booking

    async def schedule_visit(
        self,
        booking_id: uuid.UUID,
        vendor_id: uuid.UUID,
        scheduled_date: date,
        scheduled_time: Optional[str],
    ) -> tuple[Booking, bool]:
        """
        PENDING bookings are accepted as part of scheduling; ACCEPTED ones are rescheduled.
        Returns the booking and whether its status changed.
        """
        scheduled_time = validate_time(scheduled_time)
        if scheduled_date is None:
            raise ValidationFailed("Scheduled date is required")
        schedule = {
            "scheduled_date": datetime.combine(scheduled_date, time.min, tzinfo=timezone.utc),
            "scheduled_time": scheduled_time,
        }
        actor = Actor(AccountKind.VENDOR, vendor_id)
        try:
            booking = await self._transition(
                booking_id,
                actor,
                [BookingStatus.PENDING],
                BookingStatus.ACCEPTED,
                {**schedule, "accepted_at": self.clock()},
            )
            return booking, True
        except NotFoundOrIllegalState:
            pass

        result = await self.db.execute(
            update(Booking)
            .where(
                Booking.id == booking_id,
                Booking.status == BookingStatus.ACCEPTED,
                *actor.scope(),
            )
            .values(**schedule),
            execution_options={"synchronize_session": False},
        )
        if result.rowcount != 1:
            raise NotFoundOrIllegalState(NOT_FOUND_MESSAGE)
        logger.info(f"Booking {booking_id} rescheduled to {scheduled_date} {scheduled_time}")
        return await self.get(booking_id), False

    async def upload_report(
        self,
        booking_id: uuid.UUID,
        vendor_id: uuid.UUID,
        report_url: str,
        notes: Optional[str] = None,
    ) -> Booking:
        if not report_url or not report_url.strip():
            raise ValidationFailed("Report URL is required")
        return await self._transition(
            booking_id,
            Actor(AccountKind.VENDOR, vendor_id),
            [BookingStatus.VISITED],
            BookingStatus.REPORT_UPLOADED,
            {
                "report_url": report_url.strip(),
                "report_notes": notes,
                "report_uploaded_at": self.clock(),
            },
        )

    async def request_payment(self, booking_id: uuid.UUID, vendor_id: uuid.UUID) -> Booking:
        return await self._transition(
            booking_id,
            Actor(AccountKind.VENDOR, vendor_id),
            [BookingStatus.REPORT_UPLOADED],
            BookingStatus.AWAITING_PAYMENT,
        )

    async def upload_borewell_result(
        self,
        booking_id: uuid.UUID,
        vendor_id: uuid.UUID,
        result: str,
        notes: Optional[str] = None,
    ) -> Booking:
        try:
            outcome = BorewellResult(result)
        except ValueError:
            raise ValidationFailed("Borewell result must be SUCCESS or FAILED")
        return await self._transition(
            booking_id,
            Actor(AccountKind.VENDOR, vendor_id),
            [BookingStatus.PAYMENT_SUCCESS],
            BookingStatus.BOREWELL_UPLOADED,
            {
                "borewell_result": outcome,
                "borewell_notes": notes,
                "borewell_uploaded_at": self.clock(),
            },
        )

    # ── User Operations ──────────────────────────────────────

    async def record_payment(self, booking_id: uuid.UUID, user_id: uuid.UUID) -> Booking:
        """Record a captured payment for the remaining amount. Gateway capture happens upstream."""
        now = self.clock()
        return await self._transition(
            booking_id,
            Actor(AccountKind.USER, user_id),
            [BookingStatus.AWAITING_PAYMENT],
            BookingStatus.PAYMENT_SUCCESS,
            {"payment_status": PaymentStatus.SUCCESS, "paid_at": now},
        )

    async def cancel(
        self, booking_id: uuid.UUID, actor: Actor, reason: Optional[str]
    ) -> Booking:
        """Cancel from any non-terminal state. Users may cancel their own bookings, admins any."""
        if actor.kind == AccountKind.VENDOR:
            raise NotFoundOrIllegalState(NOT_FOUND_MESSAGE)
        reason = validate_reason(reason, "Cancellation reason")

        # Observe the current status, then compare-and-swap on it
        result = await self.db.execute(
            select(Booking.status).where(Booking.id == booking_id, *actor.scope())
        )
        current = result.scalar_one_or_none()
        if current is None or current in TERMINAL_BOOKING_STATUSES:
            raise NotFoundOrIllegalState(NOT_FOUND_MESSAGE)

        return await self._transition(
            booking_id,
            actor,
            [current],
            BookingStatus.CANCELLED,
            {
                "cancellation_reason": reason,
                "cancelled_by": actor.kind,
                "cancelled_at": self.clock(),
            },
            reason=reason,
        )

    # ── Admin Operations ─────────────────────────────────────

    async def approve_result(self, booking_id: uuid.UUID, admin_id: uuid.UUID) -> Booking:
        return await self._transition(
            booking_id,
            Actor(AccountKind.ADMIN, admin_id),
            [BookingStatus.BOREWELL_UPLOADED],
            BookingStatus.ADMIN_APPROVED,
            {"approved_at": self.clock(), "approved_by_id": admin_id},
        )

    async def final_settlement(
        self,
        booking_id: uuid.UUID,
        admin_id: uuid.UUID,
        amount: Optional[Decimal] = None,
    ) -> Booking:
        return await self._transition(
            booking_id,
            Actor(AccountKind.ADMIN, admin_id),
            [BookingStatus.ADMIN_APPROVED],
            BookingStatus.FINAL_SETTLEMENT,
            {
                "settlement_amount": amount if amount is not None else Booking.payment_amount,
                "settled_at": self.clock(),
            },
        )

    async def close(self, booking_id: uuid.UUID, admin_id: uuid.UUID) -> Booking:
        booking = await self._transition(
            booking_id,
            Actor(AccountKind.ADMIN, admin_id),
            [BookingStatus.FINAL_SETTLEMENT],
            BookingStatus.COMPLETED,
            {"completed_at": self.clock()},
        )
        await self._apply_completion_ledger(booking)
        return booking
