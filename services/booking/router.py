"""
services/booking/router.py
Booking lifecycle endpoints. Vendors drive the field work, users pay or
cancel, admins approve and settle.

PENDING → ACCEPTED → VISITED → REPORT_UPLOADED → AWAITING_PAYMENT
        → PAYMENT_SUCCESS → BOREWELL_UPLOADED → ADMIN_APPROVED
        → FINAL_SETTLEMENT → COMPLETED
(REJECTED / CANCELLED / COMPLETED are terminal.)
"""

from typing import Callable, Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.service import Actor, BookingStateMachine
from services.otp.service import get_clock
from shared.middleware.auth import (
    CurrentAccount,
    KindRequired,
    get_current_account,
    require_admin,
    require_user,
    require_vendor,
)
from shared.models.models import AccountKind, Admin, Booking, BookingStatus, User, Vendor
from shared.schemas.schemas import (
    BookingCancelRequest,
    BookingRejectRequest,
    BookingReportRequest,
    BookingResponse,
    BookingScheduleRequest,
    BorewellResultRequest,
    PaginatedResponse,
    SettlementRequest,
)
from shared.utils.exceptions import ValidationFailed

router = APIRouter(prefix="/bookings", tags=["Bookings"])


# ── Dependencies ──────────────────────────────────────────────

def get_state_machine(
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
) -> BookingStateMachine:
    return BookingStateMachine(db, clock=clock)


def get_booking_notifier(request: Request) -> Callable[[str, str], None]:
    return request.app.state.booking_notifier


def _respond(
    booking: Booking,
    background_tasks: BackgroundTasks,
    notify: Callable[[str, str], None],
) -> BookingResponse:
    background_tasks.add_task(notify, str(booking.id), booking.status.value)
    return BookingResponse.model_validate(booking)


def _parse_status(value: Optional[str]) -> Optional[BookingStatus]:
    if not value:
        return None
    try:
        return BookingStatus(value)
    except ValueError:
        raise ValidationFailed(f"Invalid status: {value}")


# ── Read Endpoints ────────────────────────────────────────────

@router.get("", response_model=PaginatedResponse)
async def list_bookings(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=50),
    current: CurrentAccount = Depends(get_current_account),
    machine: BookingStateMachine = Depends(get_state_machine),
):
    """Users see their bookings, vendors the ones assigned to them, admins everything."""
    bookings, total = await machine.list_for(
        Actor(current.kind, current.id), _parse_status(status_filter), page, page_size
    )
    return PaginatedResponse(
        items=[BookingResponse.model_validate(b) for b in bookings],
        total=total,
        page=page,
        page_size=page_size,
        pages=(total + page_size - 1) // page_size,
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current: CurrentAccount = Depends(get_current_account),
    machine: BookingStateMachine = Depends(get_state_machine),
):
    booking = await machine.get_visible(booking_id, Actor(current.kind, current.id))
    return BookingResponse.model_validate(booking)


# ── Vendor Actions ────────────────────────────────────────────

@router.post("/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(
    booking_id: UUID,
    background_tasks: BackgroundTasks,
    vendor: Vendor = Depends(require_vendor),
    machine: BookingStateMachine = Depends(get_state_machine),
    notify=Depends(get_booking_notifier),
):
    """PENDING → ACCEPTED."""
    booking = await machine.accept(booking_id, vendor.id)
    return _respond(booking, background_tasks, notify)


@router.post("/{booking_id}/reject", response_model=BookingResponse)
async def reject_booking(
    booking_id: UUID,
    data: BookingRejectRequest,
    background_tasks: BackgroundTasks,
    vendor: Vendor = Depends(require_vendor),
    machine: BookingStateMachine = Depends(get_state_machine),
    notify=Depends(get_booking_notifier),
):
    """PENDING → REJECTED. The reason must be 10-500 characters."""
    booking = await machine.reject(booking_id, vendor.id, data.rejection_reason)
    return _respond(booking, background_tasks, notify)


@router.patch("/{booking_id}/schedule", response_model=BookingResponse)
async def schedule_visit(
    booking_id: UUID,
    data: BookingScheduleRequest,
    background_tasks: BackgroundTasks,
    vendor: Vendor = Depends(require_vendor),
    machine: BookingStateMachine = Depends(get_state_machine),
    notify=Depends(get_booking_notifier),
):
    """Set the visit slot. Accepts a PENDING booking; reschedules an ACCEPTED one."""
    booking, accepted = await machine.schedule_visit(
        booking_id, vendor.id, data.scheduled_date, data.scheduled_time
    )
    if not accepted:
        return BookingResponse.model_validate(booking)
    return _respond(booking, background_tasks, notify)


@router.post("/{booking_id}/visited", response_model=BookingResponse)
async def mark_visited(
    booking_id: UUID,
    background_tasks: BackgroundTasks,
    vendor: Vendor = Depends(require_vendor),
    machine: BookingStateMachine = Depends(get_state_machine),
    notify=Depends(get_booking_notifier),
):
    booking = await machine.mark_visited(booking_id, vendor.id)
    return _respond(booking, background_tasks, notify)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def mark_completed(
    booking_id: UUID,
    background_tasks: BackgroundTasks,
    vendor: Vendor = Depends(require_vendor),
    machine: BookingStateMachine = Depends(get_state_machine),
    notify=Depends(get_booking_notifier),
):
    """VISITED → COMPLETED, crediting the vendor ledger."""
    booking = await machine.mark_completed(booking_id, vendor.id)
    return _respond(booking, background_tasks, notify)


@router.post("/{booking_id}/report", response_model=BookingResponse)
async def upload_report(
    booking_id: UUID,
    data: BookingReportRequest,
    background_tasks: BackgroundTasks,
    vendor: Vendor = Depends(require_vendor),
    machine: BookingStateMachine = Depends(get_state_machine),
    notify=Depends(get_booking_notifier),
):
    booking = await machine.upload_report(booking_id, vendor.id, data.report_url, data.notes)
    return _respond(booking, background_tasks, notify)


@router.post("/{booking_id}/request-payment", response_model=BookingResponse)
async def request_payment(
    booking_id: UUID,
    background_tasks: BackgroundTasks,
    vendor: Vendor = Depends(require_vendor),
    machine: BookingStateMachine = Depends(get_state_machine),
    notify=Depends(get_booking_notifier),
):
    booking = await machine.request_payment(booking_id, vendor.id)
    return _respond(booking, background_tasks, notify)


@router.post("/{booking_id}/borewell-result", response_model=BookingResponse)
async def upload_borewell_result(
    booking_id: UUID,
    data: BorewellResultRequest,
    background_tasks: BackgroundTasks,
    vendor: Vendor = Depends(require_vendor),
    machine: BookingStateMachine = Depends(get_state_machine),
    notify=Depends(get_booking_notifier),
):
    booking = await machine.upload_borewell_result(
        booking_id, vendor.id, data.result, data.notes
    )
    return _respond(booking, background_tasks, notify)


# ── User Actions ──────────────────────────────────────────────

@router.post("/{booking_id}/payment", response_model=BookingResponse)
async def record_payment(
    booking_id: UUID,
    background_tasks: BackgroundTasks,
    user: User = Depends(require_user),
    machine: BookingStateMachine = Depends(get_state_machine),
    notify=Depends(get_booking_notifier),
):
    booking = await machine.record_payment(booking_id, user.id)
    return _respond(booking, background_tasks, notify)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: UUID,
    data: BookingCancelRequest,
    background_tasks: BackgroundTasks,
    current: CurrentAccount = Depends(KindRequired(AccountKind.USER, AccountKind.ADMIN)),
    machine: BookingStateMachine = Depends(get_state_machine),
    notify=Depends(get_booking_notifier),
):
    """User cancels their own booking; admins may cancel any non-terminal booking."""
    booking = await machine.cancel(booking_id, Actor(current.kind, current.id), data.reason)
    return _respond(booking, background_tasks, notify)


# ── Admin Actions ─────────────────────────────────────────────

@router.post("/{booking_id}/approve", response_model=BookingResponse)
async def approve_result(
    booking_id: UUID,
    background_tasks: BackgroundTasks,
    admin: Admin = Depends(require_admin),
    machine: BookingStateMachine = Depends(get_state_machine),
    notify=Depends(get_booking_notifier),
):
    booking = await machine.approve_result(booking_id, admin.id)
    return _respond(booking, background_tasks, notify)


@router.post("/{booking_id}/settle", response_model=BookingResponse)
async def final_settlement(
    booking_id: UUID,
    data: SettlementRequest,
    background_tasks: BackgroundTasks,
    admin: Admin = Depends(require_admin),
    machine: BookingStateMachine = Depends(get_state_machine),
    notify=Depends(get_booking_notifier),
):
    booking = await machine.final_settlement(booking_id, admin.id, data.amount)
    return _respond(booking, background_tasks, notify)


@router.post("/{booking_id}/close", response_model=BookingResponse)
async def close_booking(
    booking_id: UUID,
    background_tasks: BackgroundTasks,
    admin: Admin = Depends(require_admin),
    machine: BookingStateMachine = Depends(get_state_machine),
    notify=Depends(get_booking_notifier),
):
    """FINAL_SETTLEMENT → COMPLETED, crediting the vendor ledger."""
    booking = await machine.close(booking_id, admin.id)
    return _respond(booking, background_tasks, notify)
