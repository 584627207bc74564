"""
services/admin/router.py
Admin endpoints: code-gated admin registration, admin account management
(super admin only) and the vendor approval queue.

ALL mutations are logged to AdminAuditLog before returning.
"""

import hmac
import logging
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, Response, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.admin import service as guards
from services.auth import service as accounts
from services.auth.router import get_otp_service, password_routes
from services.notification.email import EmailClient, get_email_client
from services.notification.templates import vendor_decision_email
from services.otp.service import OTPService, get_clock
from shared.middleware.auth import require_admin, require_super_admin
from shared.models.models import AccountKind, Admin, AdminRole, TokenPurpose, Vendor
from shared.schemas.schemas import (
    AdminRegisterComplete,
    AdminRegisterStart,
    AdminResponse,
    AdminRoleUpdate,
    AdminStatusUpdate,
    AuthResponse,
    MessageResponse,
    PaginatedResponse,
    RegistrationStarted,
    VendorRejectRequest,
    VendorResponse,
)
from shared.utils.exceptions import Conflict, Forbidden, NotFoundOrIllegalState, Unavailable
from shared.utils.security import hash_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


async def _send_vendor_decision(
    email_client: EmailClient, vendor_email: str, vendor_name: str, approved: bool, reason: str = None
) -> None:
    subject, html = vendor_decision_email(vendor_name, approved, reason)
    result = await email_client.send(vendor_email, subject, html)
    if not result.success:
        logger.warning(f"Vendor decision email to {vendor_email} failed: {result.error}")


# ── Admin Registration ────────────────────────────────────────

@router.post("/auth/register/start", response_model=RegistrationStarted)
async def start_admin_registration(
    data: AdminRegisterStart,
    db: AsyncSession = Depends(get_db),
    otp: OTPService = Depends(get_otp_service),
    email_client: EmailClient = Depends(get_email_client),
):
    """Requires the shared registration code before any OTP is sent."""
    if not settings.ADMIN_REGISTRATION_CODE:
        raise Unavailable("Admin registration is disabled")
    if not hmac.compare_digest(data.admin_code, settings.ADMIN_REGISTRATION_CODE):
        logger.warning(f"Admin registration with invalid code for {data.email}")
        raise Forbidden("Invalid admin registration code")

    await accounts.ensure_unique(db, AccountKind.ADMIN, data.email)
    issued = await accounts.start_registration(
        otp, email_client, AccountKind.ADMIN, data.name, data.email, TokenPurpose.ADMIN_REGISTRATION
    )
    return RegistrationStarted(
        message="OTP sent to your email. Please verify to complete registration.",
        verification_token=issued.bearer_token,
        expires_at=issued.expires_at,
    )


@router.post("/auth/register/complete", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def complete_admin_registration(
    data: AdminRegisterComplete,
    response: Response,
    db: AsyncSession = Depends(get_db),
    otp: OTPService = Depends(get_otp_service),
):
    record = await accounts.verify_registration(
        otp,
        AccountKind.ADMIN,
        data.verification_token,
        data.email,
        data.otp,
        TokenPurpose.ADMIN_REGISTRATION,
    )
    await accounts.ensure_unique(db, AccountKind.ADMIN, data.email)

    admin = Admin(
        name=data.name,
        email=data.email,
        password_hash=hash_password(data.password),
        role=AdminRole.ADMIN,
    )
    await accounts.add_account(db, admin)
    await otp.consume(record.id)
    logger.info(f"Admin registered: {admin.id}")
    return accounts.start_session(admin, response)


password_routes(router, "/auth", AccountKind.ADMIN)


# ── Admin Management (super admin) ────────────────────────────

@router.get("/admins", response_model=list[AdminResponse])
async def list_admins(
    current_admin: Admin = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(Admin).order_by(Admin.created_at))
    return [AdminResponse.model_validate(a) for a in result.scalars().all()]


@router.patch("/admins/{admin_id}/role", response_model=AdminResponse)
async def update_admin_role(
    admin_id: UUID,
    data: AdminRoleUpdate,
    request: Request,
    current_admin: Admin = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
):
    target = await guards.get_admin(db, admin_id)
    previous = target.role.value
    await guards.change_role(db, current_admin, target, AdminRole(data.role))
    guards.audit(
        db, current_admin, "CHANGE_ADMIN_ROLE", "admin", target.id,
        {"from": previous, "to": data.role}, request,
    )
    return AdminResponse.model_validate(target)


@router.patch("/admins/{admin_id}/status", response_model=AdminResponse)
async def update_admin_status(
    admin_id: UUID,
    data: AdminStatusUpdate,
    request: Request,
    current_admin: Admin = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
):
    target = await guards.get_admin(db, admin_id)
    await guards.set_active(db, current_admin, target, data.is_active)
    guards.audit(
        db, current_admin, "ACTIVATE_ADMIN" if data.is_active else "DEACTIVATE_ADMIN",
        "admin", target.id, None, request,
    )
    return AdminResponse.model_validate(target)


@router.delete("/admins/{admin_id}", response_model=MessageResponse)
async def delete_admin(
    admin_id: UUID,
    request: Request,
    current_admin: Admin = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
):
    target = await guards.get_admin(db, admin_id)
    snapshot = {"email": target.email, "role": target.role.value}
    await guards.delete_admin(db, current_admin, target)
    guards.audit(db, current_admin, "DELETE_ADMIN", "admin", admin_id, snapshot, request)
    return MessageResponse(message="Admin deleted successfully")


# ── Vendor Approval Queue ─────────────────────────────────────

@router.get("/vendors/pending", response_model=PaginatedResponse)
async def get_pending_vendors(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_admin: Admin = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Vendors awaiting approval, oldest first."""
    query = select(Vendor).where(Vendor.is_approved.is_(False), Vendor.rejection_reason.is_(None))
    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
    result = await db.execute(
        query.order_by(Vendor.created_at.asc()).offset((page - 1) * page_size).limit(page_size)
    )
    return PaginatedResponse(
        items=[VendorResponse.model_validate(v) for v in result.scalars().all()],
        total=total,
        page=page,
        page_size=page_size,
        pages=(total + page_size - 1) // page_size,
    )


async def _get_vendor(db: AsyncSession, vendor_id: UUID) -> Vendor:
    vendor = await db.get(Vendor, vendor_id)
    if vendor is None:
        raise NotFoundOrIllegalState("Vendor not found")
    return vendor


@router.post("/vendors/{vendor_id}/approve", response_model=VendorResponse)
async def approve_vendor(
    vendor_id: UUID,
    request: Request,
    background_tasks: BackgroundTasks,
    current_admin: Admin = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    email_client: EmailClient = Depends(get_email_client),
    clock=Depends(get_clock),
):
    vendor = await _get_vendor(db, vendor_id)
    if vendor.is_approved:
        raise Conflict("Vendor is already approved")

    vendor.is_approved = True
    vendor.approved_at = clock()
    vendor.rejection_reason = None
    guards.audit(db, current_admin, "APPROVE_VENDOR", "vendor", vendor.id, None, request)
    background_tasks.add_task(_send_vendor_decision, email_client, vendor.email, vendor.name, True)
    logger.info(f"Vendor {vendor.id} approved by admin {current_admin.id}")
    return VendorResponse.model_validate(vendor)


@router.post("/vendors/{vendor_id}/reject", response_model=VendorResponse)
async def reject_vendor(
    vendor_id: UUID,
    data: VendorRejectRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    current_admin: Admin = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    email_client: EmailClient = Depends(get_email_client),
):
    vendor = await _get_vendor(db, vendor_id)
    vendor.is_approved = False
    vendor.approved_at = None
    vendor.rejection_reason = data.reason
    guards.audit(
        db, current_admin, "REJECT_VENDOR", "vendor", vendor.id, {"reason": data.reason}, request
    )
    background_tasks.add_task(
        _send_vendor_decision, email_client, vendor.email, vendor.name, False, data.reason
    )
    logger.info(f"Vendor {vendor.id} rejected by admin {current_admin.id}")
    return VendorResponse.model_validate(vendor)
