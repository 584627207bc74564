"""
services/auth/router.py
Email + password authentication for users and vendors, gated by OTP
email verification at registration.

Register → (OTP email) → Complete → Login → Refresh → Logout
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.auth import service as accounts
from services.notification.email import EmailClient, get_email_client
from services.otp.service import OTPService, get_clock
from shared.middleware.auth import REFRESH_COOKIE, CurrentAccount, get_current_account
from shared.models.models import ACCOUNT_MODELS, AccountKind, User, Vendor
from shared.schemas.schemas import (
    AuthResponse,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RegistrationStarted,
    ResetPasswordRequest,
    TokenResponse,
    UserRegisterComplete,
    UserRegisterStart,
    VendorRegisterComplete,
    VendorRegisterStart,
)
from shared.utils.exceptions import Unauthorized
from shared.utils.geocoding import GeocodingClient, format_address, get_geocoding_client
from shared.utils.security import (
    SessionClaims,
    hash_password,
    issue_session,
    verify_refresh_token,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


def get_otp_service(db: AsyncSession = Depends(get_db), clock=Depends(get_clock)) -> OTPService:
    return OTPService(db, clock=clock)


def password_routes(router: APIRouter, prefix: str, kind: AccountKind) -> None:
    """Mount login, forgot-password and reset-password for one account kind."""

    @router.post(f"{prefix}/login", response_model=AuthResponse, name=f"{kind.value.lower()}_login")
    async def login(
        data: LoginRequest,
        response: Response,
        db: AsyncSession = Depends(get_db),
        clock=Depends(get_clock),
    ):
        account = await accounts.authenticate(db, kind, data.email, data.password, clock())
        return accounts.start_session(account, response)

    @router.post(
        f"{prefix}/forgot-password",
        response_model=MessageResponse,
        name=f"{kind.value.lower()}_forgot_password",
    )
    async def forgot_password(
        data: ForgotPasswordRequest,
        db: AsyncSession = Depends(get_db),
        otp: OTPService = Depends(get_otp_service),
        email_client: EmailClient = Depends(get_email_client),
    ):
        message = await accounts.request_password_reset(db, otp, email_client, kind, data.email)
        return MessageResponse(message=message)

    @router.post(
        f"{prefix}/reset-password",
        response_model=MessageResponse,
        name=f"{kind.value.lower()}_reset_password",
    )
    async def reset_password(
        data: ResetPasswordRequest,
        db: AsyncSession = Depends(get_db),
        otp: OTPService = Depends(get_otp_service),
    ):
        await accounts.reset_password(db, otp, kind, data.email, data.otp, data.new_password)
        return MessageResponse(message="Password reset successful. Please login with your new password.")


# ── Users ─────────────────────────────────────────────────────

@router.post("/users/register/start", response_model=RegistrationStarted)
async def start_user_registration(
    data: UserRegisterStart,
    db: AsyncSession = Depends(get_db),
    otp: OTPService = Depends(get_otp_service),
    email_client: EmailClient = Depends(get_email_client),
):
    """Check the email/phone are free and mail a verification code."""
    await accounts.ensure_unique(db, AccountKind.USER, data.email, data.phone)
    issued = await accounts.start_registration(otp, email_client, AccountKind.USER, data.name, data.email)
    return RegistrationStarted(
        message="OTP sent to your email. Please verify to complete registration.",
        verification_token=issued.bearer_token,
        expires_at=issued.expires_at,
    )


@router.post("/users/register/complete", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def complete_user_registration(
    data: UserRegisterComplete,
    response: Response,
    db: AsyncSession = Depends(get_db),
    otp: OTPService = Depends(get_otp_service),
):
    record = await accounts.verify_registration(
        otp, AccountKind.USER, data.verification_token, data.email, data.otp
    )
    await accounts.ensure_unique(db, AccountKind.USER, data.email, data.phone)

    user = User(
        name=data.name,
        email=data.email,
        phone=data.phone,
        password_hash=hash_password(data.password),
        is_email_verified=True,
    )
    await accounts.add_account(db, user)
    await otp.consume(record.id)
    logger.info(f"User registered: {user.id}")
    return accounts.start_session(user, response)


# ── Vendors ───────────────────────────────────────────────────

@router.post("/vendors/register/start", response_model=RegistrationStarted)
async def start_vendor_registration(
    data: VendorRegisterStart,
    db: AsyncSession = Depends(get_db),
    otp: OTPService = Depends(get_otp_service),
    email_client: EmailClient = Depends(get_email_client),
):
    await accounts.ensure_unique(db, AccountKind.VENDOR, data.email, data.phone)
    issued = await accounts.start_registration(otp, email_client, AccountKind.VENDOR, data.name, data.email)
    return RegistrationStarted(
        message="OTP sent to your email. Please verify to complete registration.",
        verification_token=issued.bearer_token,
        expires_at=issued.expires_at,
    )


@router.post("/vendors/register/complete", status_code=status.HTTP_201_CREATED)
async def complete_vendor_registration(
    data: VendorRegisterComplete,
    db: AsyncSession = Depends(get_db),
    otp: OTPService = Depends(get_otp_service),
    geocoder: GeocodingClient = Depends(get_geocoding_client),
):
    """
    Create the vendor in the unapproved state. No session is issued:
    vendors can log in only after an admin approves them.
    """
    record = await accounts.verify_registration(
        otp, AccountKind.VENDOR, data.verification_token, data.email, data.otp
    )
    await accounts.ensure_unique(db, AccountKind.VENDOR, data.email, data.phone)

    address = data.address.model_dump() if data.address else None
    coordinates = await geocoder.geocode(format_address(address)) if address else None

    vendor = Vendor(
        name=data.name,
        email=data.email,
        phone=data.phone,
        password_hash=hash_password(data.password),
        is_email_verified=True,
        is_approved=False,
        experience_years=data.experience_years,
        address=address,
        latitude=coordinates.latitude if coordinates else None,
        longitude=coordinates.longitude if coordinates else None,
        documents=data.documents,
        bank_details=data.bank_details.model_dump() if data.bank_details else None,
    )
    await accounts.add_account(db, vendor)
    await otp.consume(record.id)
    logger.info(f"Vendor registered, awaiting approval: {vendor.id}")
    return {
        "message": "Registration complete. Your account is pending admin approval.",
        "vendor": accounts.account_payload(vendor),
    }


password_routes(router, "/users", AccountKind.USER)
password_routes(router, "/vendors", AccountKind.VENDOR)


# ── Session ───────────────────────────────────────────────────

@router.get("/me")
async def get_me(current: CurrentAccount = Depends(get_current_account)):
    return {"kind": current.kind.value, "account": accounts.account_payload(current.account)}


@router.post("/refresh", response_model=TokenResponse)
async def refresh_session(
    response: Response,
    data: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    db: AsyncSession = Depends(get_db),
):
    """Exchange a refresh token (body or cookie) for a fresh pair."""
    raw_token = (data.refresh_token if data else None) or refresh_cookie
    if not raw_token:
        raise Unauthorized("Refresh token required")

    claims: SessionClaims = verify_refresh_token(raw_token)
    try:
        model = ACCOUNT_MODELS[AccountKind(claims.kind)]
        account = await db.get(model, uuid.UUID(claims.subject_id))
    except ValueError:
        raise Unauthorized("Invalid refresh token")
    if not account or not account.is_active:
        raise Unauthorized("Account not found or inactive")

    tokens = issue_session(accounts.claims_for(account))
    accounts.set_session_cookies(response, tokens.access_token, tokens.refresh_token)
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


@router.post("/logout", response_model=MessageResponse)
async def logout(response: Response):
    """Clears the session cookies. Issued tokens stay valid until they expire."""
    accounts.clear_session_cookies(response)
    return MessageResponse(message="Logged out successfully")
