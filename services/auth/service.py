"""
services/auth/service.py
Account flows shared by users, vendors and admins: OTP-gated registration,
password login, password reset and session issuance.
"""

import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from fastapi import Response
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.notification.email import EmailClient, EmailResult
from services.notification.templates import otp_email
from services.otp.service import (
    BearerLookup,
    EmailRef,
    IssuedOTP,
    OTPService,
    SubjectRef,
    normalize_email,
)
from shared.middleware.auth import ACCESS_COOKIE, REFRESH_COOKIE, Account
from shared.models.models import ACCOUNT_MODELS, AccountKind, TokenPurpose, Vendor
from shared.schemas.schemas import (
    AdminResponse,
    AuthResponse,
    TokenResponse,
    UserResponse,
    VendorResponse,
)
from shared.utils.exceptions import (
    Conflict,
    ErrorCode,
    Forbidden,
    OTPRejected,
    Unauthorized,
    Unavailable,
)
from shared.utils.security import (
    SessionClaims,
    hash_password,
    issue_session,
    verify_password,
)

logger = logging.getLogger(__name__)

FORGOT_PASSWORD_MESSAGE = "If the email exists, a password reset OTP has been sent."

ACCOUNT_SCHEMAS = {
    AccountKind.USER: UserResponse,
    AccountKind.VENDOR: VendorResponse,
    AccountKind.ADMIN: AdminResponse,
}


# ── Sessions ──────────────────────────────────────────────────

def claims_for(account: Account) -> SessionClaims:
    role = account.role.value if hasattr(account.role, "value") else account.role
    return SessionClaims(
        subject_id=str(account.id),
        kind=account.kind.value,
        role=role,
        email=account.email,
    )


def account_payload(account: Account) -> dict:
    return ACCOUNT_SCHEMAS[account.kind].model_validate(account).model_dump(mode="json")


def set_session_cookies(response: Response, access_token: str, refresh_token: str) -> None:
    common = {"httponly": True, "secure": settings.is_production, "samesite": "lax"}
    response.set_cookie(
        ACCESS_COOKIE,
        access_token,
        max_age=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        **common,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        max_age=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS * 86400,
        **common,
    )


def clear_session_cookies(response: Response) -> None:
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE)


def start_session(account: Account, response: Response) -> AuthResponse:
    tokens = issue_session(claims_for(account))
    set_session_cookies(response, tokens.access_token, tokens.refresh_token)
    return AuthResponse(
        tokens=TokenResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        ),
        account=account_payload(account),
    )


# ── Lookups ───────────────────────────────────────────────────

async def find_by_email(db: AsyncSession, kind: AccountKind, email: str) -> Optional[Account]:
    model = ACCOUNT_MODELS[kind]
    result = await db.execute(select(model).where(model.email == normalize_email(email)))
    return result.scalar_one_or_none()


async def ensure_unique(
    db: AsyncSession, kind: AccountKind, email: str, phone: Optional[str] = None
) -> None:
    """Raise Conflict if the email (or phone, where the kind has one) is taken."""
    model = ACCOUNT_MODELS[kind]
    clauses = [model.email == normalize_email(email)]
    if phone and hasattr(model, "phone"):
        clauses.append(model.phone == phone)
    existing = await db.scalar(select(model.id).where(or_(*clauses)).limit(1))
    if existing is not None:
        raise Conflict(f"{kind.value.title()} with this email or phone already exists")


async def add_account(db: AsyncSession, account: Account) -> None:
    """Insert a new account; a unique-key race with another registration becomes a Conflict."""
    db.add(account)
    try:
        await db.flush()
    except IntegrityError:
        raise Conflict("An account with this email or phone already exists")


# ── OTP Delivery ──────────────────────────────────────────────

def otp_sender(
    email_client: EmailClient,
    to: str,
    name: str,
    purpose: TokenPurpose,
    expiry_minutes: int,
) -> Callable[[IssuedOTP], Awaitable[EmailResult]]:
    async def send(issued: IssuedOTP) -> EmailResult:
        subject, html, text = otp_email(name, issued.code, purpose, expiry_minutes)
        return await email_client.send(to, subject, html, text)

    return send


async def start_registration(
    otp: OTPService,
    email_client: EmailClient,
    kind: AccountKind,
    name: str,
    email: str,
    purpose: TokenPurpose = TokenPurpose.EMAIL_VERIFICATION,
) -> IssuedOTP:
    """Issue a pre-account OTP for `email` and mail it; the bearer token is returned to the client."""
    expiry = settings.OTP_EXPIRY_MINUTES
    return await otp.issue_and_send(
        EmailRef(kind=kind, email=email),
        purpose,
        otp_sender(email_client, email, name, purpose, expiry),
        expiry_minutes=expiry,
    )


async def verify_registration(
    otp: OTPService,
    kind: AccountKind,
    verification_token: str,
    email: str,
    code: str,
    purpose: TokenPurpose = TokenPurpose.EMAIL_VERIFICATION,
):
    lookup = BearerLookup(kind=kind, token=verification_token, email=email)
    return await otp.verify(lookup, purpose, code)


# ── Login ─────────────────────────────────────────────────────

async def authenticate(
    db: AsyncSession, kind: AccountKind, email: str, password: str, now: datetime
) -> Account:
    account = await find_by_email(db, kind, email)
    if not account or not verify_password(password, account.password_hash):
        raise Unauthorized("Invalid email or password")
    if not account.is_active:
        raise Unauthorized("Account is deactivated")
    if isinstance(account, Vendor):
        if not account.is_email_verified:
            raise Forbidden("Please verify your email before logging in")
        if not account.is_approved:
            raise Forbidden("Your account is pending admin approval")

    account.last_login = now
    logger.info(f"{kind.value} login: {account.id}")
    return account


# ── Password Reset ────────────────────────────────────────────

async def request_password_reset(
    db: AsyncSession,
    otp: OTPService,
    email_client: EmailClient,
    kind: AccountKind,
    email: str,
) -> str:
    """Always returns the same message so the endpoint does not reveal which accounts exist."""
    account = await find_by_email(db, kind, email)
    if account is None:
        return FORGOT_PASSWORD_MESSAGE

    expiry = settings.PASSWORD_RESET_OTP_EXPIRY_MINUTES
    purpose = TokenPurpose.PASSWORD_RESET
    try:
        await otp.issue_and_send(
            SubjectRef(kind=kind, id=account.id),
            purpose,
            otp_sender(email_client, account.email, account.name, purpose, expiry),
            expiry_minutes=expiry,
        )
    except Unavailable:
        # Any earlier reset code stays valid
        logger.warning(f"Password reset email failed for {kind.value} {account.id}")
    return FORGOT_PASSWORD_MESSAGE


async def reset_password(
    db: AsyncSession,
    otp: OTPService,
    kind: AccountKind,
    email: str,
    code: str,
    new_password: str,
) -> Account:
    account = await find_by_email(db, kind, email)
    if account is None:
        # Same rejection as a missing token
        raise OTPRejected(ErrorCode.OTP_NOT_FOUND)

    record = await otp.verify(SubjectRef(kind=kind, id=account.id), TokenPurpose.PASSWORD_RESET, code)
    account.password_hash = hash_password(new_password)
    await otp.consume(record.id)
    logger.info(f"Password reset for {kind.value} {account.id}")
    return account
