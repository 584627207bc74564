"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import re
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

PHONE_PATTERN = r"^\+?[0-9]{10,15}$"
TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


class MessageResponse(BaseSchema):
    message: str
    success: bool = True


# ── Auth ──────────────────────────────────────────────────────

class _EmailNormalized(BaseSchema):
    @field_validator("email", check_fields=False)
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.strip().lower()


class TokenResponse(BaseSchema):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


class RefreshRequest(BaseSchema):
    refresh_token: Optional[str] = None


class LoginRequest(_EmailNormalized):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ForgotPasswordRequest(_EmailNormalized):
    email: EmailStr


class ResetPasswordRequest(_EmailNormalized):
    email: EmailStr
    otp: str = Field(..., pattern=r"^\d{6}$")
    new_password: str = Field(..., min_length=6, max_length=128)


class RegistrationStarted(BaseSchema):
    message: str
    verification_token: str
    expires_at: datetime


class UserRegisterStart(_EmailNormalized):
    name: str = Field(..., min_length=2, max_length=255)
    email: EmailStr
    phone: str = Field(..., pattern=PHONE_PATTERN)


class UserRegisterComplete(UserRegisterStart):
    password: str = Field(..., min_length=6, max_length=128)
    verification_token: str = Field(..., min_length=16)
    otp: str = Field(..., pattern=r"^\d{6}$")


class AddressSchema(BaseSchema):
    street: str = Field(..., max_length=255)
    city: str = Field(..., max_length=100)
    state: str = Field(..., max_length=100)
    pincode: str = Field(..., pattern=r"^\d{6}$")
    landmark: Optional[str] = Field(None, max_length=255)


class BankDetailsSchema(BaseSchema):
    account_holder_name: str = Field(..., max_length=255)
    account_number: str = Field(..., pattern=r"^\d{9,18}$")
    ifsc_code: str = Field(..., pattern=r"^[A-Z]{4}0[A-Z0-9]{6}$")
    bank_name: str = Field(..., max_length=255)


class VendorRegisterStart(UserRegisterStart):
    pass


class VendorRegisterComplete(UserRegisterComplete):
    experience_years: int = Field(0, ge=0, le=70)
    address: Optional[AddressSchema] = None
    bank_details: Optional[BankDetailsSchema] = None
    documents: Optional[Dict[str, str]] = None  # document name → uploaded URL


class AdminRegisterStart(_EmailNormalized):
    name: str = Field(..., min_length=2, max_length=255)
    email: EmailStr
    admin_code: str = Field(..., min_length=1)


class AdminRegisterComplete(_EmailNormalized):
    name: str = Field(..., min_length=2, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)
    verification_token: str = Field(..., min_length=16)
    otp: str = Field(..., pattern=r"^\d{6}$")


# ── Accounts ──────────────────────────────────────────────────

class UserResponse(BaseSchema):
    id: uuid.UUID
    name: str
    email: EmailStr
    phone: str
    role: str
    is_active: bool
    is_email_verified: bool
    last_login: Optional[datetime] = None
    created_at: datetime


class VendorResponse(BaseSchema):
    id: uuid.UUID
    name: str
    email: EmailStr
    phone: str
    role: str
    is_active: bool
    is_email_verified: bool
    is_approved: bool
    experience_years: int
    address: Optional[Dict[str, Any]] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    total_earnings: Decimal
    collected_amount: Decimal
    pending_amount: Decimal
    created_at: datetime


class AdminResponse(BaseSchema):
    id: uuid.UUID
    name: str
    email: EmailStr
    role: str
    is_active: bool
    last_login: Optional[datetime] = None
    created_at: datetime


class AuthResponse(BaseSchema):
    tokens: TokenResponse
    account: Dict[str, Any]


# ── Booking ───────────────────────────────────────────────────

class BookingRejectRequest(BaseSchema):
    rejection_reason: str


class BookingScheduleRequest(BaseSchema):
    scheduled_date: date
    scheduled_time: str


class BookingCancelRequest(BaseSchema):
    reason: str


class BookingReportRequest(BaseSchema):
    report_url: str = Field(..., min_length=1, max_length=2000)
    notes: Optional[str] = Field(None, max_length=2000)


class BorewellResultRequest(BaseSchema):
    result: str = Field(..., pattern="^(SUCCESS|FAILED)$")
    notes: Optional[str] = Field(None, max_length=2000)


class SettlementRequest(BaseSchema):
    amount: Optional[Decimal] = Field(None, ge=0)


class BookingResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    vendor_id: uuid.UUID
    service_id: uuid.UUID
    status: str
    scheduled_date: Optional[datetime]
    scheduled_time: Optional[str]
    address: Optional[Dict[str, Any]]
    payment_amount: Decimal
    payment_status: str
    paid_at: Optional[datetime]
    settlement_amount: Optional[Decimal]
    rejection_reason: Optional[str]
    cancellation_reason: Optional[str]
    cancelled_by: Optional[str]
    report_url: Optional[str]
    report_notes: Optional[str]
    borewell_result: Optional[str]
    borewell_notes: Optional[str]
    accepted_at: Optional[datetime]
    visited_at: Optional[datetime]
    report_uploaded_at: Optional[datetime]
    borewell_uploaded_at: Optional[datetime]
    approved_at: Optional[datetime]
    settled_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    created_at: datetime


# ── Notifications ─────────────────────────────────────────────

class FCMTokenRequest(BaseSchema):
    device_token: str = Field(..., min_length=10, max_length=512)
    platform: str = Field("web", pattern="^(web|android|ios)$")


class FCMTokenPruneRequest(BaseSchema):
    device_token: Optional[str] = Field(None, max_length=512)


# ── Admin ─────────────────────────────────────────────────────

class AdminRoleUpdate(BaseSchema):
    role: str = Field(
        ...,
        pattern="^(SUPER_ADMIN|ADMIN|FINANCE_ADMIN|OPERATIONS_ADMIN|VERIFIER_ADMIN|SUPPORT_ADMIN)$",
    )


class AdminStatusUpdate(BaseSchema):
    is_active: bool


class VendorRejectRequest(BaseSchema):
    reason: str = Field(..., min_length=5, max_length=500)
