"""
shared/models/models.py
All SQLAlchemy ORM models for the Borewell Services Platform.
UUID primary keys throughout; timestamps are stored and returned in UTC.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base


# ── Column Types ──────────────────────────────────────────────

class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always comes back as UTC, whatever the driver."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enumerations ──────────────────────────────────────────────

class AccountKind(str, PyEnum):
    USER = "USER"
    VENDOR = "VENDOR"
    ADMIN = "ADMIN"


class AdminRole(str, PyEnum):
    SUPER_ADMIN = "SUPER_ADMIN"
    ADMIN = "ADMIN"
    FINANCE_ADMIN = "FINANCE_ADMIN"
    OPERATIONS_ADMIN = "OPERATIONS_ADMIN"
    VERIFIER_ADMIN = "VERIFIER_ADMIN"
    SUPPORT_ADMIN = "SUPPORT_ADMIN"


class TokenPurpose(str, PyEnum):
    PASSWORD_RESET = "PASSWORD_RESET"
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"
    ADMIN_REGISTRATION = "ADMIN_REGISTRATION"
    PHONE_VERIFICATION = "PHONE_VERIFICATION"


class BookingStatus(str, PyEnum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    ACCEPTED = "ACCEPTED"
    VISITED = "VISITED"
    REPORT_UPLOADED = "REPORT_UPLOADED"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    BOREWELL_UPLOADED = "BOREWELL_UPLOADED"
    ADMIN_APPROVED = "ADMIN_APPROVED"
    FINAL_SETTLEMENT = "FINAL_SETTLEMENT"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


TERMINAL_BOOKING_STATUSES = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.REJECTED, BookingStatus.CANCELLED}
)


class PaymentStatus(str, PyEnum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class BorewellResult(str, PyEnum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=_utcnow, server_default=func.now(),
        onupdate=_utcnow,
        nullable=False,
    )


class AccountMixin(TimestampMixin):
    """Columns every account kind shares: identity, credential, activation."""
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_login: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


# ── Accounts ──────────────────────────────────────────────────

class User(AccountMixin, Base):
    """Customer account. Created only after the email OTP is verified."""
    __tablename__ = "users"

    kind = AccountKind.USER

    phone: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(String(20), default=AccountKind.USER.value, nullable=False)
    is_email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class Vendor(AccountMixin, Base):
    """
    Service provider. Cannot log in until an admin approves the profile
    and the email has been verified.
    """
    __tablename__ = "vendors"

    kind = AccountKind.VENDOR

    phone: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(String(20), default=AccountKind.VENDOR.value, nullable=False)
    is_email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Onboarding
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    approved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    experience_years: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    address: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Numeric(9, 6, asdecimal=False), nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Numeric(9, 6, asdecimal=False), nullable=True)
    documents: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    # e.g. {"aadhar_card": "https://...", "pan_card": "https://..."}
    bank_details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Payment-collection ledger (denormalised running totals)
    total_earnings: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    collected_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    pending_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    last_payment_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (Index("ix_vendors_is_approved", "is_approved"),)

    def __repr__(self) -> str:
        return f"<Vendor {self.email} approved={self.is_approved}>"


class Admin(AccountMixin, Base):
    """Back-office account. Registration is gated by a shared registration code."""
    __tablename__ = "admins"

    kind = AccountKind.ADMIN

    role: Mapped[AdminRole] = mapped_column(
        Enum(AdminRole), default=AdminRole.ADMIN, nullable=False
    )

    __table_args__ = (Index("ix_admins_role_active", "role", "is_active"),)

    def __repr__(self) -> str:
        return f"<Admin {self.email} ({self.role})>"


ACCOUNT_MODELS = {
    AccountKind.USER: User,
    AccountKind.VENDOR: Vendor,
    AccountKind.ADMIN: Admin,
}


# ── Verification Tokens ───────────────────────────────────────

class VerificationToken(Base):
    """
    Single-use, expiring OTP record.

    Post-account flows bind the record to (subject_kind, subject_id).
    Pre-account flows leave subject_id empty and are looked up by the bearer
    token together with the email it was issued for.
    """
    __tablename__ = "verification_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subject_kind: Mapped[AccountKind] = mapped_column(Enum(AccountKind), nullable=False)
    subject_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    purpose: Mapped[TokenPurpose] = mapped_column(Enum(TokenPurpose), nullable=False)
    token: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    otp_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, server_default=func.now())

    __table_args__ = (
        CheckConstraint("attempts >= 0", name="ck_token_attempts_non_negative"),
        CheckConstraint(
            "subject_id IS NOT NULL OR email IS NOT NULL", name="ck_token_has_lookup"
        ),
        Index("ix_tokens_subject_purpose", "subject_kind", "subject_id", "purpose"),
        Index("ix_tokens_email_purpose", "subject_kind", "email", "purpose"),
        Index("ix_tokens_expires_at", "expires_at"),
    )


# ── Catalogue ─────────────────────────────────────────────────

class Service(TimestampMixin, Base):
    """A service a vendor offers (e.g. groundwater survey)."""
    __tablename__ = "services"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    vendor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("vendors.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


# ── Bookings ──────────────────────────────────────────────────

class Booking(TimestampMixin, Base):
    """
    Core booking entity. Mutated only through the guarded transitions in
    services/booking/service.py:
    PENDING → ASSIGNED → ACCEPTED → VISITED → REPORT_UPLOADED → AWAITING_PAYMENT
    → PAYMENT_SUCCESS → BOREWELL_UPLOADED → ADMIN_APPROVED → FINAL_SETTLEMENT
    → COMPLETED, plus REJECTED (from PENDING) and CANCELLED (from any non-terminal).
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    vendor_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("vendors.id"), nullable=False)
    service_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("services.id"), nullable=False)

    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )

    # Schedule
    scheduled_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    scheduled_time: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)  # "HH:MM"
    address: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Payment sub-record
    payment_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    settlement_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    # Outcome fields
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[AccountKind]] = mapped_column(Enum(AccountKind), nullable=True)
    report_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    report_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    borewell_result: Mapped[Optional[BorewellResult]] = mapped_column(
        Enum(BorewellResult), nullable=True
    )
    borewell_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    approved_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("admins.id"), nullable=True
    )

    # Timestamps
    accepted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    visited_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    report_uploaded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    borewell_uploaded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    approved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    settled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    audit_logs: Mapped[list["BookingAuditLog"]] = relationship(
        back_populates="booking", lazy="raise"
    )

    __table_args__ = (
        Index("ix_bookings_user_id", "user_id"),
        Index("ix_bookings_vendor_status", "vendor_id", "status"),
        Index("ix_bookings_status", "status"),
    )


class BookingAuditLog(Base):
    """Immutable log of all booking status transitions."""
    __tablename__ = "booking_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    actor_kind: Mapped[AccountKind] = mapped_column(Enum(AccountKind), nullable=False)
    actor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, server_default=func.now())

    booking: Mapped["Booking"] = relationship(back_populates="audit_logs")

    __table_args__ = (Index("ix_booking_audit_booking_id", "booking_id"),)


# ── Push Notification Registry ────────────────────────────────

class FCMToken(Base):
    """Device tokens for push delivery, keyed by (subject kind, subject id, device token)."""
    __tablename__ = "fcm_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subject_kind: Mapped[AccountKind] = mapped_column(Enum(AccountKind), nullable=False)
    subject_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    device_token: Mapped[str] = mapped_column(String(512), nullable=False)
    platform: Mapped[str] = mapped_column(String(20), default="web", nullable=False)
    last_used_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "subject_kind", "subject_id", "device_token", name="uq_fcm_subject_device"
        ),
        Index("ix_fcm_subject", "subject_kind", "subject_id"),
    )


# ── Admin Audit ───────────────────────────────────────────────

class AdminAuditLog(Base):
    """Immutable log of all admin actions."""
    __tablename__ = "admin_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, server_default=func.now())

    __table_args__ = (
        Index("ix_admin_audit_admin_id", "admin_id"),
        Index("ix_admin_audit_created_at", "created_at"),
    )
