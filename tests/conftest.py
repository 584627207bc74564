"""
tests/conftest.py
Shared fixtures: a throwaway SQLite database per test, an HTTP client bound
to the app, a controllable clock, and fakes for the email, geocoding and
notification collaborators.
"""

import os
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

# Must be set before any app module reads settings
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_bootstrap.db"
os.environ["JWT_SECRET_KEY"] = "test-access-secret-0123456789abcdef"
os.environ["JWT_REFRESH_SECRET_KEY"] = "test-refresh-secret-0123456789abcdef"
os.environ["ADMIN_REGISTRATION_CODE"] = "letmein-admin"
os.environ["RESEND_API_KEY"] = ""
os.environ["FIREBASE_CREDENTIALS_PATH"] = ""
os.environ["GOOGLE_MAPS_API_KEY"] = ""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config.database import Base, get_db
from main import app
from services.auth.service import claims_for
from services.notification.email import EmailResult
from services.otp.service import get_clock
from shared.models.models import (
    Admin,
    AdminRole,
    Booking,
    BookingStatus,
    PaymentStatus,
    Service,
    User,
    Vendor,
)
from shared.utils.geocoding import Coordinates
from shared.utils.security import create_access_token, hash_password

PASSWORD = "Password@123"
_CODE_PATTERN = re.compile(r"Code: (\d{6})")


# ── Fakes ─────────────────────────────────────────────────────

class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeEmailClient:
    def __init__(self):
        self.sent: list[dict] = []
        self.fail = False

    async def send(self, to, subject, html_body, text_body=None) -> EmailResult:
        if self.fail:
            return EmailResult(success=False, error="provider down")
        self.sent.append({"to": to, "subject": subject, "html": html_body, "text": text_body})
        return EmailResult(success=True, message_id=f"msg-{len(self.sent)}")

    def last_code(self, to: str) -> str:
        for message in reversed(self.sent):
            if message["to"] == to and message["text"]:
                match = _CODE_PATTERN.search(message["text"])
                if match:
                    return match.group(1)
        raise AssertionError(f"No OTP email sent to {to}")


class FakeGeocoder:
    def __init__(self, result: Optional[Coordinates] = None):
        self.result = result
        self.calls: list[str] = []

    async def geocode(self, address: str) -> Optional[Coordinates]:
        self.calls.append(address)
        return self.result


class RecordingNotifier:
    def __init__(self):
        self.calls: list[tuple[str, str]] = []

    def __call__(self, booking_id: str, status: str) -> None:
        self.calls.append((booking_id, status))


# ── Helpers ───────────────────────────────────────────────────

def auth_headers(account) -> dict:
    """Return Authorization headers with a valid JWT for the given account."""
    return {"Authorization": f"Bearer {create_access_token(claims_for(account))}"}


def wrong_code(code: str) -> str:
    return f"{(int(code) + 1) % 1_000_000:06d}"


async def create_booking(
    db: AsyncSession,
    user: User,
    vendor: Vendor,
    service: Service,
    status: BookingStatus = BookingStatus.PENDING,
    payment_amount: Decimal = Decimal("5000.00"),
    payment_status: PaymentStatus = PaymentStatus.PENDING,
) -> Booking:
    booking = Booking(
        user_id=user.id,
        vendor_id=vendor.id,
        service_id=service.id,
        status=status,
        address={"street": "12 Well Road", "city": "Pune", "state": "MH", "pincode": "411001"},
        payment_amount=payment_amount,
        payment_status=payment_status,
    )
    db.add(booking)
    await db.commit()
    return booking


# ── Database ──────────────────────────────────────────────────

@pytest.fixture
async def engine(tmp_path):
    # File-backed so separate sessions really are separate connections
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def email_client() -> FakeEmailClient:
    return FakeEmailClient()


@pytest.fixture
def geocoder() -> FakeGeocoder:
    return FakeGeocoder(Coordinates(latitude=18.5204, longitude=73.8567))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
async def client(session_factory, clock, email_client, geocoder, notifier):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    previous_state = {
        name: getattr(app.state, name)
        for name in ("email_client", "geocoding_client", "booking_notifier")
    }
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.state.email_client = email_client
    app.state.geocoding_client = geocoder
    app.state.booking_notifier = notifier

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    for name, value in previous_state.items():
        setattr(app.state, name, value)


# ── Accounts ──────────────────────────────────────────────────

@pytest.fixture
async def user(db) -> User:
    account = User(
        name="Asha Patil",
        email="asha@example.com",
        phone="9876543210",
        password_hash=hash_password(PASSWORD),
        is_email_verified=True,
    )
    db.add(account)
    await db.commit()
    return account


@pytest.fixture
async def other_user(db) -> User:
    account = User(
        name="Ravi Kulkarni",
        email="ravi@example.com",
        phone="9876500000",
        password_hash=hash_password(PASSWORD),
        is_email_verified=True,
    )
    db.add(account)
    await db.commit()
    return account


@pytest.fixture
async def vendor(db) -> Vendor:
    account = Vendor(
        name="Deep Drill Surveys",
        email="vendor@example.com",
        phone="9123456780",
        password_hash=hash_password(PASSWORD),
        is_email_verified=True,
        is_approved=True,
        experience_years=8,
    )
    db.add(account)
    await db.commit()
    return account


@pytest.fixture
async def other_vendor(db) -> Vendor:
    account = Vendor(
        name="Aqua Finders",
        email="aqua@example.com",
        phone="9123400000",
        password_hash=hash_password(PASSWORD),
        is_email_verified=True,
        is_approved=True,
    )
    db.add(account)
    await db.commit()
    return account


@pytest.fixture
async def pending_vendor(db) -> Vendor:
    account = Vendor(
        name="New Vendor",
        email="newvendor@example.com",
        phone="9000011111",
        password_hash=hash_password(PASSWORD),
        is_email_verified=True,
        is_approved=False,
    )
    db.add(account)
    await db.commit()
    return account


@pytest.fixture
async def admin(db) -> Admin:
    account = Admin(
        name="Ops Admin",
        email="ops@example.com",
        password_hash=hash_password(PASSWORD),
        role=AdminRole.ADMIN,
    )
    db.add(account)
    await db.commit()
    return account


@pytest.fixture
async def super_admin(db) -> Admin:
    account = Admin(
        name="Root Admin",
        email="root@example.com",
        password_hash=hash_password(PASSWORD),
        role=AdminRole.SUPER_ADMIN,
    )
    db.add(account)
    await db.commit()
    return account


@pytest.fixture
async def service(db, vendor) -> Service:
    record = Service(
        vendor_id=vendor.id,
        name="Groundwater Survey",
        description="Geophysical survey to locate borewell points",
        price=Decimal("5000.00"),
    )
    db.add(record)
    await db.commit()
    return record
