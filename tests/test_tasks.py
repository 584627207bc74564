"""
tests/test_tasks.py
Celery tasks executed eagerly against a throwaway SQLite database.
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config.database import Base
from config.settings import settings
from services.otp.service import EmailRef, OTPService
from shared.models.models import AccountKind, Booking, BookingStatus, Service, TokenPurpose, User, Vendor
from tasks import notification_tasks
from tasks.notification_tasks import enqueue_booking_status, send_booking_status_email
from tasks.token_tasks import purge_expired_tokens
from tests.conftest import PASSWORD, FakeEmailClient


@pytest.fixture
def worker_db(tmp_path, monkeypatch) -> str:
    url = f"sqlite+aiosqlite:///{tmp_path / 'worker.db'}"
    monkeypatch.setattr(settings, "DATABASE_URL", url)

    async def create():
        engine = create_async_engine(url, poolclass=NullPool)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await engine.dispose()

    asyncio.run(create())
    return url


def _run(url: str, work):
    async def runner():
        engine = create_async_engine(url, poolclass=NullPool)
        try:
            async with async_sessionmaker(engine, expire_on_commit=False)() as db:
                result = await work(db)
                await db.commit()
                return result
        finally:
            await engine.dispose()

    return asyncio.run(runner())


async def _seed_booking(db) -> str:
    user = User(name="Asha Patil", email="asha@example.com", phone="9876543210", password_hash=PASSWORD)
    vendor = Vendor(
        name="Deep Drill Surveys", email="vendor@example.com", phone="9123456780",
        password_hash=PASSWORD, is_approved=True,
    )
    db.add_all([user, vendor])
    await db.flush()
    service = Service(vendor_id=vendor.id, name="Groundwater Survey", price=Decimal("5000"))
    db.add(service)
    await db.flush()
    booking = Booking(
        user_id=user.id, vendor_id=vendor.id, service_id=service.id,
        status=BookingStatus.ACCEPTED, payment_amount=Decimal("5000"),
    )
    db.add(booking)
    await db.flush()
    return str(booking.id)


def test_purge_expired_tokens_task(worker_db):
    async def seed(db):
        otp = OTPService(db)
        used = await otp.issue(EmailRef(AccountKind.USER, "a@x.com"), TokenPurpose.EMAIL_VERIFICATION)
        await otp.consume(used.token_id)
        await otp.issue(EmailRef(AccountKind.USER, "b@x.com"), TokenPurpose.EMAIL_VERIFICATION)

    _run(worker_db, seed)
    assert purge_expired_tokens.apply().get() == 1


def test_booking_status_email_task(worker_db, monkeypatch):
    email_client = FakeEmailClient()
    monkeypatch.setattr(notification_tasks, "EmailClient", lambda *args, **kwargs: email_client)
    monkeypatch.setattr(settings, "FIREBASE_CREDENTIALS_PATH", "")

    booking_id = _run(worker_db, _seed_booking)
    send_booking_status_email.apply(args=[booking_id, "ACCEPTED"]).get()

    assert [m["to"] for m in email_client.sent] == ["asha@example.com"]
    assert booking_id in email_client.sent[0]["html"]


class _RecordingPush:
    def __init__(self):
        self.calls = []

    async def send_to_subject(self, db, subject, title, body, data=None):
        self.calls.append((subject, data["status"]))
        return 1


def test_email_retries_do_not_repeat_push(worker_db, monkeypatch):
    email_client = FakeEmailClient()
    email_client.fail = True
    push = _RecordingPush()
    monkeypatch.setattr(notification_tasks, "EmailClient", lambda *args, **kwargs: email_client)
    monkeypatch.setattr(notification_tasks, "PushClient", lambda *args, **kwargs: push)

    booking_id = _run(worker_db, _seed_booking)
    result = send_booking_status_email.apply(args=[booking_id, "ACCEPTED"])

    assert result.failed()
    assert isinstance(result.result, notification_tasks.EmailDeliveryFailed)
    assert len(push.calls) == 1


def test_enqueue_swallows_broker_outage(monkeypatch):
    def broken_delay(*args, **kwargs):
        raise ConnectionError("broker down")

    monkeypatch.setattr(send_booking_status_email, "delay", broken_delay)
    enqueue_booking_status("b-1", "ACCEPTED")
