"""
tests/test_otp.py
OTP engine: supersession, attempt accounting, expiry, consumption and sweeping.
"""

import pytest
from sqlalchemy import func, select

from config.settings import settings
from services.notification.email import EmailResult
from services.otp.service import BearerLookup, EmailRef, OTPService, SubjectRef
from shared.models.models import AccountKind, TokenPurpose, User, VerificationToken
from shared.utils.exceptions import ErrorCode, OTPRejected, Unavailable
from tests.conftest import wrong_code


async def _live_count(db, email: str) -> int:
    return await db.scalar(
        select(func.count()).select_from(VerificationToken).where(
            VerificationToken.email == email,
            VerificationToken.is_used.is_(False),
        )
    )


@pytest.mark.asyncio
async def test_issue_stores_hash_not_code(db, clock):
    otp = OTPService(db, clock=clock)
    issued = await otp.issue(EmailRef(AccountKind.USER, "a@x.com"), TokenPurpose.EMAIL_VERIFICATION)

    assert len(issued.code) == 6 and issued.code.isdigit()
    assert len(issued.bearer_token) >= 32
    record = await otp.get(issued.token_id)
    assert record.otp_hash != issued.code
    assert record.attempts == 0
    assert record.is_used is False


@pytest.mark.asyncio
async def test_issue_normalizes_email(db, clock):
    otp = OTPService(db, clock=clock)
    issued = await otp.issue(EmailRef(AccountKind.USER, "  A@X.com "), TokenPurpose.EMAIL_VERIFICATION)
    record = await otp.verify(
        BearerLookup(AccountKind.USER, issued.bearer_token, "a@x.com"),
        TokenPurpose.EMAIL_VERIFICATION,
        issued.code,
    )
    assert record.email == "a@x.com"


@pytest.mark.asyncio
async def test_reissue_supersedes_previous_token(db, clock):
    otp = OTPService(db, clock=clock)
    target = EmailRef(AccountKind.USER, "a@x.com")
    first = await otp.issue(target, TokenPurpose.EMAIL_VERIFICATION)
    second = await otp.issue(target, TokenPurpose.EMAIL_VERIFICATION)

    assert await _live_count(db, "a@x.com") == 1
    with pytest.raises(OTPRejected) as exc_info:
        await otp.verify(
            BearerLookup(AccountKind.USER, first.bearer_token, "a@x.com"),
            TokenPurpose.EMAIL_VERIFICATION,
            first.code,
        )
    assert exc_info.value.reason == ErrorCode.OTP_NOT_FOUND

    record = await otp.verify(
        BearerLookup(AccountKind.USER, second.bearer_token, "a@x.com"),
        TokenPurpose.EMAIL_VERIFICATION,
        second.code,
    )
    assert record.id == second.token_id


@pytest.mark.asyncio
async def test_other_purpose_is_not_superseded(db, clock, user: User):
    otp = OTPService(db, clock=clock)
    subject = SubjectRef(AccountKind.USER, user.id)
    reset = await otp.issue(subject, TokenPurpose.PASSWORD_RESET)
    await otp.issue(subject, TokenPurpose.PHONE_VERIFICATION)

    record = await otp.verify(subject, TokenPurpose.PASSWORD_RESET, reset.code)
    assert record.id == reset.token_id


@pytest.mark.asyncio
async def test_five_wrong_codes_exhaust_then_not_found(db, clock):
    """Four mismatches are invalid, the fifth exhausts, afterwards nothing is left to check."""
    otp = OTPService(db, clock=clock)
    issued = await otp.issue(EmailRef(AccountKind.USER, "a@x.com"), TokenPurpose.EMAIL_VERIFICATION)
    lookup = BearerLookup(AccountKind.USER, issued.bearer_token, "a@x.com")
    bad = wrong_code(issued.code)

    reasons = []
    for _ in range(settings.OTP_MAX_ATTEMPTS):
        with pytest.raises(OTPRejected) as exc_info:
            await otp.verify(lookup, TokenPurpose.EMAIL_VERIFICATION, bad)
        reasons.append(exc_info.value.reason)

    assert reasons == [ErrorCode.OTP_INVALID_CODE] * 4 + [ErrorCode.OTP_ATTEMPTS_EXHAUSTED]
    assert await otp.get(issued.token_id) is None

    with pytest.raises(OTPRejected) as exc_info:
        await otp.verify(lookup, TokenPurpose.EMAIL_VERIFICATION, issued.code)
    assert exc_info.value.reason == ErrorCode.OTP_NOT_FOUND


@pytest.mark.asyncio
async def test_attempts_survive_a_rolled_back_request(db, session_factory, clock):
    otp = OTPService(db, clock=clock)
    issued = await otp.issue(EmailRef(AccountKind.USER, "a@x.com"), TokenPurpose.EMAIL_VERIFICATION)
    await db.commit()

    with pytest.raises(OTPRejected):
        await otp.verify(
            BearerLookup(AccountKind.USER, issued.bearer_token, "a@x.com"),
            TokenPurpose.EMAIL_VERIFICATION,
            wrong_code(issued.code),
        )
    await db.rollback()

    async with session_factory() as fresh:
        record = await fresh.get(VerificationToken, issued.token_id)
        assert record.attempts == 1


@pytest.mark.asyncio
async def test_correct_code_does_not_count_as_attempt(db, clock, user: User):
    otp = OTPService(db, clock=clock)
    subject = SubjectRef(AccountKind.USER, user.id)
    issued = await otp.issue(subject, TokenPurpose.PASSWORD_RESET)

    for _ in range(2):
        with pytest.raises(OTPRejected):
            await otp.verify(subject, TokenPurpose.PASSWORD_RESET, wrong_code(issued.code))

    record = await otp.verify(subject, TokenPurpose.PASSWORD_RESET, issued.code)
    assert record.attempts == 2
    again = await otp.verify(subject, TokenPurpose.PASSWORD_RESET, issued.code)
    assert again.attempts == 2


@pytest.mark.asyncio
async def test_expiry_is_strict(db, clock):
    otp = OTPService(db, clock=clock)
    issued = await otp.issue(EmailRef(AccountKind.USER, "a@x.com"), TokenPurpose.EMAIL_VERIFICATION)
    lookup = BearerLookup(AccountKind.USER, issued.bearer_token, "a@x.com")

    clock.advance(minutes=settings.OTP_EXPIRY_MINUTES, seconds=-1)
    record = await otp.verify(lookup, TokenPurpose.EMAIL_VERIFICATION, issued.code)
    assert record.id == issued.token_id

    clock.advance(seconds=1)
    assert clock() == issued.expires_at
    with pytest.raises(OTPRejected) as exc_info:
        await otp.verify(lookup, TokenPurpose.EMAIL_VERIFICATION, issued.code)
    assert exc_info.value.reason == ErrorCode.OTP_NOT_FOUND


@pytest.mark.asyncio
async def test_bearer_requires_matching_email(db, clock):
    otp = OTPService(db, clock=clock)
    issued = await otp.issue(EmailRef(AccountKind.USER, "a@x.com"), TokenPurpose.EMAIL_VERIFICATION)

    with pytest.raises(OTPRejected) as exc_info:
        await otp.verify(
            BearerLookup(AccountKind.USER, issued.bearer_token, "b@x.com"),
            TokenPurpose.EMAIL_VERIFICATION,
            issued.code,
        )
    assert exc_info.value.reason == ErrorCode.OTP_NOT_FOUND


@pytest.mark.asyncio
async def test_bearer_requires_matching_account_kind(db, clock):
    otp = OTPService(db, clock=clock)
    issued = await otp.issue(EmailRef(AccountKind.VENDOR, "a@x.com"), TokenPurpose.EMAIL_VERIFICATION)

    with pytest.raises(OTPRejected) as exc_info:
        await otp.verify(
            BearerLookup(AccountKind.USER, issued.bearer_token, "a@x.com"),
            TokenPurpose.EMAIL_VERIFICATION,
            issued.code,
        )
    assert exc_info.value.reason == ErrorCode.OTP_NOT_FOUND


@pytest.mark.asyncio
async def test_one_live_token_per_email_across_account_kinds(db, clock):
    otp = OTPService(db, clock=clock)
    vendor_issued = await otp.issue(EmailRef(AccountKind.VENDOR, "a@x.com"), TokenPurpose.EMAIL_VERIFICATION)
    user_issued = await otp.issue(EmailRef(AccountKind.USER, "a@x.com"), TokenPurpose.EMAIL_VERIFICATION)

    assert await _live_count(db, "a@x.com") == 1
    with pytest.raises(OTPRejected):
        await otp.verify(
            BearerLookup(AccountKind.VENDOR, vendor_issued.bearer_token, "a@x.com"),
            TokenPurpose.EMAIL_VERIFICATION,
            vendor_issued.code,
        )
    record = await otp.verify(
        BearerLookup(AccountKind.USER, user_issued.bearer_token, "a@x.com"),
        TokenPurpose.EMAIL_VERIFICATION,
        user_issued.code,
    )
    assert record.subject_kind == AccountKind.USER


@pytest.mark.asyncio
async def test_consume_is_idempotent_and_retires_the_code(db, clock, user: User):
    otp = OTPService(db, clock=clock)
    subject = SubjectRef(AccountKind.USER, user.id)
    issued = await otp.issue(subject, TokenPurpose.PASSWORD_RESET)

    record = await otp.verify(subject, TokenPurpose.PASSWORD_RESET, issued.code)
    await otp.consume(record.id)
    await otp.consume(record.id)

    stored = await otp.get(record.id)
    assert stored.is_used is True
    with pytest.raises(OTPRejected) as exc_info:
        await otp.verify(subject, TokenPurpose.PASSWORD_RESET, issued.code)
    assert exc_info.value.reason == ErrorCode.OTP_NOT_FOUND


@pytest.mark.asyncio
async def test_failed_delivery_rolls_back_issue(db, clock):
    otp = OTPService(db, clock=clock)

    async def send(issued):
        return EmailResult(success=False, error="smtp down")

    with pytest.raises(Unavailable):
        await otp.issue_and_send(
            EmailRef(AccountKind.USER, "a@x.com"), TokenPurpose.EMAIL_VERIFICATION, send
        )
    assert await _live_count(db, "a@x.com") == 0


@pytest.mark.asyncio
async def test_failed_delivery_keeps_earlier_code(db, clock, user: User):
    otp = OTPService(db, clock=clock)
    subject = SubjectRef(AccountKind.USER, user.id)
    earlier = await otp.issue(subject, TokenPurpose.PASSWORD_RESET)

    async def send(issued):
        return EmailResult(success=False, error="smtp down")

    with pytest.raises(Unavailable):
        await otp.issue_and_send(subject, TokenPurpose.PASSWORD_RESET, send)

    record = await otp.verify(subject, TokenPurpose.PASSWORD_RESET, earlier.code)
    assert record.id == earlier.token_id


@pytest.mark.asyncio
async def test_successful_delivery_supersedes_earlier_code(db, clock, user: User):
    otp = OTPService(db, clock=clock)
    subject = SubjectRef(AccountKind.USER, user.id)
    earlier = await otp.issue(subject, TokenPurpose.PASSWORD_RESET)

    async def send(issued):
        return EmailResult(success=True, message_id="m-1")

    issued = await otp.issue_and_send(subject, TokenPurpose.PASSWORD_RESET, send)
    assert await otp.get(earlier.token_id) is None
    record = await otp.verify(subject, TokenPurpose.PASSWORD_RESET, issued.code)
    assert record.id == issued.token_id


@pytest.mark.asyncio
async def test_successful_delivery_receives_plaintext_code(db, clock):
    otp = OTPService(db, clock=clock)
    delivered = []

    async def send(issued):
        delivered.append(issued.code)
        return EmailResult(success=True, message_id="m-1")

    issued = await otp.issue_and_send(
        EmailRef(AccountKind.USER, "a@x.com"), TokenPurpose.EMAIL_VERIFICATION, send
    )
    assert delivered == [issued.code]
    assert await _live_count(db, "a@x.com") == 1


@pytest.mark.asyncio
async def test_purge_removes_expired_and_used(db, clock, user: User):
    otp = OTPService(db, clock=clock)
    used = await otp.issue(SubjectRef(AccountKind.USER, user.id), TokenPurpose.PASSWORD_RESET)
    await otp.consume(used.token_id)
    await otp.issue(EmailRef(AccountKind.USER, "stale@x.com"), TokenPurpose.EMAIL_VERIFICATION)

    clock.advance(minutes=settings.OTP_EXPIRY_MINUTES + 1)
    live = await otp.issue(EmailRef(AccountKind.VENDOR, "fresh@x.com"), TokenPurpose.EMAIL_VERIFICATION)

    assert await otp.purge_expired() == 2
    assert await otp.get(live.token_id) is not None
