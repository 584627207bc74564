"""
services/otp/service.py
OTP protocol engine: issue, verify and retire short-lived numeric codes
bound to a (subject-or-email, purpose) pair.

Invariants kept here:
- issuing deletes every unused token for the same (subject-or-email, purpose),
  so at most one live token exists per pair once the issuing transaction commits;
  issue_and_send supersedes only after delivery succeeds;
- a code is never checked once `expires_at <= now` or once `is_used` is set;
- mismatches increment the attempt counter with a single conditional UPDATE,
  and the failure that reaches the limit deletes the record; rejections
  commit that bookkeeping before raising;
- verify does not consume: callers mutate the account, then call consume().
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.models.models import AccountKind, TokenPurpose, VerificationToken
from shared.utils.exceptions import ErrorCode, OTPRejected, Unavailable
from shared.utils.security import (
    generate_bearer_token,
    generate_otp,
    hash_token,
    token_matches,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_clock() -> Clock:
    """Request-scoped time source; tests override it with a fixed clock."""
    return utcnow


# ── Lookup Keys ───────────────────────────────────────────────

@dataclass(frozen=True)
class SubjectRef:
    """An existing account: tagged by kind so the three collections never collide."""
    kind: AccountKind
    id: uuid.UUID


@dataclass(frozen=True)
class EmailRef:
    """A would-be account that only has an email so far."""
    kind: AccountKind
    email: str


@dataclass(frozen=True)
class BearerLookup:
    """Pre-account verify key: the bearer token handed out at issue time plus its email and kind."""
    kind: AccountKind
    token: str
    email: str


IssueTarget = Union[SubjectRef, EmailRef]
VerifyLookup = Union[SubjectRef, BearerLookup]


@dataclass(frozen=True)
class IssuedOTP:
    token_id: uuid.UUID
    code: str
    bearer_token: str
    expires_at: datetime


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ── Engine ────────────────────────────────────────────────────

class OTPService:
    def __init__(
        self,
        db: AsyncSession,
        clock: Clock = utcnow,
        max_attempts: int = settings.OTP_MAX_ATTEMPTS,
        code_length: int = settings.OTP_LENGTH,
    ):
        self.db = db
        self.clock = clock
        self.max_attempts = max_attempts
        self.code_length = code_length

    # -- issue ------------------------------------------------

    async def issue(
        self,
        target: IssueTarget,
        purpose: TokenPurpose,
        expiry_minutes: int = settings.OTP_EXPIRY_MINUTES,
    ) -> IssuedOTP:
        """Supersede any unused token for the pair and store a fresh one."""
        await self._supersede(target, purpose)
        return await self._insert(target, purpose, expiry_minutes)

    async def issue_and_send(
        self,
        target: IssueTarget,
        purpose: TokenPurpose,
        send: Callable,
        expiry_minutes: int = settings.OTP_EXPIRY_MINUTES,
    ) -> IssuedOTP:
        """
        Store a fresh code, then hand the plaintext to `send(issued)` (an awaitable
        returning an EmailResult). Earlier codes are superseded only once delivery
        succeeds; a failed delivery deletes the new token and leaves them usable.
        """
        issued = await self._insert(target, purpose, expiry_minutes)
        result = await send(issued)
        if not result.success:
            await self.discard(issued.token_id)
            logger.warning(
                f"OTP email delivery failed, token rolled back: {result.error}",
                extra={"purpose": purpose.value},
            )
            raise Unavailable("Failed to send verification code. Please try again.")
        await self._supersede(target, purpose, keep=issued.token_id)
        return issued

    async def _supersede(
        self,
        target: IssueTarget,
        purpose: TokenPurpose,
        keep: Optional[uuid.UUID] = None,
    ) -> None:
        if isinstance(target, SubjectRef):
            owner = (
                VerificationToken.subject_kind == target.kind,
                VerificationToken.subject_id == target.id,
            )
        else:
            # Keyed by email alone: one live code per address whichever account kind asked
            owner = (
                VerificationToken.subject_id.is_(None),
                VerificationToken.email == normalize_email(target.email),
            )
        stmt = delete(VerificationToken).where(
            *owner,
            VerificationToken.purpose == purpose,
            VerificationToken.is_used.is_(False),
        )
        if keep is not None:
            stmt = stmt.where(VerificationToken.id != keep)
        await self.db.execute(stmt, execution_options={"synchronize_session": False})

    async def _insert(
        self, target: IssueTarget, purpose: TokenPurpose, expiry_minutes: int
    ) -> IssuedOTP:
        if isinstance(target, SubjectRef):
            owner = {"subject_kind": target.kind, "subject_id": target.id, "email": None}
        else:
            owner = {
                "subject_kind": target.kind,
                "subject_id": None,
                "email": normalize_email(target.email),
            }

        code = generate_otp(self.code_length)
        bearer = generate_bearer_token(settings.OTP_BEARER_TOKEN_BYTES)
        expires_at = self.clock() + timedelta(minutes=expiry_minutes)

        record = VerificationToken(
            id=uuid.uuid4(),
            purpose=purpose,
            token=bearer,
            otp_hash=hash_token(code),
            expires_at=expires_at,
            attempts=0,
            is_used=False,
            **owner,
        )
        self.db.add(record)
        await self.db.flush()

        logger.info(
            "OTP issued",
            extra={"purpose": purpose.value, "subject_kind": target.kind.value},
        )
        return IssuedOTP(
            token_id=record.id, code=code, bearer_token=bearer, expires_at=expires_at
        )

    # -- verify -----------------------------------------------

    def _lookup_clause(self, lookup: VerifyLookup):
        if isinstance(lookup, SubjectRef):
            return (
                VerificationToken.subject_kind == lookup.kind,
                VerificationToken.subject_id == lookup.id,
            )
        return (
            VerificationToken.subject_kind == lookup.kind,
            VerificationToken.subject_id.is_(None),
            VerificationToken.token == lookup.token,
            VerificationToken.email == normalize_email(lookup.email),
        )

    async def verify(
        self,
        lookup: VerifyLookup,
        purpose: TokenPurpose,
        supplied_code: str,
    ) -> VerificationToken:
        """
        Check `supplied_code` against the live token for lookup+purpose.
        Returns the record on success (still unused); raises OTPRejected otherwise.
        """
        now = self.clock()
        result = await self.db.execute(
            select(VerificationToken).where(
                *self._lookup_clause(lookup),
                VerificationToken.purpose == purpose,
                VerificationToken.is_used.is_(False),
                VerificationToken.expires_at > now,
            )
            .execution_options(populate_existing=True)
        )
        record = result.scalars().first()
        if record is None:
            raise OTPRejected(ErrorCode.OTP_NOT_FOUND)

        if record.attempts >= self.max_attempts:
            await self._delete(record.id)
            await self._reject(ErrorCode.OTP_ATTEMPTS_EXHAUSTED)

        if token_matches(supplied_code, record.otp_hash):
            return record

        # Atomic increment, capped so concurrent mismatches can't overshoot
        bumped = await self.db.execute(
            update(VerificationToken)
            .where(
                VerificationToken.id == record.id,
                VerificationToken.attempts < self.max_attempts,
            )
            .values(attempts=VerificationToken.attempts + 1),
            execution_options={"synchronize_session": False},
        )
        exhausted = await self.db.execute(
            delete(VerificationToken).where(
                VerificationToken.id == record.id,
                VerificationToken.attempts >= self.max_attempts,
            ),
            execution_options={"synchronize_session": False},
        )
        if exhausted.rowcount:
            self._forget(record)
            logger.info("OTP attempts exhausted, token deleted", extra={"purpose": purpose.value})
            await self._reject(ErrorCode.OTP_ATTEMPTS_EXHAUSTED)
        if bumped.rowcount == 0:
            # Consumed or deleted by a concurrent caller between read and write
            await self._reject(ErrorCode.OTP_NOT_FOUND)
        await self._reject(ErrorCode.OTP_INVALID_CODE)

    # -- retire -----------------------------------------------

    async def consume(self, token_id: uuid.UUID) -> None:
        """Mark a verified token used. Calling twice is a no-op."""
        await self.db.execute(
            update(VerificationToken)
            .where(VerificationToken.id == token_id, VerificationToken.is_used.is_(False))
            .values(is_used=True),
            execution_options={"synchronize_session": "fetch"},
        )

    async def discard(self, token_id: uuid.UUID) -> None:
        await self._delete(token_id)

    async def purge_expired(self) -> int:
        """Sweep expired and consumed tokens. Returns the number of rows removed."""
        result = await self.db.execute(
            delete(VerificationToken).where(
                or_(
                    VerificationToken.expires_at <= self.clock(),
                    VerificationToken.is_used.is_(True),
                )
            ),
            execution_options={"synchronize_session": False},
        )
        return result.rowcount or 0

    async def get(self, token_id: uuid.UUID) -> Optional[VerificationToken]:
        result = await self.db.execute(
            select(VerificationToken)
            .where(VerificationToken.id == token_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _delete(self, token_id: uuid.UUID) -> None:
        await self.db.execute(
            delete(VerificationToken).where(VerificationToken.id == token_id),
            execution_options={"synchronize_session": False},
        )
        record = await self.db.get(VerificationToken, token_id)
        if record is not None:
            self._forget(record)

    def _forget(self, record: VerificationToken) -> None:
        if record in self.db:
            self.db.expunge(record)

    async def _reject(self, reason: ErrorCode) -> None:
        # Attempt bookkeeping must outlive the caller's rollback of the failed request
        await self.db.commit()
        raise OTPRejected(reason)
