"""
shared/utils/security.py
Session issuance (JWT access/refresh pair), password hashing, and
the random material used by the OTP engine.
"""

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from config.settings import settings
from shared.utils.exceptions import SessionExpired, SessionInvalid

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ACCESS = "access"
REFRESH = "refresh"


# ── Session Tokens ────────────────────────────────────────────

@dataclass(frozen=True)
class SessionClaims:
    """Claims carried by both tokens so requests can be authorised without a DB hit."""
    subject_id: str
    kind: str       # USER | VENDOR | ADMIN
    role: str
    email: str

    @classmethod
    def from_payload(cls, payload: dict) -> "SessionClaims":
        try:
            return cls(
                subject_id=payload["sub"],
                kind=payload["kind"],
                role=payload["role"],
                email=payload["email"],
            )
        except KeyError as e:
            raise SessionInvalid(f"Token missing claim: {e.args[0]}")


@dataclass(frozen=True)
class SessionTokens:
    access_token: str
    refresh_token: str


def _encode(claims: SessionClaims, token_type: str, ttl: timedelta, secret: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": claims.subject_id,
        "kind": claims.kind,
        "role": claims.role,
        "email": claims.email,
        "type": token_type,
        "iat": now,
        "exp": now + ttl,
    }
    return jwt.encode(payload, secret, algorithm=settings.JWT_ALGORITHM)


def create_access_token(claims: SessionClaims, ttl: Optional[timedelta] = None) -> str:
    ttl = ttl or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    return _encode(claims, ACCESS, ttl, settings.JWT_SECRET_KEY)


def create_refresh_token(claims: SessionClaims, ttl: Optional[timedelta] = None) -> str:
    ttl = ttl or timedelta(days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS)
    return _encode(claims, REFRESH, ttl, settings.JWT_REFRESH_SECRET_KEY)


def issue_session(claims: SessionClaims) -> SessionTokens:
    """
    Mint an access/refresh pair for a verified identity.
    There is no revocation list: a token stays valid until it expires.
    """
    return SessionTokens(
        access_token=create_access_token(claims),
        refresh_token=create_refresh_token(claims),
    )


def _decode(token: str, secret: str, token_type: str) -> SessionClaims:
    try:
        payload = jwt.decode(token, secret, algorithms=[settings.JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise SessionExpired()
    except JWTError:
        raise SessionInvalid()
    if payload.get("type") != token_type:
        raise SessionInvalid("Invalid token type")
    return SessionClaims.from_payload(payload)


def verify_access_token(token: str) -> SessionClaims:
    """Signature and expiry check only; account state is not re-read."""
    return _decode(token, settings.JWT_SECRET_KEY, ACCESS)


def verify_refresh_token(token: str) -> SessionClaims:
    return _decode(token, settings.JWT_REFRESH_SECRET_KEY, REFRESH)


# ── OTP Material ──────────────────────────────────────────────

def generate_otp(length: int = 6) -> str:
    """Uniformly random numeric code, leading zeros allowed."""
    return "".join(secrets.choice("0123456789") for _ in range(length))


def generate_bearer_token(nbytes: int = 32) -> str:
    return secrets.token_urlsafe(nbytes)


def hash_token(token: str) -> str:
    """SHA-256 digest used to store OTP codes at rest."""
    return hashlib.sha256(token.encode()).hexdigest()


def token_matches(plain: str, digest: str) -> bool:
    return hmac.compare_digest(hash_token(plain), digest)


# ── Password ──────────────────────────────────────────────────

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)
