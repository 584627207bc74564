"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.
Credentials come from the Authorization header or the accessToken cookie.
"""

import uuid
from dataclasses import dataclass
from typing import Optional, Union

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.models.models import ACCOUNT_MODELS, AccountKind, Admin, AdminRole, User, Vendor
from shared.utils.exceptions import Forbidden, SessionInvalid, Unauthorized
from shared.utils.security import SessionClaims, verify_access_token

security = HTTPBearer(auto_error=False)

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"

Account = Union[User, Vendor, Admin]


@dataclass
class CurrentAccount:
    claims: SessionClaims
    account: Account

    @property
    def kind(self) -> AccountKind:
        return AccountKind(self.claims.kind)

    @property
    def id(self) -> uuid.UUID:
        return self.account.id


async def get_session_claims(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> SessionClaims:
    """Extract and validate the JWT. Raises Unauthorized when missing, expired or tampered."""
    token = credentials.credentials if credentials else request.cookies.get(ACCESS_COOKIE)
    if not token:
        raise Unauthorized("Authentication required")
    return verify_access_token(token)


async def get_current_account(
    claims: SessionClaims = Depends(get_session_claims),
    db: AsyncSession = Depends(get_db),
) -> CurrentAccount:
    """Load the account named by the token; inactive accounts are refused."""
    try:
        model = ACCOUNT_MODELS[AccountKind(claims.kind)]
        account_id = uuid.UUID(claims.subject_id)
    except ValueError:
        raise SessionInvalid()

    account = await db.get(model, account_id)
    if not account:
        raise Unauthorized("Account not found")
    if not account.is_active:
        raise Forbidden("Account is inactive")
    return CurrentAccount(claims=claims, account=account)


class KindRequired:
    """Dependency factory: the caller must be one of the given account kinds."""

    def __init__(self, *kinds: AccountKind):
        self.kinds = kinds

    async def __call__(
        self, current: CurrentAccount = Depends(get_current_account)
    ) -> CurrentAccount:
        if current.kind not in self.kinds:
            raise Forbidden(f"Required role: {[k.value for k in self.kinds]}")
        return current


async def require_user(
    current: CurrentAccount = Depends(KindRequired(AccountKind.USER)),
) -> User:
    return current.account


async def require_vendor(
    current: CurrentAccount = Depends(KindRequired(AccountKind.VENDOR)),
) -> Vendor:
    """Vendors act on bookings only while approved; the token alone is not enough."""
    vendor: Vendor = current.account
    if not vendor.is_approved:
        raise Forbidden("Your account is pending admin approval")
    return vendor


async def require_admin(
    current: CurrentAccount = Depends(KindRequired(AccountKind.ADMIN)),
) -> Admin:
    return current.account


async def require_super_admin(admin: Admin = Depends(require_admin)) -> Admin:
    if admin.role != AdminRole.SUPER_ADMIN:
        raise Forbidden("Super admin access required")
    return admin
