"""
services/notification/router.py
Device registration for FCM push. Any signed-in account (user, vendor or
admin) registers its devices here; delivery happens from Celery tasks.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.notification.push import list_tokens, prune_tokens, upsert_token
from services.otp.service import SubjectRef
from shared.middleware.auth import CurrentAccount, get_current_account
from shared.schemas.schemas import FCMTokenPruneRequest, FCMTokenRequest, MessageResponse

router = APIRouter(prefix="/notifications", tags=["Notifications"])


def _subject(current: CurrentAccount) -> SubjectRef:
    return SubjectRef(kind=current.kind, id=current.id)


@router.post("/fcm-tokens", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def register_fcm_token(
    data: FCMTokenRequest,
    current: CurrentAccount = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """Register (or refresh) a device token for push notifications."""
    await upsert_token(db, _subject(current), data.device_token, data.platform)
    return MessageResponse(message="Device registered for notifications")


@router.get("/fcm-tokens")
async def get_fcm_tokens(
    current: CurrentAccount = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    tokens = await list_tokens(db, _subject(current))
    return {"count": len(tokens), "device_tokens": tokens}


@router.delete("/fcm-tokens", response_model=MessageResponse)
async def remove_fcm_tokens(
    data: FCMTokenPruneRequest,
    current: CurrentAccount = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """Remove one device token, or every token of the caller when none is given (logout everywhere)."""
    removed = await prune_tokens(
        db, _subject(current), [data.device_token] if data.device_token else None
    )
    return MessageResponse(message=f"Removed {removed} device token(s)")
