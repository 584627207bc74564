"""
services/notification/push.py
FCM push delivery and the device-token registry it reads from.

The Firebase app is created explicitly from a credentials file by the
composition root; nothing here initialises Firebase at import time.
Push is a fire-and-forget side channel: failures are logged, never raised.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

import firebase_admin
from firebase_admin import credentials, messaging
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.otp.service import SubjectRef
from shared.models.models import FCMToken

logger = logging.getLogger(__name__)


# ── Registry ──────────────────────────────────────────────────

async def upsert_token(
    db: AsyncSession, subject: SubjectRef, device_token: str, platform: str = "web"
) -> FCMToken:
    """Register a device for a subject, refreshing last_used_at if already known."""
    result = await db.execute(
        select(FCMToken).where(
            FCMToken.subject_kind == subject.kind,
            FCMToken.subject_id == subject.id,
            FCMToken.device_token == device_token,
        )
    )
    record = result.scalar_one_or_none()
    if record:
        record.platform = platform
        record.last_used_at = datetime.now(timezone.utc)
    else:
        record = FCMToken(
            subject_kind=subject.kind,
            subject_id=subject.id,
            device_token=device_token,
            platform=platform,
        )
        db.add(record)
    await db.flush()
    return record


async def prune_tokens(
    db: AsyncSession, subject: SubjectRef, device_tokens: Optional[Iterable[str]] = None
) -> int:
    """Remove the given device tokens for a subject, or all of them when none are given."""
    stmt = delete(FCMToken).where(
        FCMToken.subject_kind == subject.kind,
        FCMToken.subject_id == subject.id,
    )
    if device_tokens is not None:
        stmt = stmt.where(FCMToken.device_token.in_(list(device_tokens)))
    result = await db.execute(stmt, execution_options={"synchronize_session": False})
    return result.rowcount or 0


async def list_tokens(db: AsyncSession, subject: SubjectRef) -> list[str]:
    result = await db.execute(
        select(FCMToken.device_token).where(
            FCMToken.subject_kind == subject.kind,
            FCMToken.subject_id == subject.id,
        )
    )
    return list(result.scalars().all())


# ── Delivery ──────────────────────────────────────────────────

class PushClient:
    def __init__(self, credentials_path: str, app_name: str = "borewell-push"):
        self.app: Optional[firebase_admin.App] = None
        if not credentials_path:
            logger.warning("Firebase credentials not configured, push disabled")
            return
        try:
            self.app = firebase_admin.get_app(app_name)
        except ValueError:
            self.app = firebase_admin.initialize_app(
                credentials.Certificate(credentials_path), name=app_name
            )

    @property
    def enabled(self) -> bool:
        return self.app is not None

    async def send_to_subject(
        self,
        db: AsyncSession,
        subject: SubjectRef,
        title: str,
        body: str,
        data: Optional[dict] = None,
    ) -> int:
        """Send to every registered device. Returns the success count."""
        if not self.enabled:
            return 0
        tokens = await list_tokens(db, subject)
        if not tokens:
            return 0

        message = messaging.MulticastMessage(
            tokens=tokens,
            notification=messaging.Notification(title=title, body=body),
            data={k: str(v) for k, v in (data or {}).items()},
            android=messaging.AndroidConfig(priority="high"),
        )
        try:
            response = await asyncio.to_thread(
                messaging.send_each_for_multicast, message, app=self.app
            )
        except Exception as e:
            logger.warning(f"FCM send failed: {e}")
            return 0

        stale = [
            token
            for token, r in zip(tokens, response.responses)
            if not r.success and isinstance(r.exception, messaging.UnregisteredError)
        ]
        if stale:
            await prune_tokens(db, subject, stale)
            logger.info(f"Pruned {len(stale)} unregistered FCM tokens")
        return response.success_count

