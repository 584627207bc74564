"""
tasks/token_tasks.py
Periodic housekeeping for the verification-token collection.
"""

import logging

from services.otp.service import OTPService
from tasks.celery_app import DatabaseTask, celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, base=DatabaseTask)
def purge_expired_tokens(self) -> int:
    """
    Beat task: runs every TOKEN_PURGE_INTERVAL_SECONDS.
    Removes tokens past their expiry and tokens already consumed.
    """
    async def work(db) -> int:
        return await OTPService(db).purge_expired()

    removed = self.run_async(work)
    logger.info(f"Purged {removed} verification tokens")
    return removed
