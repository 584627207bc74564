"""
tasks/notification_tasks.py
Celery tasks for booking status notifications.

Email is the primary channel and is retried with exponential back-off;
push is a bonus channel whose failures are logged, never retried.

Usage from a route (via app.state.booking_notifier):
    enqueue_booking_status(str(booking.id), booking.status.value)
"""

import logging
import uuid

from config.settings import settings
from services.notification.email import EmailClient
from services.notification.push import PushClient
from services.notification.templates import STATUS_MESSAGES, booking_status_email
from services.otp.service import SubjectRef
from shared.models.models import AccountKind, Booking, BookingStatus, User
from tasks.celery_app import DatabaseTask, celery_app

logger = logging.getLogger(__name__)


class EmailDeliveryFailed(Exception):
    pass


@celery_app.task(bind=True, base=DatabaseTask, max_retries=3, default_retry_delay=60)
def send_booking_status_email(self, booking_id: str, status: str):
    """
    Notify the booking's user that it moved to `status`.
    Push goes out on the first run only; retries re-send the email alone.
    """
    booking_status = BookingStatus(status)
    first_run = self.request.retries == 0

    async def work(db):
        booking = await db.get(Booking, uuid.UUID(booking_id))
        if not booking:
            logger.error(f"send_booking_status_email: booking {booking_id} not found")
            return None
        user = await db.get(User, booking.user_id)
        if not user:
            return None

        subject, html = booking_status_email(user.name, booking_id, booking_status)
        email_client = EmailClient(settings.RESEND_API_KEY, settings.EMAIL_FROM, settings.EMAIL_FROM_NAME)
        result = await email_client.send(user.email, subject, html)

        if first_run:
            push = PushClient(settings.FIREBASE_CREDENTIALS_PATH)
            await push.send_to_subject(
                db,
                SubjectRef(kind=AccountKind.USER, id=user.id),
                title="Booking update",
                body=STATUS_MESSAGES.get(booking_status, f"Your booking is now {status}."),
                data={"booking_id": booking_id, "status": status, "type": "BOOKING_STATUS"},
            )
        return result

    # Failure is raised outside the session so pruned push tokens still commit
    result = self.run_async(work)
    if result is not None and not result.success:
        e = EmailDeliveryFailed(result.error)
        logger.warning(f"Booking status email for {booking_id} failed: {e}")
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))


def enqueue_booking_status(booking_id: str, status: str) -> None:
    """Best-effort hand-off to the worker; a broker outage must not fail the transition."""
    try:
        send_booking_status_email.delay(booking_id, status)
    except Exception as e:
        logger.warning(f"Could not enqueue status email for booking {booking_id}: {e}")
