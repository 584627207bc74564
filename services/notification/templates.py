"""
services/notification/templates.py
Email bodies for OTP delivery, onboarding and booking status updates.
"""

from typing import Optional

from config.settings import settings
from shared.models.models import BookingStatus, TokenPurpose

OTP_SUBJECTS = {
    TokenPurpose.EMAIL_VERIFICATION: "Verify your email",
    TokenPurpose.PASSWORD_RESET: "Reset your password",
    TokenPurpose.ADMIN_REGISTRATION: "Confirm your admin registration",
    TokenPurpose.PHONE_VERIFICATION: "Verify your phone number",
}

OTP_INTROS = {
    TokenPurpose.EMAIL_VERIFICATION: "Use the code below to verify your email address.",
    TokenPurpose.PASSWORD_RESET: "We received a request to reset your password. Use the code below to continue.",
    TokenPurpose.ADMIN_REGISTRATION: "Use the code below to finish creating your admin account.",
    TokenPurpose.PHONE_VERIFICATION: "Use the code below to verify your phone number.",
}

STATUS_MESSAGES = {
    BookingStatus.ACCEPTED: "The vendor has accepted your booking request.",
    BookingStatus.REJECTED: "The vendor could not take your booking.",
    BookingStatus.VISITED: "The vendor has visited your site and finished testing.",
    BookingStatus.REPORT_UPLOADED: "Your survey report is ready.",
    BookingStatus.AWAITING_PAYMENT: "Your report is ready. Please complete the remaining payment to view it.",
    BookingStatus.PAYMENT_SUCCESS: "We received your payment. Thank you!",
    BookingStatus.BOREWELL_UPLOADED: "The borewell result has been recorded.",
    BookingStatus.ADMIN_APPROVED: "The borewell result has been approved.",
    BookingStatus.FINAL_SETTLEMENT: "Your booking is in final settlement.",
    BookingStatus.COMPLETED: "Your booking has been marked as completed.",
    BookingStatus.CANCELLED: "Your booking has been cancelled.",
}


def _wrap(name: str, body: str) -> str:
    return (
        "<div style=\"font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;\">"
        f"<h2>{settings.APP_NAME}</h2>"
        f"<p>Hello {name},</p>"
        f"{body}"
        "<p style=\"color: #888; font-size: 12px;\">This is an automated message, please do not reply.</p>"
        "</div>"
    )


def otp_email(name: str, code: str, purpose: TokenPurpose, expiry_minutes: int) -> tuple[str, str, str]:
    """Returns (subject, html, text)."""
    subject = OTP_SUBJECTS[purpose]
    intro = OTP_INTROS[purpose]
    html = _wrap(
        name,
        f"<p>{intro}</p>"
        f"<p style=\"font-size: 28px; letter-spacing: 6px; font-weight: bold;\">{code}</p>"
        f"<p>This code expires in {expiry_minutes} minutes. If you did not request it, ignore this email.</p>",
    )
    text = f"Hello {name},\n\n{intro}\n\nCode: {code}\n\nThis code expires in {expiry_minutes} minutes."
    return subject, html, text


def vendor_decision_email(name: str, approved: bool, reason: Optional[str] = None) -> tuple[str, str]:
    if approved:
        return (
            "Your vendor account is approved",
            _wrap(name, f"<p>Your account has been approved. You can now <a href=\"{settings.FRONTEND_URL}/vendor/login\">log in</a> and start accepting bookings.</p>"),
        )
    return (
        "Update on your vendor application",
        _wrap(name, f"<p>Your vendor application was not approved.</p><p>Reason: {reason or 'Not specified'}</p>"),
    )


def booking_status_email(name: str, booking_id: str, status: BookingStatus) -> tuple[str, str]:
    message = STATUS_MESSAGES.get(status, f"Your booking status is now {status.value}.")
    subject = f"Booking update – {status.value.replace('_', ' ').title()}"
    html = _wrap(
        name,
        f"<p>{message}</p><p>Booking ID: <strong>{booking_id}</strong></p>"
        f"<p><a href=\"{settings.FRONTEND_URL}/bookings/{booking_id}\">View booking</a></p>",
    )
    return subject, html
