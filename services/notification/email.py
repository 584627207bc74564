"""
services/notification/email.py
Transactional email delivery via Resend.

The client is constructed once in main.py and stored on app.state; routes
receive it through get_email_client(). send() never raises: failures come
back as EmailResult(success=False) so callers decide whether to roll back.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import resend
from fastapi import Request
from tenacity import retry, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class EmailClient:
    def __init__(self, api_key: str, from_email: str, from_name: str = ""):
        self.api_key = api_key
        self.sender = f"{from_name} <{from_email}>" if from_name else from_email

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=0.5, max=4), reraise=True)
    def _deliver(self, params: dict) -> dict:
        resend.api_key = self.api_key
        return resend.Emails.send(params)

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> EmailResult:
        if not self.api_key:
            logger.warning(f"Email not configured, dropping message to {to}: {subject}")
            return EmailResult(success=False, error="Email delivery is not configured")

        params = {"from": self.sender, "to": [to], "subject": subject, "html": html_body}
        if text_body:
            params["text"] = text_body
        try:
            response = await asyncio.to_thread(self._deliver, params)
        except Exception as e:
            logger.error(f"Email send failed to {to}: {e}")
            return EmailResult(success=False, error=str(e))

        message_id = response.get("id") if isinstance(response, dict) else None
        logger.info(f"Email sent to {to}", extra={"message_id": message_id})
        return EmailResult(success=True, message_id=message_id)


def get_email_client(request: Request) -> EmailClient:
    """FastAPI dependency: the client built by the composition root."""
    return request.app.state.email_client
