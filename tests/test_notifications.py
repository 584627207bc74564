"""
tests/test_notifications.py
Tests for the FCM device-token registry and the email templates it pairs with.
"""

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from services.notification.templates import booking_status_email, otp_email
from shared.models.models import BookingStatus, FCMToken, TokenPurpose, User, Vendor
from tests.conftest import auth_headers

DEVICE_A = "fcm-device-token-aaaaaaaaaaaa"
DEVICE_B = "fcm-device-token-bbbbbbbbbbbb"


@pytest.mark.asyncio
async def test_register_fcm_token(client: AsyncClient, user: User):
    response = await client.post(
        "/notifications/fcm-tokens",
        json={"device_token": DEVICE_A, "platform": "android"},
        headers=auth_headers(user),
    )
    assert response.status_code == 201

    response = await client.get("/notifications/fcm-tokens", headers=auth_headers(user))
    assert response.json() == {"count": 1, "device_tokens": [DEVICE_A]}


@pytest.mark.asyncio
async def test_register_same_token_twice_upserts(client: AsyncClient, db, user: User):
    for platform in ("web", "ios"):
        response = await client.post(
            "/notifications/fcm-tokens",
            json={"device_token": DEVICE_A, "platform": platform},
            headers=auth_headers(user),
        )
        assert response.status_code == 201

    result = await db.execute(select(FCMToken).where(FCMToken.subject_id == user.id))
    tokens = result.scalars().all()
    assert len(tokens) == 1
    assert tokens[0].platform == "ios"


@pytest.mark.asyncio
async def test_tokens_are_scoped_by_account_kind(client: AsyncClient, user: User, vendor: Vendor):
    await client.post(
        "/notifications/fcm-tokens", json={"device_token": DEVICE_A}, headers=auth_headers(user)
    )
    await client.post(
        "/notifications/fcm-tokens", json={"device_token": DEVICE_B}, headers=auth_headers(vendor)
    )

    response = await client.get("/notifications/fcm-tokens", headers=auth_headers(vendor))
    assert response.json()["device_tokens"] == [DEVICE_B]


@pytest.mark.asyncio
async def test_prune_single_token(client: AsyncClient, db, user: User):
    for device in (DEVICE_A, DEVICE_B):
        await client.post(
            "/notifications/fcm-tokens", json={"device_token": device}, headers=auth_headers(user)
        )

    response = await client.request(
        "DELETE",
        "/notifications/fcm-tokens",
        json={"device_token": DEVICE_A},
        headers=auth_headers(user),
    )
    assert response.status_code == 200
    assert response.json()["message"] == "Removed 1 device token(s)"

    response = await client.get("/notifications/fcm-tokens", headers=auth_headers(user))
    assert response.json()["device_tokens"] == [DEVICE_B]


@pytest.mark.asyncio
async def test_prune_all_tokens(client: AsyncClient, db, user: User, other_user: User):
    for device in (DEVICE_A, DEVICE_B):
        await client.post(
            "/notifications/fcm-tokens", json={"device_token": device}, headers=auth_headers(user)
        )
    await client.post(
        "/notifications/fcm-tokens", json={"device_token": DEVICE_A}, headers=auth_headers(other_user)
    )

    response = await client.request(
        "DELETE", "/notifications/fcm-tokens", json={}, headers=auth_headers(user)
    )
    assert response.json()["message"] == "Removed 2 device token(s)"

    remaining = await db.scalar(select(func.count()).select_from(FCMToken))
    assert remaining == 1


@pytest.mark.asyncio
async def test_invalid_platform_rejected(client: AsyncClient, user: User):
    response = await client.post(
        "/notifications/fcm-tokens",
        json={"device_token": DEVICE_A, "platform": "symbian"},
        headers=auth_headers(user),
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_fcm_requires_authentication(client: AsyncClient):
    response = await client.get("/notifications/fcm-tokens")
    assert response.status_code == 401


def test_otp_email_carries_code_in_both_bodies():
    subject, html, text = otp_email("Asha", "042917", TokenPurpose.PASSWORD_RESET, 10)
    assert subject == "Reset your password"
    assert "042917" in html
    assert "Code: 042917" in text
    assert "10 minutes" in text


def test_booking_status_email_mentions_booking():
    subject, html = booking_status_email("Asha", "b-123", BookingStatus.ACCEPTED)
    assert "b-123" in subject + html
    assert "accepted" in html.lower()
