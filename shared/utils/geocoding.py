"""
shared/utils/geocoding.py
Address → coordinates via the Google Geocoding API.

Geocoding is best-effort: every failure path returns None and onboarding
carries on without coordinates. Repeated upstream failures open the
circuit breaker so registration stops paying the timeout.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request
from pybreaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerListener

logger = logging.getLogger(__name__)

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"


class _LogListener(CircuitBreakerListener):
    def state_change(self, cb, old_state, new_state):
        logger.warning(f"Circuit breaker '{cb.name}': {old_state.name} -> {new_state.name}")


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


def format_address(address: dict) -> str:
    parts = [address.get(k) for k in ("street", "landmark", "city", "state", "pincode")]
    return ", ".join(p for p in parts if p)


class GeocodingClient:
    def __init__(self, api_key: str, timeout: float = 5.0):
        self.api_key = api_key
        self.timeout = timeout
        self.breaker = CircuitBreaker(
            fail_max=5,
            reset_timeout=60,
            name="geocoding",
            listeners=[_LogListener()],
        )

    async def geocode(self, address: str) -> Optional[Coordinates]:
        if not self.api_key:
            logger.debug("Geocoding API key not configured, skipping")
            return None
        if not address:
            return None

        try:
            with self.breaker.calling():
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(
                        GEOCODE_URL, params={"address": address, "key": self.api_key}
                    )
                    response.raise_for_status()
                    payload = response.json()
        except CircuitBreakerError:
            logger.warning("Geocoding circuit open, skipping lookup")
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Geocoding request failed: {e}")
            return None

        if payload.get("status") != "OK" or not payload.get("results"):
            logger.info(f"Geocoding returned no match: {payload.get('status')}")
            return None
        location = payload["results"][0]["geometry"]["location"]
        return Coordinates(latitude=location["lat"], longitude=location["lng"])


def get_geocoding_client(request: Request) -> GeocodingClient:
    return request.app.state.geocoding_client
