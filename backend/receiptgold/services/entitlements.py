"""Entitlement resolution against the billing provider (RevenueCat).

Tier mapping is a static, case-insensitive lookup of entitlement
identifiers.  An unknown identifier resolves to ``trial`` with a warning;
mapping never raises.  An entitlement is active when its expiry is null
(lifetime) or in the future.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from receiptgold.core.errors import UpstreamError
from receiptgold.models.enums import Tier
from receiptgold.models.schemas import SubscriberPayload, SubscriptionPayload
from receiptgold.utils.helpers import mask, utcnow

logger = logging.getLogger(__name__)

ENTITLEMENT_TIER_MAP = {
    "starter": Tier.STARTER,
    "growth": Tier.GROWTH,
    "professional": Tier.PROFESSIONAL,
    "pro": Tier.PROFESSIONAL,
    "premium": Tier.PROFESSIONAL,
}


def map_entitlement_to_tier(entitlement_id: Optional[str]) -> Tier:
    tier = ENTITLEMENT_TIER_MAP.get((entitlement_id or "").strip().lower())
    if tier is None:
        logger.warning("[entitlements] unknown entitlement id %r, defaulting to trial", entitlement_id)
        return Tier.TRIAL
    return tier


@dataclass(frozen=True)
class ResolvedEntitlement:
    tier: Tier
    is_active: bool
    entitlement_id: Optional[str] = None
    expires_at: Optional[dt.datetime] = None


def resolve_from_subscriber(subscriber: Optional[SubscriberPayload], now: Optional[dt.datetime] = None) -> ResolvedEntitlement:
    """Pick the first active entitlement, in payload order."""
    now = now or utcnow()
    if subscriber is None:
        return ResolvedEntitlement(tier=Tier.TRIAL, is_active=False)
    for entitlement_id, entitlement in subscriber.entitlements.items():
        if entitlement.is_active(now):
            return ResolvedEntitlement(
                tier=map_entitlement_to_tier(entitlement_id),
                is_active=True,
                entitlement_id=entitlement_id,
                expires_at=entitlement.expires_date,
            )
    return ResolvedEntitlement(tier=Tier.TRIAL, is_active=False)


def first_active_subscription(
    subscriber: Optional[SubscriberPayload], now: Optional[dt.datetime] = None
) -> Optional[Tuple[str, SubscriptionPayload]]:
    now = now or utcnow()
    if subscriber is None:
        return None
    for product_id, subscription in subscriber.subscriptions.items():
        if subscription.expires_date is not None and subscription.is_active(now):
            return product_id, subscription
    return None


class RevenueCatClient:
    """Minimal async client for the RevenueCat REST API."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.revenuecat.com/v1",
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _get_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def get_subscriber(self, app_user_id: str) -> Optional[SubscriberPayload]:
        """Fetch a subscriber; ``None`` when RevenueCat does not know the id.

        Raises ``UpstreamError`` when the key is missing, the call times out
        or RevenueCat answers with an unexpected status.
        """
        if not self.api_key:
            raise UpstreamError("RevenueCat API key not configured")
        url = f"{self.base_url}/subscribers/{quote(app_user_id, safe='')}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, headers=self._get_headers())
        except httpx.TimeoutException as exc:
            raise UpstreamError(f"RevenueCat timeout for subscriber {mask(app_user_id)}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"RevenueCat request failed: {exc}") from exc

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise UpstreamError(
                f"RevenueCat returned {response.status_code}",
                details={"body": response.text[:200]},
            )
        try:
            return SubscriberPayload.model_validate(response.json().get("subscriber") or {})
        except (ValueError, ValidationError) as exc:
            raise UpstreamError("RevenueCat subscriber payload could not be parsed") from exc


class EntitlementResolver:
    """Resolve a billing-subscriber id to its canonical tier."""

    def __init__(self, client: RevenueCatClient) -> None:
        self.client = client

    async def resolve(self, subscriber_id: str, now: Optional[dt.datetime] = None) -> ResolvedEntitlement:
        subscriber = await self.client.get_subscriber(subscriber_id)
        resolved = resolve_from_subscriber(subscriber, now)
        logger.info(
            "[entitlements] resolved subscriber=%s tier=%s active=%s",
            mask(subscriber_id),
            resolved.tier.value,
            resolved.is_active,
        )
        return resolved


__all__ = [
    "ENTITLEMENT_TIER_MAP",
    "EntitlementResolver",
    "ResolvedEntitlement",
    "RevenueCatClient",
    "first_active_subscription",
    "map_entitlement_to_tier",
    "resolve_from_subscriber",
]
