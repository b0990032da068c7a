from __future__ import annotations

import datetime as dt

import httpx
import pytest

from receiptgold.core.errors import UpstreamError
from receiptgold.models.enums import Tier
from receiptgold.models.schemas import SubscriberPayload
from receiptgold.services.entitlements import (
    EntitlementResolver,
    RevenueCatClient,
    first_active_subscription,
    map_entitlement_to_tier,
    resolve_from_subscriber,
)

NOW = dt.datetime(2025, 3, 1, 12, tzinfo=dt.timezone.utc)


@pytest.mark.parametrize(
    "entitlement,tier",
    [
        ("starter", Tier.STARTER),
        ("Growth", Tier.GROWTH),
        ("professional", Tier.PROFESSIONAL),
        (" PRO ", Tier.PROFESSIONAL),
        ("premium", Tier.PROFESSIONAL),
        ("gold", Tier.TRIAL),
        (None, Tier.TRIAL),
    ],
)
def test_map_entitlement_to_tier(entitlement, tier):
    assert map_entitlement_to_tier(entitlement) is tier


def test_resolve_picks_first_active_entitlement():
    subscriber = SubscriberPayload.model_validate(
        {
            "entitlements": {
                "starter": {"expires_date": "2025-02-01T00:00:00Z"},
                "growth": {"expires_date": "2025-04-01T00:00:00Z"},
                "professional": {"expires_date": None},
            }
        }
    )
    resolved = resolve_from_subscriber(subscriber, NOW)
    assert resolved.tier is Tier.GROWTH
    assert resolved.is_active is True
    assert resolved.expires_at == dt.datetime(2025, 4, 1, tzinfo=dt.timezone.utc)


def test_resolve_lifetime_and_none():
    lifetime = SubscriberPayload.model_validate({"entitlements": {"pro": {"expires_date": None}}})
    assert resolve_from_subscriber(lifetime, NOW).tier is Tier.PROFESSIONAL
    empty = resolve_from_subscriber(None, NOW)
    assert empty.tier is Tier.TRIAL and empty.is_active is False


def test_unknown_active_entitlement_stays_active_as_trial():
    subscriber = SubscriberPayload.model_validate({"entitlements": {"mystery": {"expires_date": None}}})
    resolved = resolve_from_subscriber(subscriber, NOW)
    assert resolved.tier is Tier.TRIAL
    assert resolved.is_active is True


def test_first_active_subscription_skips_expired():
    subscriber = SubscriberPayload.model_validate(
        {
            "subscriptions": {
                "old_monthly": {"expires_date": "2025-01-01T00:00:00Z"},
                "rg_growth_monthly": {"expires_date": "2025-03-31T00:00:00Z", "store_transaction_id": "t1"},
            }
        }
    )
    product_id, sub = first_active_subscription(subscriber, NOW)
    assert product_id == "rg_growth_monthly"
    assert sub.store_transaction_id == "t1"


def _transport(status: int, body=None, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, json=body if body is not None else {})

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_client_fetches_subscriber():
    seen = []
    body = {"subscriber": {"original_app_user_id": "u1", "entitlements": {"growth": {"expires_date": None}}}}
    client = RevenueCatClient("sk_test", "https://rc.example/v1/", transport=_transport(200, body, seen))
    resolver = EntitlementResolver(client)

    resolved = await resolver.resolve("$RCAnonymousID:abc", NOW)

    assert resolved.tier is Tier.GROWTH
    assert seen[0].headers["Authorization"] == "Bearer sk_test"
    assert seen[0].url.path == "/v1/subscribers/$RCAnonymousID:abc"


@pytest.mark.asyncio
async def test_client_unknown_subscriber_is_none():
    client = RevenueCatClient("sk_test", transport=_transport(404))
    assert await client.get_subscriber("nobody") is None


@pytest.mark.asyncio
async def test_client_errors_raise_upstream():
    with pytest.raises(UpstreamError):
        await RevenueCatClient("sk_test", transport=_transport(500)).get_subscriber("u1")
    with pytest.raises(UpstreamError):
        await RevenueCatClient(None).get_subscriber("u1")
