from __future__ import annotations

import datetime as dt

import pytest

from receiptgold.models.collections import SUBSCRIPTIONS, USAGE
from receiptgold.services.subscriptions import SubscriptionReconciler, latest_reset_boundary
from receiptgold.utils.helpers import to_iso

UTC = dt.timezone.utc
PERIOD_START = dt.datetime(2025, 1, 10, tzinfo=UTC)


async def _seed(store, user_id, period_start=PERIOD_START, status="active", **extra):
    billing = {"currentPeriodStart": period_start, "lastMonthlyReset": None}
    billing.update(extra.pop("billing", {}))
    await store.set(
        SUBSCRIPTIONS,
        user_id,
        dict(
            {
                "userId": user_id,
                "currentTier": "growth",
                "status": status,
                "billing": billing,
                "limits": {"maxReceipts": 150, "maxBusinesses": 1, "apiCallsPerMonth": 1000, "maxReports": 50},
            },
            **extra,
        ),
    )


def test_latest_reset_boundary():
    assert latest_reset_boundary(PERIOD_START, dt.datetime(2025, 2, 9, 23, 59, tzinfo=UTC)) is None
    assert latest_reset_boundary(PERIOD_START, dt.datetime(2025, 2, 10, tzinfo=UTC)) == dt.datetime(2025, 2, 10, tzinfo=UTC)
    assert latest_reset_boundary(PERIOD_START, dt.datetime(2025, 4, 1, tzinfo=UTC)) == dt.datetime(2025, 3, 10, tzinfo=UTC)

    month_end = dt.datetime(2025, 1, 31, tzinfo=UTC)
    assert latest_reset_boundary(month_end, dt.datetime(2025, 2, 28, 1, tzinfo=UTC)) == dt.datetime(2025, 2, 28, tzinfo=UTC)
    # Anniversaries come from the original day, not from the clamped one
    assert latest_reset_boundary(month_end, dt.datetime(2025, 3, 31, 1, tzinfo=UTC)) == dt.datetime(2025, 3, 31, tzinfo=UTC)


@pytest.mark.asyncio
async def test_no_reset_before_first_anniversary(services):
    await _seed(services.store, "user-1")
    result = await services.reconciler.reset_usage(now=dt.datetime(2025, 2, 9, tzinfo=UTC))

    assert result.processed == 1 and result.updated == 0
    assert await services.store.get(USAGE, "user-1_2025-02") is None


@pytest.mark.asyncio
async def test_reset_on_anniversary(services):
    await _seed(services.store, "user-1")
    now = dt.datetime(2025, 2, 10, 0, 0, 1, tzinfo=UTC)

    result = await services.reconciler.reset_usage(now=now)

    assert result.updated == 1
    usage = await services.store.get(USAGE, "user-1_2025-02")
    assert usage["receiptsUploaded"] == 0
    assert usage["month"] == "2025-02"
    assert usage["limits"]["maxReceipts"] == 150
    assert usage["resetDate"] == to_iso(dt.datetime(2025, 3, 1, tzinfo=UTC))
    record = await services.store.get(SUBSCRIPTIONS, "user-1")
    assert record["billing"]["lastMonthlyReset"] == to_iso(now)
    assert record["billing"]["nextMonthlyReset"] == to_iso(dt.datetime(2025, 3, 10, tzinfo=UTC))

    # A second run inside the same period changes nothing
    again = await services.reconciler.reset_usage(now=now + dt.timedelta(hours=1))
    assert again.updated == 0


@pytest.mark.asyncio
async def test_reset_skips_unusable_and_inactive_records(services):
    await services.store.set(SUBSCRIPTIONS, "no-start", {"userId": "no-start", "status": "active", "billing": {}})
    await _seed(services.store, "canceled", status="canceled")

    result = await services.reconciler.reset_usage(now=dt.datetime(2025, 2, 10, 1, tzinfo=UTC))

    assert result.processed == 1
    assert result.skipped == 1
    assert await services.store.get(USAGE, "canceled_2025-02") is None


@pytest.mark.asyncio
async def test_reset_pages_with_cursor(store, config_factory):
    reconciler = SubscriptionReconciler(store, config_factory(sweep_page_size=2))
    for user_id in ("a", "b", "c"):
        await _seed(store, user_id)
    now = dt.datetime(2025, 2, 10, 1, tzinfo=UTC)

    first = await reconciler.reset_usage(now=now)
    assert first.updated == 2 and first.next_cursor == "b"
    second = await reconciler.reset_usage(now=now, start_after=first.next_cursor)
    assert second.updated == 1 and second.next_cursor is None
    assert await store.get(USAGE, "c_2025-02") is not None
