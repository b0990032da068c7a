from __future__ import annotations

import datetime as dt

import httpx
import pytest

from receiptgold.models.collections import RECEIPTS, SUBSCRIPTIONS, TEAM_INVITATIONS, TEAM_MEMBERS, USAGE
from receiptgold.models.enums import Tier
from receiptgold.models.schemas import AuthUserPayload
from receiptgold.services.receipts import ReceiptExtractor, ReceiptUsageService

UTC = dt.timezone.utc
NOW = dt.datetime(2025, 3, 14, 9, tzinfo=UTC)


async def _subscribe(store, user_id="u1", tier="starter"):
    await store.set(SUBSCRIPTIONS, user_id, {"userId": user_id, "currentTier": tier, "status": "active"})


@pytest.mark.asyncio
async def test_first_receipt_of_month_creates_usage(services):
    await _subscribe(services.store)

    result = await services.receipts.on_receipt_created("r1", {"userId": "u1"}, NOW)

    assert result.receipts_uploaded == 1
    assert result.limit == 50
    usage = await services.store.get(USAGE, "u1_2025-03")
    assert usage["receiptsUploaded"] == 1
    assert usage["month"] == "2025-03"

    await services.receipts.on_receipt_created("r2", {"userId": "u1"}, NOW)
    assert (await services.store.get(USAGE, "u1_2025-03"))["receiptsUploaded"] == 2


@pytest.mark.asyncio
async def test_limits_follow_the_catalog_not_the_snapshot(services):
    await _subscribe(services.store, tier="growth")
    await services.store.set(USAGE, "u1_2025-03", {"userId": "u1", "receiptsUploaded": 3, "limits": {"maxReceipts": 5}})

    result = await services.receipts.on_receipt_created("r1", {"userId": "u1"}, NOW)

    assert result.receipts_uploaded == 4
    assert result.limit == 150


@pytest.mark.asyncio
async def test_over_limit_is_only_logged_when_not_enforced(services):
    await _subscribe(services.store)
    await services.store.set(USAGE, "u1_2025-03", {"userId": "u1", "receiptsUploaded": 50})

    result = await services.receipts.on_receipt_created("r51", {"userId": "u1"}, NOW)

    assert result.status == "uploaded"
    assert result.receipts_uploaded == 51


@pytest.mark.asyncio
async def test_over_limit_rejected_when_enforced(store, config_factory):
    service = ReceiptUsageService(store, config_factory(enforce_receipt_limits=True))
    await _subscribe(store)
    await store.set(USAGE, "u1_2025-03", {"userId": "u1", "receiptsUploaded": 50})
    await store.set(RECEIPTS, "r51", {"userId": "u1", "status": "uploaded"})

    result = await service.on_receipt_created("r51", {"userId": "u1"}, NOW)

    assert result.status == "rejected"
    receipt = await store.get(RECEIPTS, "r51")
    assert receipt["status"] == "rejected"
    assert "50 receipts per month" in receipt["processingErrors"][0]
    assert (await store.get(USAGE, "u1_2025-03"))["receiptsUploaded"] == 50


@pytest.mark.asyncio
async def test_teammate_uses_usage_limits(services):
    await services.store.set(USAGE, "mate_2025-03", {"userId": "mate", "receiptsUploaded": 0, "limits": {"maxReceipts": -1}})

    result = await services.receipts.on_receipt_created("r1", {"userId": "mate"}, NOW)

    assert result.receipts_uploaded == 1
    assert result.limit == -1


@pytest.mark.asyncio
async def test_unknown_owner_marks_receipt_error(services):
    await services.store.set(RECEIPTS, "r1", {"userId": "ghost", "status": "uploaded"})
    with pytest.raises(LookupError):
        await services.receipts.on_receipt_created("r1", {"userId": "ghost"}, NOW)
    assert (await services.store.get(RECEIPTS, "r1"))["status"] == "error"


@pytest.mark.asyncio
async def test_extraction_hand_off(store, config):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"extractedData": {"merchant": "Cafe", "total": 4.5}})

    extractor = ReceiptExtractor("https://ocr.example", transport=httpx.MockTransport(handler))
    service = ReceiptUsageService(store, config, extractor=extractor)
    await _subscribe(store)

    result = await service.on_receipt_created("r1", {"userId": "u1", "imageUrl": "https://img/1.jpg"}, NOW)

    assert result.status == "processed"
    receipt = await store.get(RECEIPTS, "r1")
    assert receipt["extractedData"] == {"merchant": "Cafe", "total": 4.5}


@pytest.mark.asyncio
async def test_teammate_usage_carries_into_next_month(services):
    await services.store.set(
        TEAM_INVITATIONS,
        "inv1",
        {"accountHolderId": "holder", "inviteEmail": "mate@example.com", "status": "accepted"},
    )
    joined = dt.datetime(2025, 1, 15, tzinfo=UTC)
    created = await services.lifecycle.on_user_create(AuthUserPayload(uid="mate", email="mate@example.com"), joined)
    assert created.outcome == "teammate"

    january = await services.receipts.on_receipt_created("r1", {"userId": "mate"}, joined)
    february = await services.receipts.on_receipt_created("r2", {"userId": "mate"}, dt.datetime(2025, 2, 3, tzinfo=UTC))

    assert (january.receipts_uploaded, january.limit) == (1, -1)
    assert (february.receipts_uploaded, february.limit) == (1, -1)
    usage = await services.store.get(USAGE, "mate_2025-02")
    assert usage["limits"] == services.config.catalog.limits_snapshot(Tier.TEAMMATE)


@pytest.mark.asyncio
async def test_active_team_member_without_usage_doc(services):
    await services.store.set(TEAM_MEMBERS, "m1", {"accountHolderId": "holder", "userId": "mate", "status": "active"})

    result = await services.receipts.on_receipt_created("r1", {"userId": "mate"}, NOW)

    assert result.receipts_uploaded == 1
    assert result.limit == -1
