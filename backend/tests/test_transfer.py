from __future__ import annotations

import datetime as dt

import pytest

from receiptgold.core.errors import TransferIncompleteError
from receiptgold.models.collections import RECEIPTS, SUBSCRIPTIONS, USAGE, USER_NOTIFICATIONS
from receiptgold.models.schemas import parse_billing_event
from receiptgold.services.document_store import WriteBatch
from receiptgold.services.transfer import TransferEngine, business_key, derive_doc_id, pick_identity
from receiptgold.utils.helpers import to_iso

UTC = dt.timezone.utc
NOW = dt.datetime(2025, 3, 1, 12, tzinfo=UTC)
ANON = ("$RCAnonymousID:",)


async def _seed(store):
    await store.set(
        SUBSCRIPTIONS,
        "old",
        {
            "userId": "old",
            "currentTier": "growth",
            "status": "active",
            "history": [{"tier": "growth", "reason": "revenuecat_purchase", "eventId": "evt-1"}],
        },
    )
    await store.set(RECEIPTS, "r1", {"userId": "old", "amount": 10, "status": "processed"})
    await store.set(USAGE, "old_2025-03", {"userId": "old", "receiptsUploaded": 4})
    await store.set("businesses", "b1", {"userId": "old", "name": "Acme", "address": "1 Main", "ein": "12"})
    await store.set("businesses", "b2", {"userId": "new", "name": "Acme", "address": "1 Main", "ein": "12"})
    await store.set("businesses", "b3", {"userId": "old", "name": "Side Co"})
    await store.set("bankConnections", "bc1", {"userId": "old", "institution": "Chase"})
    await store.set("teamMemberships", "tm1", {"ownerId": "old"})


async def _owned(store, collection, user_id, field="userId"):
    return await store.query(collection).where(field, "==", user_id).get()


def test_pick_identity_skips_anonymous_ids():
    assert pick_identity(["$RCAnonymousID:abc", "real"], ANON) == "real"
    assert pick_identity([None, "$RCAnonymousID:abc"], ANON) is None


def test_derive_doc_id_and_business_key():
    assert derive_doc_id("old_2025-03", "old", "new") == "new_2025-03"
    assert derive_doc_id("stats-old", "old", "new") == "stats-new"
    assert business_key({"name": "Acme"}) == "Acme_no-address_no-ein"


@pytest.mark.asyncio
async def test_transfer_moves_every_registered_collection(services):
    await _seed(services.store)

    result = await services.transfer.transfer("old", "new", now=NOW)

    assert result.committed is True and result.warnings == []
    store = services.store
    moved = await store.get(SUBSCRIPTIONS, "new")
    assert moved["userId"] == "new"
    assert moved["transferredFrom"] == "old"
    assert moved["history"][-1]["reason"] == "account_transfer"
    assert (await store.get(SUBSCRIPTIONS, "old"))["status"] == "transferred"

    receipts = await _owned(store, RECEIPTS, "new")
    assert len(receipts) == 1
    assert receipts[0].get("originalDocumentId") == "r1"
    assert receipts[0].get("amount") == 10
    assert (await store.get(RECEIPTS, "r1"))["transferredTo"] == "new"

    assert (await store.get(USAGE, "new_2025-03"))["receiptsUploaded"] == 4

    # Same business already owned by the target is not copied twice
    businesses = await _owned(store, "businesses", "new")
    assert sorted(b.get("name") for b in businesses) == ["Acme", "Side Co"]
    assert (await store.get("businesses", "b1"))["status"] == "transferred"

    bank = await store.get("bankConnections", "bc1")
    assert bank["userId"] == "new" and bank["transferredFrom"] == "old"
    assert (await store.get("teamMemberships", "tm1"))["ownerId"] == "new"

    notes = await _owned(store, USER_NOTIFICATIONS, "new")
    assert [n.get("type") for n in notes] == ["account_transfer_complete"]


@pytest.mark.asyncio
async def test_transfer_redelivery_copies_nothing_new(services):
    await _seed(services.store)
    await services.transfer.transfer("old", "new", now=NOW)

    again = await services.transfer.transfer("old", "new", now=NOW + dt.timedelta(minutes=1))

    assert sum(again.staged.values()) == 0
    assert len(await _owned(services.store, RECEIPTS, "new")) == 1
    assert len(await _owned(services.store, "businesses", "new")) == 2


@pytest.mark.asyncio
async def test_transfer_commit_failure_leaves_source_untouched(services, monkeypatch):
    await _seed(services.store)

    async def failing_commit(self):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(WriteBatch, "commit", failing_commit)
    with pytest.raises(RuntimeError):
        await services.transfer.transfer("old", "new", now=NOW)
    monkeypatch.undo()

    assert await services.store.get(SUBSCRIPTIONS, "new") is None
    assert "transferredTo" not in await services.store.get(RECEIPTS, "r1")
    assert (await services.store.get("bankConnections", "bc1"))["userId"] == "old"


def _fail_staging_for(engine, collection):
    original = engine._stage_collection

    async def stage(batch, spec, *args):
        if spec.name == collection:
            raise RuntimeError("index missing")
        return await original(batch, spec, *args)

    engine._stage_collection = stage


@pytest.mark.asyncio
async def test_partial_failure_commits_the_rest(store, config):
    await _seed(store)
    engine = TransferEngine(store, config)
    _fail_staging_for(engine, "businesses")

    result = await engine.transfer("old", "new", now=NOW)

    assert result.committed is True
    assert result.warnings == ["businesses transfer failed: index missing"]
    assert await store.get(SUBSCRIPTIONS, "new") is not None
    assert [b.id for b in await _owned(store, "businesses", "new")] == ["b2"]


@pytest.mark.asyncio
async def test_partial_failure_can_abort(store, config_factory):
    await _seed(store)
    engine = TransferEngine(store, config_factory(transfer_abort_on_partial_failure=True))
    _fail_staging_for(engine, "businesses")

    with pytest.raises(TransferIncompleteError) as excinfo:
        await engine.transfer("old", "new", now=NOW)

    assert excinfo.value.warnings == ["businesses transfer failed: index missing"]
    assert await store.get(SUBSCRIPTIONS, "new") is None


@pytest.mark.asyncio
async def test_transfer_event_uses_non_anonymous_ids(services):
    await _seed(services.store)
    event = parse_billing_event(
        "transfer",
        {
            "id": "evt-t",
            "data": {"transferred_from": ["$RCAnonymousID:abc", "old"], "transferred_to": ["new"]},
        },
    )

    result = await services.transfer.handle_transfer_event(event, NOW)

    assert (result.original_user_id, result.new_user_id) == ("old", "new")
    assert (await services.store.get(SUBSCRIPTIONS, "new"))["updatedAt"] == to_iso(NOW)


@pytest.mark.asyncio
async def test_transfer_event_without_real_ids_is_skipped(services):
    event = parse_billing_event(
        "transfer",
        {"id": "evt-t", "data": {"transferred_from": ["$RCAnonymousID:abc"], "transferred_to": ["new"]}},
    )
    assert await services.transfer.handle_transfer_event(event, NOW) is None


@pytest.mark.asyncio
async def test_transfer_to_same_user_is_a_no_op(services):
    result = await services.transfer.transfer("same", "same", now=NOW)
    assert result.committed is False
