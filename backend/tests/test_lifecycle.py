from __future__ import annotations

import datetime as dt

import pytest

from receiptgold.core.errors import NotFoundError
from receiptgold.models.collections import (
    DELETED_ACCOUNTS,
    DEVICE_TRACKING,
    RECEIPTS,
    SUBSCRIPTIONS,
    TEAM_INVITATIONS,
    USAGE,
    USERS,
)
from receiptgold.models.enums import Tier
from receiptgold.models.schemas import AuthUserPayload
from receiptgold.services.entitlements import ResolvedEntitlement
from receiptgold.services.lifecycle import AccountLifecycleManager, had_active_subscription
from receiptgold.utils.helpers import to_iso

UTC = dt.timezone.utc
NOW = dt.datetime(2025, 3, 1, 12, tzinfo=UTC)


def _user(uid, email="ann@example.com", name="Ann Lee"):
    return AuthUserPayload(uid=uid, email=email, displayName=name)


async def _seed_paid_account(services, uid="u1"):
    await services.lifecycle.on_user_create(_user(uid), NOW - dt.timedelta(days=60))
    await services.store.set(
        SUBSCRIPTIONS,
        uid,
        {
            "userId": uid,
            "currentTier": "growth",
            "status": "active",
            "billing": {"currentPeriodEnd": NOW + dt.timedelta(days=20)},
            "limits": services.config.catalog.limits_snapshot(Tier.GROWTH),
            "history": [],
        },
    )
    await services.store.set(RECEIPTS, "r1", {"userId": uid, "status": "processed", "amount": 12.5})
    await services.store.set(USAGE, f"{uid}_2025-03", {"userId": uid, "receiptsUploaded": 7})


@pytest.mark.asyncio
async def test_new_account_holder_gets_profile_only(services):
    result = await services.lifecycle.on_user_create(_user("u1", email="Ann@Example.com"), NOW)

    assert result.outcome == "account_holder"
    profile = await services.store.get(USERS, "u1")
    assert profile["emailLower"] == "ann@example.com"
    assert profile["profile"]["firstName"] == "Ann"
    assert profile["profile"]["lastName"] == "Lee"
    # The subscription arrives with the first billing event
    assert await services.store.get(SUBSCRIPTIONS, "u1") is None

    again = await services.lifecycle.on_user_create(_user("u1"), NOW)
    assert again.outcome == "exists"


@pytest.mark.asyncio
async def test_invited_teammate_gets_teammate_usage(services):
    await services.store.set(
        TEAM_INVITATIONS,
        "inv1",
        {"inviteEmail": "mate@example.com", "status": "pending", "accountHolderId": "holder"},
    )

    result = await services.lifecycle.on_user_create(_user("mate", email="Mate@example.com"), NOW)

    assert result.outcome == "teammate"
    usage = await services.store.get(USAGE, "mate_2025-03")
    assert usage["limits"] == services.config.catalog.limits_snapshot(Tier.TEAMMATE)
    assert usage["receiptsUploaded"] == 0
    assert await services.store.get(SUBSCRIPTIONS, "mate") is None


@pytest.mark.asyncio
async def test_soft_delete_marks_every_user_document(services, config):
    await _seed_paid_account(services)

    result = await services.lifecycle.on_user_delete(_user("u1"), NOW)

    assert result.soft_deleted[RECEIPTS] == 1
    receipt = await services.store.get(RECEIPTS, "r1")
    assert receipt["status"] == "soft_deleted"
    assert receipt["preDeletionStatus"] == "processed"
    assert receipt["permanentDeletionDate"] == to_iso(NOW + config.recovery_window)
    assert (await services.store.get(USAGE, "u1_2025-03"))["status"] == "soft_deleted"

    record = await services.store.get(DELETED_ACCOUNTS, "u1")
    assert record["status"] == "soft_deleted"
    assert record["recoverable"] is True
    assert record["email"] == "ann@example.com"
    assert record["hadActiveSubscription"] is True
    assert record["originalData"]["subscription"]["status"] == "active"

    again = await services.lifecycle.on_user_delete(_user("u1"), NOW + dt.timedelta(minutes=1))
    assert again.already_deleted is True


@pytest.mark.asyncio
async def test_soft_delete_leaves_usage_of_user_with_longer_id(services):
    await _seed_paid_account(services)
    await services.store.set(USAGE, "u1_x_2025-03", {"userId": "u1_x", "receiptsUploaded": 4})

    await services.lifecycle.on_user_delete(_user("u1"), NOW)

    assert (await services.store.get(USAGE, "u1_2025-03"))["status"] == "soft_deleted"
    neighbour = await services.store.get(USAGE, "u1_x_2025-03")
    assert "status" not in neighbour
    assert neighbour["receiptsUploaded"] == 4


@pytest.mark.asyncio
async def test_delete_then_sign_up_again_recovers_account(services):
    await _seed_paid_account(services)
    await services.lifecycle.on_user_delete(_user("u1"), NOW)

    later = NOW + dt.timedelta(days=5)
    result = await services.lifecycle.on_user_create(_user("u2", email="ANN@example.com"), later)

    assert result.outcome == "recovered"
    assert result.recovered_from == "u1"
    subscription = await services.store.get(SUBSCRIPTIONS, "u2")
    assert subscription["currentTier"] == "growth"
    assert subscription["status"] == "active"
    assert subscription["recoveredFrom"] == "u1"
    profile = await services.store.get(USERS, "u2")
    assert profile["userId"] == "u2"
    assert "status" not in profile

    receipt = await services.store.get(RECEIPTS, "r1")
    assert receipt["userId"] == "u2"
    assert receipt["status"] == "processed"
    assert receipt["deletedAt"] is None
    assert (await services.store.get(USAGE, "u2_2025-03"))["receiptsUploaded"] == 7
    assert await services.store.get(USAGE, "u1_2025-03") is None
    assert await services.store.get(USERS, "u1") is None
    assert await services.store.get(SUBSCRIPTIONS, "u1") is None

    record = await services.store.get(DELETED_ACCOUNTS, "u1")
    assert record["status"] == "recovered"
    assert record["recoveredBy"] == "u2"


@pytest.mark.asyncio
async def test_recovery_window_expired(services, config):
    await _seed_paid_account(services)
    await services.lifecycle.on_user_delete(_user("u1"), NOW)

    result = await services.lifecycle.on_user_create(_user("u2"), NOW + config.recovery_window + dt.timedelta(seconds=1))

    assert result.outcome == "account_holder"
    assert await services.store.get(SUBSCRIPTIONS, "u2") is None


@pytest.mark.asyncio
async def test_purge_removes_expired_accounts(services, config):
    await _seed_paid_account(services)
    await services.store.set(DEVICE_TRACKING, "dev1", {"userId": "u1", "hasCreatedAccount": True})
    await services.lifecycle.on_user_delete(_user("u1"), NOW)

    early = await services.lifecycle.purge_deleted_accounts(NOW + dt.timedelta(days=1))
    assert early.processed == 0

    result = await services.lifecycle.purge_deleted_accounts(NOW + config.recovery_window)

    assert result.updated == 1 and result.failed == 0
    assert await services.store.get(RECEIPTS, "r1") is None
    assert await services.store.get(USERS, "u1") is None
    assert await services.store.query(USAGE).where("userId", "==", "u1").get() == []
    record = await services.store.get(DELETED_ACCOUNTS, "u1")
    assert record["status"] == "permanently_deleted"
    assert record["recoverable"] is False
    assert record["originalData"] is None
    # Device history survives so the device cannot be reused for a paid account
    assert (await services.store.get(DEVICE_TRACKING, "dev1"))["accountDeleted"] is True


@pytest.mark.asyncio
async def test_purge_respects_batch_limit(store, config_factory):
    lifecycle = AccountLifecycleManager(store, config_factory(purge_batch_limit=1))
    for uid in ("a", "b"):
        await lifecycle.on_user_delete(AuthUserPayload(uid=uid, email=f"{uid}@example.com"), NOW)

    first = await lifecycle.purge_deleted_accounts(NOW + dt.timedelta(days=31))
    assert first.updated == 1 and first.next_cursor == "a"
    second = await lifecycle.purge_deleted_accounts(NOW + dt.timedelta(days=31))
    assert second.updated == 1


@pytest.mark.asyncio
async def test_mark_account_recovered(services):
    with pytest.raises(NotFoundError):
        await services.lifecycle.mark_account_recovered("ghost@example.com", "u9", NOW)

    await _seed_paid_account(services)
    await services.lifecycle.on_user_delete(_user("u1"), NOW)
    record_id = await services.lifecycle.mark_account_recovered("Ann@Example.com", "u9", NOW)

    assert record_id == "u1"
    record = await services.store.get(DELETED_ACCOUNTS, "u1")
    assert record["status"] == "recovered"
    assert record["recoveredBy"] == "u9"


class _StubResolver:
    def __init__(self, active_for):
        self.active_for = active_for
        self.asked = []

    async def resolve(self, subscriber_id, now=None):
        self.asked.append(subscriber_id)
        if subscriber_id == self.active_for:
            return ResolvedEntitlement(Tier.PROFESSIONAL, True, "pro", None)
        return ResolvedEntitlement(Tier.TRIAL, False)


@pytest.mark.asyncio
async def test_new_account_restores_provider_entitlement(store, config):
    await store.set(
        DELETED_ACCOUNTS,
        "old-id",
        {"email": "ann@example.com", "status": "permanently_deleted", "recoverable": False},
    )
    resolver = _StubResolver("old-id")
    lifecycle = AccountLifecycleManager(store, config, resolver=resolver)

    result = await lifecycle.on_user_create(_user("fresh"), NOW)

    assert result.outcome == "account_holder"
    assert result.restored_from == "old-id"
    assert resolver.asked == ["fresh", "old-id"]
    assert (await store.get(SUBSCRIPTIONS, "fresh"))["currentTier"] == "professional"


def test_had_active_subscription():
    future = to_iso(NOW + dt.timedelta(days=1))
    past = to_iso(NOW - dt.timedelta(days=1))
    paid = {"status": "active", "currentTier": "growth", "billing": {"currentPeriodEnd": future}}
    assert had_active_subscription(paid, NOW) is True
    assert had_active_subscription(dict(paid, billing={"currentPeriodEnd": past}), NOW) is False
    assert had_active_subscription(dict(paid, currentTier="trial"), NOW) is False
    assert had_active_subscription(dict(paid, status="canceled"), NOW) is False
    assert had_active_subscription(None, NOW) is False
