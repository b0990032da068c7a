from __future__ import annotations

import asyncio
import functools
import types

import pytest

from receiptgold.core import tasks
from receiptgold.models.collections import SUBSCRIPTIONS, USERS
from receiptgold.models.schemas import parse_billing_event
from receiptgold.services import registry
from receiptgold.services.document_store import DocumentStore
from receiptgold.core.database import create_engine, create_session_factory

ENVELOPE = {
    "id": "evt-task-1",
    "data": {"app_user_id": "user-1", "subscriber": {"entitlements": {"starter": {"expires_date": None}}}},
}


def test_actors_are_registered():
    for actor in (
        tasks.process_billing_event,
        tasks.reset_monthly_usage,
        tasks.monitor_bank_connections,
        tasks.purge_deleted_accounts,
    ):
        assert hasattr(actor, "send")
    assert set(tasks.SCHEDULED_SWEEPS) == {"usage-reset", "bank-health", "purge"}


def test_malformed_event_is_dropped():
    assert asyncio.run(tasks._process_billing_event("transfer", {"id": "x", "data": {}})) is None
    assert asyncio.run(tasks._process_billing_event("nonsense", {"id": "x"})) is None


def test_actor_applies_event(db_url, config, monkeypatch):
    monkeypatch.setattr(tasks, "service_scope", functools.partial(registry.service_scope, db_url, config=config))

    tasks.process_billing_event.fn("purchase", ENVELOPE)
    # Redelivery is a no-op
    tasks.process_billing_event.fn("purchase", ENVELOPE)

    async def read():
        engine = create_engine(db_url, pooled=False)
        try:
            return await DocumentStore(create_session_factory(engine)).get(SUBSCRIPTIONS, "user-1")
        finally:
            await engine.dispose()

    record = asyncio.run(read())
    assert record["currentTier"] == "starter"
    assert len(record["history"]) == 1


def test_actor_reraises_for_retry(monkeypatch):
    async def boom(event_type, envelope):
        raise RuntimeError("store down")

    monkeypatch.setattr(tasks, "_process_billing_event", boom)
    with pytest.raises(RuntimeError):
        tasks.process_billing_event.fn("purchase", ENVELOPE)


@pytest.mark.parametrize(
    "next_cursor,failed,expected",
    [("acct-9", 0, 1), ("acct-9", 2, 0), (None, 0, 0)],
)
def test_purge_requeues_only_clean_full_batches(monkeypatch, next_cursor, failed, expected):
    sent = []

    async def fake_purge():
        return types.SimpleNamespace(next_cursor=next_cursor, failed=failed)

    monkeypatch.setattr(tasks, "_purge", fake_purge)
    monkeypatch.setattr(tasks.purge_deleted_accounts, "send", lambda *a, **kw: sent.append(kw))

    tasks.purge_deleted_accounts.fn()

    assert len(sent) == expected


def test_usage_reset_requeues_with_cursor(monkeypatch):
    sent = []

    async def fake_reset(cursor):
        return types.SimpleNamespace(next_cursor="sub-2" if cursor is None else None)

    monkeypatch.setattr(tasks, "_reset_usage", fake_reset)
    monkeypatch.setattr(tasks.reset_monthly_usage, "send", lambda *a, **kw: sent.append(kw))

    tasks.reset_monthly_usage.fn()
    tasks.reset_monthly_usage.fn(cursor="sub-2")

    assert sent == [{"cursor": "sub-2"}]


@pytest.mark.asyncio
async def test_dispatch_routes_transfers(services):
    await services.store.set(USERS, "orig", {"email": "ann@example.com"})
    transfer = parse_billing_event(
        "transfer",
        {"id": "evt-t", "data": {"transferred_from": ["orig"], "transferred_to": ["new"]}},
    )
    assert await tasks.dispatch_billing_event(services, transfer) in {"transferred", "skipped"}

    purchase = parse_billing_event("purchase", ENVELOPE)
    assert await tasks.dispatch_billing_event(services, purchase) == "applied"
    assert await tasks.dispatch_billing_event(services, purchase) == "duplicate"
