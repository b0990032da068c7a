from __future__ import annotations

import datetime as dt

import pytest

from receiptgold.models.enums import Tier
from receiptgold.services import document_store
from receiptgold.services.document_store import DocumentNotFoundError, Query, deep_merge, encode_value
from receiptgold.utils.helpers import to_iso

UTC = dt.timezone.utc


def test_encode_value_converts_datetimes_and_enums():
    when = dt.datetime(2025, 1, 2, 3, 4, 5, tzinfo=UTC)
    encoded = encode_value({"tier": Tier.GROWTH, "at": when, "tags": ("a", "b"), "nested": {"day": when.date()}})
    assert encoded == {
        "tier": "growth",
        "at": "2025-01-02T03:04:05.000000+00:00",
        "tags": ["a", "b"],
        "nested": {"day": "2025-01-02"},
    }


def test_deep_merge_keeps_untouched_keys():
    base = {"billing": {"a": 1, "b": 2}, "limits": {"maxReceipts": 50}}
    merged = deep_merge(base, {"billing": {"b": 3}, "limits": None})
    assert merged == {"billing": {"a": 1, "b": 3}, "limits": None}
    assert base["billing"]["b"] == 2


@pytest.mark.asyncio
async def test_set_merge_and_dotted_update(store):
    await store.set("things", "a", {"name": "x", "nested": {"one": 1}})
    await store.set("things", "a", {"nested": {"two": 2}}, merge=True)
    await store.update("things", "a", {"nested.three": 3, "when": dt.datetime(2025, 1, 2, tzinfo=UTC)})

    doc = await store.get("things", "a")
    assert doc == {
        "name": "x",
        "nested": {"one": 1, "two": 2, "three": 3},
        "when": "2025-01-02T00:00:00.000000+00:00",
    }
    assert await store.exists("things", "a") is True
    assert await store.get("things", "missing") is None


@pytest.mark.asyncio
async def test_update_missing_document_raises(store):
    with pytest.raises(DocumentNotFoundError):
        await store.update("things", "nope", {"x": 1})


@pytest.mark.asyncio
async def test_batch_is_all_or_nothing(store):
    await store.set("things", "a", {"v": 1})
    batch = store.batch()
    batch.update("things", "a", {"v": 2})
    batch.set("things", "b", {"v": 1})
    batch.update("things", "missing", {"v": 3})
    with pytest.raises(DocumentNotFoundError):
        await batch.commit()

    assert (await store.get("things", "a"))["v"] == 1
    assert await store.get("things", "b") is None


@pytest.mark.asyncio
async def test_batch_extend_moves_writes(store):
    outer = store.batch()
    inner = store.batch()
    inner.set("things", "x", {"v": 1})
    inner.set("things", "y", {"v": 2})
    outer.extend(inner)
    assert len(outer) == 2 and len(inner) == 0
    await outer.commit()
    assert await store.get("things", "y") == {"v": 2}


@pytest.mark.asyncio
async def test_query_filters(store):
    base = dt.datetime(2025, 3, 1, tzinfo=UTC)
    await store.set("items", "i1", {"userId": "u1", "status": "active", "due": base, "tags": ["a"]})
    await store.set("items", "i2", {"userId": "u1", "status": "canceled", "due": base + dt.timedelta(days=2)})
    await store.set("items", "i3", {"userId": "u2", "status": "active", "due": base + dt.timedelta(days=5), "tags": ["a", "b"]})
    await store.set("items", "i4", {"userId": "u3"})

    ids = lambda snaps: [s.id for s in snaps]  # noqa: E731
    assert ids(await store.query("items").where("userId", "==", "u1").get()) == ["i1", "i2"]
    assert ids(await store.query("items").where("status", "in", ["active", "canceled"]).get()) == ["i1", "i2", "i3"]
    assert ids(await store.query("items").where("tags", "array-contains", "b").get()) == ["i3"]
    assert ids(await store.query("items").where("due", "<=", base + dt.timedelta(days=2)).get()) == ["i1", "i2"]
    # Documents without the field never match, even for !=
    assert ids(await store.query("items").where("status", "!=", "canceled").get()) == ["i1", "i3"]


@pytest.mark.asyncio
async def test_query_id_prefix_and_cursor_paging(store):
    for doc_id in ("u1_2025-01", "u1_2025-02", "u10_2025-01", "u2_2025-01"):
        await store.set("usage", doc_id, {"userId": doc_id.split("_")[0]})

    prefixed = await store.query("usage").id_prefix("u1_").get()
    assert [s.id for s in prefixed] == ["u1_2025-01", "u1_2025-02"]

    first = await store.query("usage").limit(2).get()
    rest = await store.query("usage").start_after(first[-1].id).get()
    assert [s.id for s in first + rest] == ["u10_2025-01", "u1_2025-01", "u1_2025-02", "u2_2025-01"]


@pytest.mark.asyncio
async def test_transaction_read_modify_write(store):
    await store.set("counters", "c", {"n": 1, "at": to_iso(dt.datetime(2025, 1, 1, tzinfo=UTC))})
    async with store.transaction() as tx:
        current = await tx.get("counters", "c")
        await tx.update("counters", "c", {"n": current["n"] + 1})
        await tx.set("counters", "d", {"n": 0})
    assert (await store.get("counters", "c"))["n"] == 2
    assert await store.get("counters", "d") == {"n": 0}


@pytest.mark.asyncio
async def test_delete_many(store):
    await store.set("things", "a", {})
    await store.set("things", "b", {})
    assert await store.delete_many("things", ["a", "b"]) == 2
    assert await store.query("things").get() == []


@pytest.mark.asyncio
async def test_limited_query_reads_in_chunks(store, monkeypatch):
    for i in range(10):
        await store.set("items", f"d{i}", {"active": i in (6, 7), "n": i})

    statements = []
    build = Query._statement

    def counting(self, after=None):
        statements.append(after)
        return build(self, after)

    monkeypatch.setattr(document_store, "SCAN_CHUNK_SIZE", 2)
    monkeypatch.setattr(Query, "_statement", counting)

    page = await store.query("items").where("active", "==", True).limit(1).get()
    assert [s.id for s in page] == ["d6"]
    # Stopped as soon as the page was full
    assert statements == [None, "d1", "d3", "d5"]

    nxt = await store.query("items").where("active", "==", True).start_after("d6").limit(1).get()
    assert [s.id for s in nxt] == ["d7"]

    statements.clear()
    everything = await store.query("items").where("active", "==", True).get()
    assert [s.id for s in everything] == ["d6", "d7"]
    assert statements == [None]


@pytest.mark.asyncio
async def test_in_filter_on_strings(store):
    await store.set("items", "a", {"status": "connected"})
    await store.set("items", "b", {"status": "stale"})
    await store.set("items", "c", {"status": "error"})
    await store.set("items", "d", {"status": 3})

    found = await store.query("items").where("status", "in", ["connected", "stale"]).get()
    assert [s.id for s in found] == ["a", "b"]
