from __future__ import annotations

import importlib.util
from pathlib import Path

import pytest

from receiptgold.models.collections import PLAID_ITEMS
from receiptgold.services.registry import build_services

ITEM = {"userId": "u1", "accessToken": "t", "active": True, "status": "connected"}
SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "run_sweep.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("run_sweep", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


run_sweep = _load_script()


@pytest.mark.asyncio
async def test_all_pages_walks_the_cursor(store, config_factory, capsys):
    services = build_services(store, config_factory(sweep_page_size=2))
    for doc_id in ("a", "b", "c"):
        await store.set(PLAID_ITEMS, doc_id, ITEM | {"itemId": doc_id})

    code = await run_sweep.run_sweep(services, "bank-health", all_pages=True)

    assert code == 0
    lines = [line for line in capsys.readouterr().out.splitlines() if line.startswith("[bank-health]")]
    assert len(lines) == 2
    assert "processed=2" in lines[0] and "next=b" in lines[0]
    assert "processed=1" in lines[1]


@pytest.mark.asyncio
async def test_single_page_stops_at_cursor(store, config_factory, capsys):
    services = build_services(store, config_factory(sweep_page_size=1))
    await store.set(PLAID_ITEMS, "a", ITEM | {"itemId": "a"})
    await store.set(PLAID_ITEMS, "b", ITEM | {"itemId": "b"})

    await run_sweep.run_sweep(services, "bank-health")

    assert capsys.readouterr().out.count("[bank-health]") == 1


@pytest.mark.asyncio
async def test_empty_sweeps(services):
    assert await run_sweep.run_sweep(services, "purge", all_pages=True) == 0
    assert await run_sweep.run_sweep(services, "usage-reset") == 0


@pytest.mark.asyncio
async def test_unknown_sweep_name(services):
    with pytest.raises(SystemExit):
        await run_sweep.run_page(services, "vacuum")


def test_cli_rejects_unknown_sweep():
    with pytest.raises(SystemExit) as exc:
        run_sweep.main(["vacuum"])
    assert exc.value.code == 2
