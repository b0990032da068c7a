from __future__ import annotations

import dataclasses
import datetime as dt
import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Add backend folder to sys.path so `import receiptgold...` works when running from the repo root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from receiptgold.core.config import ServiceConfig, Settings  # noqa: E402
from receiptgold.core.database import create_engine, create_session_factory, init_db  # noqa: E402
from receiptgold.services.document_store import DocumentStore  # noqa: E402
from receiptgold.services.registry import build_services  # noqa: E402
from receiptgold.services.tier_catalog import build_tier_catalog  # noqa: E402

UTC = dt.timezone.utc


def make_config(**overrides) -> ServiceConfig:
    """Service config built from defaults only (no .env), with overrides."""
    base = ServiceConfig(catalog=build_tier_catalog(Settings(_env_file=None)))
    return dataclasses.replace(base, **overrides)


@pytest.fixture
def config_factory():
    return make_config


@pytest.fixture
def config() -> ServiceConfig:
    return make_config()


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'documents.db'}"


@pytest_asyncio.fixture
async def store(db_url):
    # NullPool: no connection outlives the event loop that opened it
    engine = create_engine(db_url, pooled=False)
    await init_db(engine)
    yield DocumentStore(create_session_factory(engine))
    await engine.dispose()


@pytest.fixture
def services(store, config):
    return build_services(store, config)
