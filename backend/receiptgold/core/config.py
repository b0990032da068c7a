"""Configuration management.

This module defines a ``Settings`` class that reads configuration values
from environment variables and ``.env`` files and provides sensible
defaults.  ``.env`` files are loaded from the repository root first and
then from whatever python-dotenv discovers from the current working
directory.  You can override any value via environment variables.

Business logic does not read ``settings`` directly.  ``get_service_config``
freezes the values the services need into a ``ServiceConfig`` that is
built once per process and injected, so tests can pass a fixed config.
"""

from __future__ import annotations

import datetime as dt
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple, TYPE_CHECKING

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from dotenv import load_dotenv, find_dotenv

if TYPE_CHECKING:  # pragma: no cover
    from receiptgold.services.tier_catalog import TierCatalog

# -----------------------------------------------------------------------------
# .env loading
#
# Prefer a .env in the repository root but allow fallback to whatever
# python-dotenv discovers from the current working directory.  Files are
# loaded in order without overriding already-set variables.

_THIS_FILE = Path(__file__).resolve()
_REPO_ROOT = _THIS_FILE.parents[3]
_ROOT_ENV = _REPO_ROOT / ".env"

_candidate_envs: list[str] = []
if _ROOT_ENV.exists():
    _candidate_envs.append(str(_ROOT_ENV))

_FOUND_ENV = find_dotenv(usecwd=True)
if _FOUND_ENV and _FOUND_ENV not in _candidate_envs:
    _candidate_envs.append(_FOUND_ENV)

for _env_path in _candidate_envs:
    load_dotenv(dotenv_path=_env_path, override=False)


class Settings(BaseSettings):
    """Application settings.

    Values are loaded from the environment with sensible defaults.  Any
    attribute defined here can be overridden by setting the corresponding
    environment variable.
    """

    model_config = SettingsConfigDict(
        env_file=tuple(_candidate_envs) if _candidate_envs else (".env",),
        case_sensitive=True,
        extra="allow",
    )

    PROJECT_NAME: str = "ReceiptGold Functions"
    ENVIRONMENT: str = Field(default="development")

    # Document store
    DATABASE_URL: Optional[str] = Field(default=None)
    DB_DEV_FALLBACK_SQLITE: bool = Field(default=False)

    # Redis / Dramatiq
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    DRAMATIQ_BROKER_URL: Optional[str] = Field(default=None)

    # Auth
    # Disable auth bypass by default.  Override in .env only when running locally.
    DEV_AUTH_BYPASS: bool = Field(default=False)
    FIREBASE_PROJECT_ID: Optional[str] = Field(default=None)
    FIREBASE_JWKS_URL: str = Field(
        default="https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com"
    )
    # Shared secret the platform sends on auth/receipt trigger deliveries.
    TRIGGER_SHARED_SECRET: Optional[str] = Field(default=None)

    # RevenueCat
    REVENUECAT_API_KEY: Optional[str] = Field(default=None)
    REVENUECAT_API_URL: str = Field(default="https://api.revenuecat.com/v1")
    # Comma separated list of accepted Authorization header values
    REVENUECAT_WEBHOOK_AUTH: Optional[str] = Field(default=None)

    # Apple DeviceCheck
    DEVICE_CHECK_ENABLED: bool = Field(default=False)
    DEVICE_CHECK_API_URL: str = Field(default="https://api.devicecheck.apple.com/v1")
    APPLE_DEVICE_CHECK_KEY_ID: Optional[str] = Field(default=None)
    APPLE_TEAM_ID: Optional[str] = Field(default=None)
    APPLE_DEVICE_CHECK_PRIVATE_KEY: Optional[str] = Field(default=None)

    # Receipt limits per tier (-1 => unlimited)
    TRIAL_TIER_MAX_RECEIPTS: int = Field(default=50)
    STARTER_TIER_MAX_RECEIPTS: int = Field(default=50)
    GROWTH_TIER_MAX_RECEIPTS: int = Field(default=150)
    PROFESSIONAL_TIER_MAX_RECEIPTS: int = Field(default=-1)
    TEAMMATE_TIER_MAX_RECEIPTS: int = Field(default=-1)
    ENFORCE_RECEIPT_LIMITS: bool = Field(default=False)

    # Lifecycle windows
    TRIAL_DAYS: int = Field(default=7)
    ACCOUNT_RECOVERY_DAYS: int = Field(default=30)
    PURGE_BATCH_LIMIT: int = Field(default=100)
    SWEEP_PAGE_SIZE: int = Field(default=100)
    CONNECTION_HEALTH_INTERVAL_HOURS: int = Field(default=6)
    CONNECTION_STALE_SYNC_HOURS: int = Field(default=48)
    TRANSFER_ABORT_ON_PARTIAL_FAILURE: bool = Field(default=False)

    # Receipt extraction service (opaque OCR collaborator)
    OCR_SERVICE_URL: Optional[str] = Field(default=None)

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_PROFILES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_RELEASE: Optional[str] = Field(default=None)


# Instantiate global settings
settings = Settings()


def get_webhook_auth_list() -> list[str]:
    """Return the accepted RevenueCat ``Authorization`` header values."""
    raw = settings.REVENUECAT_WEBHOOK_AUTH or ""
    return [s.strip() for s in raw.split(",") if s.strip()]


@dataclass(frozen=True)
class DeviceCheckCredentials:
    key_id: str
    team_id: str
    private_key: str
    api_url: str


@dataclass(frozen=True)
class ServiceConfig:
    """Immutable view of everything the services need."""

    catalog: "TierCatalog"
    device_check_enabled: bool = False
    device_check: Optional[DeviceCheckCredentials] = None
    revenuecat_api_key: Optional[str] = None
    revenuecat_api_url: str = "https://api.revenuecat.com/v1"
    enforce_receipt_limits: bool = False
    transfer_abort_on_partial_failure: bool = False
    trial_period: dt.timedelta = field(default_factory=lambda: dt.timedelta(days=7))
    recovery_window: dt.timedelta = field(default_factory=lambda: dt.timedelta(days=30))
    purge_batch_limit: int = 100
    sweep_page_size: int = 100
    health_check_interval: dt.timedelta = field(default_factory=lambda: dt.timedelta(hours=6))
    stale_sync_after: dt.timedelta = field(default_factory=lambda: dt.timedelta(hours=48))
    ocr_service_url: Optional[str] = None
    anonymous_id_prefixes: Tuple[str, ...] = ("$RCAnonymousID:",)


def build_service_config(source: Settings) -> ServiceConfig:
    from receiptgold.services.tier_catalog import build_tier_catalog

    credentials = None
    if source.APPLE_DEVICE_CHECK_KEY_ID and source.APPLE_TEAM_ID and source.APPLE_DEVICE_CHECK_PRIVATE_KEY:
        credentials = DeviceCheckCredentials(
            key_id=source.APPLE_DEVICE_CHECK_KEY_ID,
            team_id=source.APPLE_TEAM_ID,
            # Keys pasted into env files usually carry literal "\n" sequences
            private_key=source.APPLE_DEVICE_CHECK_PRIVATE_KEY.replace("\\n", "\n"),
            api_url=source.DEVICE_CHECK_API_URL.rstrip("/"),
        )
    return ServiceConfig(
        catalog=build_tier_catalog(source),
        device_check_enabled=source.DEVICE_CHECK_ENABLED,
        device_check=credentials,
        revenuecat_api_key=source.REVENUECAT_API_KEY,
        revenuecat_api_url=source.REVENUECAT_API_URL.rstrip("/"),
        enforce_receipt_limits=source.ENFORCE_RECEIPT_LIMITS,
        transfer_abort_on_partial_failure=source.TRANSFER_ABORT_ON_PARTIAL_FAILURE,
        trial_period=dt.timedelta(days=source.TRIAL_DAYS),
        recovery_window=dt.timedelta(days=source.ACCOUNT_RECOVERY_DAYS),
        purge_batch_limit=source.PURGE_BATCH_LIMIT,
        sweep_page_size=source.SWEEP_PAGE_SIZE,
        health_check_interval=dt.timedelta(hours=source.CONNECTION_HEALTH_INTERVAL_HOURS),
        stale_sync_after=dt.timedelta(hours=source.CONNECTION_STALE_SYNC_HOURS),
        ocr_service_url=source.OCR_SERVICE_URL or os.getenv("OCR_SERVICE_URL"),
    )


@lru_cache(maxsize=1)
def get_service_config() -> ServiceConfig:
    return build_service_config(settings)
