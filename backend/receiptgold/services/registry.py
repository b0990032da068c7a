"""Wiring for the service layer.

The API and the worker both build their services through ``build_services``
so every entry point shares one notification service, one reconciler and
one entitlement resolver per store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from receiptgold.core.config import ServiceConfig, get_service_config
from receiptgold.core.database import create_engine, create_session_factory, init_db
from receiptgold.services.bank_connections import BankConnectionMonitor, BankWebhookDispatcher
from receiptgold.services.device_gate import DeviceGate
from receiptgold.services.document_store import DocumentStore
from receiptgold.services.entitlements import EntitlementResolver, RevenueCatClient
from receiptgold.services.lifecycle import AccountLifecycleManager
from receiptgold.services.notifications import NotificationService
from receiptgold.services.receipts import ReceiptUsageService
from receiptgold.services.subscriptions import SubscriptionReconciler
from receiptgold.services.team_access import TeamAccessService
from receiptgold.services.transfer import TransferEngine

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: DocumentStore
    config: ServiceConfig
    notifications: NotificationService
    reconciler: SubscriptionReconciler
    transfer: TransferEngine
    lifecycle: AccountLifecycleManager
    device_gate: DeviceGate
    bank_monitor: BankConnectionMonitor
    bank_webhooks: BankWebhookDispatcher
    receipts: ReceiptUsageService
    team_access: TeamAccessService


def build_resolver(config: ServiceConfig) -> Optional[EntitlementResolver]:
    if not config.revenuecat_api_key:
        logger.info("[services] REVENUECAT_API_KEY not set; provider lookups disabled")
        return None
    return EntitlementResolver(RevenueCatClient(config.revenuecat_api_key, config.revenuecat_api_url))


def build_services(store: DocumentStore, config: ServiceConfig, resolver: Optional[EntitlementResolver] = None) -> Services:
    if resolver is None:
        resolver = build_resolver(config)
    notifications = NotificationService(store)
    team_access = TeamAccessService(store)
    reconciler = SubscriptionReconciler(
        store, config, resolver=resolver, notifications=notifications, team_access=team_access
    )
    transfer = TransferEngine(store, config, notifications=notifications)
    return Services(
        store=store,
        config=config,
        notifications=notifications,
        reconciler=reconciler,
        transfer=transfer,
        lifecycle=AccountLifecycleManager(
            store, config, transfer_engine=transfer, reconciler=reconciler, resolver=resolver
        ),
        device_gate=DeviceGate(store, config),
        bank_monitor=BankConnectionMonitor(store, config, notifications=notifications),
        bank_webhooks=BankWebhookDispatcher(store, notifications=notifications),
        receipts=ReceiptUsageService(store, config),
        team_access=team_access,
    )


@asynccontextmanager
async def service_scope(
    db_url: Optional[str] = None,
    *,
    config: Optional[ServiceConfig] = None,
    pooled: bool = True,
) -> AsyncIterator[Services]:
    """Open the store, create the document table if needed and yield wired services.

    The engine is disposed on exit.
    """
    engine = create_engine(db_url, pooled=pooled)
    try:
        await init_db(engine)
        store = DocumentStore(create_session_factory(engine))
        yield build_services(store, config or get_service_config())
    finally:
        await engine.dispose()


__all__ = ["Services", "build_resolver", "build_services", "service_scope"]
