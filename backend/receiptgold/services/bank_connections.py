"""Bank connection (Plaid item) health.

Two entry points update ``plaid_items`` records:

* ``BankConnectionMonitor.run_health_check`` is the 6-hourly sweep that
  flags connections that stopped syncing;
* ``BankWebhookDispatcher.dispatch`` applies the provider's item webhooks.

Only an explicit ``LOGIN_REPAIRED`` signal returns a connection to
``connected``.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from receiptgold.core.config import ServiceConfig
from receiptgold.core.observability import sentry_metric_inc
from receiptgold.models.collections import PLAID_ITEMS
from receiptgold.models.enums import ConnectionStatus, NotificationType
from receiptgold.models.schemas import BankWebhook
from receiptgold.services.document_store import DocumentSnapshot, DocumentStore
from receiptgold.services.notifications import NotificationService
from receiptgold.services.subscriptions import SweepResult
from receiptgold.utils.helpers import parse_iso_datetime, utcnow

logger = logging.getLogger(__name__)

DEFAULT_INSTITUTION = "Your Bank"
HEALTH_CHECK_ERROR = {
    "errorType": "CONNECTION_HEALTH_CHECK",
    "errorCode": "HEALTH_CHECK_FAILED",
    "displayMessage": "Connection may need attention. Please reconnect to ensure continued service.",
    "suggestedAction": "REAUTH",
}
# Alarms that a later repair clears
REPAIRABLE_ALARMS = (NotificationType.REAUTH_REQUIRED, NotificationType.PENDING_EXPIRATION)


def needs_repair(item: Dict[str, Any], now: dt.datetime, stale_after: dt.timedelta) -> bool:
    if item.get("status") == ConnectionStatus.ERROR.value or not item.get("accessToken"):
        return True
    last_sync = parse_iso_datetime(item.get("lastSyncAt"))
    if last_sync is not None and last_sync < now - stale_after:
        return True
    error = item.get("error")
    return isinstance(error, dict) and bool(error.get("errorType"))


class BankConnectionMonitor:
    def __init__(
        self,
        store: DocumentStore,
        config: ServiceConfig,
        notifications: Optional[NotificationService] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.notifications = notifications or NotificationService(store)

    async def run_health_check(self, now: Optional[dt.datetime] = None, start_after: Optional[str] = None) -> SweepResult:
        now = now or utcnow()
        page_size = self.config.sweep_page_size
        page = await (
            self.store.query(PLAID_ITEMS)
            .where("active", "==", True)
            .where("status", "in", [ConnectionStatus.CONNECTED, ConnectionStatus.STALE])
            .start_after(start_after)
            .limit(page_size)
            .get()
        )
        result = SweepResult()
        checked_before = now - self.config.health_check_interval
        for snap in page:
            result.processed += 1
            last_check = parse_iso_datetime(snap.get("lastHealthCheck"))
            if last_check is not None and last_check > checked_before:
                result.skipped += 1
                continue
            try:
                if await self._check_item(snap, now):
                    result.updated += 1
            except Exception as exc:
                logger.exception("[bank-health] check failed for item=%s", snap.get("itemId") or snap.id)
                result.failed += 1
                result.errors.append(f"{snap.id}: {exc}")
        if len(page) >= page_size:
            result.next_cursor = page[-1].id
        sentry_metric_inc("bank.health_check.flagged", value=result.updated)
        logger.info(
            "[bank-health] processed=%d flagged=%d skipped=%d failed=%d",
            result.processed,
            result.updated,
            result.skipped,
            result.failed,
        )
        return result

    async def _check_item(self, snap: DocumentSnapshot, now: dt.datetime) -> bool:
        if not needs_repair(snap.data, now, self.config.stale_sync_after):
            await self.store.update(PLAID_ITEMS, snap.id, {"lastHealthCheck": now})
            return False

        institution = snap.get("institutionName") or DEFAULT_INSTITUTION
        item_id = snap.get("itemId") or snap.id
        user_id = snap.get("userId")
        logger.warning("[bank-health] connection needs repair: %s item=%s", institution, item_id)
        await self.store.update(
            PLAID_ITEMS,
            snap.id,
            {
                "lastHealthCheck": now,
                "status": ConnectionStatus.ERROR,
                "needsReauth": True,
                "error": HEALTH_CHECK_ERROR,
                "updatedAt": now,
            },
        )
        if await self.notifications.has_undismissed(user_id, item_id, NotificationType.REAUTH_REQUIRED):
            logger.info("[bank-health] reauth notification already pending for item=%s", item_id)
        else:
            await self.notifications.create_connection_notification(
                user_id, item_id, institution, NotificationType.REAUTH_REQUIRED, "HEALTH_CHECK", now
            )
        return True


@dataclass
class ItemTransition:
    fields: Dict[str, Any]
    notification: Optional[NotificationType] = None


def item_transition(webhook: BankWebhook) -> Optional[ItemTransition]:
    """Record changes for an ``ITEM`` webhook code; ``None`` for codes that are only logged."""
    code = webhook.webhook_code
    if code == "PENDING_EXPIRATION":
        return ItemTransition(
            {"status": ConnectionStatus.PENDING_EXPIRATION, "needsReauth": True},
            NotificationType.PENDING_EXPIRATION,
        )
    if code == "PENDING_DISCONNECT":
        return ItemTransition(
            {"status": ConnectionStatus.PENDING_DISCONNECT, "needsReauth": True},
            NotificationType.PENDING_EXPIRATION,
        )
    if code == "USER_PERMISSION_REVOKED":
        return ItemTransition(
            {"status": ConnectionStatus.PERMISSION_REVOKED, "active": False, "needsReauth": True},
            NotificationType.PERMISSION_REVOKED,
        )
    if code == "ERROR":
        error = webhook.error
        return ItemTransition(
            {
                "status": ConnectionStatus.ERROR,
                "active": False,
                "needsReauth": True,
                "error": {
                    "errorType": (error.error_type if error else None) or "ITEM_ERROR",
                    "errorCode": (error.error_code if error else None) or "UNKNOWN",
                    "displayMessage": (error.display_message if error else None) or "Connection error occurred",
                    "suggestedAction": "REAUTH",
                },
            },
            NotificationType.REAUTH_REQUIRED,
        )
    if code == "NEW_ACCOUNTS_AVAILABLE":
        return ItemTransition({"hasNewAccounts": True}, NotificationType.NEW_ACCOUNTS_AVAILABLE)
    if code == "LOGIN_REPAIRED":
        return ItemTransition(
            {"status": ConnectionStatus.CONNECTED, "active": True, "needsReauth": False, "error": None},
            NotificationType.LOGIN_REPAIRED,
        )
    return None


class BankWebhookDispatcher:
    ACKNOWLEDGED_TYPES = {"TRANSACTIONS", "AUTH", "ACCOUNTS", "LIABILITIES"}

    def __init__(self, store: DocumentStore, notifications: Optional[NotificationService] = None) -> None:
        self.store = store
        self.notifications = notifications or NotificationService(store)

    async def dispatch(self, webhook: BankWebhook, now: Optional[dt.datetime] = None) -> str:
        """Apply one webhook; returns what was done for the response body."""
        now = now or utcnow()
        sentry_metric_inc("bank.webhook.received", tags={"type": webhook.webhook_type})
        if webhook.webhook_type == "ITEM":
            return await self.handle_item(webhook, now)
        if webhook.webhook_type in self.ACKNOWLEDGED_TYPES:
            logger.info("[bank-webhook] acknowledged %s %s item=%s", webhook.webhook_type, webhook.webhook_code, webhook.item_id)
            return "acknowledged"
        logger.info("[bank-webhook] unhandled webhook type %s", webhook.webhook_type)
        return "ignored"

    async def handle_item(self, webhook: BankWebhook, now: dt.datetime) -> str:
        if not webhook.item_id:
            logger.error("[bank-webhook] ITEM %s without item_id", webhook.webhook_code)
            return "ignored"
        item = await self.store.query(PLAID_ITEMS).where("itemId", "==", webhook.item_id).first()
        if item is None:
            logger.error("[bank-webhook] no plaid_items entry for item_id=%s", webhook.item_id)
            return "unknown_item"

        user_id = item.get("userId")
        institution = item.get("institutionName") or DEFAULT_INSTITUTION
        transition = item_transition(webhook)
        fields: Dict[str, Any] = {"lastWebhookCode": webhook.webhook_code, "updatedAt": now}
        if transition is None:
            logger.info("[bank-webhook] unhandled item webhook code %s", webhook.webhook_code)
        else:
            fields.update(transition.fields)
        await self.store.update(PLAID_ITEMS, item.id, fields)
        logger.info("[bank-webhook] item=%s code=%s status=%s", webhook.item_id, webhook.webhook_code, fields.get("status"))

        if transition is None or transition.notification is None:
            return "updated"
        kind = transition.notification
        if kind in REPAIRABLE_ALARMS and await self.notifications.has_undismissed(user_id, webhook.item_id, kind):
            logger.info("[bank-webhook] %s already pending for item=%s", kind.value, webhook.item_id)
        else:
            await self.notifications.create_connection_notification(
                user_id, webhook.item_id, institution, kind, webhook.webhook_code, now
            )
        if webhook.webhook_code == "LOGIN_REPAIRED":
            await self.notifications.dismiss_for_item(user_id, webhook.item_id, REPAIRABLE_ALARMS, now)
        return "updated"


__all__ = [
    "BankConnectionMonitor",
    "BankWebhookDispatcher",
    "HEALTH_CHECK_ERROR",
    "ItemTransition",
    "item_transition",
    "needs_repair",
]
