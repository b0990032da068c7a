"""Notification records.

Only the decision of *what* to notify lives here: documents are written to
``connection_notifications`` (bank link state) and ``user_notifications``
(push delivery queue).  Delivery itself is handled elsewhere.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from receiptgold.models.collections import CONNECTION_NOTIFICATIONS, USER_NOTIFICATIONS
from receiptgold.models.enums import NotificationPriority, NotificationType
from receiptgold.services.document_store import DocumentStore
from receiptgold.utils.helpers import utcnow

logger = logging.getLogger(__name__)

LOGIN_REPAIRED_TTL = dt.timedelta(days=7)

# Connection notifications that also go out as push notifications
PUSH_TYPES = {NotificationType.REAUTH_REQUIRED, NotificationType.PENDING_EXPIRATION}


@dataclass(frozen=True)
class NotificationContent:
    title: str
    message: str
    action_required: bool
    priority: NotificationPriority


def connection_notification_content(kind: NotificationType, institution_name: str) -> NotificationContent:
    if kind is NotificationType.REAUTH_REQUIRED:
        return NotificationContent(
            "Bank Connection Issue",
            f"{institution_name} connection stopped working. Tap to reconnect and restore receipt tracking.",
            True,
            NotificationPriority.HIGH,
        )
    if kind is NotificationType.PENDING_EXPIRATION:
        return NotificationContent(
            "Connection Expiring Soon",
            f"{institution_name} connection expires in 7 days. Reconnect now to avoid interruption.",
            True,
            NotificationPriority.MEDIUM,
        )
    if kind is NotificationType.PERMISSION_REVOKED:
        return NotificationContent(
            "Bank Permissions Revoked",
            f"{institution_name} access was revoked. Reconnect to restore automatic receipt tracking.",
            True,
            NotificationPriority.HIGH,
        )
    if kind is NotificationType.LOGIN_REPAIRED:
        return NotificationContent(
            "Connection Restored",
            f"Great news! Your {institution_name} connection is working again. No action needed.",
            False,
            NotificationPriority.LOW,
        )
    return NotificationContent(
        "New Accounts Found",
        f"{institution_name} has new accounts available. Connect them to track more receipts.",
        False,
        NotificationPriority.LOW,
    )


class NotificationService:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def create_connection_notification(
        self,
        user_id: str,
        item_id: str,
        institution_name: str,
        kind: NotificationType,
        source_code: str,
        now: Optional[dt.datetime] = None,
    ) -> str:
        now = now or utcnow()
        content = connection_notification_content(kind, institution_name)
        notification_id = await self.store.add(
            CONNECTION_NOTIFICATIONS,
            {
                "userId": user_id,
                "itemId": item_id,
                "institutionName": institution_name,
                "type": kind,
                "title": content.title,
                "message": content.message,
                "actionRequired": content.action_required,
                "priority": content.priority,
                "dismissed": False,
                "createdAt": now,
                "expiresAt": now + LOGIN_REPAIRED_TTL if kind is NotificationType.LOGIN_REPAIRED else None,
            },
        )
        if kind in PUSH_TYPES:
            await self.create_user_notification(
                user_id,
                content.title,
                content.message,
                {
                    "type": "bank_connection",
                    "connectionType": kind.value,
                    "institutionName": institution_name,
                    "itemId": item_id,
                    "webhookCode": source_code,
                    "actionRequired": content.action_required,
                    "navigationScreen": "Settings",
                },
                priority=content.priority,
                now=now,
            )
        logger.info("[notifications] %s created for user=%s item=%s", kind.value, user_id, item_id)
        return notification_id

    async def has_undismissed(self, user_id: str, item_id: str, kind: NotificationType) -> bool:
        found = await (
            self.store.query(CONNECTION_NOTIFICATIONS)
            .where("userId", "==", user_id)
            .where("itemId", "==", item_id)
            .where("type", "==", kind)
            .where("dismissed", "==", False)
            .first()
        )
        return found is not None

    async def dismiss_for_item(
        self,
        user_id: str,
        item_id: str,
        kinds: Iterable[NotificationType],
        now: Optional[dt.datetime] = None,
    ) -> int:
        wanted = {k.value for k in kinds}
        snapshots = await (
            self.store.query(CONNECTION_NOTIFICATIONS)
            .where("userId", "==", user_id)
            .where("itemId", "==", item_id)
            .where("dismissed", "==", False)
            .get()
        )
        batch = self.store.batch()
        for snap in snapshots:
            if snap.get("type") in wanted:
                batch.update(CONNECTION_NOTIFICATIONS, snap.id, {"dismissed": True, "updatedAt": now or utcnow()})
        count = len(batch)
        await batch.commit()
        if count:
            logger.info("[notifications] dismissed %d stale notification(s) for item=%s", count, item_id)
        return count

    async def create_user_notification(
        self,
        user_id: str,
        title: str,
        body: str,
        data: Dict[str, Any],
        *,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        kind: Optional[str] = None,
        now: Optional[dt.datetime] = None,
    ) -> str:
        return await self.store.add(
            USER_NOTIFICATIONS,
            {
                "userId": user_id,
                "type": kind or data.get("type"),
                "title": title,
                "body": body,
                "data": data,
                "createdAt": now or utcnow(),
                "isRead": False,
                "priority": priority,
            },
        )

    async def notify_billing_issue(self, user_id: str) -> str:
        return await self.create_user_notification(
            user_id,
            "Payment Issue",
            "We couldn't process your latest subscription payment. Update your payment method to keep your plan.",
            {"type": "billing_issue", "actionRequired": True, "navigationScreen": "Subscription"},
            priority=NotificationPriority.HIGH,
        )

    async def notify_transfer_complete(
        self, new_user_id: str, original_user_id: str, warnings: Optional[List[str]] = None
    ) -> str:
        return await self.create_user_notification(
            new_user_id,
            "Account Transfer Complete",
            "Your subscription and data have been successfully transferred to your new account.",
            {
                "type": "account_transfer_complete",
                "originalUserId": original_user_id,
                "transferErrors": list(warnings) if warnings else None,
            },
            priority=NotificationPriority.LOW,
        )


__all__ = [
    "LOGIN_REPAIRED_TTL",
    "NotificationContent",
    "NotificationService",
    "connection_notification_content",
]
