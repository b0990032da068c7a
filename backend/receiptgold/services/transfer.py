"""Identity transfer: move a user's data from one user id to another.

Used when the billing provider reports that a subscription moved between
app-user identities, and (in its recovery form) when a soft-deleted
account is reclaimed by a new auth user with the same email.

Every collection in the per-user registry declares how it moves
(``TransferMode``).  Writes for each collection are staged into their own
batch; a collection whose staging fails is left out and reported as a
warning, and everything that staged successfully is committed in a single
atomic batch.  With ``transfer_abort_on_partial_failure`` set, any warning
aborts the transfer before commit instead.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from receiptgold.core.config import ServiceConfig
from receiptgold.core.errors import TransferIncompleteError
from receiptgold.core.observability import sentry_metric_inc
from receiptgold.models.collections import (
    DELETED_ACCOUNTS,
    EVENTS,
    SUBSCRIPTIONS,
    USERS,
    CollectionSpec,
    soft_delete_collections,
    transferable_collections,
)
from receiptgold.models.enums import DeletedAccountStatus, DocumentKey, SubscriptionStatus, Tier, TransferMode
from receiptgold.models.schemas import HistoryEntry, TransferEvent
from receiptgold.services.document_store import DocumentSnapshot, DocumentStore, WriteBatch, new_document_id
from receiptgold.services.effects import EffectQueue
from receiptgold.services.notifications import NotificationService
from receiptgold.services.user_data import find_user_documents
from receiptgold.utils.helpers import is_usage_doc_id, utcnow

logger = logging.getLogger(__name__)

TRANSFERRED = SubscriptionStatus.TRANSFERRED.value
SOFT_DELETED = SubscriptionStatus.SOFT_DELETED.value


@dataclass
class TransferResult:
    original_user_id: str
    new_user_id: str
    staged: Dict[str, int] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    committed: bool = False


def pick_identity(ids: List[Optional[str]], anonymous_prefixes: tuple) -> Optional[str]:
    """First id in ``ids`` that is not an anonymous billing alias."""
    for candidate in ids:
        if candidate and not candidate.startswith(anonymous_prefixes):
            return candidate
    return None


def business_key(data: Dict[str, Any]) -> str:
    return "{}_{}_{}".format(
        data.get("name") or "unnamed",
        data.get("address") or "no-address",
        data.get("ein") or "no-ein",
    )


def derive_doc_id(doc_id: str, original_user_id: str, new_user_id: str) -> str:
    prefix = f"{original_user_id}_"
    if doc_id.startswith(prefix):
        return f"{new_user_id}_{doc_id[len(prefix):]}"
    return doc_id.replace(original_user_id, new_user_id, 1)


class TransferEngine:
    def __init__(
        self,
        store: DocumentStore,
        config: ServiceConfig,
        notifications: Optional[NotificationService] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.notifications = notifications or NotificationService(store)

    # ------------------------------------------------------------------
    # Billing provider transfer

    async def handle_transfer_event(self, event: TransferEvent, now: Optional[dt.datetime] = None) -> Optional[TransferResult]:
        prefixes = self.config.anonymous_id_prefixes
        original_user_id = pick_identity(event.data.transferred_from, prefixes)
        new_user_id = pick_identity(event.data.transferred_to, prefixes)
        if not original_user_id or not new_user_id:
            logger.error(
                "[transfer] event %s has no usable user ids (from=%s to=%s); skipping",
                event.id,
                event.data.transferred_from,
                event.data.transferred_to,
            )
            return None
        return await self.transfer(original_user_id, new_user_id, event.data.model_dump(mode="json"), now=now)

    async def transfer(
        self,
        original_user_id: str,
        new_user_id: str,
        payload: Optional[Dict[str, Any]] = None,
        now: Optional[dt.datetime] = None,
    ) -> TransferResult:
        now = now or utcnow()
        result = TransferResult(original_user_id, new_user_id)
        if original_user_id == new_user_id:
            logger.warning("[transfer] source and target are both %s; nothing to do", new_user_id)
            return result

        logger.info("[transfer] starting %s -> %s", original_user_id, new_user_id)
        audit = EffectQueue()
        audit.add(
            "transfer_audit",
            self.store.add,
            EVENTS,
            {
                "type": "account_transfer",
                "userId": original_user_id,
                "originalUserId": original_user_id,
                "newUserId": new_user_id,
                "eventData": payload or {},
                "processedAt": now,
                "source": "revenuecat_transfer",
            },
        )
        await audit.dispatch()

        batch = self.store.batch()
        for spec in transferable_collections():
            staged = self.store.batch()
            try:
                count = await self._stage_collection(staged, spec, original_user_id, new_user_id, now)
            except Exception as exc:
                logger.exception("[transfer] staging %s failed", spec.name)
                result.warnings.append(f"{spec.name} transfer failed: {exc}")
                continue
            result.staged[spec.name] = count
            batch.extend(staged)

        if result.warnings and self.config.transfer_abort_on_partial_failure:
            logger.error("[transfer] aborting %s -> %s: %s", original_user_id, new_user_id, result.warnings)
            raise TransferIncompleteError(result.warnings)

        await batch.commit()
        result.committed = True
        if result.warnings:
            logger.warning("[transfer] completed with warnings %s -> %s: %s", original_user_id, new_user_id, result.warnings)
        else:
            logger.info("[transfer] completed %s -> %s %s", original_user_id, new_user_id, result.staged)
        sentry_metric_inc("transfer.completed", tags={"warnings": bool(result.warnings)})

        effects = EffectQueue()
        effects.add(
            "transfer_notification",
            self.notifications.notify_transfer_complete,
            new_user_id,
            original_user_id,
            result.warnings,
        )
        await effects.dispatch()
        return result

    async def _stage_collection(
        self,
        batch: WriteBatch,
        spec: CollectionSpec,
        original_user_id: str,
        new_user_id: str,
        now: dt.datetime,
    ) -> int:
        docs = [
            snap
            for snap in await find_user_documents(self.store, spec, original_user_id, include_holder=False)
            # Already moved by an earlier delivery of the same transfer
            if not (snap.get("status") == TRANSFERRED and snap.get("transferredTo") == new_user_id)
        ]
        if not docs:
            return 0

        mode = spec.transfer
        if mode is TransferMode.REPOINT:
            for snap in docs:
                batch.update(
                    spec.name,
                    snap.id,
                    {spec.user_field: new_user_id, "transferredFrom": original_user_id, "updatedAt": now},
                )
            return len(docs)

        existing_keys: set = set()
        if mode is TransferMode.COPY_DEDUPED:
            owned = await find_user_documents(self.store, spec, new_user_id, include_holder=False)
            existing_keys = {business_key(snap.data) for snap in owned}

        copied = 0
        for snap in docs:
            marker = {"status": TRANSFERRED, "transferredTo": new_user_id, "updatedAt": now}
            if mode is TransferMode.COPY_DEDUPED and business_key(snap.data) in existing_keys:
                logger.info("[transfer] skipping duplicate %s %s", spec.name, business_key(snap.data))
                batch.update(spec.name, snap.id, marker)
                continue

            data = dict(snap.data)
            data.update({spec.user_field: new_user_id, "transferredFrom": original_user_id, "updatedAt": now})
            merge = False
            if mode is TransferMode.COPY_USER_ID:
                target_id, merge = new_user_id, True
            elif mode is TransferMode.COPY_DERIVED_ID:
                target_id = derive_doc_id(snap.id, original_user_id, new_user_id)
            else:
                target_id = new_document_id()
                data["originalDocumentId"] = snap.id
            if isinstance(data.get("history"), list):
                entry = HistoryEntry(
                    tier=data.get("currentTier") if data.get("currentTier") in {t.value for t in Tier} else Tier.TRIAL,
                    startDate=now,
                    reason="account_transfer",
                )
                data["history"] = list(data["history"]) + [entry.to_record()]
            batch.set(spec.name, target_id, data, merge=merge)
            batch.update(spec.name, snap.id, marker)
            copied += 1
            if mode is TransferMode.COPY_DEDUPED:
                existing_keys.add(business_key(snap.data))
        return copied

    # ------------------------------------------------------------------
    # Recovery of a soft-deleted account

    async def recover_account(
        self,
        record: DocumentSnapshot,
        new_user_id: str,
        now: Optional[dt.datetime] = None,
    ) -> Dict[str, int]:
        """Restore a soft-deleted account under ``new_user_id`` in one batch.

        The backed-up user and subscription documents are written under the
        new id, soft-deleted per-user documents are reactivated and
        repointed, and the deleted-account record is closed.
        """
        now = now or utcnow()
        original_user_id = record.id
        original = record.get("originalData") or {}
        batch = self.store.batch()
        counts: Dict[str, int] = {}

        backups = {USERS: original.get("user"), SUBSCRIPTIONS: original.get("subscription")}
        for collection, backup in backups.items():
            if not backup:
                continue
            restored = dict(backup)
            restored.update(
                {
                    "userId": new_user_id,
                    "recoveredFrom": original_user_id,
                    "recoveredAt": now,
                    "updatedAt": now,
                }
            )
            batch.set(collection, new_user_id, restored)
            counts[collection] = 1

        for spec in soft_delete_collections():
            docs = await find_user_documents(self.store, spec, original_user_id)
            restored_count = 0
            for snap in docs:
                if snap.get("status") != SOFT_DELETED:
                    continue
                if DocumentKey.DOC_ID in spec.keys and snap.id == original_user_id:
                    # Doc-id keyed documents were restored from backup under the new id
                    batch.delete(spec.name, snap.id)
                    continue
                fields = {
                    "status": snap.get("preDeletionStatus"),
                    "preDeletionStatus": None,
                    "deletedAt": None,
                    "permanentDeletionDate": None,
                    "recoveredFrom": original_user_id,
                    "recoveredAt": now,
                    "updatedAt": now,
                }
                if snap.get(spec.user_field) == original_user_id:
                    fields[spec.user_field] = new_user_id
                if spec.holder_field and snap.get(spec.holder_field) == original_user_id:
                    fields[spec.holder_field] = new_user_id
                if DocumentKey.DOC_ID_PREFIX in spec.keys and is_usage_doc_id(snap.id, original_user_id):
                    moved = dict(snap.data)
                    moved.update(fields)
                    batch.set(spec.name, derive_doc_id(snap.id, original_user_id, new_user_id), moved)
                    batch.delete(spec.name, snap.id)
                else:
                    batch.update(spec.name, snap.id, fields)
                restored_count += 1
            if restored_count:
                counts[spec.name] = counts.get(spec.name, 0) + restored_count

        batch.update(
            DELETED_ACCOUNTS,
            original_user_id,
            {
                "status": DeletedAccountStatus.RECOVERED,
                "recoverable": False,
                "recoveredAt": now,
                "recoveredBy": new_user_id,
            },
        )
        await batch.commit()
        logger.info("[recovery] restored %s as %s %s", original_user_id, new_user_id, counts)
        return counts


__all__ = [
    "TransferEngine",
    "TransferResult",
    "business_key",
    "derive_doc_id",
    "pick_identity",
]
