"""Account lifecycle: auth user creation, soft deletion, recovery and purge.

Per identity the states are ``active -> soft_deleted -> recovered | permanently_deleted``.
Deletion never removes data immediately; every per-user document is
stamped ``soft_deleted`` with a permanent deletion date and the user and
subscription documents are backed up into ``deletedAccounts/{uid}``.  A new
auth user with the same email inside the recovery window gets the old
account back; otherwise the daily purge removes it for good.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from receiptgold.core.config import ServiceConfig
from receiptgold.core.errors import NotFoundError
from receiptgold.core.observability import sentry_breadcrumb, sentry_metric_inc
from receiptgold.models.collections import (
    DELETED_ACCOUNTS,
    SUBSCRIPTIONS,
    TEAM_INVITATIONS,
    USAGE,
    USERS,
    purge_collections,
    soft_delete_collections,
)
from receiptgold.models.enums import DeletedAccountStatus, SubscriptionStatus, Tier
from receiptgold.models.schemas import AuthUserPayload
from receiptgold.services.device_gate import DeviceLedger
from receiptgold.services.document_store import DocumentSnapshot, DocumentStore
from receiptgold.services.effects import EffectQueue
from receiptgold.services.entitlements import EntitlementResolver
from receiptgold.services.subscriptions import SubscriptionReconciler, SweepResult
from receiptgold.services.transfer import TransferEngine
from receiptgold.services.user_data import find_user_documents
from receiptgold.services.users import build_user_profile, normalise_email
from receiptgold.utils.helpers import first_of_next_month, month_key, parse_iso_datetime, usage_doc_id, utcnow

logger = logging.getLogger(__name__)

SOFT_DELETED = SubscriptionStatus.SOFT_DELETED.value
_DELETION_FIELDS = ("preDeletionStatus", "deletedAt", "permanentDeletionDate")


@dataclass
class CreationResult:
    user_id: str
    outcome: str
    recovered_from: Optional[str] = None
    restored_from: Optional[str] = None


@dataclass
class DeletionResult:
    user_id: str
    soft_deleted: Dict[str, int] = field(default_factory=dict)
    already_deleted: bool = False


def _pre_deletion_copy(data: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Backup of a document as it looked before soft deletion."""
    if data is None:
        return None
    backup = dict(data)
    if backup.get("status") == SOFT_DELETED:
        backup["status"] = backup.get("preDeletionStatus")
    for key in _DELETION_FIELDS:
        backup.pop(key, None)
    if backup.get("status") is None:
        backup.pop("status", None)
    return backup


def had_active_subscription(subscription: Optional[Dict[str, Any]], now: dt.datetime) -> bool:
    if not subscription or subscription.get("status") != SubscriptionStatus.ACTIVE.value:
        return False
    if subscription.get("currentTier") in (None, Tier.TRIAL.value, Tier.TEAMMATE.value):
        return False
    period_end = parse_iso_datetime((subscription.get("billing") or {}).get("currentPeriodEnd"))
    return period_end is None or period_end > now


class AccountLifecycleManager:
    def __init__(
        self,
        store: DocumentStore,
        config: ServiceConfig,
        transfer_engine: Optional[TransferEngine] = None,
        reconciler: Optional[SubscriptionReconciler] = None,
        resolver: Optional[EntitlementResolver] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.transfer_engine = transfer_engine or TransferEngine(store, config)
        self.reconciler = reconciler or SubscriptionReconciler(store, config, resolver=resolver)
        self.resolver = resolver
        self.devices = DeviceLedger(store)

    # ------------------------------------------------------------------
    # Creation

    async def on_user_create(self, user: AuthUserPayload, now: Optional[dt.datetime] = None) -> CreationResult:
        now = now or utcnow()
        user_id = user.uid
        email = normalise_email(user.email)
        if await self.store.exists(USERS, user_id):
            logger.info("[lifecycle] user=%s already has a profile; nothing to do", user_id)
            return CreationResult(user_id, "exists")

        if email:
            record = await self.find_recoverable(email, now)
            if record is not None:
                logger.info("[lifecycle] recovering deleted account %s for new user=%s", record.id, user_id)
                await self.transfer_engine.recover_account(record, user_id, now)
                sentry_metric_inc("account.recovered")
                return CreationResult(user_id, "recovered", recovered_from=record.id)

        result = CreationResult(user_id, "account_holder")
        if email:
            result.restored_from = await self._restore_from_provider(user_id, email, now)

        await self.store.set(USERS, user_id, build_user_profile(user_id, user.email, user.displayName, now))

        invitation = None
        if email:
            invitation = await (
                self.store.query(TEAM_INVITATIONS)
                .where("inviteEmail", "==", email)
                .where("status", "in", ["pending", "accepted"])
                .first()
            )
        if invitation is not None:
            # Teammates inherit entitlements from their account holder and own no subscription
            limits = self.config.catalog.limits_snapshot(Tier.TEAMMATE)
            await self.store.set(
                USAGE,
                usage_doc_id(user_id, now),
                {
                    "userId": user_id,
                    "month": month_key(now),
                    "receiptsUploaded": 0,
                    "apiCalls": 0,
                    "reportsGenerated": 0,
                    "limits": limits,
                    "resetDate": first_of_next_month(now),
                    "createdAt": now,
                    "updatedAt": now,
                },
            )
            logger.info(
                "[lifecycle] user=%s joined as teammate of %s",
                user_id,
                invitation.get("accountHolderId"),
            )
            result.outcome = "teammate"
        else:
            logger.info("[lifecycle] account holder user=%s created; subscription arrives with first billing event", user_id)
        sentry_metric_inc("account.created", tags={"outcome": result.outcome})
        return result

    async def find_recoverable(self, email: str, now: dt.datetime) -> Optional[DocumentSnapshot]:
        """Most recently deleted account for ``email`` that can still be recovered."""
        candidates = await (
            self.store.query(DELETED_ACCOUNTS)
            .where("email", "==", normalise_email(email))
            .where("status", "==", DeletedAccountStatus.SOFT_DELETED)
            .get()
        )
        eligible = []
        for snap in candidates:
            deadline = parse_iso_datetime(snap.get("permanentDeletionDate"))
            if snap.get("recoverable") is True and deadline is not None and now < deadline:
                eligible.append(snap)
        if not eligible:
            return None
        return max(eligible, key=lambda snap: snap.get("deletedAt") or "")

    async def _restore_from_provider(self, user_id: str, email: str, now: dt.datetime) -> Optional[str]:
        """Re-apply an entitlement the provider still holds for this person.  Never raises."""
        if self.resolver is None:
            return None
        try:
            previous = await self.store.query(DELETED_ACCOUNTS).where("email", "==", email).get()
            for candidate in [user_id] + [snap.id for snap in previous if snap.id != user_id]:
                resolved = await self.resolver.resolve(candidate, now)
                if resolved.is_active:
                    await self.reconciler.restore_entitlement(user_id, resolved, candidate, now)
                    return candidate
        except Exception:
            logger.warning("[lifecycle] subscription restore lookup failed for user=%s", user_id, exc_info=True)
        return None

    # ------------------------------------------------------------------
    # Deletion

    async def on_user_delete(self, user: AuthUserPayload, now: Optional[dt.datetime] = None) -> DeletionResult:
        now = now or utcnow()
        user_id = user.uid
        result = DeletionResult(user_id)
        existing = await self.store.get(DELETED_ACCOUNTS, user_id)
        if existing and existing.get("status") == DeletedAccountStatus.SOFT_DELETED.value:
            logger.info("[lifecycle] user=%s already soft deleted", user_id)
            result.already_deleted = True
            return result

        user_doc = _pre_deletion_copy(await self.store.get(USERS, user_id))
        subscription = _pre_deletion_copy(await self.store.get(SUBSCRIPTIONS, user_id))
        purge_at = now + self.config.recovery_window
        sentry_breadcrumb("lifecycle", f"soft delete {user_id}")

        for spec in soft_delete_collections():
            docs = [
                snap
                for snap in await find_user_documents(self.store, spec, user_id)
                if snap.get("status") != SOFT_DELETED
            ]
            if not docs:
                continue
            batch = self.store.batch()
            for snap in docs:
                batch.update(
                    spec.name,
                    snap.id,
                    {
                        "status": SOFT_DELETED,
                        "preDeletionStatus": snap.get("status"),
                        "deletedAt": now,
                        "permanentDeletionDate": purge_at,
                    },
                )
            await batch.commit()
            result.soft_deleted[spec.name] = len(docs)

        paid = had_active_subscription(subscription, now)
        status = (subscription or {}).get("status") or "none"
        email = normalise_email(user.email) or normalise_email((user_doc or {}).get("email"))
        await self.store.set(
            DELETED_ACCOUNTS,
            user_id,
            {
                "userId": user_id,
                "email": email,
                "deletedAt": now,
                "permanentDeletionDate": purge_at,
                "status": DeletedAccountStatus.SOFT_DELETED,
                "recoverable": True,
                "originalData": {"user": user_doc, "subscription": subscription},
                "hadActiveSubscription": paid,
                "subscriptionStatus": status,
            },
        )

        effects = EffectQueue()
        effects.add("device_annotation", self.devices.annotate_account_deleted, user_id, paid, status, now)
        await effects.dispatch()
        sentry_metric_inc("account.soft_deleted")
        logger.info("[lifecycle] soft deleted user=%s %s; purge after %s", user_id, result.soft_deleted, purge_at)
        return result

    # ------------------------------------------------------------------
    # Purge

    async def purge_deleted_accounts(self, now: Optional[dt.datetime] = None) -> SweepResult:
        now = now or utcnow()
        due = await (
            self.store.query(DELETED_ACCOUNTS)
            .where("status", "==", DeletedAccountStatus.SOFT_DELETED)
            .where("permanentDeletionDate", "<=", now)
            .limit(self.config.purge_batch_limit)
            .get()
        )
        result = SweepResult()
        for record in due:
            result.processed += 1
            try:
                removed = await self._purge_account(record.id, now)
            except Exception as exc:
                logger.exception("[purge] failed for user=%s", record.id)
                result.failed += 1
                result.errors.append(f"{record.id}: {exc}")
                continue
            result.updated += 1
            logger.info("[purge] permanently deleted user=%s (%d documents)", record.id, removed)
        if len(due) >= self.config.purge_batch_limit:
            result.next_cursor = due[-1].id
        sentry_metric_inc("account.purge.run", value=result.updated)
        logger.info("[purge] processed=%d purged=%d failed=%d", result.processed, result.updated, result.failed)
        return result

    async def _purge_account(self, user_id: str, now: dt.datetime) -> int:
        removed = 0
        for spec in purge_collections():
            docs = await find_user_documents(self.store, spec, user_id)
            if not docs:
                continue
            removed += await self.store.delete_many(spec.name, [snap.id for snap in docs])
        await self.store.update(
            DELETED_ACCOUNTS,
            user_id,
            {
                "status": DeletedAccountStatus.PERMANENTLY_DELETED,
                "recoverable": False,
                "permanentlyDeletedAt": now,
                "originalData": None,
            },
        )
        return removed

    # ------------------------------------------------------------------
    # Manual recovery flag

    async def mark_account_recovered(self, email: str, new_user_id: str, now: Optional[dt.datetime] = None) -> str:
        now = now or utcnow()
        matches: List[DocumentSnapshot] = await (
            self.store.query(DELETED_ACCOUNTS)
            .where("email", "==", normalise_email(email))
            .where("status", "==", DeletedAccountStatus.SOFT_DELETED)
            .get()
        )
        if not matches:
            raise NotFoundError("No deleted account found for this email")
        record = max(matches, key=lambda snap: snap.get("deletedAt") or "")
        await self.store.update(
            DELETED_ACCOUNTS,
            record.id,
            {
                "status": DeletedAccountStatus.RECOVERED,
                "recoverable": False,
                "recoveredAt": now,
                "recoveredBy": new_user_id,
            },
        )
        logger.info("[lifecycle] deleted account %s marked recovered by %s", record.id, new_user_id)
        return record.id


__all__ = [
    "AccountLifecycleManager",
    "CreationResult",
    "DeletionResult",
    "had_active_subscription",
]
