"""Subscription state reconciliation.

Three independent triggers write the per-user subscription record:

* billing provider webhooks (``handle_event``) own tier, limits, features
  and history;
* the confirm-payment RPC (``confirm_payment``) owns billing period dates
  and status only, so it can unblock a user the moment a purchase clears;
* the hourly usage reset sweep (``reset_usage``) opens a fresh usage period
  on each billing anniversary.

Each writer goes through a narrow update type (``TierUpdate`` or
``BillingUpdate``) and touches only the fields it owns, so concurrent
deliveries for one user cannot combine into an inconsistent record.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from receiptgold.core.config import ServiceConfig
from receiptgold.core.errors import InternalError, PermissionDeniedError, ServiceError, UnauthenticatedError
from receiptgold.core.observability import sentry_breadcrumb, sentry_metric_inc
from receiptgold.models.collections import EVENTS, SUBSCRIPTIONS, USAGE
from receiptgold.models.enums import BillingEventType, SubscriptionStatus, Tier
from receiptgold.models.schemas import (
    BillingFields,
    BillingUpdate,
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    HistoryEntry,
    SubscriptionEvent,
    SubscriptionPayload,
    TierUpdate,
)
from receiptgold.services.document_store import DocumentSnapshot, DocumentStore, Transaction
from receiptgold.services.effects import EffectQueue
from receiptgold.services.entitlements import (
    EntitlementResolver,
    ResolvedEntitlement,
    first_active_subscription,
    resolve_from_subscriber,
)
from receiptgold.services.notifications import NotificationService
from receiptgold.services.team_access import TeamAccessService
from receiptgold.utils.helpers import (
    add_months,
    first_of_next_month,
    month_key,
    parse_iso_datetime,
    usage_doc_id,
    utcnow,
)

logger = logging.getLogger(__name__)

TERMINATING_EVENTS = {BillingEventType.CANCELLATION, BillingEventType.EXPIRATION}
TRIAL_UPGRADE_REASON = "upgraded_to_paid"


@dataclass
class ReconcileResult:
    user_id: Optional[str]
    event_type: BillingEventType
    tier: Optional[Tier] = None
    status: Optional[SubscriptionStatus] = None
    created: bool = False
    duplicate: bool = False
    skipped: Optional[str] = None


@dataclass
class SweepResult:
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    next_cursor: Optional[str] = None
    errors: List[str] = field(default_factory=list)


def _months_between(start: dt.datetime, later: dt.datetime) -> int:
    return (later.year - start.year) * 12 + (later.month - start.month)


def latest_reset_boundary(period_start: dt.datetime, now: dt.datetime) -> Optional[dt.datetime]:
    """Most recent monthly anniversary of ``period_start`` at or before ``now``.

    Anniversaries are always computed from ``period_start`` so day-of-month
    clamping (Jan 31 -> Feb 28) does not drift later months.  Returns ``None``
    before the first anniversary.
    """
    months = _months_between(period_start, now)
    if months >= 1 and add_months(period_start, months) > now:
        months -= 1
    if months < 1:
        return None
    return add_months(period_start, months)


def _history_event_ids(record: Dict[str, Any]) -> set:
    return {
        entry.get("eventId")
        for entry in record.get("history") or []
        if isinstance(entry, dict) and entry.get("eventId")
    }


def _empty_billing() -> Dict[str, Any]:
    return {
        "customerId": None,
        "subscriptionId": None,
        "priceId": None,
        "currentPeriodStart": None,
        "currentPeriodEnd": None,
        "cancelAtPeriodEnd": False,
        "trialEnd": None,
        "lastMonthlyReset": None,
        "nextMonthlyReset": None,
    }


class SubscriptionReconciler:
    def __init__(
        self,
        store: DocumentStore,
        config: ServiceConfig,
        resolver: Optional[EntitlementResolver] = None,
        notifications: Optional[NotificationService] = None,
        team_access: Optional[TeamAccessService] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.catalog = config.catalog
        self.resolver = resolver
        self.notifications = notifications or NotificationService(store)
        self.team_access = team_access or TeamAccessService(store)

    # ------------------------------------------------------------------
    # Webhook path

    async def handle_event(self, event: SubscriptionEvent, now: Optional[dt.datetime] = None) -> ReconcileResult:
        """Apply one billing provider event.

        Store failures propagate so the delivering transport can retry; the
        whole handler is safe to re-run for the same event.
        """
        now = now or utcnow()
        event_type = BillingEventType(event.type)
        user_id = event.data.app_user_id
        result = ReconcileResult(user_id=user_id, event_type=event_type)
        if not user_id:
            logger.error("[reconcile] %s event %s has no app_user_id; skipping", event_type.value, event.id)
            result.skipped = "missing_user_id"
            return result

        sentry_breadcrumb("billing", f"{event_type.value} for {user_id}")
        sentry_metric_inc("revenuecat.event.received", tags={"type": event_type.value})

        audit = EffectQueue()
        audit.add("audit", self._write_audit, user_id, event, now)
        await audit.dispatch()

        if event_type is BillingEventType.BILLING_ISSUE:
            return await self._flag_billing_issue(user_id, event, now, result)

        subscriber = event.data.subscriber
        if subscriber is None and event_type not in TERMINATING_EVENTS:
            logger.error("[reconcile] %s event for user=%s carries no subscriber; skipping", event_type.value, user_id)
            result.skipped = "missing_subscriber"
            return result

        resolved = resolve_from_subscriber(subscriber, now)
        tier, active = resolved.tier, resolved.is_active
        if event_type in TERMINATING_EVENTS:
            # The payload may still list the entitlement as active
            tier, active = Tier.TRIAL, False
        status = SubscriptionStatus.ACTIVE if active else SubscriptionStatus.CANCELED

        tier_update = TierUpdate(
            tier=tier,
            limits=self.catalog.limits_snapshot(tier),
            features=self.catalog.features_snapshot(tier),
            history_entry=HistoryEntry(
                tier=tier,
                startDate=now,
                endDate=now if event_type in TERMINATING_EVENTS else None,
                reason=f"revenuecat_{event_type.value}",
                eventId=event.id,
            ),
        )
        details = first_active_subscription(subscriber, now)
        billing_update = BillingUpdate(
            status=status,
            billing=self._billing_fields(user_id, event_type, details, now) if details else BillingFields(),
        )

        previous, created, duplicate = await self._apply_webhook_write(user_id, tier_update, billing_update, now)
        result.tier, result.status, result.created, result.duplicate = tier, status, created, duplicate
        if duplicate:
            logger.info("[reconcile] event %s already applied for user=%s", event.id, user_id)
            return result

        await self.store.set(
            USAGE,
            usage_doc_id(user_id, now),
            {"userId": user_id, "limits": tier_update.limits, "updatedAt": now},
            merge=True,
        )

        effects = EffectQueue()
        if previous is not None and previous.get("status") == SubscriptionStatus.ACTIVE.value:
            if status is not SubscriptionStatus.ACTIVE:
                effects.add("revoke_teammates", self.team_access.revoke_teammate_access, user_id, now)
            elif previous.get("currentTier") == Tier.PROFESSIONAL.value and tier is not Tier.PROFESSIONAL:
                effects.add("clear_team", self.team_access.clear_team_data, user_id)
        await effects.dispatch()

        logger.info(
            "[reconcile] user=%s event=%s tier=%s status=%s created=%s",
            user_id,
            event_type.value,
            tier.value,
            status.value,
            created,
        )
        return result

    async def _write_audit(self, user_id: str, event: SubscriptionEvent, now: dt.datetime) -> None:
        entry = {
            "type": "revenuecat_webhook",
            "subtype": event.type,
            "eventId": event.id,
            "userId": user_id,
            "eventData": event.data.model_dump(mode="json"),
            "processedAt": now,
            "source": "billing_webhook",
        }
        if event.id:
            await self.store.set(EVENTS, event.id, entry, merge=True)
        else:
            await self.store.add(EVENTS, entry)

    def _billing_fields(
        self,
        user_id: str,
        event_type: BillingEventType,
        details: Tuple[str, SubscriptionPayload],
        now: dt.datetime,
    ) -> BillingFields:
        product_id, sub = details
        return BillingFields(
            customerId=user_id,
            subscriptionId=sub.store_transaction_id or sub.original_transaction_id or product_id,
            priceId=product_id,
            currentPeriodStart=sub.purchase_date or now,
            currentPeriodEnd=sub.expires_date,
            cancelAtPeriodEnd=event_type is BillingEventType.CANCELLATION,
            trialEnd=sub.expires_date if (sub.period_type or "").lower() == "trial" else None,
        )

    async def _apply_webhook_write(
        self,
        user_id: str,
        tier_update: TierUpdate,
        billing_update: BillingUpdate,
        now: dt.datetime,
    ) -> Tuple[Optional[Dict[str, Any]], bool, bool]:
        """Create or update the subscription record in one transaction.

        Returns ``(previous_record, created, duplicate)``.
        """
        entry = tier_update.history_entry
        async with self.store.transaction() as tx:
            current = await tx.get(SUBSCRIPTIONS, user_id)
            if current is None:
                billing = _empty_billing()
                billing.update(billing_update.billing.model_dump(exclude_unset=True))
                await tx.set(
                    SUBSCRIPTIONS,
                    user_id,
                    {
                        "userId": user_id,
                        "currentTier": tier_update.tier,
                        "status": billing_update.status,
                        "billing": billing,
                        "limits": tier_update.limits,
                        "features": tier_update.features,
                        "history": [entry.to_record()],
                        "createdAt": now,
                        "updatedAt": now,
                    },
                    merge=True,
                )
                return None, True, False

            if entry.eventId and entry.eventId in _history_event_ids(current):
                return current, False, True

            fields = billing_update.to_fields(now)
            fields.update(
                {
                    "currentTier": tier_update.tier,
                    "limits": tier_update.limits,
                    "features": tier_update.features,
                    "history": list(current.get("history") or []) + [entry.to_record()],
                }
            )
            await tx.update(SUBSCRIPTIONS, user_id, fields)
            return current, False, False

    async def _flag_billing_issue(
        self, user_id: str, event: SubscriptionEvent, now: dt.datetime, result: ReconcileResult
    ) -> ReconcileResult:
        """Record the billing problem without touching tier, limits or history."""
        logger.warning("[reconcile] billing issue detected for user=%s", user_id)
        async with self.store.transaction() as tx:
            current = await tx.get(SUBSCRIPTIONS, user_id)
            if current is None:
                logger.warning("[reconcile] billing issue for user=%s without a subscription record", user_id)
                result.skipped = "no_subscription"
                return result
            billing = current.get("billing") or {}
            if event.id and billing.get("lastBillingIssueEventId") == event.id:
                result.duplicate = True
                return result
            await tx.update(
                SUBSCRIPTIONS,
                user_id,
                {
                    "billing.billingIssue": True,
                    "billing.billingIssueDetectedAt": now,
                    "billing.lastBillingIssueEventId": event.id,
                    "updatedAt": now,
                },
            )

        effects = EffectQueue()
        effects.add("billing_issue_notification", self.notifications.notify_billing_issue, user_id)
        await effects.dispatch()
        return result

    # ------------------------------------------------------------------
    # Client RPC path

    async def confirm_payment(
        self,
        caller_uid: Optional[str],
        request: ConfirmPaymentRequest,
        now: Optional[dt.datetime] = None,
    ) -> ConfirmPaymentResponse:
        if not caller_uid:
            raise UnauthenticatedError("User must be authenticated")
        if caller_uid != request.userId:
            raise PermissionDeniedError("User ID mismatch")
        now = now or utcnow()

        tier = request.tierId
        expires_at: Optional[dt.datetime] = None
        if tier is None:
            tier, expires_at = await self._resolve_tier_best_effort(request.revenueCatUserId or request.userId, now)

        period_end = expires_at or add_months(now, 1)
        try:
            await self._apply_billing_write(request, tier, period_end, now)
        except ServiceError:
            raise
        except Exception as exc:
            logger.exception("[confirm-payment] failed to update billing for user=%s", request.userId)
            raise InternalError("Failed to confirm subscription payment") from exc

        sentry_metric_inc("billing.confirm_payment", tags={"tier": tier.value})
        logger.info("[confirm-payment] user=%s tier=%s period_end=%s", request.userId, tier.value, period_end)
        return ConfirmPaymentResponse(success=True, receiptsExcluded=0, tierChange=False)

    async def _resolve_tier_best_effort(self, subscriber_id: str, now: dt.datetime) -> Tuple[Tier, Optional[dt.datetime]]:
        if self.resolver is None:
            return Tier.TRIAL, None
        try:
            resolved = await self.resolver.resolve(subscriber_id, now)
        except Exception:
            logger.warning("[confirm-payment] tier lookup failed for %s; assuming trial", subscriber_id, exc_info=True)
            return Tier.TRIAL, None
        return resolved.tier, resolved.expires_at

    async def _apply_billing_write(
        self,
        request: ConfirmPaymentRequest,
        tier: Tier,
        period_end: dt.datetime,
        now: dt.datetime,
    ) -> None:
        async with self.store.transaction() as tx:
            current = await tx.get(SUBSCRIPTIONS, request.userId)
            trial = (current or {}).get("trial") or {}
            end_trial = bool(trial.get("isActive")) and tier is not Tier.TRIAL
            update = BillingUpdate(
                status=SubscriptionStatus.ACTIVE,
                billing=BillingFields(
                    subscriptionId=request.subscriptionId,
                    currentPeriodStart=now,
                    currentPeriodEnd=period_end,
                    cancelAtPeriodEnd=False,
                ),
                end_trial_reason=TRIAL_UPGRADE_REASON if end_trial else None,
            )
            if current is None:
                await self._create_billing_only(tx, request.userId, update, now)
            else:
                await tx.update(SUBSCRIPTIONS, request.userId, update.to_fields(now))

    async def _create_billing_only(self, tx: Transaction, user_id: str, update: BillingUpdate, now: dt.datetime) -> None:
        billing = _empty_billing()
        billing.update(update.billing.model_dump(exclude_unset=True))
        await tx.set(
            SUBSCRIPTIONS,
            user_id,
            {
                "userId": user_id,
                "status": update.status,
                "billing": billing,
                "createdAt": now,
                "updatedAt": now,
            },
        )

    # ------------------------------------------------------------------
    # Trial

    async def start_trial(self, user_id: str, now: Optional[dt.datetime] = None) -> Dict[str, Any]:
        """Create the subscription record in the trial tier; no-op when one exists."""
        now = now or utcnow()
        entry = HistoryEntry(tier=Tier.TRIAL, startDate=now, reason="trial_started")
        async with self.store.transaction() as tx:
            current = await tx.get(SUBSCRIPTIONS, user_id)
            if current is not None:
                logger.info("[trial] subscription already exists for user=%s", user_id)
                return current
            await tx.set(
                SUBSCRIPTIONS,
                user_id,
                {
                    "userId": user_id,
                    "currentTier": Tier.TRIAL,
                    "status": SubscriptionStatus.ACTIVE,
                    "trial": {
                        "startedAt": now,
                        "expiresAt": now + self.config.trial_period,
                        "isActive": True,
                        "endedEarly": False,
                        "endReason": None,
                    },
                    "billing": dict(_empty_billing(), currentPeriodStart=now),
                    "limits": self.catalog.limits_snapshot(Tier.TRIAL),
                    "features": self.catalog.features_snapshot(Tier.TRIAL),
                    "history": [entry.to_record()],
                    "createdAt": now,
                    "updatedAt": now,
                },
            )
        logger.info("[trial] started trial for user=%s", user_id)
        return await self.store.get(SUBSCRIPTIONS, user_id) or {}

    async def restore_entitlement(
        self,
        user_id: str,
        resolved: ResolvedEntitlement,
        source_user_id: str,
        now: Optional[dt.datetime] = None,
    ) -> bool:
        """Re-apply an entitlement the billing provider still reports for a prior identity.

        Returns True when a record was written.  Re-running for the same
        source identity is a no-op.
        """
        now = now or utcnow()
        if not resolved.is_active:
            return False
        tier_update = TierUpdate(
            tier=resolved.tier,
            limits=self.catalog.limits_snapshot(resolved.tier),
            features=self.catalog.features_snapshot(resolved.tier),
            history_entry=HistoryEntry(
                tier=resolved.tier,
                startDate=now,
                reason="restored_from_provider",
                eventId=f"restore:{source_user_id}",
            ),
        )
        billing_update = BillingUpdate(
            status=SubscriptionStatus.ACTIVE,
            billing=BillingFields(customerId=user_id, currentPeriodStart=now, currentPeriodEnd=resolved.expires_at),
        )
        _, created, duplicate = await self._apply_webhook_write(user_id, tier_update, billing_update, now)
        if duplicate:
            return False
        logger.info(
            "[restore] user=%s restored tier=%s from %s (created=%s)",
            user_id,
            resolved.tier.value,
            source_user_id,
            created,
        )
        return True

    # ------------------------------------------------------------------
    # Scheduled usage reset

    async def reset_usage(self, now: Optional[dt.datetime] = None, start_after: Optional[str] = None) -> SweepResult:
        """Process one page of active subscriptions; ``next_cursor`` is set when more remain."""
        now = now or utcnow()
        page_size = self.config.sweep_page_size
        page = await (
            self.store.query(SUBSCRIPTIONS)
            .where("status", "==", SubscriptionStatus.ACTIVE)
            .start_after(start_after)
            .limit(page_size)
            .get()
        )
        result = SweepResult()
        for snap in page:
            result.processed += 1
            try:
                outcome = await self._reset_one(snap, now)
            except Exception as exc:
                logger.exception("[usage-reset] failed for user=%s", snap.id)
                result.failed += 1
                result.errors.append(f"{snap.id}: {exc}")
                continue
            if outcome == "reset":
                result.updated += 1
            elif outcome == "skipped":
                result.skipped += 1
        if len(page) >= page_size:
            result.next_cursor = page[-1].id
        sentry_metric_inc("usage.reset.run", value=result.updated)
        logger.info(
            "[usage-reset] processed=%d reset=%d skipped=%d failed=%d",
            result.processed,
            result.updated,
            result.skipped,
            result.failed,
        )
        return result

    async def _reset_one(self, snap: DocumentSnapshot, now: dt.datetime) -> str:
        user_id = snap.get("userId") or snap.id
        period_start = parse_iso_datetime(snap.get("billing.currentPeriodStart"))
        if period_start is None:
            logger.warning("[usage-reset] user=%s has no usable currentPeriodStart; skipping", user_id)
            return "skipped"
        boundary = latest_reset_boundary(period_start, now)
        if boundary is None:
            return "not_due"
        last_reset = parse_iso_datetime(snap.get("billing.lastMonthlyReset"))
        if last_reset is not None and last_reset >= boundary:
            return "not_due"

        limits = snap.get("limits") or self.catalog.limits_snapshot(snap.get("currentTier"))
        batch = self.store.batch()
        batch.set(
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
        batch.update(
            SUBSCRIPTIONS,
            snap.id,
            {
                "billing.lastMonthlyReset": now,
                "billing.nextMonthlyReset": add_months(period_start, _months_between(period_start, boundary) + 1),
                "updatedAt": now,
            },
        )
        await batch.commit()
        logger.info("[usage-reset] reset usage for user=%s (anniversary %s)", user_id, boundary.date())
        return "reset"


__all__ = [
    "ReconcileResult",
    "SubscriptionReconciler",
    "SweepResult",
    "TRIAL_UPGRADE_REASON",
    "latest_reset_boundary",
]
