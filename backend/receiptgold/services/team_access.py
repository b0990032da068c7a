"""Team access: follow-ups driven by account holder subscription changes and
the entitlement check teammates make against their account holder."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Optional

from receiptgold.models.collections import SUBSCRIPTIONS, TEAM_INVITATIONS, TEAM_MEMBERS, TEAM_STATS
from receiptgold.models.enums import SubscriptionStatus, Tier
from receiptgold.services.document_store import DocumentStore
from receiptgold.utils.helpers import parse_iso_datetime, utcnow

logger = logging.getLogger(__name__)

REVOKED_REASON = "Account holder subscription inactive"
TEAM_MANAGEMENT_TIERS = {Tier.GROWTH.value, Tier.PROFESSIONAL.value, Tier.TEAMMATE.value}


class TeamAccessService:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def revoke_teammate_access(self, account_holder_id: str, now: Optional[dt.datetime] = None) -> int:
        """Flag every active teammate of ``account_holder_id`` as revoked."""
        now = now or utcnow()
        members = await (
            self.store.query(TEAM_MEMBERS)
            .where("accountHolderId", "==", account_holder_id)
            .where("status", "==", "active")
            .get()
        )
        if not members:
            logger.info("[team] no active team members for account holder %s", account_holder_id)
            return 0
        batch = self.store.batch()
        for member in members:
            batch.update(
                TEAM_MEMBERS,
                member.id,
                {"accessRevokedAt": now, "accessRevokedReason": REVOKED_REASON, "lastActiveAt": now},
            )
        await batch.commit()
        logger.info("[team] revoked access for %d teammate(s) of %s", len(members), account_holder_id)
        return len(members)

    async def account_holder_has_team_access(self, account_holder_id: str, now: Optional[dt.datetime] = None) -> bool:
        """Whether a teammate of ``account_holder_id`` may use the holder's entitlements.

        The holder needs an active, non-trial subscription on a tier with team
        management whose period has not ended.  A missing period end is a
        lifetime entitlement.  Any lookup failure answers False.
        """
        now = now or utcnow()
        try:
            subscription = await self.store.get(SUBSCRIPTIONS, account_holder_id)
            if subscription is None:
                logger.info("[team] no subscription found for account holder %s", account_holder_id)
                return False
            tier = subscription.get("currentTier")
            raw_end = (subscription.get("billing") or {}).get("currentPeriodEnd")
            period_end = parse_iso_datetime(raw_end)
            if raw_end not in (None, "") and period_end is None:
                logger.warning("[team] unreadable period end %r for account holder %s", raw_end, account_holder_id)
                return False
            is_active = (
                subscription.get("status") == SubscriptionStatus.ACTIVE.value
                and tier != Tier.TRIAL.value
                and (period_end is None or period_end > now)
            )
            allowed = is_active and tier in TEAM_MANAGEMENT_TIERS
        except Exception:
            logger.exception("[team] account holder check failed for %s", account_holder_id)
            return False
        logger.info(
            "[team] account holder %s tier=%s status=%s team access=%s",
            account_holder_id,
            tier,
            subscription.get("status"),
            allowed,
        )
        return allowed

    async def clear_team_data(self, account_holder_id: str) -> int:
        """Remove team members, invitations and stats once the holder loses the team tier."""
        members = await self.store.query(TEAM_MEMBERS).where("accountHolderId", "==", account_holder_id).get()
        invitations = await self.store.query(TEAM_INVITATIONS).where("accountHolderId", "==", account_holder_id).get()
        stats = await self.store.get(TEAM_STATS, account_holder_id)

        batch = self.store.batch()
        for snap in members:
            batch.delete(TEAM_MEMBERS, snap.id)
        for snap in invitations:
            batch.delete(TEAM_INVITATIONS, snap.id)
        if stats is not None:
            batch.delete(TEAM_STATS, account_holder_id)
        count = len(batch)
        await batch.commit()
        logger.info("[team] cleared %d team record(s) for %s", count, account_holder_id)
        return count


__all__ = ["TEAM_MANAGEMENT_TIERS", "TeamAccessService", "REVOKED_REASON"]
