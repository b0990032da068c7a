"""Tier catalog: quota limits and feature switches per subscription tier.

Subscription and usage records carry a *snapshot* of these values copied at
write time, so the catalog can change without touching existing records.
Receipt limits are configurable through ``*_TIER_MAX_RECEIPTS`` settings;
``-1`` means unlimited throughout.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Mapping, TYPE_CHECKING

from receiptgold.models.enums import Tier

if TYPE_CHECKING:  # pragma: no cover
    from receiptgold.core.config import Settings

UNLIMITED = -1

FEATURE_KEYS = (
    "advancedReporting",
    "taxPreparation",
    "accountingIntegrations",
    "prioritySupport",
    "multiBusinessManagement",
    "whiteLabel",
    "apiAccess",
    "dedicatedManager",
)


@dataclass(frozen=True)
class TierLimits:
    max_receipts: int
    max_businesses: int
    api_calls_per_month: int
    max_reports: int

    def as_record(self) -> Dict[str, int]:
        return {
            "maxReceipts": self.max_receipts,
            "maxBusinesses": self.max_businesses,
            "apiCallsPerMonth": self.api_calls_per_month,
            "maxReports": self.max_reports,
        }


@dataclass(frozen=True)
class TierDefinition:
    tier: Tier
    name: str
    limits: TierLimits
    features: Mapping[str, bool]

    def features_record(self) -> Dict[str, bool]:
        return {key: bool(self.features.get(key, False)) for key in FEATURE_KEYS}


def _features(*enabled: str) -> Mapping[str, bool]:
    return MappingProxyType({key: key in enabled for key in FEATURE_KEYS})


class TierCatalog:
    """Lookup of tier definitions; unknown tiers fall back to ``trial``."""

    def __init__(self, definitions: Mapping[Tier, TierDefinition]) -> None:
        self._definitions = dict(definitions)

    def get(self, tier: Tier | str | None) -> TierDefinition:
        try:
            key = Tier(tier) if tier is not None else Tier.TRIAL
        except ValueError:
            key = Tier.TRIAL
        return self._definitions.get(key, self._definitions[Tier.TRIAL])

    def limits_snapshot(self, tier: Tier | str | None) -> Dict[str, int]:
        return self.get(tier).limits.as_record()

    def features_snapshot(self, tier: Tier | str | None) -> Dict[str, bool]:
        return self.get(tier).features_record()

    def snapshot(self, tier: Tier | str | None) -> Dict[str, Any]:
        definition = self.get(tier)
        return {
            "limits": definition.limits.as_record(),
            "features": definition.features_record(),
        }

    def __contains__(self, tier: object) -> bool:
        return tier in self._definitions


def build_tier_catalog(source: "Settings") -> TierCatalog:
    definitions = {
        Tier.TRIAL: TierDefinition(
            tier=Tier.TRIAL,
            name="Trial",
            limits=TierLimits(source.TRIAL_TIER_MAX_RECEIPTS, 1, 0, 10),
            features=_features(),
        ),
        Tier.STARTER: TierDefinition(
            tier=Tier.STARTER,
            name="Starter",
            limits=TierLimits(source.STARTER_TIER_MAX_RECEIPTS, 1, 0, 10),
            features=_features(),
        ),
        Tier.GROWTH: TierDefinition(
            tier=Tier.GROWTH,
            name="Growth",
            limits=TierLimits(source.GROWTH_TIER_MAX_RECEIPTS, 1, 1000, 50),
            features=_features(
                "advancedReporting",
                "taxPreparation",
                "accountingIntegrations",
                "prioritySupport",
                "multiBusinessManagement",
                "apiAccess",
            ),
        ),
        Tier.PROFESSIONAL: TierDefinition(
            tier=Tier.PROFESSIONAL,
            name="Professional",
            limits=TierLimits(source.PROFESSIONAL_TIER_MAX_RECEIPTS, UNLIMITED, 10000, UNLIMITED),
            features=_features(*FEATURE_KEYS),
        ),
        Tier.TEAMMATE: TierDefinition(
            tier=Tier.TEAMMATE,
            name="Teammate",
            limits=TierLimits(source.TEAMMATE_TIER_MAX_RECEIPTS, 1, 0, 0),
            features=_features(),
        ),
    }
    return TierCatalog(definitions)


def is_over_limit(used: int, limit: int | None) -> bool:
    if limit is None or limit == UNLIMITED:
        return False
    return used >= limit


__all__ = [
    "FEATURE_KEYS",
    "UNLIMITED",
    "TierCatalog",
    "TierDefinition",
    "TierLimits",
    "build_tier_catalog",
    "is_over_limit",
]
