"""Pydantic schemas for inbound payloads and internal write types.

Webhook bodies and RPC requests are validated here before any business
logic sees them.  Billing events are modelled as a discriminated union on
``type`` so the reconciler receives either a subscription event carrying a
subscriber snapshot or a transfer event carrying the two identity lists.

``BillingUpdate`` and ``TierUpdate`` are the only shapes the subscription
writers accept.  The confirm-payment RPC can only build a
``BillingUpdate``; tier, limits, features and history can only travel in a
``TierUpdate``, which is produced by the webhook path.
"""

from __future__ import annotations

import datetime as dt
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from receiptgold.utils.helpers import parse_iso_datetime, to_iso

from .enums import BillingEventType, SubscriptionStatus, Tier


def _coerce_datetime(value: Any) -> Optional[dt.datetime]:
    if value is None or value == "":
        return None
    parsed = parse_iso_datetime(value)
    if parsed is None:
        raise ValueError(f"invalid datetime: {value!r}")
    return parsed


# ---------------------------------------------------------------------------
# Billing provider payloads


class EntitlementPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    expires_date: Optional[dt.datetime] = None
    product_identifier: Optional[str] = None
    purchase_date: Optional[dt.datetime] = None

    @field_validator("expires_date", "purchase_date", mode="before")
    @classmethod
    def parse_dates(cls, value: Any) -> Optional[dt.datetime]:
        return _coerce_datetime(value)

    def is_active(self, now: dt.datetime) -> bool:
        return self.expires_date is None or self.expires_date > now


class SubscriptionPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    expires_date: Optional[dt.datetime] = None
    purchase_date: Optional[dt.datetime] = None
    original_purchase_date: Optional[dt.datetime] = None
    period_type: Optional[str] = None
    store: Optional[str] = None
    store_transaction_id: Optional[str] = None
    original_transaction_id: Optional[str] = None
    billing_issues_detected_at: Optional[dt.datetime] = None
    unsubscribe_detected_at: Optional[dt.datetime] = None

    @field_validator(
        "expires_date",
        "purchase_date",
        "original_purchase_date",
        "billing_issues_detected_at",
        "unsubscribe_detected_at",
        mode="before",
    )
    @classmethod
    def parse_dates(cls, value: Any) -> Optional[dt.datetime]:
        return _coerce_datetime(value)

    def is_active(self, now: dt.datetime) -> bool:
        return self.expires_date is None or self.expires_date > now


class SubscriberPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    original_app_user_id: Optional[str] = None
    entitlements: Dict[str, EntitlementPayload] = Field(default_factory=dict)
    subscriptions: Dict[str, SubscriptionPayload] = Field(default_factory=dict)


class SubscriptionEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    app_user_id: Optional[str] = None
    origin_app_user_id: Optional[str] = None
    subscriber: Optional[SubscriberPayload] = None


class TransferEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    transferred_from: List[Optional[str]]
    transferred_to: List[Optional[str]]


class SubscriptionEvent(BaseModel):
    id: Optional[str] = None
    type: Literal[
        BillingEventType.PURCHASE,
        BillingEventType.RENEWAL,
        BillingEventType.CANCELLATION,
        BillingEventType.EXPIRATION,
        BillingEventType.BILLING_ISSUE,
        BillingEventType.PRODUCT_CHANGE,
    ]
    data: SubscriptionEventData = Field(default_factory=SubscriptionEventData)


class TransferEvent(BaseModel):
    id: Optional[str] = None
    type: Literal[BillingEventType.TRANSFER]
    data: TransferEventData


BillingEvent = Annotated[Union[SubscriptionEvent, TransferEvent], Field(discriminator="type")]

_billing_event_adapter: TypeAdapter[Any] = TypeAdapter(BillingEvent)


def parse_billing_event(event_type: str, envelope: Dict[str, Any]) -> Union[SubscriptionEvent, TransferEvent]:
    """Validate a raw ``{id, data}`` envelope delivered for ``event_type``.

    Raises ``pydantic.ValidationError`` (or ``ValueError`` for an unknown type).
    """
    kind = BillingEventType(event_type)
    body = {"id": envelope.get("id"), "type": kind, "data": envelope.get("data") or {}}
    return _billing_event_adapter.validate_python(body)


# ---------------------------------------------------------------------------
# Subscription writes


class HistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier: Tier
    startDate: dt.datetime
    endDate: Optional[dt.datetime] = None
    reason: str
    eventId: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "startDate": to_iso(self.startDate),
            "endDate": to_iso(self.endDate) if self.endDate else None,
            "reason": self.reason,
            "eventId": self.eventId,
        }


class BillingFields(BaseModel):
    model_config = ConfigDict(extra="forbid")

    customerId: Optional[str] = None
    subscriptionId: Optional[str] = None
    priceId: Optional[str] = None
    currentPeriodStart: Optional[dt.datetime] = None
    currentPeriodEnd: Optional[dt.datetime] = None
    cancelAtPeriodEnd: Optional[bool] = None
    trialEnd: Optional[dt.datetime] = None


class BillingUpdate(BaseModel):
    """Billing period and status change.  Carries no tier fields."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    status: SubscriptionStatus
    billing: BillingFields = Field(default_factory=BillingFields)
    end_trial_reason: Optional[str] = None

    def to_fields(self, now: dt.datetime) -> Dict[str, Any]:
        """Dotted-path update; only billing values that were set are written."""
        fields: Dict[str, Any] = {"status": self.status.value, "updatedAt": now}
        for key, value in self.billing.model_dump(exclude_unset=True).items():
            fields[f"billing.{key}"] = value
        if self.end_trial_reason:
            fields["trial.isActive"] = False
            fields["trial.endedEarly"] = True
            fields["trial.endReason"] = self.end_trial_reason
            fields["trial.endedAt"] = now
        return fields


class TierUpdate(BaseModel):
    """Tier change produced from provider-confirmed entitlements."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    tier: Tier
    limits: Dict[str, int]
    features: Dict[str, bool]
    history_entry: HistoryEntry


# ---------------------------------------------------------------------------
# RPC / HTTP request and response bodies


class ConfirmPaymentRequest(BaseModel):
    subscriptionId: str = Field(min_length=10)
    userId: str = Field(min_length=1)
    tierId: Optional[Tier] = None
    revenueCatUserId: Optional[str] = None


class ConfirmPaymentResponse(BaseModel):
    success: bool
    receiptsExcluded: int = 0
    tierChange: bool = False


class AccountHolderCheckRequest(BaseModel):
    accountHolderId: str = Field(min_length=1)


class AccountHolderCheckResponse(BaseModel):
    hasActiveSubscription: bool


class MarkAccountRecoveredRequest(BaseModel):
    email: str = Field(min_length=3)
    newUserId: str = Field(min_length=1)


class DeviceCheckRequest(BaseModel):
    deviceToken: str = Field(min_length=1)
    email: str = Field(min_length=3)


class DeviceCheckResponse(BaseModel):
    canCreateAccount: bool
    message: str


class CompleteAccountCreationRequest(BaseModel):
    deviceToken: str = Field(min_length=1)
    userId: Optional[str] = None


class FallbackDeviceToken(BaseModel):
    """Decoded base64 JSON token sent by clients that cannot attest."""

    model_config = ConfigDict(extra="allow")

    platform: str
    deviceId: str


class AuthUserPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    uid: str = Field(min_length=1)
    email: Optional[str] = None
    displayName: Optional[str] = None
    phoneNumber: Optional[str] = None


class ReceiptCreatedPayload(BaseModel):
    receiptId: str = Field(min_length=1)
    receipt: Dict[str, Any] = Field(default_factory=dict)


class BankWebhookError(BaseModel):
    model_config = ConfigDict(extra="allow")

    error_type: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    display_message: Optional[str] = None


class BankWebhook(BaseModel):
    model_config = ConfigDict(extra="allow")

    webhook_type: str
    webhook_code: str
    item_id: Optional[str] = None
    error: Optional[BankWebhookError] = None
    consent_expiration_time: Optional[str] = None


__all__ = [
    "AccountHolderCheckRequest",
    "AccountHolderCheckResponse",
    "AuthUserPayload",
    "BankWebhook",
    "BankWebhookError",
    "BillingEvent",
    "BillingFields",
    "BillingUpdate",
    "CompleteAccountCreationRequest",
    "ConfirmPaymentRequest",
    "ConfirmPaymentResponse",
    "DeviceCheckRequest",
    "DeviceCheckResponse",
    "EntitlementPayload",
    "FallbackDeviceToken",
    "HistoryEntry",
    "MarkAccountRecoveredRequest",
    "ReceiptCreatedPayload",
    "SubscriberPayload",
    "SubscriptionEvent",
    "SubscriptionEventData",
    "SubscriptionPayload",
    "TierUpdate",
    "TransferEvent",
    "TransferEventData",
    "parse_billing_event",
]
