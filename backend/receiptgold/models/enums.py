"""Enumeration types used throughout the ReceiptGold functions.

Values are the exact strings persisted in the document store, so renaming
a member's value is a data migration, not a refactor.
"""

from enum import Enum


class Tier(str, Enum):
    """Subscription level determining quota and feature limits."""

    TRIAL = "trial"
    STARTER = "starter"
    GROWTH = "growth"
    PROFESSIONAL = "professional"
    TEAMMATE = "teammate"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"
    SOFT_DELETED = "soft_deleted"
    TRANSFERRED = "transferred"


class BillingEventType(str, Enum):
    """RevenueCat lifecycle events delivered by webhook or eventing bridge."""

    PURCHASE = "purchase"
    RENEWAL = "renewal"
    CANCELLATION = "cancellation"
    EXPIRATION = "expiration"
    BILLING_ISSUE = "billing_issue"
    PRODUCT_CHANGE = "product_change"
    TRANSFER = "transfer"


class DeletedAccountStatus(str, Enum):
    SOFT_DELETED = "soft_deleted"
    RECOVERED = "recovered"
    PERMANENTLY_DELETED = "permanently_deleted"


class ConnectionStatus(str, Enum):
    """States of an external bank link (Plaid item)."""

    CONNECTED = "connected"
    STALE = "stale"
    ERROR = "error"
    PENDING_EXPIRATION = "pending_expiration"
    PENDING_DISCONNECT = "pending_disconnect"
    PERMISSION_REVOKED = "permission_revoked"


class NotificationType(str, Enum):
    REAUTH_REQUIRED = "reauth_required"
    PENDING_EXPIRATION = "pending_expiration"
    PERMISSION_REVOKED = "permission_revoked"
    LOGIN_REPAIRED = "login_repaired"
    NEW_ACCOUNTS_AVAILABLE = "new_accounts_available"


class NotificationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ReceiptStatus(str, Enum):
    """Processing states for a receipt document."""

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    PROCESSED = "processed"
    REJECTED = "rejected"
    ERROR = "error"
    TRANSFERRED = "transferred"
    SOFT_DELETED = "soft_deleted"


class TransferMode(str, Enum):
    """How a per-user collection moves to a new user id on identity transfer."""

    NONE = "none"
    # New document with a fresh id; original marked transferred.
    COPY_NEW_ID = "copy_new_id"
    # New document whose id is the new user id; original marked transferred.
    COPY_USER_ID = "copy_user_id"
    # New document whose id substitutes the user id segment of the old id.
    COPY_DERIVED_ID = "copy_derived_id"
    # Same as COPY_NEW_ID, skipping records the new user already owns.
    COPY_DEDUPED = "copy_deduped"
    # Owner field rewritten in place.
    REPOINT = "repoint"


class DocumentKey(str, Enum):
    """How a per-user collection associates its documents with a user."""

    FIELD = "field"
    DOC_ID = "doc_id"
    DOC_ID_PREFIX = "doc_id_prefix"
