"""Registry of persisted collections.

Every per-user collection is declared once in ``PER_USER_COLLECTIONS`` with
the metadata the lifecycle code needs: how documents are associated with a
user, whether the collection takes part in soft-delete and purge, and how it
moves on identity transfer. Soft-delete, recovery, purge and transfer all
iterate this table instead of hard-coding collection names.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from .enums import DocumentKey, TransferMode

# Non per-user collections
SUBSCRIPTIONS = "subscriptions"
USERS = "users"
USAGE = "usage"
RECEIPTS = "receipts"
EVENTS = "events"
DELETED_ACCOUNTS = "deletedAccounts"
TEAM_INVITATIONS = "teamInvitations"
TEAM_MEMBERS = "teamMembers"
TEAM_STATS = "teamStats"
PLAID_ITEMS = "plaid_items"
CONNECTION_NOTIFICATIONS = "connection_notifications"
USER_NOTIFICATIONS = "user_notifications"
DEVICE_TRACKING = "device_tracking"


@dataclass(frozen=True)
class CollectionSpec:
    name: str
    keys: Tuple[DocumentKey, ...] = (DocumentKey.FIELD,)
    user_field: str = "userId"
    # Secondary owner field matched on purge (team-owned records).
    holder_field: Optional[str] = None
    transfer: TransferMode = TransferMode.NONE
    purge: bool = True
    soft_delete: bool = False


PER_USER_COLLECTIONS: Tuple[CollectionSpec, ...] = (
    CollectionSpec(USERS, keys=(DocumentKey.DOC_ID,), soft_delete=True),
    CollectionSpec(
        SUBSCRIPTIONS,
        keys=(DocumentKey.DOC_ID,),
        transfer=TransferMode.COPY_USER_ID,
        soft_delete=True,
    ),
    CollectionSpec(
        RECEIPTS,
        holder_field="accountHolderId",
        transfer=TransferMode.COPY_NEW_ID,
        soft_delete=True,
    ),
    CollectionSpec(
        "teamMemberships",
        user_field="ownerId",
        transfer=TransferMode.REPOINT,
    ),
    CollectionSpec(
        TEAM_MEMBERS,
        holder_field="accountHolderId",
        transfer=TransferMode.REPOINT,
        soft_delete=True,
    ),
    CollectionSpec(
        USAGE,
        keys=(DocumentKey.FIELD, DocumentKey.DOC_ID_PREFIX),
        transfer=TransferMode.COPY_DERIVED_ID,
        soft_delete=True,
    ),
    CollectionSpec(
        "businesses",
        holder_field="accountHolderId",
        transfer=TransferMode.COPY_DEDUPED,
        soft_delete=True,
    ),
    CollectionSpec("businessStats", transfer=TransferMode.COPY_NEW_ID),
    CollectionSpec(
        "userPreferences",
        keys=(DocumentKey.FIELD, DocumentKey.DOC_ID),
        transfer=TransferMode.COPY_USER_ID,
    ),
    CollectionSpec("notificationSettings", transfer=TransferMode.REPOINT),
    CollectionSpec("bankConnections", transfer=TransferMode.REPOINT, soft_delete=True),
    CollectionSpec(PLAID_ITEMS, transfer=TransferMode.REPOINT),
    CollectionSpec("reports", soft_delete=True),
    CollectionSpec("customCategories", holder_field="accountHolderId"),
    CollectionSpec("budgets"),
    CollectionSpec(USER_NOTIFICATIONS),
    CollectionSpec(CONNECTION_NOTIFICATIONS),
    CollectionSpec(TEAM_INVITATIONS, holder_field="accountHolderId"),
    CollectionSpec(TEAM_STATS, keys=(DocumentKey.DOC_ID,)),
    CollectionSpec(EVENTS),
)


def transferable_collections() -> Tuple[CollectionSpec, ...]:
    return tuple(c for c in PER_USER_COLLECTIONS if c.transfer is not TransferMode.NONE)


def soft_delete_collections() -> Tuple[CollectionSpec, ...]:
    return tuple(c for c in PER_USER_COLLECTIONS if c.soft_delete)


def purge_collections() -> Tuple[CollectionSpec, ...]:
    return tuple(c for c in PER_USER_COLLECTIONS if c.purge)


def get_collection(name: str) -> CollectionSpec:
    for spec in PER_USER_COLLECTIONS:
        if spec.name == name:
            return spec
    raise KeyError(name)


__all__ = [
    "CollectionSpec",
    "PER_USER_COLLECTIONS",
    "transferable_collections",
    "soft_delete_collections",
    "purge_collections",
    "get_collection",
]
