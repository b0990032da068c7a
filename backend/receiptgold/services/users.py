"""User profile defaults and the email identity directory."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, Optional

from receiptgold.models.collections import USERS
from receiptgold.models.enums import SubscriptionStatus
from receiptgold.services.document_store import DocumentStore

logger = logging.getLogger(__name__)


def normalise_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def build_user_profile(
    user_id: str,
    email: Optional[str],
    display_name: Optional[str],
    now: dt.datetime,
) -> Dict[str, Any]:
    """Fresh profile document for a newly created auth user."""
    display_name = display_name or ""
    parts = display_name.split(" ")
    return {
        "userId": user_id,
        "email": email or "",
        "emailLower": normalise_email(email),
        "displayName": display_name,
        "createdAt": now,
        "lastLoginAt": now,
        "profile": {
            "firstName": parts[0] if parts else "",
            "lastName": " ".join(parts[1:]),
            "businessName": "",
            "businessType": "Sole Proprietorship",
            "taxId": "",
            "phone": "",
            "address": {
                "street": "",
                "city": "",
                "state": "",
                "zipCode": "",
                "country": "US",
            },
        },
        "settings": {
            "theme": "light",
            "notifications": {
                "email": True,
                "push": True,
                "taxReminders": True,
                "receiptReminders": True,
            },
            "defaultCurrency": "USD",
            "taxYear": now.year,
        },
    }


class IdentityDirectory:
    """Answers whether an email already belongs to a live account.

    Backed by the ``users`` collection; soft-deleted profiles do not count.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def email_registered(self, email: str) -> bool:
        wanted = normalise_email(email)
        if not wanted:
            return False
        matches = await self.store.query(USERS).where("emailLower", "==", wanted).get()
        return any(snap.get("status") != SubscriptionStatus.SOFT_DELETED.value for snap in matches)


__all__ = ["IdentityDirectory", "build_user_profile", "normalise_email"]
