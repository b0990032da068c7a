"""Pre-signup device gate.

A device may create one account.  Two storage paths record that:

* iOS devices are checked against Apple DeviceCheck's per-device two bits
  (``bit0`` means "has created an account"), using a short-lived ES256
  JWT signed with the team's DeviceCheck key;
* clients that cannot attest send a base64 encoded JSON token carrying
  ``platform`` and ``deviceId`` and are tracked in the ``device_tracking``
  collection instead.

Marking a device as used is a separate call made once the auth user exists
(``complete_account_creation``) so abandoned signups never burn a device.
Store and DeviceCheck failures while *checking* fail open.
"""

from __future__ import annotations

import base64
import binascii
import datetime as dt
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from jose import jwt
from pydantic import ValidationError

from receiptgold.core.config import DeviceCheckCredentials, ServiceConfig
from receiptgold.core.errors import UpstreamError
from receiptgold.core.observability import sentry_metric_inc
from receiptgold.models.collections import DELETED_ACCOUNTS, DEVICE_TRACKING
from receiptgold.models.enums import DeletedAccountStatus
from receiptgold.models.schemas import FallbackDeviceToken
from receiptgold.services.document_store import DocumentStore
from receiptgold.services.users import IdentityDirectory
from receiptgold.utils.helpers import mask, utcnow

logger = logging.getLogger(__name__)

DEVICE_USED_MESSAGE = (
    "This device has already been used to create an account. "
    "Please sign in with your existing account instead."
)
EMAIL_EXISTS_MESSAGE = "An account with this email already exists"
ELIGIBLE_MESSAGE = "Device is eligible for account creation"
DISABLED_MESSAGE = "Device check disabled - proceeding with account creation"

# Deleted account statuses that let a device create a fresh account
_RELEASING_STATUSES = {DeletedAccountStatus.SOFT_DELETED.value, DeletedAccountStatus.PERMANENTLY_DELETED.value}
_PAID_STATUSES = {"active", "trialing"}


def parse_fallback_token(token: str) -> Optional[FallbackDeviceToken]:
    """Decode a fallback token; ``None`` means the token is a native attestation token."""
    try:
        decoded = base64.b64decode(token, validate=True).decode("utf-8")
        return FallbackDeviceToken.model_validate(json.loads(decoded))
    except (binascii.Error, UnicodeDecodeError, ValueError, ValidationError):
        return None


def ledger_key(token: str, fallback: bool) -> str:
    # Native tokens are long and opaque; only their digest is kept
    if fallback:
        return token
    return "dc_" + hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class GateDecision:
    allow: bool
    reason: str
    message: str


class DeviceCheckClient:
    """Minimal Apple DeviceCheck client (query and update the two bits)."""

    def __init__(
        self,
        credentials: DeviceCheckCredentials,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.credentials = credentials
        self.timeout = timeout
        self._transport = transport

    def _token(self) -> str:
        now = int(time.time())
        return jwt.encode(
            {"iss": self.credentials.team_id, "iat": now, "exp": now + 3600},
            self.credentials.private_key,
            algorithm="ES256",
            headers={"kid": self.credentials.key_id},
        )

    async def _post(self, path: str, body: Dict[str, Any]) -> httpx.Response:
        url = f"{self.credentials.api_url.rstrip('/')}/{path}"
        headers = {"Authorization": f"Bearer {self._token()}", "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"DeviceCheck request failed: {exc}") from exc
        if resp.status_code != 200:
            raise UpstreamError(f"DeviceCheck {path} failed: {resp.status_code} - {resp.text[:200]}")
        return resp

    async def query_two_bits(self, device_token: str) -> Dict[str, Any]:
        resp = await self._post(
            "query_two_bits",
            {"device_token": device_token, "timestamp": int(time.time() * 1000)},
        )
        # An unseen device answers 200 with a plain text body
        try:
            data = resp.json()
        except ValueError:
            data = {}
        return {
            "bit0": bool(data.get("bit0", False)),
            "bit1": bool(data.get("bit1", False)),
            "last_update_time": data.get("last_update_time"),
        }

    async def update_two_bits(self, device_token: str, *, bit0: bool, bit1: bool = False) -> None:
        await self._post(
            "update_two_bits",
            {
                "device_token": device_token,
                "timestamp": int(time.time() * 1000),
                "bit0": bit0,
                "bit1": bit1,
            },
        )


class DeviceLedger:
    """Store-backed device records (``device_tracking``)."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return await self.store.get(DEVICE_TRACKING, key)

    async def mark_used(
        self,
        key: str,
        user_id: Optional[str],
        now: dt.datetime,
        fallback: Optional[FallbackDeviceToken] = None,
    ) -> None:
        record: Dict[str, Any] = {
            "hasCreatedAccount": True,
            "userId": user_id,
            "createdAt": now,
            "lastUpdated": now,
        }
        if fallback is not None:
            record.update({"platform": fallback.platform, "deviceId": fallback.deviceId})
        await self.store.set(DEVICE_TRACKING, key, record)

    async def allow_new_account(self, key: str, email: str, now: dt.datetime) -> None:
        await self.store.update(
            DEVICE_TRACKING,
            key,
            {
                "previousAccountDeleted": True,
                "allowedNewAccountAt": now,
                "newAccountEmail": email,
                "lastUpdated": now,
            },
        )

    async def annotate_account_deleted(
        self,
        user_id: str,
        had_active_subscription: bool,
        subscription_status: str,
        now: dt.datetime,
    ) -> int:
        """Flag every device that created ``user_id`` as belonging to a deleted account."""
        records = await (
            self.store.query(DEVICE_TRACKING)
            .where("userId", "==", user_id)
            .where("hasCreatedAccount", "==", True)
            .get()
        )
        if not records:
            logger.info("[device] no device records for deleted user=%s", mask(user_id))
            return 0
        batch = self.store.batch()
        for snap in records:
            batch.update(
                DEVICE_TRACKING,
                snap.id,
                {
                    "accountDeleted": True,
                    "accountDeletedAt": now,
                    "hadActiveSubscription": had_active_subscription,
                    "subscriptionStatus": subscription_status,
                },
            )
        await batch.commit()
        logger.info("[device] annotated %d device record(s) for deleted user=%s", len(records), mask(user_id))
        return len(records)


class DeviceGate:
    def __init__(
        self,
        store: DocumentStore,
        config: ServiceConfig,
        client: Optional[DeviceCheckClient] = None,
        identities: Optional[IdentityDirectory] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.ledger = DeviceLedger(store)
        self.identities = identities or IdentityDirectory(store)
        if client is None and config.device_check is not None:
            client = DeviceCheckClient(config.device_check)
        self.client = client

    async def evaluate(self, device_token: str, email: str, now: Optional[dt.datetime] = None) -> GateDecision:
        if not self.config.device_check_enabled:
            return GateDecision(True, "disabled", DISABLED_MESSAGE)
        now = now or utcnow()
        fallback = parse_fallback_token(device_token)
        key = ledger_key(device_token, fallback is not None)

        try:
            used = await self._device_used(device_token, key, fallback is not None)
            if used:
                record = await self.ledger.get(key) or {}
                if await self._deleted_account_exception(record):
                    logger.info("[device] previous account on device was deleted and unsubscribed; allowing %s", email)
                    if record:
                        await self.ledger.allow_new_account(key, email, now)
                else:
                    logger.warning("[device] device %s already created an account", mask(device_token, 20))
                    sentry_metric_inc("device_gate.blocked", tags={"reason": "device_used"})
                    return GateDecision(False, "device_used", DEVICE_USED_MESSAGE)
        except Exception:
            logger.exception("[device] device lookup failed; allowing account creation")

        if await self.identities.email_registered(email):
            sentry_metric_inc("device_gate.blocked", tags={"reason": "email_exists"})
            return GateDecision(False, "email_exists", EMAIL_EXISTS_MESSAGE)
        return GateDecision(True, "eligible", ELIGIBLE_MESSAGE)

    async def _device_used(self, device_token: str, key: str, fallback: bool) -> bool:
        if fallback:
            record = await self.ledger.get(key)
            return bool(record and record.get("hasCreatedAccount"))
        if self.client is None:
            logger.warning("[device] DeviceCheck credentials missing; treating device as unseen")
            return False
        bits = await self.client.query_two_bits(device_token)
        return bits["bit0"]

    async def _deleted_account_exception(self, record: Dict[str, Any]) -> bool:
        """True when the device's previous account is deleted and held no paid subscription.

        The deleted-account record must still show the account as deleted; a
        recovered account keeps the device blocked.  The ledger annotation
        written at deletion time, when present, decides the paid check.
        """
        previous_user = record.get("userId")
        if not previous_user:
            return False
        deleted = await self.store.get(DELETED_ACCOUNTS, previous_user)
        if not deleted or deleted.get("status") not in _RELEASING_STATUSES:
            return False
        paid_source = record if record.get("accountDeleted") else deleted
        return not (
            paid_source.get("hadActiveSubscription") is True
            or paid_source.get("subscriptionStatus") in _PAID_STATUSES
        )

    async def complete_account_creation(
        self, device_token: str, user_id: Optional[str] = None, now: Optional[dt.datetime] = None
    ) -> Dict[str, Any]:
        if not self.config.device_check_enabled:
            return {"success": True, "message": "Device check disabled - account creation completed without device marking"}
        now = now or utcnow()
        fallback = parse_fallback_token(device_token)
        key = ledger_key(device_token, fallback is not None)

        if fallback is None and self.client is not None:
            try:
                await self.client.update_two_bits(device_token, bit0=True)
            except Exception:
                logger.warning("[device] DeviceCheck update failed; account creation continues", exc_info=True)
        try:
            await self.ledger.mark_used(key, user_id, now, fallback)
        except Exception:
            logger.warning("[device] failed to record device %s", mask(device_token, 20), exc_info=True)
        sentry_metric_inc("device_gate.completed", tags={"fallback": fallback is not None})
        return {"success": True, "message": "Account creation completed successfully"}


__all__ = [
    "DeviceCheckClient",
    "DeviceGate",
    "DeviceLedger",
    "GateDecision",
    "ledger_key",
    "parse_fallback_token",
]
