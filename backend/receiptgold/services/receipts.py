"""Receipt created trigger: monthly usage accounting and OCR hand-off.

Each new receipt increments ``receiptsUploaded`` on the owner's usage
document for the calendar month, creating the document on the first
upload of the month.  Limits come from the owner's subscription (refreshed
from the tier catalog) or, for teammates who own no subscription, from the
usage document itself.  Enforcement is behind ``ENFORCE_RECEIPT_LIMITS``;
when off, overages are only logged because the mobile client applies its
own limit.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from receiptgold.core.config import ServiceConfig
from receiptgold.core.errors import UpstreamError
from receiptgold.core.observability import sentry_metric_inc
from receiptgold.models.collections import RECEIPTS, SUBSCRIPTIONS, TEAM_INVITATIONS, TEAM_MEMBERS, USAGE, USERS
from receiptgold.models.enums import ReceiptStatus, Tier
from receiptgold.services.document_store import DocumentStore, Transaction
from receiptgold.services.tier_catalog import is_over_limit
from receiptgold.services.users import normalise_email
from receiptgold.utils.helpers import first_of_next_month, month_key, usage_doc_id, utcnow

logger = logging.getLogger(__name__)


class ReceiptLimitExceeded(Exception):
    def __init__(self, limit: int) -> None:
        super().__init__(f"Receipt limit exceeded. Current plan allows {limit} receipts per month.")
        self.limit = limit


@dataclass
class ReceiptUsageResult:
    receipt_id: str
    user_id: Optional[str]
    receipts_uploaded: int = 0
    limit: Optional[int] = None
    status: str = ReceiptStatus.UPLOADED.value


class ReceiptExtractor:
    """HTTP client for the external OCR service."""

    def __init__(self, base_url: str, *, timeout: float = 60.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def extract(self, receipt_id: str, receipt: Dict[str, Any]) -> Dict[str, Any]:
        body = {
            "receiptId": receipt_id,
            "imageUrl": receipt.get("imageUrl") or (receipt.get("images") or [{}])[0].get("url"),
            "userId": receipt.get("userId"),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(f"{self.base_url}/extract", json=body)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"OCR request failed: {exc}") from exc
        if resp.status_code != 200:
            raise UpstreamError(f"OCR service returned {resp.status_code}")
        payload = resp.json()
        return payload.get("extractedData") or payload


class ReceiptUsageService:
    def __init__(
        self,
        store: DocumentStore,
        config: ServiceConfig,
        extractor: Optional[ReceiptExtractor] = None,
    ) -> None:
        self.store = store
        self.config = config
        if extractor is None and config.ocr_service_url:
            extractor = ReceiptExtractor(config.ocr_service_url)
        self.extractor = extractor

    async def on_receipt_created(
        self, receipt_id: str, receipt: Dict[str, Any], now: Optional[dt.datetime] = None
    ) -> ReceiptUsageResult:
        now = now or utcnow()
        user_id = receipt.get("userId")
        result = ReceiptUsageResult(receipt_id, user_id)
        try:
            if not user_id:
                raise ValueError(f"Receipt {receipt_id} has no userId")
            result.receipts_uploaded, result.limit = await self._count_upload(user_id, now)
        except ReceiptLimitExceeded as exc:
            logger.warning("[receipts] user=%s over receipt limit %s; rejecting %s", user_id, exc.limit, receipt_id)
            await self._set_status(receipt_id, ReceiptStatus.REJECTED, now, errors=[str(exc)])
            result.status = ReceiptStatus.REJECTED.value
            result.limit = exc.limit
            sentry_metric_inc("receipts.rejected")
            return result
        except Exception as exc:
            logger.exception("[receipts] usage accounting failed for receipt=%s", receipt_id)
            await self._set_status(receipt_id, ReceiptStatus.ERROR, now, errors=[str(exc)])
            raise

        sentry_metric_inc("receipts.counted")
        if self.extractor is not None:
            result.status = await self._run_extraction(receipt_id, receipt, now)
        return result

    async def _limits_for(self, tx: Transaction, user_id: str, usage: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        subscription = await tx.get(SUBSCRIPTIONS, user_id)
        if subscription is not None:
            # Always the catalog's current limits for the tier
            return self.config.catalog.limits_snapshot(subscription.get("currentTier"))
        if usage is not None and usage.get("limits"):
            return usage["limits"]
        if await self._is_teammate(user_id):
            return self.config.catalog.limits_snapshot(Tier.TEAMMATE)
        raise LookupError(f"Subscription not found for user {user_id}")

    async def _is_teammate(self, user_id: str) -> bool:
        """Teammates own no subscription; membership or an invitation to their email marks them."""
        member = await (
            self.store.query(TEAM_MEMBERS).where("userId", "==", user_id).where("status", "==", "active").first()
        )
        if member is not None:
            return True
        profile = await self.store.get(USERS, user_id) or {}
        email = normalise_email(profile.get("email"))
        if not email:
            return False
        invitation = await (
            self.store.query(TEAM_INVITATIONS)
            .where("inviteEmail", "==", email)
            .where("status", "in", ["pending", "accepted"])
            .first()
        )
        return invitation is not None

    async def _count_upload(self, user_id: str, now: dt.datetime) -> tuple:
        doc_id = usage_doc_id(user_id, now)
        async with self.store.transaction() as tx:
            usage = await tx.get(USAGE, doc_id)
            limits = await self._limits_for(tx, user_id, usage)
            max_receipts = limits.get("maxReceipts")
            if usage is None:
                await tx.set(
                    USAGE,
                    doc_id,
                    {
                        "userId": user_id,
                        "month": month_key(now),
                        "receiptsUploaded": 1,
                        "apiCalls": 0,
                        "reportsGenerated": 0,
                        "limits": limits,
                        "resetDate": first_of_next_month(now),
                        "createdAt": now,
                        "updatedAt": now,
                    },
                )
                return 1, max_receipts

            # Uploads already counted this month decide whether one more fits
            used = int(usage.get("receiptsUploaded") or 0)
            if is_over_limit(used, max_receipts):
                if self.config.enforce_receipt_limits:
                    raise ReceiptLimitExceeded(max_receipts)
                logger.warning("[receipts] user=%s already at %d receipts, limit %s (not enforced)", user_id, used, max_receipts)
            count = used + 1
            await tx.update(USAGE, doc_id, {"receiptsUploaded": count, "updatedAt": now})
            return count, max_receipts

    async def _run_extraction(self, receipt_id: str, receipt: Dict[str, Any], now: dt.datetime) -> str:
        await self._set_status(receipt_id, ReceiptStatus.PROCESSING, now)
        try:
            extracted = await self.extractor.extract(receipt_id, receipt)
        except Exception as exc:
            logger.warning("[receipts] OCR failed for receipt=%s: %s", receipt_id, exc)
            await self._set_status(receipt_id, ReceiptStatus.ERROR, utcnow(), errors=[str(exc)])
            return ReceiptStatus.ERROR.value
        await self.store.set(
            RECEIPTS,
            receipt_id,
            {"status": ReceiptStatus.PROCESSED, "extractedData": extracted, "updatedAt": utcnow()},
            merge=True,
        )
        return ReceiptStatus.PROCESSED.value

    async def _set_status(
        self, receipt_id: str, status: ReceiptStatus, now: dt.datetime, errors: Optional[list] = None
    ) -> None:
        fields: Dict[str, Any] = {"status": status, "updatedAt": now}
        if errors:
            fields["processingErrors"] = errors
        await self.store.set(RECEIPTS, receipt_id, fields, merge=True)


__all__ = ["ReceiptExtractor", "ReceiptLimitExceeded", "ReceiptUsageResult", "ReceiptUsageService"]
