"""Platform trigger deliveries (auth lifecycle and new receipts).

These are invoked by the hosting platform, never by clients.  Failures are
logged and answered with 200 so the platform does not replay the trigger;
the handlers are idempotent when it does.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from receiptgold.api.dependencies import get_services, verify_trigger_secret
from receiptgold.core.observability import capture_exception
from receiptgold.models.schemas import AuthUserPayload, ReceiptCreatedPayload
from receiptgold.services.registry import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/triggers", tags=["triggers"], dependencies=[Depends(verify_trigger_secret)])


def _failed(exc: Exception) -> JSONResponse:
    capture_exception(exc)
    return JSONResponse(status_code=200, content={"ok": False, "error": str(exc)})


@router.post("/auth/user-created")
async def user_created(user: AuthUserPayload, services: Services = Depends(get_services)):
    try:
        result = await services.lifecycle.on_user_create(user)
    except Exception as exc:
        logger.exception("[trigger] user-created failed for user=%s", user.uid)
        return _failed(exc)
    return {
        "ok": True,
        "outcome": result.outcome,
        "recoveredFrom": result.recovered_from,
        "restoredFrom": result.restored_from,
    }


@router.post("/auth/user-deleted")
async def user_deleted(user: AuthUserPayload, services: Services = Depends(get_services)):
    try:
        result = await services.lifecycle.on_user_delete(user)
    except Exception as exc:
        logger.exception("[trigger] user-deleted failed for user=%s", user.uid)
        return _failed(exc)
    return {"ok": True, "alreadyDeleted": result.already_deleted, "softDeleted": result.soft_deleted}


@router.post("/receipts/created")
async def receipt_created(payload: ReceiptCreatedPayload, services: Services = Depends(get_services)):
    try:
        result = await services.receipts.on_receipt_created(payload.receiptId, payload.receipt)
    except Exception as exc:
        logger.exception("[trigger] receipt-created failed for receipt=%s", payload.receiptId)
        return _failed(exc)
    return {
        "ok": True,
        "status": result.status,
        "receiptsUploaded": result.receipts_uploaded,
        "limit": result.limit,
    }
