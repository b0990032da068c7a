from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from receiptgold.api.dependencies import get_services
from receiptgold.models.schemas import BankWebhook
from receiptgold.services.registry import Services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/plaid")
async def plaid_webhook(request: Request, services: Services = Depends(get_services)):
    """Apply a bank-connection webhook.

    Answers 200 even when the body is unusable or processing fails so the
    provider does not retry.
    """
    try:
        webhook = BankWebhook.model_validate(await request.json())
    except (ValueError, ValidationError) as e:
        logger.error("[bank-webhook] unusable webhook body: %s", e)
        return JSONResponse(status_code=200, content={"received": True, "ignored": True})

    try:
        outcome = await services.bank_webhooks.dispatch(webhook)
    except Exception:
        logger.exception(
            "[bank-webhook] failed to process %s %s item=%s", webhook.webhook_type, webhook.webhook_code, webhook.item_id
        )
        return JSONResponse(status_code=200, content={"received": True, "error": "processing_failed"})
    return JSONResponse(status_code=200, content={"received": True, "outcome": outcome})
