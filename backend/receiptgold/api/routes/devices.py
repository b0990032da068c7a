from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from receiptgold.api.dependencies import get_services, parse_callable
from receiptgold.api.error_handlers import error_body
from receiptgold.models.schemas import CompleteAccountCreationRequest, DeviceCheckRequest, DeviceCheckResponse
from receiptgold.services.registry import Services
from receiptgold.utils.helpers import mask

logger = logging.getLogger(__name__)

# Public endpoints: called before the user has credentials
router = APIRouter(tags=["devices"])


@router.post("/checkDeviceForAccountCreation")
async def check_device_for_account_creation(
    payload: Optional[Dict[str, Any]] = Body(None),
    services: Services = Depends(get_services),
):
    """Decide whether this device and email may create a new account.

    A denial is a 400 with code ``already-exists`` and a user-facing message.
    """
    request = parse_callable(DeviceCheckRequest, payload)
    decision = await services.device_gate.evaluate(request.deviceToken, request.email)
    if not decision.allow:
        logger.info("[device] denied %s (%s)", mask(request.email), decision.reason)
        return JSONResponse(status_code=400, content=error_body("already-exists", decision.message))
    body = DeviceCheckResponse(canCreateAccount=True, message=decision.message)
    return {"data": body.model_dump()}


@router.post("/completeAccountCreation")
async def complete_account_creation(
    payload: Optional[Dict[str, Any]] = Body(None),
    services: Services = Depends(get_services),
):
    request = parse_callable(CompleteAccountCreationRequest, payload)
    result = await services.device_gate.complete_account_creation(request.deviceToken, request.userId)
    return {"data": result}
