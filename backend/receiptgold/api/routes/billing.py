"""Callable RPCs for billing, teammate access and account recovery.

Callable bodies arrive either wrapped as ``{"data": {...}}`` or flat;
responses are wrapped as ``{"result": {...}}``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends

from receiptgold.api.dependencies import get_admin_context, get_auth_context, get_services, parse_callable
from receiptgold.core.errors import InvalidArgumentError
from receiptgold.core.observability import sentry_set_tags
from receiptgold.core.security import AuthContext
from receiptgold.models.schemas import (
    AccountHolderCheckRequest,
    AccountHolderCheckResponse,
    ConfirmPaymentRequest,
    MarkAccountRecoveredRequest,
)
from receiptgold.services.registry import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rpc", tags=["billing"])


@router.post("/confirmSubscriptionPayment")
async def confirm_subscription_payment(
    payload: Optional[Dict[str, Any]] = Body(None),
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
):
    """Record a client-confirmed payment (billing fields and status only)."""
    request = parse_callable(ConfirmPaymentRequest, payload)
    sentry_set_tags({"rpc": "confirm_payment"})
    response = await services.reconciler.confirm_payment(ctx.uid, request)
    return {"result": response.model_dump()}


@router.post("/startFreeTrial")
async def start_free_trial(
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
):
    record = await services.reconciler.start_trial(ctx.uid)
    trial = record.get("trial") or {}
    return {"result": {"success": True, "tier": record.get("currentTier"), "expiresAt": trial.get("expiresAt")}}


@router.post("/checkAccountHolderSubscription")
async def check_account_holder_subscription(
    payload: Optional[Dict[str, Any]] = Body(None),
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
):
    """Teammate sign-in: may the caller rely on their account holder's subscription?

    Fails closed: any problem, including a malformed request, answers False.
    """
    try:
        request = parse_callable(AccountHolderCheckRequest, payload)
    except InvalidArgumentError as exc:
        logger.warning("[rpc] account holder check from %s rejected: %s", ctx.uid, exc)
        return {"result": AccountHolderCheckResponse(hasActiveSubscription=False).model_dump()}
    allowed = await services.team_access.account_holder_has_team_access(request.accountHolderId)
    return {"result": AccountHolderCheckResponse(hasActiveSubscription=allowed).model_dump()}


@router.post("/markAccountRecovered")
async def mark_account_recovered(
    payload: Optional[Dict[str, Any]] = Body(None),
    ctx: AuthContext = Depends(get_admin_context),
    services: Services = Depends(get_services),
):
    request = parse_callable(MarkAccountRecoveredRequest, payload)
    record_id = await services.lifecycle.mark_account_recovered(request.email, request.newUserId)
    logger.info("[rpc] admin %s marked deleted account %s recovered", ctx.uid, record_id)
    return {"result": {"success": True, "deletedAccountId": record_id}}
