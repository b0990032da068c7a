"""Common dependencies for FastAPI routes.

Services are built once in the app lifespan and kept on ``app.state``;
tests place services bound to a temporary store on ``app.state``.
Token verification lives in ``receiptgold.core.security``.
"""

from __future__ import annotations

import hmac
from typing import Any, Dict, Optional, Type, TypeVar

from fastapi import Depends, Header, Request
from pydantic import BaseModel, ValidationError

from receiptgold.core.config import get_webhook_auth_list, settings
from receiptgold.core.errors import InternalError, InvalidArgumentError, UnauthenticatedError
from receiptgold.core.security import AuthContext, authenticate, require_admin
from receiptgold.services.registry import Services


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise InternalError("Services are not initialised")
    return services


def get_auth_context(
    authorization: Optional[str] = Header(default=None),
    x_dev_user: Optional[str] = Header(default=None, alias="X-Dev-User"),
) -> AuthContext:
    return authenticate(authorization, dev_user=x_dev_user)


def get_admin_context(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
    return require_admin(ctx)


def _matches_any(value: str, accepted: list) -> bool:
    # Constant time across all candidates
    matched = False
    for candidate in accepted:
        if hmac.compare_digest(value.encode(), candidate.encode()):
            matched = True
    return matched


def verify_revenuecat_authorization(authorization: Optional[str] = Header(default=None)) -> None:
    """Check the shared Authorization value configured on the RevenueCat webhook."""
    accepted = get_webhook_auth_list()
    if not accepted:
        # Unconfigured deployments accept deliveries (local development)
        return
    if not authorization or not _matches_any(authorization, accepted):
        raise UnauthenticatedError("Invalid webhook authorization")


def verify_trigger_secret(x_trigger_secret: Optional[str] = Header(default=None, alias="X-Trigger-Secret")) -> None:
    secret = settings.TRIGGER_SHARED_SECRET
    if not secret:
        return
    if not x_trigger_secret or not hmac.compare_digest(x_trigger_secret.encode(), secret.encode()):
        raise UnauthenticatedError("Invalid trigger secret")


M = TypeVar("M", bound=BaseModel)


def parse_callable(model: Type[M], payload: Optional[Dict[str, Any]]) -> M:
    """Validate a callable body, wrapped as {"data": ...} or flat."""
    payload = payload or {}
    data = payload.get("data", payload)
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in e["loc"]) or "body" for e in exc.errors())
        raise InvalidArgumentError(f"Missing or invalid fields: {fields}") from exc


__all__ = [
    "get_admin_context",
    "get_auth_context",
    "get_services",
    "parse_callable",
    "verify_revenuecat_authorization",
    "verify_trigger_secret",
]
