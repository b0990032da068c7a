"""Firebase ID token verification.

Callable RPCs carry a Firebase ID token as ``Authorization: Bearer``.
Tokens are RS256 JWTs signed by ``securetoken@system.gserviceaccount.com``;
the public keys are published as a JWKS at ``FIREBASE_JWKS_URL``.  The
``aud`` claim must equal the Firebase project id and ``iss`` must be
``https://securetoken.google.com/<project id>``.

Set ``DEV_AUTH_BYPASS`` locally to skip verification; the bypass caller is
``dev-user`` unless the request names another uid in ``X-Dev-User``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests
from jose import jwt

from receiptgold.core.config import settings
from receiptgold.core.errors import InternalError, PermissionDeniedError, UnauthenticatedError

logger = logging.getLogger(__name__)

DEV_USER_ID = "dev-user"

# JWKS cache.  Keys rotate roughly daily; an unknown kid refreshes once.
_firebase_jwks: Optional[Dict] = None


@dataclass(frozen=True)
class AuthContext:
    uid: str
    email: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_admin(self) -> bool:
        return bool(self.claims.get("admin"))


def get_firebase_jwks() -> Dict:
    """Fetch and cache the JWKS used to verify Firebase ID tokens."""
    global _firebase_jwks
    if _firebase_jwks is not None:
        return _firebase_jwks
    try:
        resp = requests.get(settings.FIREBASE_JWKS_URL, timeout=5)
        resp.raise_for_status()
        data = resp.json()
    except Exception as exc:
        raise InternalError(f"Failed to fetch JWKS: {exc}") from exc
    if not isinstance(data, dict) or "keys" not in data:
        raise InternalError("Invalid JWKS payload")
    _firebase_jwks = data
    return data


def _find_key(kid: str) -> Optional[Dict]:
    return next((k for k in get_firebase_jwks().get("keys", []) if k.get("kid") == kid), None)


def decode_firebase_token(token: str) -> Dict[str, Any]:
    """Verify a Firebase ID token and return its claims.

    Raises:
        UnauthenticatedError: malformed, expired or wrongly signed tokens.
    """
    global _firebase_jwks
    project_id = settings.FIREBASE_PROJECT_ID
    if not project_id:
        raise InternalError("FIREBASE_PROJECT_ID is not configured")
    try:
        header = jwt.get_unverified_header(token)
    except Exception as exc:
        raise UnauthenticatedError(f"Invalid token header: {exc}") from exc
    kid = header.get("kid")
    if not kid:
        raise UnauthenticatedError("Invalid token: missing kid header")
    key = _find_key(kid)
    if key is None:
        # Rotation: refresh once
        _firebase_jwks = None
        key = _find_key(kid)
        if key is None:
            raise UnauthenticatedError("Unknown signing key (kid) for token")
    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=project_id,
            issuer=f"https://securetoken.google.com/{project_id}",
        )
    except Exception as exc:
        raise UnauthenticatedError(f"Invalid token: {exc}") from exc
    if not claims.get("sub"):
        raise UnauthenticatedError("Invalid token: no sub claim")
    return claims


def authenticate(authorization: Optional[str], dev_user: Optional[str] = None) -> AuthContext:
    if settings.DEV_AUTH_BYPASS:
        uid = dev_user or DEV_USER_ID
        return AuthContext(uid=uid, email="dev@example.com", claims={"sub": uid, "admin": True})
    if not authorization or not authorization.startswith("Bearer "):
        raise UnauthenticatedError("User must be authenticated")
    claims = decode_firebase_token(authorization.split(" ", 1)[1].strip())
    return AuthContext(uid=claims["sub"], email=claims.get("email"), claims=claims)


def require_admin(ctx: AuthContext) -> AuthContext:
    if not ctx.is_admin:
        raise PermissionDeniedError("Admin privileges required")
    return ctx


__all__ = ["AuthContext", "authenticate", "decode_firebase_token", "get_firebase_jwks", "require_admin"]
