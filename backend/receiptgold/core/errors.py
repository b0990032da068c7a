"""Error types raised by the services.

Every error carries one of the callable-endpoint codes clients already
understand (``unauthenticated``, ``permission-denied`` ...).  The API layer
maps the code to an HTTP status in ``receiptgold.api.error_handlers``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    code = "internal"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class UnauthenticatedError(ServiceError):
    code = "unauthenticated"


class PermissionDeniedError(ServiceError):
    code = "permission-denied"


class InvalidArgumentError(ServiceError):
    code = "invalid-argument"


class NotFoundError(ServiceError):
    code = "not-found"


class AlreadyExistsError(ServiceError):
    code = "already-exists"


class InternalError(ServiceError):
    code = "internal"


class UpstreamError(ServiceError):
    """A collaborator (RevenueCat, DeviceCheck, OCR) failed or timed out."""

    code = "unavailable"


class TransferIncompleteError(InternalError):
    """Raised when a transfer is configured to abort on partial failure."""

    def __init__(self, warnings: list[str]) -> None:
        super().__init__(
            "Transfer aborted: %d collection(s) failed to stage" % len(warnings),
            details={"warnings": list(warnings)},
        )
        self.warnings = list(warnings)


STATUS_BY_CODE: Dict[str, int] = {
    "unauthenticated": 401,
    "permission-denied": 403,
    "invalid-argument": 400,
    "not-found": 404,
    "already-exists": 409,
    "unavailable": 503,
    "internal": 500,
}
