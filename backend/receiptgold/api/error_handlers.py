"""
Exception handlers for FastAPI.
Service errors keep their stable code so clients can branch on it.
"""

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.status import HTTP_400_BAD_REQUEST, HTTP_500_INTERNAL_SERVER_ERROR

from receiptgold.core.errors import STATUS_BY_CODE, ServiceError
from receiptgold.core.observability import capture_exception

logger = logging.getLogger(__name__)


def error_body(code: str, message: str, details=None) -> dict:
    body = {"code": code, "message": message}
    if details:
        body["details"] = details
    return {"error": body}


def service_error_handler(request: Request, exc: ServiceError):
    status = STATUS_BY_CODE.get(exc.code, HTTP_500_INTERNAL_SERVER_ERROR)
    if status >= 500:
        capture_exception(exc)
    return JSONResponse(status_code=status, content={"error": exc.to_dict()})


def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=HTTP_400_BAD_REQUEST,
        content=error_body(
            "invalid-argument",
            "Request validation failed",
            [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()],
        ),
    )


def generic_exception_handler(request: Request, exc: Exception):
    logger.error("[api] unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    capture_exception(exc)
    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("internal", "Internal server error"),
    )
