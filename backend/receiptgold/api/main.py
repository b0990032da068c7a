"""Entry point for the FastAPI application.

This module constructs the FastAPI app, registers the exception handlers,
includes all routers and opens the document store for the lifetime of
the process.  Run it with uvicorn::

    uvicorn receiptgold.api.main:app
"""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from receiptgold import __version__
from receiptgold.api.error_handlers import (
    generic_exception_handler,
    service_error_handler,
    validation_exception_handler,
)
from receiptgold.api.routes.billing import router as billing_router
from receiptgold.api.routes.devices import router as devices_router
from receiptgold.api.routes.health import router as health_router
from receiptgold.api.routes.plaid_webhooks import router as plaid_webhooks_router
from receiptgold.api.routes.revenuecat_webhooks import router as revenuecat_webhooks_router
from receiptgold.api.routes.triggers import router as triggers_router
from receiptgold.core.errors import ServiceError
from receiptgold.core.observability import init_sentry, sentry_set_tags
from receiptgold.services.registry import service_scope

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    logger.info("Starting up...")
    if init_sentry("api"):
        logger.info("Sentry SDK initialized (api)")
    async with AsyncExitStack() as stack:
        # Tests install their own services before startup
        if getattr(app.state, "services", None) is None:
            app.state.services = await stack.enter_async_context(service_scope())
        yield
        logger.info("Shutting down...")


app = FastAPI(
    title="ReceiptGold Functions API",
    version=__version__,
    lifespan=lifespan,
)


@app.middleware("http")
async def sentry_context_middleware(request: Request, call_next):
    sentry_set_tags({"path": request.url.path, "method": request.method})
    return await call_next(request)


# Device-gate endpoints are called from the app before sign-in
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["POST", "GET", "OPTIONS"],
    allow_headers=["*"],
)

# Register custom exception handlers
app.add_exception_handler(ServiceError, service_error_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Include routers
app.include_router(health_router)
app.include_router(revenuecat_webhooks_router)
app.include_router(plaid_webhooks_router)
app.include_router(billing_router)
app.include_router(devices_router)
app.include_router(triggers_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "ReceiptGold Functions API"}
