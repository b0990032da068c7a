from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from receiptgold.api.dependencies import get_services, verify_revenuecat_authorization
from receiptgold.core.config import settings
from receiptgold.core.observability import sentry_breadcrumb, sentry_metric_inc, sentry_set_tags
from receiptgold.core.tasks import dispatch_billing_event, process_billing_event
from receiptgold.models.enums import BillingEventType
from receiptgold.models.schemas import parse_billing_event
from receiptgold.services.registry import Services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

DEDUP_TTL_SECONDS = 7 * 24 * 3600


@lru_cache(maxsize=1)
def _get_redis_client():
    """Return a cached Redis client for lightweight operations.

    Only used for SET NX EX webhook de-duplication; failures are non-fatal.
    """
    try:
        import redis

        return redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
    except Exception as e:  # pragma: no cover - webhook continues without dedup
        logger.warning("[revenuecat] redis unavailable for dedup: %s", e)
        return None


def _seen_before(event_type: str, event_id: str) -> bool:
    try:
        r = _get_redis_client()
        if r is None:
            return False
        # Store for 7 days; an existing key means this delivery was already accepted
        return not r.set(name=f"revenuecat:webhook:{event_type}:{event_id}", value="1", nx=True, ex=DEDUP_TTL_SECONDS)
    except Exception as e:
        logger.warning("[revenuecat] redis dedup check failed: %s", e)
        return False


async def _process_inline(services: Services, event_type: str, envelope: Dict[str, Any]) -> str:
    return await dispatch_billing_event(services, parse_billing_event(event_type, envelope))


@router.post("/webhooks/revenuecat/{event_type}", dependencies=[Depends(verify_revenuecat_authorization)])
async def revenuecat_webhook(event_type: str, request: Request, services: Services = Depends(get_services)):
    """Accept one billing provider event.

    Always answers 200 once the caller is authenticated: processing happens
    on the worker (or inline when the broker is unreachable) and failures
    are only logged.
    """
    try:
        kind = BillingEventType(event_type)
    except ValueError:
        logger.warning("[revenuecat] ignoring unknown event type %s", event_type)
        return JSONResponse(status_code=200, content={"received": True, "ignored": True, "type": event_type})

    try:
        envelope = await request.json()
    except ValueError:
        logger.error("[revenuecat] %s webhook body is not JSON", event_type)
        return JSONResponse(status_code=200, content={"received": True, "ignored": True, "type": event_type})
    if not isinstance(envelope, dict):
        logger.error("[revenuecat] %s webhook body is not an object", event_type)
        return JSONResponse(status_code=200, content={"received": True, "ignored": True, "type": event_type})

    event_id = envelope.get("id")
    sentry_metric_inc("revenuecat.webhook.received", tags={"event_type": kind.value})
    sentry_set_tags({"revenuecat.event_type": kind.value})
    sentry_breadcrumb(category="revenuecat", message=f"webhook:{kind.value}", data={"id": event_id})

    if event_id and _seen_before(kind.value, str(event_id)):
        logger.info("[revenuecat] duplicate webhook event ignored id=%s", event_id)
        sentry_metric_inc("revenuecat.webhook.duplicate")
        return JSONResponse(status_code=200, content={"received": True, "duplicate": True, "id": event_id})

    # Offload processing to Dramatiq and return immediately
    try:
        process_billing_event.send(kind.value, envelope)
        sentry_metric_inc("revenuecat.webhook.queued", tags={"event_type": kind.value})
        return JSONResponse(status_code=200, content={"received": True, "queued": True, "type": kind.value})
    except Exception as e:
        logger.warning("[revenuecat] failed to enqueue event for async processing: %s", e)
        sentry_metric_inc("revenuecat.webhook.enqueue_error", tags={"event_type": kind.value})

    # Fallback: process inline
    try:
        outcome = await _process_inline(services, kind.value, envelope)
    except ValidationError as e:
        logger.error("[revenuecat] skipping malformed %s event %s: %s", kind.value, event_id, e)
        return JSONResponse(status_code=200, content={"received": True, "ignored": True, "type": kind.value})
    except Exception:
        logger.exception("[revenuecat] inline processing failed for %s event %s", kind.value, event_id)
        sentry_metric_inc("revenuecat.webhook.failed", tags={"event_type": kind.value})
        return JSONResponse(status_code=200, content={"received": True, "type": kind.value})
    return JSONResponse(status_code=200, content={"received": True, "type": kind.value, "outcome": outcome})
