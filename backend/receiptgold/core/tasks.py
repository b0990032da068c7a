"""Dramatiq actors for billing events and the scheduled sweeps.

The worker hosts two kinds of work:

* ``process_billing_event`` consumes billing provider events delivered
  through the eventing bridge (and the HTTP webhook, which enqueues here).
  It re-raises on failure so the Retries middleware redelivers; the
  reconciler is idempotent per event id.
* the sweeps (``reset_monthly_usage``, ``monitor_bank_connections``,
  ``purge_deleted_accounts``) process one bounded page per message and
  enqueue themselves again with a cursor while more work remains.

Start a worker with::

    dramatiq receiptgold.worker --processes 1 --threads 4

The broker URL defaults to ``REDIS_URL``; ``DRAMATIQ_BROKER_URL`` overrides it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.middleware import AgeLimit, Retries, ShutdownNotifications, TimeLimit
from pydantic import ValidationError

from receiptgold.core.config import settings
from receiptgold.core.observability import sentry_breadcrumb, sentry_metric_inc
from receiptgold.models.schemas import BillingEvent, TransferEvent, parse_billing_event
from receiptgold.services.registry import Services, service_scope

logger = logging.getLogger(__name__)

redis_url = settings.DRAMATIQ_BROKER_URL or settings.REDIS_URL

redis_broker = RedisBroker(url=redis_url)


def _has_mw(broker, mw_cls) -> bool:
    return any(isinstance(m, mw_cls) for m in broker.middleware)


if not _has_mw(redis_broker, AgeLimit):
    redis_broker.add_middleware(AgeLimit())
if not _has_mw(redis_broker, TimeLimit):
    redis_broker.add_middleware(TimeLimit())
if not _has_mw(redis_broker, ShutdownNotifications):
    redis_broker.add_middleware(ShutdownNotifications())
if not _has_mw(redis_broker, Retries):
    # Exponential backoff: 5s, 10s, 20s ... capped at 1 minute
    redis_broker.add_middleware(Retries(max_retries=5, min_backoff=5000, max_backoff=60000))

dramatiq.set_broker(redis_broker)

# Export the broker for the Dramatiq CLI
broker = redis_broker


# ---------------------------------------------------------------------------
# Billing events


async def dispatch_billing_event(services: Services, event: BillingEvent) -> str:
    """Route a parsed event to the transfer engine or the reconciler."""
    if isinstance(event, TransferEvent):
        result = await services.transfer.handle_transfer_event(event)
        return "transferred" if result is not None and result.committed else "skipped"
    outcome = await services.reconciler.handle_event(event)
    if outcome.duplicate:
        return "duplicate"
    return outcome.skipped or "applied"


async def _process_billing_event(event_type: str, envelope: Dict[str, Any]) -> Optional[str]:
    try:
        event = parse_billing_event(event_type, envelope)
    except (ValidationError, ValueError) as exc:
        logger.error("[billing-event] skipping malformed %s event %s: %s", event_type, envelope.get("id"), exc)
        sentry_metric_inc("revenuecat.event.malformed", tags={"type": event_type})
        return None

    async with service_scope(pooled=False) as services:
        return await dispatch_billing_event(services, event)


@dramatiq.actor(max_retries=5)
def process_billing_event(event_type: str, envelope: dict) -> None:
    """Apply one billing provider event; failures re-raise for redelivery."""
    sentry_breadcrumb("billing", "process_billing_event", data={"type": event_type, "id": envelope.get("id")})
    try:
        outcome = asyncio.run(_process_billing_event(event_type, envelope))
    except Exception:
        logger.exception("[billing-event] failed to process %s event %s", event_type, envelope.get("id"))
        sentry_metric_inc("revenuecat.event.failed", tags={"type": event_type})
        raise
    logger.info("[billing-event] %s event %s -> %s", event_type, envelope.get("id"), outcome)


# ---------------------------------------------------------------------------
# Sweeps


async def _reset_usage(cursor: Optional[str]):
    async with service_scope(pooled=False) as services:
        return await services.reconciler.reset_usage(start_after=cursor)


async def _health_check(cursor: Optional[str]):
    async with service_scope(pooled=False) as services:
        return await services.bank_monitor.run_health_check(start_after=cursor)


async def _purge():
    async with service_scope(pooled=False) as services:
        return await services.lifecycle.purge_deleted_accounts()


@dramatiq.actor(max_retries=0, time_limit=10 * 60 * 1000)
def reset_monthly_usage(cursor: Optional[str] = None) -> None:
    result = asyncio.run(_reset_usage(cursor))
    if result.next_cursor:
        logger.info("[usage-reset] more subscriptions after %s; enqueueing next page", result.next_cursor)
        reset_monthly_usage.send(cursor=result.next_cursor)


@dramatiq.actor(max_retries=0, time_limit=10 * 60 * 1000)
def monitor_bank_connections(cursor: Optional[str] = None) -> None:
    result = asyncio.run(_health_check(cursor))
    sentry_metric_inc("bank.health_check.run")
    if result.next_cursor:
        logger.info("[bank-health] more items after %s; enqueueing next page", result.next_cursor)
        monitor_bank_connections.send(cursor=result.next_cursor)


@dramatiq.actor(max_retries=0, time_limit=10 * 60 * 1000)
def purge_deleted_accounts() -> None:
    result = asyncio.run(_purge())
    # Purged records leave the query, so the next batch needs no cursor
    if result.next_cursor and not result.failed:
        logger.info("[purge] batch limit reached; enqueueing another batch")
        purge_deleted_accounts.send()


SCHEDULED_SWEEPS = {
    "usage-reset": reset_monthly_usage,
    "bank-health": monitor_bank_connections,
    "purge": purge_deleted_accounts,
}


__all__ = [
    "SCHEDULED_SWEEPS",
    "broker",
    "dispatch_billing_event",
    "monitor_bank_connections",
    "process_billing_event",
    "purge_deleted_accounts",
    "reset_monthly_usage",
]
