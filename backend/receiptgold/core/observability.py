"""Observability helpers (Sentry init & common scrubbing).

Centralises Sentry initialisation for API and worker so configuration
does not drift.  Initialisation is a no-op when no DSN is configured.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from receiptgold.core.config import settings

logger = logging.getLogger(__name__)


def _before_send(event: Dict[str, Any], hint: Dict[str, Any] | None = None):
	"""Scrub obvious PII / secrets before sending to Sentry.

	- Drop Authorization, Cookie and trigger secret headers
	- Remove request data/body (keep method + URL)
	"""
	try:
		req = event.get("request") or {}
		headers = req.get("headers") or {}
		for k in list(headers.keys()):
			if k.lower() in ("authorization", "cookie", "set-cookie", "x-trigger-secret"):
				headers.pop(k, None)
		# Webhook bodies carry emails and receipts
		req.pop("data", None)
		event["request"] = req
	except Exception:  # best effort
		logger.debug("sentry scrub failed", exc_info=True)
	return event


def init_sentry(service: str) -> bool:
	"""Initialise Sentry once for a given process.

	Returns True if Sentry was initialised; False otherwise.
	"""
	if not settings.SENTRY_DSN:
		return False
	if getattr(init_sentry, "_done", False):  # prevent duplicate init in same process
		return True
	sentry_sdk.init(
		dsn=settings.SENTRY_DSN,
		integrations=[FastApiIntegration(), SqlalchemyIntegration()],
		traces_sample_rate=float(settings.SENTRY_TRACES_SAMPLE_RATE or 0),
		profiles_sample_rate=float(settings.SENTRY_PROFILES_SAMPLE_RATE or 0),
		environment=settings.ENVIRONMENT,
		release=settings.SENTRY_RELEASE,
		before_send=_before_send,
	)
	sentry_sdk.set_tag("service", service)
	init_sentry._done = True  # type: ignore[attr-defined]
	return True


def sentry_set_tags(tags: Dict[str, Any]) -> None:
	"""Best-effort: set tags on the current scope (strings only)."""
	if not settings.SENTRY_DSN:
		return
	try:
		for k, v in (tags or {}).items():
			sentry_sdk.set_tag(str(k), str(v)[:128] if v is not None else "")
	except Exception:
		logger.debug("sentry tag failed", exc_info=True)


def sentry_breadcrumb(category: str, message: str, level: str = "info", data: Optional[Dict[str, Any]] = None) -> None:
	"""Best-effort: add a breadcrumb for important lifecycle steps."""
	if not settings.SENTRY_DSN:
		return
	try:
		sentry_sdk.add_breadcrumb(category=category, message=message, level=level, data=data or {})
	except Exception:
		logger.debug("sentry breadcrumb failed", exc_info=True)


def sentry_metric_inc(name: str, value: int = 1, tags: Optional[Dict[str, Any]] = None) -> None:
	"""Best-effort: increment a counter using Sentry Metrics if available.

	Falls back to no-op when metrics are unavailable in the installed SDK.
	"""
	if not settings.SENTRY_DSN:
		return
	try:
		from sentry_sdk import metrics  # type: ignore[attr-defined]

		# Coerce tag values to short strings to avoid PII/large payloads
		safe_tags = {str(k): str(v)[:64] for k, v in (tags or {}).items()}
		metrics.increment(name, value=value, tags=safe_tags)  # type: ignore
	except Exception:
		return


def capture_exception(exc: BaseException) -> None:
	if not settings.SENTRY_DSN:
		return
	try:
		sentry_sdk.capture_exception(exc)
	except Exception:
		logger.debug("sentry capture failed", exc_info=True)


__all__ = ["init_sentry", "sentry_set_tags", "sentry_breadcrumb", "sentry_metric_inc", "capture_exception"]
