"""Dramatiq worker entry point.

Importing this module configures the broker, registers every actor and,
when ``SWEEP_CRON_ENABLED`` is set, starts a lightweight in-process cron
loop that enqueues the scheduled sweeps.

Run with:
    dramatiq receiptgold.worker
"""

import logging
import os
import threading
import time
from pathlib import Path

from dotenv import load_dotenv

os.environ.setdefault("ENVIRONMENT", "development")

# Load the repo root .env explicitly to avoid relying on CWD
repo_root = Path(__file__).resolve().parents[2]
root_env = repo_root / ".env"
if root_env.exists():
    load_dotenv(dotenv_path=str(root_env), override=False)

from receiptgold.core.observability import init_sentry  # noqa: E402

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

if init_sentry("worker"):
    logger.info("Sentry SDK initialized for worker")

# Import tasks to register them with the broker
from receiptgold.core.tasks import (  # noqa: E402,F401
    broker,
    monitor_bank_connections,
    process_billing_event,
    purge_deleted_accounts,
    reset_monthly_usage,
)

logger.info("Tasks registered successfully")


def _cron_schedule():
    """Pairs of (actor, interval seconds) enqueued by the cron loop."""
    return [
        (reset_monthly_usage, int(os.getenv("USAGE_RESET_INTERVAL_SECONDS", "3600"))),
        (monitor_bank_connections, int(os.getenv("BANK_HEALTH_INTERVAL_SECONDS", str(6 * 3600)))),
        (purge_deleted_accounts, int(os.getenv("PURGE_INTERVAL_SECONDS", str(24 * 3600)))),
    ]


def _maybe_start_sweep_cron():  # pragma: no cover - simple orchestrator
    if os.getenv("SWEEP_CRON_ENABLED", "false").lower() not in {"1", "true", "yes"}:
        return

    def loop(actor, interval):
        while True:
            try:
                logger.info("[cron] enqueue %s interval=%ss", actor.actor_name, interval)
                actor.send()
            except Exception as e:
                logger.warning("[cron] failed to enqueue %s: %s", actor.actor_name, e)
            time.sleep(interval)

    for actor, interval in _cron_schedule():
        t = threading.Thread(target=loop, args=(actor, interval), name=f"{actor.actor_name}-cron", daemon=True)
        t.start()
    logger.info("Sweep cron loops started")


_maybe_start_sweep_cron()
