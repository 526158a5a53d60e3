"""Celery task bodies for billing maintenance jobs; `worker.py` registers and schedules them."""

from __future__ import annotations

import logging

from observability import get_logger, log_event

_LOGGER = get_logger("renvo.billing.tasks")


def run_replay_failed_events() -> dict[str, int]:
    """Re-run parked ledger entries that still have retries left."""
    from .service import replay_failed_events

    summary = replay_failed_events()
    if summary["attempted"] or summary["skipped"]:
        log_event(_LOGGER, logging.INFO, "billing.replay_failed_events.completed", **summary)
    return summary


def run_expire_lapsed_subscriptions() -> int:
    """Downgrade canceled / grace-period rows whose entitlement has run out."""
    from .service import expire_lapsed_subscriptions

    expired = expire_lapsed_subscriptions()
    if expired:
        log_event(_LOGGER, logging.INFO, "billing.expire_lapsed_subscriptions.completed", expired_count=expired)
    return expired


def run_past_due_sweep() -> dict[str, int]:
    from .renewals import past_due_sweep

    counts = past_due_sweep()
    log_event(
        _LOGGER,
        logging.INFO,
        "billing.past_due_sweep.completed",
        users_with_past_due=len(counts),
        past_due_items=sum(counts.values()),
    )
    return counts
