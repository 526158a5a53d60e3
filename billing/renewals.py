from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Final, Optional

from dateutil.relativedelta import relativedelta

from observability import get_logger, log_event

from .db import SessionFactory, session_scope
from .errors import ConcurrencyConflict, InvalidOperation, LimitReached, NotFound
from .models import (
    PaymentHistoryEntry,
    PaymentHistoryStatus,
    RecurringItem,
    RecurringItemStatus,
    RepeatInterval,
)
from .reporting import can_add_recurring_item
from .repository import BillingRepository, BillingStateError

_LOGGER = get_logger("renvo.billing.renewals")

# Calendar steps; month arithmetic clamps to the last day of the target month.
_INTERVAL_STEPS: Final[dict[RepeatInterval, relativedelta]] = {
    RepeatInterval.WEEKLY: relativedelta(days=7),
    RepeatInterval.BIWEEKLY: relativedelta(days=14),
    RepeatInterval.SEMIMONTHLY: relativedelta(days=15),
    RepeatInterval.MONTHLY: relativedelta(months=1),
    RepeatInterval.BIMONTHLY: relativedelta(months=2),
    RepeatInterval.QUARTERLY: relativedelta(months=3),
    RepeatInterval.SEMIANNUALLY: relativedelta(months=6),
    RepeatInterval.YEARLY: relativedelta(years=1),
}

CONFIRMABLE_OUTCOMES: Final[frozenset[PaymentHistoryStatus]] = frozenset(
    {PaymentHistoryStatus.PAID, PaymentHistoryStatus.SKIPPED}
)


def advance_renewal_date(due_date: dt.date, interval: RepeatInterval) -> dt.date:
    """
    Next due date one calendar unit after `due_date`.

    >>> advance_renewal_date(dt.date(2025, 1, 31), RepeatInterval.MONTHLY)
    datetime.date(2025, 2, 28)
    """
    step = _INTERVAL_STEPS.get(RepeatInterval(interval))
    if step is None:
        raise InvalidOperation(f"one-time items have no next renewal date (interval={interval})")
    return due_date + step


def days_past_due(item: RecurringItem, today: dt.date) -> int:
    return max(0, (today - item.renewal_date).days)


def _today(now: Optional[dt.datetime]) -> dt.date:
    return (now or dt.datetime.now(dt.timezone.utc)).date()


def _require_item(repo: BillingRepository, item_id: str, user_id: str) -> RecurringItem:
    item = repo.get_recurring_item(item_id, user_id=user_id)
    if item is None:
        raise NotFound(f"recurring item not found: {item_id}")
    return item


def list_past_due(repo: BillingRepository, user_id: str, *, today: Optional[dt.date] = None) -> list[RecurringItem]:
    """Active items due before `today`, oldest first; one-time items included."""
    return repo.list_past_due_items(user_id=user_id, today=today or _today(None))


def confirm_payment(
    repo: BillingRepository,
    item_id: str,
    user_id: str,
    outcome: PaymentHistoryStatus,
    *,
    payment_date: Optional[dt.date] = None,
    notes: Optional[str] = None,
    now: Optional[dt.datetime] = None,
) -> Optional[dt.date]:
    """
    Record `paid` / `skipped` for the item's current due date.

    Recurring items advance from the due date (not the payment date) and stay
    active; skipping advances the same way. One-time items become `cancelled`
    and `None` is returned. The due date is compared-and-set, so the same due
    date is never confirmed twice.
    """

    outcome = PaymentHistoryStatus(outcome)
    if outcome not in CONFIRMABLE_OUTCOMES:
        raise InvalidOperation(f"outcome must be paid or skipped, got {outcome.value}")
    item = _require_item(repo, item_id, user_id)
    if item.status != RecurringItemStatus.ACTIVE:
        raise InvalidOperation(f"only active items can be confirmed (status={item.status.value})")

    due_date = item.renewal_date
    one_time = item.repeat_interval == RepeatInterval.NEVER
    next_date = due_date if one_time else advance_renewal_date(due_date, item.repeat_interval)
    next_status = RecurringItemStatus.CANCELLED if one_time else RecurringItemStatus.ACTIVE

    with repo.session.begin_nested():
        advanced = repo.advance_recurring_item(
            item.id,
            user_id=user_id,
            expected_renewal_date=due_date,
            renewal_date=next_date,
            status=next_status,
            now=now,
        )
        if not advanced:
            raise ConcurrencyConflict(f"recurring item {item.id} changed while confirming {due_date.isoformat()}")
        repo.add_payment_history(
            item=item,
            due_date=due_date,
            payment_date=payment_date or _today(now),
            status=outcome,
            amount=item.cost,
            notes=notes,
            now=now,
        )
    repo.session.refresh(item)
    log_event(
        _LOGGER,
        logging.INFO,
        "billing.renewals.confirmed",
        item_id=item.id,
        user_id=user_id,
        outcome=outcome,
        due_date=due_date,
        next_renewal_date=None if one_time else next_date,
    )
    return None if one_time else next_date


def dismiss_one_time(
    repo: BillingRepository,
    item_id: str,
    user_id: str,
    *,
    now: Optional[dt.datetime] = None,
) -> PaymentHistoryEntry:
    item = _require_item(repo, item_id, user_id)
    if item.repeat_interval != RepeatInterval.NEVER:
        raise InvalidOperation("only one-time items can be dismissed; pause or cancel recurring items instead")
    if item.status != RecurringItemStatus.ACTIVE:
        raise InvalidOperation(f"only active items can be dismissed (status={item.status.value})")

    due_date = item.renewal_date
    with repo.session.begin_nested():
        if not repo.advance_recurring_item(
            item.id,
            user_id=user_id,
            expected_renewal_date=due_date,
            renewal_date=due_date,
            status=RecurringItemStatus.CANCELLED,
            now=now,
        ):
            raise ConcurrencyConflict(f"recurring item {item.id} changed while dismissing")
        entry = repo.add_payment_history(
            item=item,
            due_date=due_date,
            payment_date=_today(now),
            status=PaymentHistoryStatus.CANCELLED,
            amount=item.cost,
            now=now,
        )
    repo.session.refresh(item)
    log_event(_LOGGER, logging.INFO, "billing.renewals.dismissed", item_id=item.id, user_id=user_id, due_date=due_date)
    return entry


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


def create_recurring_item(
    repo: BillingRepository,
    user_id: str,
    *,
    name: str,
    cost: Any,
    repeat_interval: RepeatInterval,
    renewal_date: dt.date,
    currency: str = "usd",
    notes: Optional[str] = None,
    now: Optional[dt.datetime] = None,
) -> RecurringItem:
    limits = can_add_recurring_item(repo, user_id)
    if not limits["allowed"]:
        raise LimitReached(
            f"the {limits['tier']} tier tracks at most {limits['limit']} recurring items",
        )
    try:
        item = repo.create_recurring_item(
            user_id=user_id,
            name=name,
            cost=cost,
            repeat_interval=RepeatInterval(repeat_interval),
            renewal_date=renewal_date,
            currency=currency,
            notes=notes,
            now=now,
        )
    except BillingStateError as exc:
        raise InvalidOperation(str(exc)) from exc
    log_event(_LOGGER, logging.INFO, "billing.renewals.item_created", item_id=item.id, user_id=user_id)
    return item


_ALLOWED_STATUS_CHANGES: Final[dict[RecurringItemStatus, frozenset[RecurringItemStatus]]] = {
    RecurringItemStatus.ACTIVE: frozenset({RecurringItemStatus.PAUSED, RecurringItemStatus.CANCELLED}),
    RecurringItemStatus.PAUSED: frozenset({RecurringItemStatus.ACTIVE, RecurringItemStatus.CANCELLED}),
    RecurringItemStatus.CANCELLED: frozenset(),
}


def update_recurring_item(
    repo: BillingRepository,
    item_id: str,
    user_id: str,
    *,
    name: Optional[str] = None,
    cost: Any = None,
    repeat_interval: Optional[RepeatInterval] = None,
    renewal_date: Optional[dt.date] = None,
    status: Optional[RecurringItemStatus] = None,
    notes: Optional[str] = None,
    now: Optional[dt.datetime] = None,
) -> RecurringItem:
    """Edit fields or pause / resume / soft-cancel an item. Cancelled items are read-only."""

    item = _require_item(repo, item_id, user_id)
    if item.status == RecurringItemStatus.CANCELLED:
        raise InvalidOperation("cancelled items cannot be changed")
    if status is not None:
        status = RecurringItemStatus(status)
        if status != item.status and status not in _ALLOWED_STATUS_CHANGES[item.status]:
            raise InvalidOperation(f"cannot change status from {item.status.value} to {status.value}")
    try:
        updated = repo.update_recurring_item(
            item,
            name=name,
            cost=cost,
            repeat_interval=RepeatInterval(repeat_interval) if repeat_interval is not None else None,
            renewal_date=renewal_date,
            status=status,
            notes=notes,
            now=now,
        )
    except BillingStateError as exc:
        raise InvalidOperation(str(exc)) from exc
    log_event(_LOGGER, logging.INFO, "billing.renewals.item_updated", item_id=item.id, user_id=user_id, status=updated.status)
    return updated


def list_history(
    repo: BillingRepository,
    item_id: str,
    user_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
) -> list[PaymentHistoryEntry]:
    _require_item(repo, item_id, user_id)
    return repo.list_payment_history(item_id=item_id, user_id=user_id, limit=limit, offset=offset)


def past_due_sweep(*, session_factory: SessionFactory | None = None, today: Optional[dt.date] = None) -> dict[str, int]:
    """Count past-due items per user; delivery to clients happens elsewhere."""
    current = today or _today(None)
    with session_scope(session_factory) as session:
        counts = BillingRepository(session).count_past_due_by_user(today=current)
    for user_id, count in counts.items():
        log_event(_LOGGER, logging.INFO, "billing.renewals.past_due", user_id=user_id, past_due_count=count, as_of=current)
    log_event(_LOGGER, logging.INFO, "billing.renewals.sweep_completed", users=len(counts), as_of=current)
    return counts
