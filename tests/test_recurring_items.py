from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from billing import (
    BillingCycle,
    BillingEvent,
    BillingRepository,
    ConcurrencyConflict,
    EventKind,
    InvalidOperation,
    LimitReached,
    NotFound,
    PaymentHistoryStatus,
    ProviderName,
    RecurringItemStatus,
    RepeatInterval,
    apply_event,
    build_session_factory,
    init_billing_db,
    seed_default_tiers,
    session_scope,
)
from billing.renewals import (
    advance_renewal_date,
    confirm_payment,
    create_recurring_item,
    days_past_due,
    dismiss_one_time,
    list_history,
    list_past_due,
    past_due_sweep,
    update_recurring_item,
)

NOW = dt.datetime(2025, 3, 10, 9, 0, tzinfo=dt.timezone.utc)
TODAY = NOW.date()


def _make_db():
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_billing_db(engine)
    seed_default_tiers(session_factory=session_factory)
    return engine, session_factory


def _item(repo: BillingRepository, *, user_id: str = "user-1", name: str = "Rent", interval=RepeatInterval.MONTHLY, due=dt.date(2025, 3, 1), cost="1200.00"):
    return create_recurring_item(
        repo,
        user_id,
        name=name,
        cost=Decimal(cost),
        repeat_interval=interval,
        renewal_date=due,
        now=NOW,
    )


# ---------------------------------------------------------------------------
# Date arithmetic
# ---------------------------------------------------------------------------


def test_month_end_clamps_and_does_not_spring_back() -> None:
    first = advance_renewal_date(dt.date(2025, 1, 31), RepeatInterval.MONTHLY)
    assert first == dt.date(2025, 2, 28)
    # Advancing from the clamped date keeps the 28th.
    assert advance_renewal_date(first, RepeatInterval.MONTHLY) == dt.date(2025, 3, 28)


@pytest.mark.parametrize(
    ("interval", "expected"),
    [
        (RepeatInterval.WEEKLY, dt.date(2024, 3, 7)),
        (RepeatInterval.BIWEEKLY, dt.date(2024, 3, 14)),
        (RepeatInterval.SEMIMONTHLY, dt.date(2024, 3, 15)),
        (RepeatInterval.BIMONTHLY, dt.date(2024, 4, 29)),
        (RepeatInterval.QUARTERLY, dt.date(2024, 5, 29)),
        (RepeatInterval.SEMIANNUALLY, dt.date(2024, 8, 29)),
        (RepeatInterval.YEARLY, dt.date(2025, 2, 28)),
    ],
)
def test_each_interval_steps_from_leap_day(interval: RepeatInterval, expected: dt.date) -> None:
    assert advance_renewal_date(dt.date(2024, 2, 29), interval) == expected


def test_one_time_items_have_no_next_date() -> None:
    with pytest.raises(InvalidOperation):
        advance_renewal_date(dt.date(2025, 1, 1), RepeatInterval.NEVER)


# ---------------------------------------------------------------------------
# Confirmation
# ---------------------------------------------------------------------------


def test_paid_advances_from_due_date_and_records_history() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        item = _item(repo, due=dt.date(2025, 1, 31))

        next_date = confirm_payment(repo, item.id, "user-1", PaymentHistoryStatus.PAID, payment_date=TODAY, now=NOW)

        assert next_date == dt.date(2025, 2, 28)
        assert item.renewal_date == dt.date(2025, 2, 28)
        assert item.status == RecurringItemStatus.ACTIVE
        history = list_history(repo, item.id, "user-1")
        assert len(history) == 1
        assert history[0].due_date == dt.date(2025, 1, 31)
        assert history[0].payment_date == TODAY
        assert history[0].status == PaymentHistoryStatus.PAID
        assert history[0].amount == Decimal("1200.00")


def test_skip_advances_like_paid() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        item = _item(repo, interval=RepeatInterval.WEEKLY)
        assert confirm_payment(repo, item.id, "user-1", "skipped", now=NOW) == dt.date(2025, 3, 8)
        assert list_history(repo, item.id, "user-1")[0].status == PaymentHistoryStatus.SKIPPED


def test_confirming_one_time_item_cancels_it() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        item = _item(repo, name="Car registration", interval=RepeatInterval.NEVER)
        assert confirm_payment(repo, item.id, "user-1", PaymentHistoryStatus.PAID, now=NOW) is None
        assert item.status == RecurringItemStatus.CANCELLED
        assert item.renewal_date == dt.date(2025, 3, 1)
        with pytest.raises(InvalidOperation):
            confirm_payment(repo, item.id, "user-1", PaymentHistoryStatus.PAID, now=NOW)


def test_pending_is_not_a_confirmable_outcome() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        item = _item(repo)
        with pytest.raises(InvalidOperation):
            confirm_payment(repo, item.id, "user-1", PaymentHistoryStatus.PENDING, now=NOW)


def test_confirm_against_stale_due_date_conflicts() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        item = _item(repo)
        # Another writer confirms the same due date first.
        assert repo.advance_recurring_item(
            item.id,
            user_id="user-1",
            expected_renewal_date=dt.date(2025, 3, 1),
            renewal_date=dt.date(2025, 4, 1),
            status=RecurringItemStatus.ACTIVE,
        )
        with pytest.raises(ConcurrencyConflict):
            confirm_payment(repo, item.id, "user-1", PaymentHistoryStatus.PAID, now=NOW)
        assert list_history(repo, item.id, "user-1") == []


def test_items_are_scoped_to_their_owner() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        item = _item(repo)
        with pytest.raises(NotFound):
            confirm_payment(repo, item.id, "user-2", PaymentHistoryStatus.PAID, now=NOW)


def test_dismiss_one_time_item() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        recurring = _item(repo)
        one_time = _item(repo, name="Concert", interval=RepeatInterval.NEVER, cost="80")

        with pytest.raises(InvalidOperation):
            dismiss_one_time(repo, recurring.id, "user-1", now=NOW)
        entry = dismiss_one_time(repo, one_time.id, "user-1", now=NOW)
        assert entry.status == PaymentHistoryStatus.CANCELLED
        assert one_time.status == RecurringItemStatus.CANCELLED


# ---------------------------------------------------------------------------
# CRUD and past due
# ---------------------------------------------------------------------------


def test_status_changes_follow_allowed_transitions() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        item = _item(repo)
        assert update_recurring_item(repo, item.id, "user-1", status=RecurringItemStatus.PAUSED).status == RecurringItemStatus.PAUSED
        assert update_recurring_item(repo, item.id, "user-1", status=RecurringItemStatus.ACTIVE).status == RecurringItemStatus.ACTIVE
        update_recurring_item(repo, item.id, "user-1", status=RecurringItemStatus.CANCELLED)
        with pytest.raises(InvalidOperation):
            update_recurring_item(repo, item.id, "user-1", status=RecurringItemStatus.ACTIVE)


def test_update_edits_fields_and_rejects_blank_name() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        item = _item(repo)
        updated = update_recurring_item(repo, item.id, "user-1", name="  Rent (new flat) ", cost="1350.5", notes="lease renewed")
        assert updated.name == "Rent (new flat)"
        assert updated.cost == Decimal("1350.50")
        assert updated.notes == "lease renewed"
        with pytest.raises(InvalidOperation):
            update_recurring_item(repo, item.id, "user-1", name="   ")


def test_list_past_due_includes_one_time_and_skips_paused() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        overdue = _item(repo, name="Gym", due=dt.date(2025, 3, 2))
        one_time = _item(repo, name="Dentist", interval=RepeatInterval.NEVER, due=dt.date(2025, 2, 20))
        paused = _item(repo, name="Paused", due=dt.date(2025, 2, 1))
        update_recurring_item(repo, paused.id, "user-1", status=RecurringItemStatus.PAUSED)
        _item(repo, name="Due today", due=TODAY)
        _item(repo, name="Other user", user_id="user-2", due=dt.date(2025, 1, 1))

        past_due = list_past_due(repo, "user-1", today=TODAY)
        assert [item.id for item in past_due] == [one_time.id, overdue.id]
        assert days_past_due(one_time, TODAY) == 18


def test_past_due_sweep_counts_per_user() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        _item(repo, name="A", due=dt.date(2025, 3, 1))
        _item(repo, name="B", due=dt.date(2025, 3, 5))
        _item(repo, name="C", user_id="user-2", due=dt.date(2025, 3, 9))
        _item(repo, name="D", user_id="user-3", due=dt.date(2025, 3, 20))

    assert past_due_sweep(session_factory=sf, today=TODAY) == {"user-1": 2, "user-2": 1}


def test_free_tier_limit_counts_paused_but_not_cancelled_items() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        items = [_item(repo, name=f"Item {index}") for index in range(5)]
        update_recurring_item(repo, items[0].id, "user-1", status=RecurringItemStatus.PAUSED)
        with pytest.raises(LimitReached):
            _item(repo, name="Sixth")

        update_recurring_item(repo, items[1].id, "user-1", status=RecurringItemStatus.CANCELLED)
        assert _item(repo, name="Replacement").status == RecurringItemStatus.ACTIVE


def test_premium_tier_is_unlimited() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        apply_event(
            repo,
            BillingEvent(
                provider_event_id="evt_premium",
                provider=ProviderName.CARD,
                event_kind=EventKind.CREATED,
                user_ref="user-1",
                occurred_at=NOW,
                billing_cycle=BillingCycle.ANNUAL,
                subscription_ref="sub_1",
            ),
            "user-1",
            now=NOW,
        )
        for index in range(8):
            _item(repo, name=f"Item {index}")
        assert len(repo.list_recurring_items(user_id="user-1")) == 8
