from __future__ import annotations

import datetime as dt
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy.exc import OperationalError

from billing import (
    BillingCycle,
    BillingEvent,
    BillingRepository,
    ConcurrencyConflict,
    EventKind,
    ProviderConflictError,
    ProviderName,
    SubscriptionStatus,
    SubscriptionVersionConflict,
    Tier,
    TransactionStatus,
    apply_event,
    build_session_factory,
    init_billing_db,
    session_scope,
)

T0 = dt.datetime(2025, 3, 1, 12, 0, tzinfo=dt.timezone.utc)


def _make_db():
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_billing_db(engine)
    return engine, session_factory


def _iap(kind: EventKind, event_id: str, *, at: dt.datetime = T0, otx: str = "otx-1", **fields) -> BillingEvent:
    fields.setdefault("product_id", "com.ronnie39.renvo.premium.monthly.v1")
    return BillingEvent(
        provider_event_id=event_id,
        provider=ProviderName.MOBILE_IAP,
        event_kind=kind,
        user_ref=otx,
        user_ref_kind="original_transaction_id",
        occurred_at=at,
        subscription_ref=otx,
        **fields,
    )


def _card(kind: EventKind, event_id: str, *, at: dt.datetime = T0, sub: str = "sub_1", **fields) -> BillingEvent:
    return BillingEvent(
        provider_event_id=event_id,
        provider=ProviderName.CARD,
        event_kind=kind,
        user_ref="user-1",
        occurred_at=at,
        subscription_ref=sub,
        customer_id="cus_1",
        **fields,
    )


def _purchase(event_id: str = "n-buy", *, at: dt.datetime = T0, charge: str = "tx-1", days: int = 30, **fields) -> BillingEvent:
    return _iap(
        EventKind.CREATED,
        event_id,
        at=at,
        charge_id=charge,
        amount=Decimal("4.99"),
        currency="usd",
        period_start=at,
        period_end=at + dt.timedelta(days=days),
        billing_cycle=BillingCycle.MONTHLY,
        **fields,
    )


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def test_iap_lifecycle_subscribe_cancel_expire() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)

        created = apply_event(repo, _purchase(), "user-1", now=T0)
        assert created["status"] == "processed"
        assert created["tier"] == "premium"
        assert created["transaction_id"]
        sub = repo.get_subscription_by_user("user-1", fresh=True)
        assert sub.provider == ProviderName.MOBILE_IAP
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.billing_cycle == BillingCycle.MONTHLY
        assert sub.original_transaction_id == "otx-1"

        canceled = apply_event(
            repo,
            _iap(EventKind.AUTO_RENEW_CHANGED, "n-off", at=T0 + dt.timedelta(days=3), auto_renew=False),
            "user-1",
            now=T0 + dt.timedelta(days=3),
        )
        assert canceled["subscription_status"] == "canceled"
        sub = repo.get_subscription_by_user("user-1", fresh=True)
        # Canceled subscriptions keep premium until the period ends.
        assert sub.tier_id == Tier.PREMIUM
        assert sub.cancel_at_period_end is True

        expired = apply_event(repo, _iap(EventKind.EXPIRED, "n-exp", at=T0 + dt.timedelta(days=30)), "user-1")
        assert expired["tier"] == "free"
        sub = repo.get_subscription_by_user("user-1", fresh=True)
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.provider is None
        assert sub.billing_cycle == BillingCycle.NONE
        assert sub.original_transaction_id is None
        assert sub.current_period_end is None
        assert sub.version == 3


def test_failed_renewal_enters_grace_and_recovers() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        apply_event(repo, _purchase(), "user-1", now=T0)

        failed = apply_event(
            repo,
            _iap(EventKind.FAILED, "n-fail", at=T0 + dt.timedelta(days=30), charge_id="tx-2", amount=Decimal("4.99")),
            "user-1",
        )
        assert failed["subscription_status"] == "grace_period"
        assert failed["tier"] == "premium"
        assert repo.get_transaction_by_charge_id("tx-2").status == TransactionStatus.FAILED

        recovered = apply_event(
            repo,
            _purchase("n-renew", at=T0 + dt.timedelta(days=31), charge="tx-2", days=30),
            "user-1",
        )
        assert recovered["subscription_status"] == "active"
        sub = repo.get_subscription_by_user("user-1", fresh=True)
        assert sub.grace_started_at is None
        # The provider's retry of the same charge upgrades the failed row in place.
        assert repo.get_transaction_by_charge_id("tx-2").status == TransactionStatus.SUCCEEDED


def test_card_failed_payment_grace_then_expiry_downgrades() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        created = apply_event(
            repo,
            _card(
                EventKind.CREATED,
                "evt_checkout",
                charge_id="pi_1",
                amount=Decimal("4.99"),
                currency="usd",
                period_start=T0,
                period_end=T0 + dt.timedelta(days=30),
                billing_cycle=BillingCycle.MONTHLY,
            ),
            "user-1",
            now=T0,
        )
        assert created["tier"] == "premium"

        failed_at = T0 + dt.timedelta(days=30)
        failed = apply_event(
            repo,
            _card(EventKind.FAILED, "evt_failed", at=failed_at, charge_id="pi_2", amount=Decimal("4.99")),
            "user-1",
            now=failed_at,
        )
        assert failed["subscription_status"] == "grace_period"
        assert failed["tier"] == "premium"
        sub = repo.get_subscription_by_user("user-1", fresh=True)
        assert sub.grace_started_at.replace(tzinfo=dt.timezone.utc) == failed_at

        expired_at = failed_at + dt.timedelta(days=10)
        expired = apply_event(
            repo,
            _card(EventKind.GRACE_PERIOD_EXPIRED, "evt_grace_over", at=expired_at),
            "user-1",
            now=expired_at,
        )
        assert expired["tier"] == "free"
        sub = repo.get_subscription_by_user("user-1", fresh=True)
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.provider is None
        assert sub.external_subscription_id is None
        assert sub.grace_started_at is None
        assert sub.external_customer_id == "cus_1"
        assert repo.get_transaction_by_charge_id("pi_2").status == TransactionStatus.FAILED


def test_card_resubscribe_after_cancel_reenables_auto_renew() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        apply_event(repo, _card(EventKind.CREATED, "evt_1", charge_id="pi_1", amount=Decimal("4.99")), "user-1", now=T0)
        apply_event(repo, _card(EventKind.AUTO_RENEW_CHANGED, "evt_2", auto_renew=False), "user-1")
        result = apply_event(repo, _card(EventKind.AUTO_RENEW_CHANGED, "evt_3", auto_renew=True), "user-1")
        assert result["subscription_status"] == "active"
        sub = repo.get_subscription_by_user("user-1", fresh=True)
        assert sub.cancel_at_period_end is False
        assert sub.external_customer_id == "cus_1"


def test_same_charge_is_recorded_once() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        apply_event(repo, _purchase("n-a"), "user-1", now=T0)
        apply_event(repo, _purchase("n-b"), "user-1", now=T0)
        sub = repo.get_subscription_by_user("user-1")
        assert len(repo.list_transactions(subscription_id=sub.id)) == 1


def test_late_renewal_does_not_shrink_period() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        apply_event(repo, _purchase("n-new", charge="tx-2", days=60), "user-1", now=T0)
        apply_event(repo, _purchase("n-old", charge="tx-1", days=30), "user-1", now=T0)
        sub = repo.get_subscription_by_user("user-1", fresh=True)
        assert sub.current_period_end.replace(tzinfo=dt.timezone.utc) == T0 + dt.timedelta(days=60)


def test_unsupported_event_is_ignored() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        result = apply_event(repo, _iap(EventKind.IGNORED, "n-x"), "user-1", now=T0)
        assert result["status"] == "ignored"
        assert repo.get_subscription_by_user("user-1").version == 0


# ---------------------------------------------------------------------------
# Provider exclusivity and lineage
# ---------------------------------------------------------------------------


def test_second_provider_is_rejected_while_first_is_linked() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        apply_event(repo, _purchase(), "user-1", now=T0)
        with pytest.raises(ProviderConflictError):
            apply_event(repo, _card(EventKind.CREATED, "evt_1", charge_id="pi_1"), "user-1", now=T0)
        sub = repo.get_subscription_by_user("user-1", fresh=True)
        assert sub.provider == ProviderName.MOBILE_IAP
        assert sub.version == 1


def test_other_provider_can_link_after_expiry() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        apply_event(repo, _purchase(), "user-1", now=T0)
        apply_event(repo, _iap(EventKind.EXPIRED, "n-exp"), "user-1")
        result = apply_event(repo, _card(EventKind.CREATED, "evt_1", charge_id="pi_1"), "user-1", now=T0)
        assert result["tier"] == "premium"
        assert repo.get_subscription_by_user("user-1", fresh=True).provider == ProviderName.CARD


def test_events_for_superseded_lineage_are_ignored() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        apply_event(repo, _card(EventKind.CREATED, "evt_1", sub="sub_2", charge_id="pi_2"), "user-1", now=T0)
        stale = apply_event(repo, _card(EventKind.FAILED, "evt_2", sub="sub_1", charge_id="pi_1"), "user-1")
        assert stale["status"] == "ignored"
        stale_expiry = apply_event(repo, _card(EventKind.EXPIRED, "evt_3", sub="sub_1"), "user-1")
        assert stale_expiry["status"] == "ignored"
        sub = repo.get_subscription_by_user("user-1", fresh=True)
        assert sub.tier_id == Tier.PREMIUM
        assert sub.status == SubscriptionStatus.ACTIVE


# ---------------------------------------------------------------------------
# Refund vs renewal ordering
# ---------------------------------------------------------------------------


def test_refund_after_renewal_downgrades_and_marks_charge_refunded() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        apply_event(repo, _purchase(), "user-1", now=T0)
        result = apply_event(
            repo,
            _iap(EventKind.REFUNDED, "n-ref", at=T0 + dt.timedelta(days=2), charge_id="tx-1"),
            "user-1",
            now=T0 + dt.timedelta(days=2),
        )
        assert result["tier"] == "free"
        assert result["subscription_status"] == "canceled"
        assert repo.get_transaction_by_charge_id("tx-1").status == TransactionStatus.REFUNDED
        sub = repo.get_subscription_by_user("user-1", fresh=True)
        assert sub.revoked_reference == "otx-1"


def test_renewal_delivered_after_refund_does_not_restore_premium() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        apply_event(repo, _purchase(), "user-1", now=T0)
        refund_at = T0 + dt.timedelta(days=2)
        apply_event(repo, _iap(EventKind.REFUNDED, "n-ref", at=refund_at, charge_id="tx-1"), "user-1", now=refund_at)

        late = apply_event(repo, _purchase("n-late", at=T0 + dt.timedelta(days=1), charge="tx-0"), "user-1", now=refund_at)
        assert late["status"] == "ignored"
        assert late["tier"] == "free"

        # A genuine purchase after the refund is honored.
        later = apply_event(repo, _purchase("n-again", at=refund_at + dt.timedelta(days=1), charge="tx-3"), "user-1")
        assert later["tier"] == "premium"


@pytest.mark.parametrize("renewal_first", [True, False], ids=["renewal-first", "refund-first"])
def test_refunded_card_lineage_stays_free_in_either_arrival_order(renewal_first: bool) -> None:
    _engine, sf = _make_db()
    refund_at = T0 + dt.timedelta(days=2)
    refund = _card(EventKind.REFUNDED, "evt_refund", at=refund_at, charge_id="pi_1")
    renewal = _card(
        EventKind.RENEWED,
        "evt_renewed",
        at=refund_at + dt.timedelta(seconds=5),
        charge_id="pi_2",
        amount=Decimal("4.99"),
    )
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        apply_event(repo, _card(EventKind.CREATED, "evt_1", charge_id="pi_1", amount=Decimal("4.99")), "user-1", now=T0)
        for event in ([renewal, refund] if renewal_first else [refund, renewal]):
            apply_event(repo, event, "user-1", now=refund_at)

        sub = repo.get_subscription_by_user("user-1", fresh=True)
        assert sub.tier_id == Tier.FREE
        assert sub.external_subscription_id is None
        assert sub.revoked_reference == "sub_1"

        # A new checkout creates a new card subscription and is honored.
        checkout = _card(
            EventKind.CREATED,
            "evt_new",
            at=refund_at + dt.timedelta(days=1),
            sub="sub_2",
            charge_id="pi_3",
            amount=Decimal("4.99"),
        )
        again = apply_event(repo, checkout, "user-1")
        assert again["tier"] == "premium"


def test_iap_renewal_of_refunded_lineage_is_ignored() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        apply_event(repo, _purchase(), "user-1", now=T0)
        refund_at = T0 + dt.timedelta(days=2)
        apply_event(repo, _iap(EventKind.REFUNDED, "n-ref", at=refund_at, charge_id="tx-1"), "user-1", now=refund_at)

        renewed_at = refund_at + dt.timedelta(days=28)
        renewal = _iap(
            EventKind.RENEWED,
            "n-did-renew",
            at=renewed_at,
            charge_id="tx-2",
            amount=Decimal("4.99"),
            period_start=renewed_at,
            period_end=renewed_at + dt.timedelta(days=30),
        )
        result = apply_event(repo, renewal, "user-1", now=renewed_at)
        assert result["status"] == "ignored"
        assert result["reason"] == "renewal of a refunded lineage"
        assert result["tier"] == "free"


def test_refund_of_unknown_charge_still_downgrades() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        apply_event(repo, _purchase(), "user-1", now=T0)
        result = apply_event(repo, _iap(EventKind.REVOKED, "n-rev", charge_id="tx-unknown"), "user-1", now=T0)
        assert result["tier"] == "free"
        assert result["transaction_id"] is None


# ---------------------------------------------------------------------------
# Optimistic concurrency
# ---------------------------------------------------------------------------


def test_version_conflict_is_retried(monkeypatch) -> None:
    _engine, sf = _make_db()
    original = BillingRepository.update_subscription_versioned
    calls = {"count": 0}

    def _flaky(self, *args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise SubscriptionVersionConflict("lost the race")
        return original(self, *args, **kwargs)

    monkeypatch.setattr(BillingRepository, "update_subscription_versioned", _flaky)
    with session_scope(sf) as session:
        result = apply_event(BillingRepository(session), _purchase(), "user-1", now=T0)
    assert result["status"] == "processed"
    assert calls["count"] == 2


def test_exhausted_retries_raise_concurrency_conflict(monkeypatch) -> None:
    _engine, sf = _make_db()

    def _always_conflict(self, *args, **kwargs):
        raise SubscriptionVersionConflict("lost the race")

    monkeypatch.setattr(BillingRepository, "update_subscription_versioned", _always_conflict)
    with session_scope(sf) as session:
        with pytest.raises(ConcurrencyConflict):
            apply_event(BillingRepository(session), _purchase(), "user-1", now=T0, max_attempts=3)


def test_concurrent_renewals_apply_each_exactly_once(tmp_path: Path) -> None:
    engine, sf = build_session_factory(f"sqlite+pysqlite:///{tmp_path / 'state_machine.db'}")
    init_billing_db(engine)
    with session_scope(sf) as session:
        apply_event(BillingRepository(session), _purchase("n-0", charge="tx-0"), "race-user", now=T0)

    def _renew(index: int) -> str:
        event = _purchase(f"n-{index}", at=T0 + dt.timedelta(days=index), charge=f"tx-{index}", days=30)
        # A losing writer starts over in a fresh session, as a redelivered webhook would.
        for _attempt in range(200):
            try:
                with session_scope(sf) as session:
                    return apply_event(BillingRepository(session), event, "race-user", max_attempts=1)["status"]
            except (ConcurrencyConflict, OperationalError):
                time.sleep(0.01)
        raise AssertionError(f"renewal {index} never applied")

    with ThreadPoolExecutor(max_workers=8) as pool:
        statuses = list(pool.map(_renew, range(1, 9)))

    assert statuses == ["processed"] * 8
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        sub = repo.get_subscription_by_user("race-user")
        assert sub.version == 9
        assert sub.tier_id == Tier.PREMIUM
        assert len(repo.list_transactions(subscription_id=sub.id)) == 9
        # The latest period wins regardless of arrival order.
        assert sub.current_period_end.replace(tzinfo=dt.timezone.utc) == T0 + dt.timedelta(days=38)
    engine.dispose()


@pytest.mark.parametrize("renewal_offset", [-5, 5], ids=["renewal-older", "renewal-newer"])
def test_concurrent_refund_and_renewal_converge_to_free(tmp_path: Path, renewal_offset: int) -> None:
    engine, sf = build_session_factory(f"sqlite+pysqlite:///{tmp_path / 'refund_race.db'}")
    init_billing_db(engine)
    refund_at = T0 + dt.timedelta(days=2)

    def _apply(event: BillingEvent, user_id: str, barrier: threading.Barrier) -> str:
        barrier.wait(timeout=10)
        for _attempt in range(200):
            try:
                with session_scope(sf) as session:
                    return apply_event(BillingRepository(session), event, user_id, now=refund_at, max_attempts=1)["status"]
            except (ConcurrencyConflict, OperationalError):
                time.sleep(0.01)
        raise AssertionError(f"{event.event_kind.value} for {user_id} never applied")

    users = [f"race-{index}" for index in range(6)]
    with ThreadPoolExecutor(max_workers=2) as pool:
        for user_id in users:
            with session_scope(sf) as session:
                apply_event(
                    BillingRepository(session),
                    _card(EventKind.CREATED, f"{user_id}-checkout", sub=f"sub_{user_id}", charge_id=f"pi_{user_id}_1"),
                    user_id,
                    now=T0,
                )
            refund = _card(EventKind.REFUNDED, f"{user_id}-refund", at=refund_at, sub=f"sub_{user_id}", charge_id=f"pi_{user_id}_1")
            renewal = _card(
                EventKind.RENEWED,
                f"{user_id}-renewed",
                at=refund_at + dt.timedelta(seconds=renewal_offset),
                sub=f"sub_{user_id}",
                charge_id=f"pi_{user_id}_2",
                amount=Decimal("4.99"),
            )
            barrier = threading.Barrier(2)
            futures = [pool.submit(_apply, refund, user_id, barrier), pool.submit(_apply, renewal, user_id, barrier)]
            for future in futures:
                future.result()

    with session_scope(sf) as session:
        repo = BillingRepository(session)
        for user_id in users:
            sub = repo.get_subscription_by_user(user_id)
            assert sub.tier_id == Tier.FREE, user_id
            assert sub.revoked_reference == f"sub_{user_id}"
    engine.dispose()
