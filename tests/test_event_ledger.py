from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from billing import (
    BillingRepository,
    LedgerStatus,
    ProviderName,
    build_session_factory,
    init_billing_db,
    ledger,
    session_scope,
)


def _make_db():
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_billing_db(engine)
    return engine, session_factory


def test_first_insert_wins_and_duplicates_see_existing_entry() -> None:
    _engine, sf = _make_db()

    first = ledger.record_if_new(
        "stripe:evt_1",
        provider=ProviderName.CARD,
        event_kind="renewed",
        raw_payload='{"id": "evt_1"}',
        session_factory=sf,
    )
    second = ledger.record_if_new(
        "stripe:evt_1",
        provider=ProviderName.CARD,
        event_kind="renewed",
        raw_payload='{"id": "evt_1", "tampered": true}',
        session_factory=sf,
    )

    assert first.is_new is True
    assert second.is_new is False
    assert second.status == LedgerStatus.PENDING

    with session_scope(sf) as session:
        entry = BillingRepository(session).get_ledger_entry("stripe:evt_1")
        assert entry is not None
        # The stored payload is the first delivery's.
        assert entry.raw_payload == '{"id": "evt_1"}'


def test_same_provider_id_on_different_providers_does_not_collide() -> None:
    _engine, sf = _make_db()
    card = ledger.record_if_new("stripe:abc", provider=ProviderName.CARD, event_kind="renewed", raw_payload="{}", session_factory=sf)
    iap = ledger.record_if_new("apple:abc", provider=ProviderName.MOBILE_IAP, event_kind="renewed", raw_payload="{}", session_factory=sf)
    assert card.is_new and iap.is_new


def test_mark_failed_keeps_payload_and_error_for_replay() -> None:
    _engine, sf = _make_db()
    ledger.record_if_new("apple:n-1", provider=ProviderName.MOBILE_IAP, event_kind="created", raw_payload='{"a": 1}', session_factory=sf)

    ledger.mark_failed(
        "apple:n-1",
        error_code="USER_RESOLUTION_FAILED",
        error_message="no user for original_transaction_id=otx-1",
        session_factory=sf,
    )

    record = ledger.get_record("apple:n-1", session_factory=sf)
    assert record is not None
    assert record.status == LedgerStatus.FAILED
    assert record.settled is True
    assert record.error_code == "USER_RESOLUTION_FAILED"
    with session_scope(sf) as session:
        entry = BillingRepository(session).get_ledger_entry("apple:n-1")
        assert entry is not None
        assert entry.raw_payload == '{"a": 1}'


def test_wait_for_outcome_returns_settled_result() -> None:
    _engine, sf = _make_db()
    ledger.record_if_new("stripe:evt_done", provider=ProviderName.CARD, event_kind="renewed", raw_payload="{}", session_factory=sf)
    with session_scope(sf) as session:
        BillingRepository(session).mark_ledger_processed(
            "stripe:evt_done",
            result={"status": "processed", "tier": "premium"},
            user_id="u-1",
        )

    record = ledger.wait_for_outcome("stripe:evt_done", timeout_seconds=0.1, session_factory=sf)
    assert record is not None
    assert record.status == LedgerStatus.PROCESSED
    assert record.prior_result == {"status": "processed", "tier": "premium"}
    assert record.user_id == "u-1"


def test_wait_for_outcome_gives_up_on_pending_entry() -> None:
    _engine, sf = _make_db()
    ledger.record_if_new("stripe:evt_slow", provider=ProviderName.CARD, event_kind="renewed", raw_payload="{}", session_factory=sf)
    record = ledger.wait_for_outcome("stripe:evt_slow", timeout_seconds=0.05, session_factory=sf)
    assert record is not None
    assert record.status == LedgerStatus.PENDING


def test_replay_claim_is_single_winner() -> None:
    _engine, sf = _make_db()
    ledger.record_if_new("stripe:evt_retry", provider=ProviderName.CARD, event_kind="renewed", raw_payload="{}", session_factory=sf)
    ledger.mark_failed("stripe:evt_retry", error_code="UNEXPECTED_ERROR", error_message="boom", session_factory=sf)

    with session_scope(sf) as session:
        repo = BillingRepository(session)
        assert repo.claim_ledger_entry_for_replay("stripe:evt_retry") is True
        assert repo.claim_ledger_entry_for_replay("stripe:evt_retry") is False

    with session_scope(sf) as session:
        entry = BillingRepository(session).get_ledger_entry("stripe:evt_retry")
        assert entry is not None
        assert entry.status == LedgerStatus.PENDING
        assert entry.retry_count == 1


def test_concurrent_deliveries_create_exactly_one_owner(tmp_path: Path) -> None:
    engine, sf = build_session_factory(f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}")
    init_billing_db(engine)

    def _deliver(_index: int) -> bool:
        record = ledger.record_if_new(
            "stripe:evt_burst",
            provider=ProviderName.CARD,
            event_kind="renewed",
            raw_payload="{}",
            session_factory=sf,
        )
        return record.is_new

    with ThreadPoolExecutor(max_workers=8) as pool:
        owners = list(pool.map(_deliver, range(16)))

    assert sum(1 for owner in owners if owner) == 1
    engine.dispose()
