from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from config import LEDGER_PENDING_LEASE_SECONDS, LEDGER_WAIT_SECONDS
from observability import get_logger, log_event

from .db import SessionFactory, session_scope
from .models import EventLedgerEntry, LedgerStatus, ProviderName
from .repository import BillingRepository, _as_utc_aware

_LOGGER = get_logger("renvo.billing.ledger")

LEDGER_POLL_INTERVAL_SECONDS = 0.05


@dataclass(frozen=True)
class LedgerRecord:
    event_id: str
    is_new: bool
    status: LedgerStatus
    prior_result: Optional[dict[str, Any]] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    user_id: Optional[str] = None

    @property
    def settled(self) -> bool:
        return self.status != LedgerStatus.PENDING


def _decode_result(raw: Optional[str]) -> Optional[dict[str, Any]]:
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {"raw": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def _snapshot(entry: EventLedgerEntry, *, is_new: bool) -> LedgerRecord:
    return LedgerRecord(
        event_id=entry.event_id,
        is_new=is_new,
        status=entry.status,
        prior_result=_decode_result(entry.result_json),
        error_code=entry.error_code,
        error_message=entry.error_message,
        user_id=entry.user_id,
    )


def record_if_new(
    event_id: str,
    *,
    provider: ProviderName,
    event_kind: str,
    raw_payload: str,
    session_factory: SessionFactory | None = None,
    now: Optional[datetime] = None,
) -> LedgerRecord:
    """
    Insert the ledger entry for `event_id` in its own committed transaction.

    Exactly one concurrent caller gets `is_new=True` and must process the
    event; everyone else gets the existing entry's state.
    """
    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        entry, inserted = repo.insert_ledger_entry(
            event_id=event_id,
            provider=provider,
            event_kind=event_kind,
            raw_payload=raw_payload,
            now=now,
        )
        record = _snapshot(entry, is_new=inserted)
    if not inserted:
        log_event(_LOGGER, logging.INFO, "billing.ledger.duplicate", event_id=event_id, ledger_status=record.status)
    return record


def get_record(event_id: str, *, session_factory: SessionFactory | None = None) -> Optional[LedgerRecord]:
    with session_scope(session_factory) as session:
        entry = BillingRepository(session).get_ledger_entry(event_id)
        return _snapshot(entry, is_new=False) if entry is not None else None


def wait_for_outcome(
    event_id: str,
    *,
    timeout_seconds: float = LEDGER_WAIT_SECONDS,
    session_factory: SessionFactory | None = None,
) -> Optional[LedgerRecord]:
    """Poll until the winning writer settles the entry, or the timeout passes."""
    deadline = time.monotonic() + max(0.0, float(timeout_seconds))
    record = get_record(event_id, session_factory=session_factory)
    while record is not None and not record.settled and time.monotonic() < deadline:
        time.sleep(LEDGER_POLL_INTERVAL_SECONDS)
        record = get_record(event_id, session_factory=session_factory)
    return record


def lease_expired(entry: EventLedgerEntry, *, now: datetime, lease_seconds: float = LEDGER_PENDING_LEASE_SECONDS) -> bool:
    if entry.status != LedgerStatus.PENDING:
        return False
    leased_at = _as_utc_aware(entry.leased_at or entry.received_at)
    return leased_at < _as_utc_aware(now) - timedelta(seconds=lease_seconds)


def claim_stale(
    event_id: str,
    *,
    lease_seconds: float = LEDGER_PENDING_LEASE_SECONDS,
    session_factory: SessionFactory | None = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Take over a `pending` entry whose writer never settled it.

    True means the caller now owns the entry and must process it.
    """
    current = _as_utc_aware(now) if now else datetime.now(timezone.utc)
    with session_scope(session_factory) as session:
        claimed = BillingRepository(session).claim_stale_ledger_entry(
            event_id,
            stale_before=current - timedelta(seconds=lease_seconds),
            now=current,
        )
    if claimed:
        log_event(_LOGGER, logging.WARNING, "billing.ledger.lease_reclaimed", event_id=event_id)
    return claimed


def mark_failed(
    event_id: str,
    *,
    error_code: str,
    error_message: str,
    user_id: Optional[str] = None,
    session_factory: SessionFactory | None = None,
    now: Optional[datetime] = None,
) -> None:
    with session_scope(session_factory) as session:
        BillingRepository(session).mark_ledger_failed(
            event_id,
            error_code=error_code,
            error_message=error_message,
            user_id=user_id,
            now=now,
        )
    log_event(
        _LOGGER,
        logging.WARNING,
        "billing.ledger.parked",
        event_id=event_id,
        error_code=error_code,
        error_message=error_message,
        user_id=user_id,
    )
