from __future__ import annotations

import json
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import Select, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import (
    EventLedgerEntry,
    IapTransaction,
    LedgerStatus,
    PaymentHistoryEntry,
    PaymentHistoryStatus,
    PaymentTransaction,
    ProviderName,
    RecurringItem,
    RecurringItemStatus,
    RefundRequest,
    RefundRequestStatus,
    RepeatInterval,
    SubscriptionStatus,
    SubscriptionTier,
    Tier,
    TransactionStatus,
    UserSubscription,
)


def _as_utc_aware(dt: datetime) -> datetime:
    """
    Normalize datetimes to UTC aware.

    SQLite often returns offset-naive datetimes even when SQLAlchemy models use
    DateTime(timezone=True). Treat naive values as UTC to avoid TypeError when
    comparing with timezone-aware "now".
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _now(now: Optional[datetime]) -> datetime:
    return _as_utc_aware(now) if now else datetime.now(timezone.utc)


def _money(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0.00")
    return Decimal(str(value)).quantize(Decimal("0.01"))


class BillingStateError(RuntimeError):
    pass


class SubscriptionVersionConflict(BillingStateError):
    pass


class BillingRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------

    def get_tier(self, tier_id: str) -> Optional[SubscriptionTier]:
        key = str(tier_id or "").strip().lower()
        if not key:
            return None
        return self.session.get(SubscriptionTier, key)

    def create_tier(
        self,
        *,
        tier_id: str,
        name: str,
        monthly_price: Any,
        annual_price: Any,
        recurring_item_limit: int,
        active: bool = True,
    ) -> SubscriptionTier:
        existing = self.get_tier(tier_id)
        if existing is not None:
            return existing
        tier = SubscriptionTier(
            tier_id=str(tier_id).strip().lower(),
            name=str(name).strip(),
            monthly_price=_money(monthly_price),
            annual_price=_money(annual_price),
            recurring_item_limit=int(recurring_item_limit),
            active=bool(active),
        )
        self.session.add(tier)
        self.session.flush()
        return tier

    # ------------------------------------------------------------------
    # User subscriptions
    # ------------------------------------------------------------------

    def get_subscription(self, subscription_id: str, *, fresh: bool = False) -> Optional[UserSubscription]:
        key = str(subscription_id or "").strip()
        if not key:
            return None
        query = select(UserSubscription).where(UserSubscription.id == key)
        if fresh:
            query = query.execution_options(populate_existing=True)
        return self.session.scalar(query)

    def get_subscription_by_user(self, user_id: str, *, fresh: bool = False) -> Optional[UserSubscription]:
        key = str(user_id or "").strip()
        if not key:
            return None
        query = select(UserSubscription).where(UserSubscription.user_id == key)
        if fresh:
            query = query.execution_options(populate_existing=True)
        return self.session.scalar(query)

    def get_or_create_subscription(self, user_id: str, *, now: Optional[datetime] = None) -> UserSubscription:
        """Return the user's row, creating the default free row on first sight (signup)."""
        key = str(user_id or "").strip()
        if not key:
            raise BillingStateError("user_id is required")
        existing = self.get_subscription_by_user(key)
        if existing is not None:
            return existing
        current = _now(now)
        subscription = UserSubscription(
            user_id=key,
            tier_id=Tier.FREE,
            provider=None,
            status=SubscriptionStatus.ACTIVE,
            version=0,
            created_at=current,
            updated_at=current,
        )
        try:
            with self.session.begin_nested():
                self.session.add(subscription)
                self.session.flush()
        except IntegrityError:
            # Concurrent signup/webhook created the row first.
            existing = self.get_subscription_by_user(key, fresh=True)
            if existing is not None:
                return existing
            raise
        return subscription

    def find_subscription_by_original_transaction_id(self, original_transaction_id: str) -> Optional[UserSubscription]:
        key = str(original_transaction_id or "").strip()
        if not key:
            return None
        return self.session.scalar(
            select(UserSubscription)
            .where(UserSubscription.original_transaction_id == key)
            .order_by(UserSubscription.updated_at.desc())
            .limit(1)
        )

    def find_subscription_by_customer_id(self, customer_id: str) -> Optional[UserSubscription]:
        key = str(customer_id or "").strip()
        if not key:
            return None
        return self.session.scalar(
            select(UserSubscription)
            .where(UserSubscription.external_customer_id == key)
            .order_by(UserSubscription.updated_at.desc())
            .limit(1)
        )

    def update_subscription_versioned(
        self,
        subscription_id: str,
        *,
        expected_version: int,
        values: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> int:
        """
        Conditionally write `values` if the row is still at `expected_version`.

        Returns the new version; raises `SubscriptionVersionConflict` when another
        writer got there first so the caller can re-read and re-plan.
        """
        current = _now(now)
        result = self.session.execute(
            update(UserSubscription)
            .where(
                UserSubscription.id == subscription_id,
                UserSubscription.version == int(expected_version),
            )
            .values(**values, version=int(expected_version) + 1, updated_at=current)
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            raise SubscriptionVersionConflict(f"subscription version conflict for id={subscription_id}")
        return int(expected_version) + 1

    def list_lapsed_subscriptions(self, *, now: Optional[datetime] = None, grace_days: int) -> list[UserSubscription]:
        """Premium rows whose paid period (plus grace, where applicable) is over."""
        current = _now(now)
        candidates = self.session.scalars(
            select(UserSubscription).where(
                UserSubscription.tier_id == Tier.PREMIUM,
                UserSubscription.status.in_([SubscriptionStatus.CANCELED, SubscriptionStatus.GRACE_PERIOD]),
                UserSubscription.current_period_end.is_not(None),
            )
        ).all()
        # Compare in Python with UTC aware datetimes to avoid SQLite timezone quirks.
        lapsed: list[UserSubscription] = []
        for row in candidates:
            period_end = _as_utc_aware(row.current_period_end)
            if row.status == SubscriptionStatus.CANCELED and period_end <= current:
                lapsed.append(row)
            elif row.status == SubscriptionStatus.GRACE_PERIOD and period_end + timedelta(days=int(grace_days)) <= current:
                lapsed.append(row)
        return lapsed

    # ------------------------------------------------------------------
    # IAP lineage lookup
    # ------------------------------------------------------------------

    def record_iap_transaction(
        self,
        *,
        user_id: str,
        original_transaction_id: str,
        transaction_id: str,
        notification_type: str,
        product_id: Optional[str] = None,
        purchase_date: Optional[datetime] = None,
        expires_date: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> IapTransaction:
        row = IapTransaction(
            user_id=str(user_id),
            original_transaction_id=str(original_transaction_id),
            transaction_id=str(transaction_id or original_transaction_id),
            notification_type=str(notification_type or "unknown")[:64],
            product_id=product_id,
            purchase_date=_as_utc_aware(purchase_date) if purchase_date else None,
            expires_date=_as_utc_aware(expires_date) if expires_date else None,
            created_at=_now(now),
        )
        self.session.add(row)
        self.session.flush()
        return row

    def latest_iap_user_id(self, original_transaction_id: str) -> Optional[str]:
        key = str(original_transaction_id or "").strip()
        if not key:
            return None
        user_id = self.session.scalar(
            select(IapTransaction.user_id)
            .where(IapTransaction.original_transaction_id == key)
            .order_by(IapTransaction.created_at.desc())
            .limit(1)
        )
        return str(user_id) if user_id else None

    def list_iap_transactions(self, *, user_id: str, limit: int = 50) -> list[IapTransaction]:
        query = (
            select(IapTransaction)
            .where(IapTransaction.user_id == str(user_id))
            .order_by(IapTransaction.created_at.desc())
            .limit(max(1, min(int(limit), 200)))
        )
        return list(self.session.scalars(query).all())

    # ------------------------------------------------------------------
    # Payment transactions
    # ------------------------------------------------------------------

    def get_transaction(self, transaction_id: str) -> Optional[PaymentTransaction]:
        return self.session.get(PaymentTransaction, str(transaction_id or ""))

    def get_transaction_by_charge_id(self, provider_charge_id: str) -> Optional[PaymentTransaction]:
        key = str(provider_charge_id or "").strip()
        if not key:
            return None
        return self.session.scalar(select(PaymentTransaction).where(PaymentTransaction.provider_charge_id == key))

    def record_payment_transaction(
        self,
        *,
        subscription: UserSubscription,
        provider: ProviderName,
        provider_charge_id: str,
        amount: Any,
        currency: Optional[str],
        status: TransactionStatus,
        external_invoice_id: Optional[str] = None,
        source_event_id: Optional[str] = None,
        paid_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> PaymentTransaction:
        """
        Idempotent per provider charge id.

        Rows are immutable once `succeeded` or `refunded`; a `failed` row may be
        upgraded to `succeeded` when the provider's retry of the same charge
        goes through.
        """
        charge_id = str(provider_charge_id or "").strip()
        if not charge_id:
            raise BillingStateError("provider_charge_id is required")
        current = _now(now)
        existing = self.get_transaction_by_charge_id(charge_id)
        if existing is not None:
            return self._merge_transaction_status(existing, status, paid_at=paid_at, now=current)

        transaction = PaymentTransaction(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            provider=provider,
            provider_charge_id=charge_id,
            external_invoice_id=external_invoice_id,
            amount=_money(amount),
            currency=str(currency or "usd").strip().lower()[:8] or "usd",
            status=status,
            source_event_id=source_event_id,
            paid_at=(_as_utc_aware(paid_at) if paid_at else current) if status == TransactionStatus.SUCCEEDED else None,
            created_at=current,
            updated_at=current,
        )
        try:
            with self.session.begin_nested():
                self.session.add(transaction)
                self.session.flush()
        except IntegrityError:
            # Concurrent duplicate insert on provider_charge_id; fall back to the existing row.
            existing = self.get_transaction_by_charge_id(charge_id)
            if existing is not None:
                return self._merge_transaction_status(existing, status, paid_at=paid_at, now=current)
            raise
        return transaction

    def _merge_transaction_status(
        self,
        existing: PaymentTransaction,
        status: TransactionStatus,
        *,
        paid_at: Optional[datetime],
        now: datetime,
    ) -> PaymentTransaction:
        if existing.status == TransactionStatus.FAILED and status == TransactionStatus.SUCCEEDED:
            existing.status = TransactionStatus.SUCCEEDED
            existing.paid_at = _as_utc_aware(paid_at) if paid_at else now
            existing.updated_at = now
            self.session.flush()
        return existing

    def latest_settled_transaction(self, subscription_id: str) -> Optional[PaymentTransaction]:
        """Most recent charge that went through, refunded or not; failed attempts are skipped."""
        return self.session.scalar(
            select(PaymentTransaction)
            .where(
                PaymentTransaction.subscription_id == str(subscription_id),
                PaymentTransaction.status.in_([TransactionStatus.SUCCEEDED, TransactionStatus.REFUNDED]),
            )
            .order_by(
                func.coalesce(PaymentTransaction.paid_at, PaymentTransaction.created_at).desc(),
                PaymentTransaction.created_at.desc(),
            )
            .limit(1)
        )

    def mark_transaction_refunded(self, transaction_id: str, *, now: Optional[datetime] = None) -> PaymentTransaction:
        transaction = self.get_transaction(transaction_id)
        if transaction is None:
            raise BillingStateError(f"transaction not found: {transaction_id}")
        if transaction.status == TransactionStatus.REFUNDED:
            return transaction
        if transaction.status != TransactionStatus.SUCCEEDED:
            raise BillingStateError(f"invalid transaction transition: {transaction.status.value} -> refunded")
        current = _now(now)
        transaction.status = TransactionStatus.REFUNDED
        transaction.refunded_at = current
        transaction.updated_at = current
        self.session.flush()
        return transaction

    def list_transactions(self, *, subscription_id: str, limit: int = 50) -> list[PaymentTransaction]:
        query = (
            select(PaymentTransaction)
            .where(PaymentTransaction.subscription_id == str(subscription_id))
            .order_by(PaymentTransaction.created_at.desc())
            .limit(max(1, min(int(limit), 200)))
        )
        return list(self.session.scalars(query).all())

    # ------------------------------------------------------------------
    # Event ledger
    # ------------------------------------------------------------------

    def get_ledger_entry(self, event_id: str, *, fresh: bool = False) -> Optional[EventLedgerEntry]:
        query = select(EventLedgerEntry).where(EventLedgerEntry.event_id == str(event_id or ""))
        if fresh:
            query = query.execution_options(populate_existing=True)
        return self.session.scalar(query)

    def insert_ledger_entry(
        self,
        *,
        event_id: str,
        provider: ProviderName,
        event_kind: str,
        raw_payload: str,
        now: Optional[datetime] = None,
    ) -> tuple[EventLedgerEntry, bool]:
        """Insert-with-unique-constraint; returns `(entry, inserted)`."""
        existing = self.get_ledger_entry(event_id)
        if existing is not None:
            return existing, False
        received_at = _now(now)
        entry = EventLedgerEntry(
            event_id=str(event_id),
            provider=provider,
            event_kind=str(event_kind or "unknown")[:64],
            raw_payload=str(raw_payload or ""),
            status=LedgerStatus.PENDING,
            retry_count=0,
            received_at=received_at,
            leased_at=received_at,
        )
        try:
            with self.session.begin_nested():
                self.session.add(entry)
                self.session.flush()
        except IntegrityError:
            existing = self.get_ledger_entry(event_id, fresh=True)
            if existing is not None:
                return existing, False
            raise
        return entry, True

    def mark_ledger_processed(
        self,
        event_id: str,
        *,
        result: dict[str, Any],
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EventLedgerEntry:
        entry = self.get_ledger_entry(event_id)
        if entry is None:
            raise BillingStateError(f"ledger entry not found: {event_id}")
        entry.status = LedgerStatus.PROCESSED
        entry.result_json = json.dumps(result, ensure_ascii=False, default=str)
        entry.user_id = user_id or entry.user_id
        entry.error_code = None
        entry.error_message = None
        entry.processed_at = _now(now)
        self.session.flush()
        return entry

    def mark_ledger_failed(
        self,
        event_id: str,
        *,
        error_code: str,
        error_message: str,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EventLedgerEntry:
        entry = self.get_ledger_entry(event_id)
        if entry is None:
            raise BillingStateError(f"ledger entry not found: {event_id}")
        entry.status = LedgerStatus.FAILED
        entry.error_code = str(error_code or "UNEXPECTED_ERROR")[:64]
        entry.error_message = str(error_message or "")
        entry.user_id = user_id or entry.user_id
        entry.processed_at = _now(now)
        self.session.flush()
        return entry

    def claim_ledger_entry_for_replay(self, event_id: str, *, now: Optional[datetime] = None) -> bool:
        """Move a `failed` entry back to `pending`; only one replayer can win."""
        result = self.session.execute(
            update(EventLedgerEntry)
            .where(
                EventLedgerEntry.event_id == str(event_id),
                EventLedgerEntry.status == LedgerStatus.FAILED,
            )
            .values(
                status=LedgerStatus.PENDING,
                retry_count=EventLedgerEntry.retry_count + 1,
                leased_at=_now(now),
            )
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0) == 1

    def claim_stale_ledger_entry(self, event_id: str, *, stale_before: datetime, now: Optional[datetime] = None) -> bool:
        """
        Take over a `pending` entry whose lease ran out (its writer crashed or
        was killed). Only one caller can win; the lease is renewed to `now`.
        """
        result = self.session.execute(
            update(EventLedgerEntry)
            .where(
                EventLedgerEntry.event_id == str(event_id),
                EventLedgerEntry.status == LedgerStatus.PENDING,
                func.coalesce(EventLedgerEntry.leased_at, EventLedgerEntry.received_at) < _as_utc_aware(stale_before),
            )
            .values(retry_count=EventLedgerEntry.retry_count + 1, leased_at=_now(now))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0) == 1

    def list_ledger_entries(
        self,
        *,
        status: Optional[LedgerStatus] = None,
        provider: Optional[ProviderName] = None,
        max_retry_count: Optional[int] = None,
        leased_before: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[EventLedgerEntry]:
        query: Select[Any] = select(EventLedgerEntry).order_by(EventLedgerEntry.received_at.asc())
        if status is not None:
            query = query.where(EventLedgerEntry.status == status)
        if leased_before is not None:
            query = query.where(
                func.coalesce(EventLedgerEntry.leased_at, EventLedgerEntry.received_at) < _as_utc_aware(leased_before)
            )
        if provider is not None:
            query = query.where(EventLedgerEntry.provider == provider)
        if max_retry_count is not None:
            query = query.where(EventLedgerEntry.retry_count < int(max_retry_count))
        query = query.limit(max(1, min(int(limit), 200))).offset(max(0, int(offset)))
        return list(self.session.scalars(query).all())

    # ------------------------------------------------------------------
    # Recurring items
    # ------------------------------------------------------------------

    def create_recurring_item(
        self,
        *,
        user_id: str,
        name: str,
        cost: Any,
        repeat_interval: RepeatInterval,
        renewal_date: date,
        currency: str = "usd",
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RecurringItem:
        normalized_name = str(name or "").strip()
        if not normalized_name:
            raise BillingStateError("name is required")
        current = _now(now)
        item = RecurringItem(
            user_id=str(user_id),
            name=normalized_name[:120],
            cost=_money(cost),
            currency=str(currency or "usd").strip().lower()[:8] or "usd",
            repeat_interval=repeat_interval,
            renewal_date=renewal_date,
            status=RecurringItemStatus.ACTIVE,
            notes=notes,
            created_at=current,
            updated_at=current,
        )
        self.session.add(item)
        self.session.flush()
        return item

    def get_recurring_item(self, item_id: str, *, user_id: str) -> Optional[RecurringItem]:
        return self.session.scalar(
            select(RecurringItem).where(
                RecurringItem.id == str(item_id or ""),
                RecurringItem.user_id == str(user_id or ""),
            )
        )

    def list_recurring_items(self, *, user_id: str, include_cancelled: bool = False) -> list[RecurringItem]:
        query = (
            select(RecurringItem)
            .where(RecurringItem.user_id == str(user_id))
            .order_by(RecurringItem.renewal_date.asc(), RecurringItem.created_at.asc())
        )
        if not include_cancelled:
            query = query.where(RecurringItem.status != RecurringItemStatus.CANCELLED)
        return list(self.session.scalars(query).all())

    def count_tracked_recurring_items(self, user_id: str) -> int:
        count = self.session.scalar(
            select(func.count())
            .select_from(RecurringItem)
            .where(
                RecurringItem.user_id == str(user_id),
                RecurringItem.status != RecurringItemStatus.CANCELLED,
            )
        )
        return int(count or 0)

    def update_recurring_item(
        self,
        item: RecurringItem,
        *,
        name: Optional[str] = None,
        cost: Any = None,
        repeat_interval: Optional[RepeatInterval] = None,
        renewal_date: Optional[date] = None,
        status: Optional[RecurringItemStatus] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RecurringItem:
        if name is not None:
            normalized_name = str(name).strip()
            if not normalized_name:
                raise BillingStateError("name cannot be empty")
            item.name = normalized_name[:120]
        if cost is not None:
            item.cost = _money(cost)
        if repeat_interval is not None:
            item.repeat_interval = repeat_interval
        if renewal_date is not None:
            item.renewal_date = renewal_date
        if status is not None:
            item.status = status
        if notes is not None:
            item.notes = str(notes).strip() or None
        item.updated_at = _now(now)
        self.session.flush()
        return item

    def list_past_due_items(self, *, user_id: str, today: date) -> list[RecurringItem]:
        query = (
            select(RecurringItem)
            .where(
                RecurringItem.user_id == str(user_id),
                RecurringItem.status == RecurringItemStatus.ACTIVE,
                RecurringItem.renewal_date < today,
            )
            .order_by(RecurringItem.renewal_date.asc(), RecurringItem.created_at.asc())
        )
        return list(self.session.scalars(query).all())

    def count_past_due_by_user(self, *, today: date) -> dict[str, int]:
        rows = self.session.execute(
            select(RecurringItem.user_id, func.count())
            .where(
                RecurringItem.status == RecurringItemStatus.ACTIVE,
                RecurringItem.renewal_date < today,
            )
            .group_by(RecurringItem.user_id)
        ).all()
        return {str(user_id): int(count or 0) for user_id, count in rows}

    def advance_recurring_item(
        self,
        item_id: str,
        *,
        user_id: str,
        expected_renewal_date: date,
        renewal_date: date,
        status: RecurringItemStatus,
        now: Optional[datetime] = None,
    ) -> bool:
        """Compare-and-set on the due date so one due date is confirmed exactly once."""
        result = self.session.execute(
            update(RecurringItem)
            .where(
                RecurringItem.id == str(item_id),
                RecurringItem.user_id == str(user_id),
                RecurringItem.status == RecurringItemStatus.ACTIVE,
                RecurringItem.renewal_date == expected_renewal_date,
            )
            .values(renewal_date=renewal_date, status=status, updated_at=_now(now))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0) == 1

    def add_payment_history(
        self,
        *,
        item: RecurringItem,
        due_date: date,
        payment_date: date,
        status: PaymentHistoryStatus,
        amount: Any,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PaymentHistoryEntry:
        entry = PaymentHistoryEntry(
            recurring_item_id=item.id,
            user_id=item.user_id,
            due_date=due_date,
            payment_date=payment_date,
            status=status,
            amount=_money(amount),
            notes=(str(notes).strip() or None) if notes is not None else None,
            created_at=_now(now),
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def list_payment_history(self, *, item_id: str, user_id: str, limit: int = 50, offset: int = 0) -> list[PaymentHistoryEntry]:
        query = (
            select(PaymentHistoryEntry)
            .where(
                PaymentHistoryEntry.recurring_item_id == str(item_id),
                PaymentHistoryEntry.user_id == str(user_id),
            )
            .order_by(PaymentHistoryEntry.due_date.desc(), PaymentHistoryEntry.created_at.desc())
            .limit(max(1, min(int(limit), 200)))
            .offset(max(0, int(offset)))
        )
        return list(self.session.scalars(query).all())

    def payment_history_summary(self, user_id: str) -> dict[str, Any]:
        rows = self.session.execute(
            select(
                PaymentHistoryEntry.status,
                func.count(),
                func.coalesce(func.sum(PaymentHistoryEntry.amount), 0),
            )
            .where(PaymentHistoryEntry.user_id == str(user_id))
            .group_by(PaymentHistoryEntry.status)
        ).all()
        counts = {status: 0 for status in PaymentHistoryStatus}
        amounts = {status: Decimal("0.00") for status in PaymentHistoryStatus}
        for status, count, amount in rows:
            key = PaymentHistoryStatus(status)
            counts[key] = int(count or 0)
            amounts[key] = _money(amount)
        return {"counts": counts, "amounts": amounts}

    # ------------------------------------------------------------------
    # Refund requests
    # ------------------------------------------------------------------

    def get_refund_request(self, refund_id: str) -> Optional[RefundRequest]:
        return self.session.get(RefundRequest, str(refund_id or ""))

    def find_refund_request_for_transaction(self, transaction_id: str) -> Optional[RefundRequest]:
        return self.session.scalar(select(RefundRequest).where(RefundRequest.transaction_id == str(transaction_id)))

    def create_refund_request(
        self,
        *,
        subscription: UserSubscription,
        transaction: PaymentTransaction,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> tuple[RefundRequest, bool]:
        existing = self.find_refund_request_for_transaction(transaction.id)
        if existing is not None:
            return existing, False
        request = RefundRequest(
            subscription_id=subscription.id,
            transaction_id=transaction.id,
            user_id=subscription.user_id,
            amount=_money(transaction.amount),
            currency=transaction.currency,
            reason=(str(reason).strip() or None) if reason else None,
            status=RefundRequestStatus.PENDING,
            requested_at=_now(now),
        )
        try:
            with self.session.begin_nested():
                self.session.add(request)
                self.session.flush()
        except IntegrityError:
            existing = self.find_refund_request_for_transaction(transaction.id)
            if existing is not None:
                return existing, False
            raise
        return request, True

    def mark_refund_completed(
        self,
        refund_id: str,
        *,
        provider_refund_id: Optional[str],
        now: Optional[datetime] = None,
    ) -> RefundRequest:
        request = self.get_refund_request(refund_id)
        if request is None:
            raise BillingStateError(f"refund request not found: {refund_id}")
        if request.status == RefundRequestStatus.COMPLETED:
            return request
        if request.status != RefundRequestStatus.PENDING:
            raise BillingStateError(f"invalid refund transition: {request.status.value} -> completed")
        request.status = RefundRequestStatus.COMPLETED
        request.provider_refund_id = provider_refund_id
        request.completed_at = _now(now)
        self.session.flush()
        return request

    def mark_refund_rejected(self, refund_id: str, *, failure_reason: str, now: Optional[datetime] = None) -> RefundRequest:
        request = self.get_refund_request(refund_id)
        if request is None:
            raise BillingStateError(f"refund request not found: {refund_id}")
        if request.status != RefundRequestStatus.PENDING:
            raise BillingStateError(f"invalid refund transition: {request.status.value} -> rejected")
        request.status = RefundRequestStatus.REJECTED
        request.failure_reason = str(failure_reason or "")
        request.completed_at = _now(now)
        self.session.flush()
        return request
