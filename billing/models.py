from __future__ import annotations

import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class Tier(str, enum.Enum):
    FREE = "free"
    PREMIUM = "premium"


class ProviderName(str, enum.Enum):
    CARD = "card"
    MOBILE_IAP = "mobile_iap"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    GRACE_PERIOD = "grace_period"


class BillingCycle(str, enum.Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"
    NONE = "none"


class LedgerStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class TransactionStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class RepeatInterval(str, enum.Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    SEMIMONTHLY = "semimonthly"
    MONTHLY = "monthly"
    BIMONTHLY = "bimonthly"
    QUARTERLY = "quarterly"
    SEMIANNUALLY = "semiannually"
    YEARLY = "yearly"
    NEVER = "never"


class RecurringItemStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class PaymentHistoryStatus(str, enum.Enum):
    PAID = "paid"
    SKIPPED = "skipped"
    PENDING = "pending"
    CANCELLED = "cancelled"


class RefundRequestStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


class SubscriptionTier(Base):
    __tablename__ = "subscription_tiers"

    tier_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(64))
    monthly_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    annual_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    recurring_item_limit: Mapped[int] = mapped_column(Integer, default=5)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class UserSubscription(Base):
    """
    The single authoritative tier record for a user.

    Rows are never deleted; every write goes through a version-checked
    conditional update (see `BillingRepository.update_subscription_versioned`).
    """

    __tablename__ = "user_subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    tier_id: Mapped[Tier] = mapped_column(Enum(Tier, native_enum=False), default=Tier.FREE)
    provider: Mapped[Optional[ProviderName]] = mapped_column(Enum(ProviderName, native_enum=False), nullable=True)
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus, native_enum=False), default=SubscriptionStatus.ACTIVE
    )
    billing_cycle: Mapped[BillingCycle] = mapped_column(Enum(BillingCycle, native_enum=False), default=BillingCycle.NONE)
    current_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    grace_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    external_customer_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    external_subscription_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    original_transaction_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    product_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    # Lineage (card subscription id or IAP original transaction id) voided by a refund/revoke.
    revoked_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_event_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    transactions: Mapped[list["PaymentTransaction"]] = relationship(back_populates="subscription")
    refund_requests: Mapped[list["RefundRequest"]] = relationship(back_populates="subscription")


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    subscription_id: Mapped[str] = mapped_column(ForeignKey("user_subscriptions.id"), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    provider: Mapped[ProviderName] = mapped_column(Enum(ProviderName, native_enum=False))
    provider_charge_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    external_invoice_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(8), default="usd")
    status: Mapped[TransactionStatus] = mapped_column(Enum(TransactionStatus, native_enum=False))
    source_event_id: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    subscription: Mapped[UserSubscription] = relationship(back_populates="transactions")


class EventLedgerEntry(Base):
    """
    Append-only log of inbound provider notifications.

    `event_id` is provider-qualified (`stripe:evt_123`, `apple:<uuid>`) and
    unique; the losing insert of a concurrent duplicate is the signal to skip
    reprocessing. Raw payloads are kept for forensic replay.

    A `pending` entry is leased to the writer processing it; once `leased_at`
    is older than the lease, a redelivery or the replay sweep may take it over.
    """

    __tablename__ = "event_ledger"

    event_id: Mapped[str] = mapped_column(String(160), primary_key=True)
    provider: Mapped[ProviderName] = mapped_column(Enum(ProviderName, native_enum=False), index=True)
    event_kind: Mapped[str] = mapped_column(String(64), index=True)
    raw_payload: Mapped[str] = mapped_column(Text)
    status: Mapped[LedgerStatus] = mapped_column(
        Enum(LedgerStatus, native_enum=False), default=LedgerStatus.PENDING, index=True
    )
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    result_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    leased_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class IapTransaction(Base):
    """Audit trail of every verified in-app purchase transaction, used as the secondary user lookup."""

    __tablename__ = "iap_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    original_transaction_id: Mapped[str] = mapped_column(String(128), index=True)
    transaction_id: Mapped[str] = mapped_column(String(128), index=True)
    product_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    notification_type: Mapped[str] = mapped_column(String(64))
    purchase_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)


class RecurringItem(Base):
    __tablename__ = "recurring_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(120))
    cost: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(8), default="usd")
    repeat_interval: Mapped[RepeatInterval] = mapped_column(
        Enum(RepeatInterval, native_enum=False), default=RepeatInterval.MONTHLY
    )
    renewal_date: Mapped[date] = mapped_column(Date, index=True)
    status: Mapped[RecurringItemStatus] = mapped_column(
        Enum(RecurringItemStatus, native_enum=False), default=RecurringItemStatus.ACTIVE
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    history: Mapped[list["PaymentHistoryEntry"]] = relationship(back_populates="item")


class PaymentHistoryEntry(Base):
    __tablename__ = "payment_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    recurring_item_id: Mapped[str] = mapped_column(ForeignKey("recurring_items.id"), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    due_date: Mapped[date] = mapped_column(Date)
    payment_date: Mapped[date] = mapped_column(Date)
    status: Mapped[PaymentHistoryStatus] = mapped_column(Enum(PaymentHistoryStatus, native_enum=False))
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    item: Mapped[RecurringItem] = relationship(back_populates="history")


class RefundRequest(Base):
    __tablename__ = "refund_requests"
    __table_args__ = (UniqueConstraint("transaction_id", name="uq_refund_requests_transaction"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    subscription_id: Mapped[str] = mapped_column(ForeignKey("user_subscriptions.id"), index=True)
    transaction_id: Mapped[str] = mapped_column(ForeignKey("payment_transactions.id"))
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(8), default="usd")
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[RefundRequestStatus] = mapped_column(
        Enum(RefundRequestStatus, native_enum=False), default=RefundRequestStatus.PENDING, index=True
    )
    provider_refund_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    subscription: Mapped[UserSubscription] = relationship(back_populates="refund_requests")


Index("ix_recurring_items_user_status_renewal", RecurringItem.user_id, RecurringItem.status, RecurringItem.renewal_date)
Index("ix_payment_transactions_subscription_status", PaymentTransaction.subscription_id, PaymentTransaction.status)
Index("ix_payment_history_item_created", PaymentHistoryEntry.recurring_item_id, PaymentHistoryEntry.created_at)
Index("ix_iap_transactions_original_created", IapTransaction.original_transaction_id, IapTransaction.created_at)
