from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from config import REFUND_WINDOW_DAYS
from observability import get_logger, log_event

from .db import SessionFactory, session_scope
from .entitlements import invalidate_subscription_status
from .errors import NotFound, ProviderCallFailure, RefundIneligible
from .events import BillingEvent, EventKind
from .models import ProviderName, RefundRequestStatus, TransactionStatus
from .provider import BaseRefundProvider, get_refund_provider
from .repository import BillingRepository, _as_utc_aware
from .state_machine import apply_event

_LOGGER = get_logger("renvo.billing.refunds")

_INELIGIBLE_MESSAGES = {
    "no_payment": "no payment on this subscription can be refunded",
    "provider_managed": "in-app purchases are refunded by the app store",
    "already_refunded": "the latest payment has already been refunded",
    "refund_rejected": "a refund for the latest payment was already rejected",
    "window_expired": "the refund window has passed",
}


@dataclass(frozen=True)
class RefundEligibility:
    eligible: bool
    window_days: int
    days_since_payment: Optional[int] = None
    transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    reason: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "eligible": self.eligible,
            "daysSincePayment": self.days_since_payment,
            "windowDays": self.window_days,
            "transactionId": self.transaction_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "reason": self.reason,
        }


def days_since_payment(paid_at: dt.datetime, now: dt.datetime) -> int:
    """Whole UTC calendar days between payment and now; never negative."""
    paid_day = _as_utc_aware(paid_at).date()
    today = _as_utc_aware(now).date()
    return max(0, (today - paid_day).days)


def check_eligibility(
    repo: BillingRepository,
    subscription_id: str,
    *,
    now: Optional[dt.datetime] = None,
    window_days: int = REFUND_WINDOW_DAYS,
) -> RefundEligibility:
    """
    Eligible iff the latest payment succeeded, was made by card and is at most
    `window_days` UTC calendar days old (day 7 in, day 8 out).
    """

    subscription = repo.get_subscription(subscription_id)
    if subscription is None:
        raise NotFound(f"subscription not found: {subscription_id}")
    current = _as_utc_aware(now) if now else dt.datetime.now(dt.timezone.utc)
    transaction = repo.latest_settled_transaction(subscription.id)
    if transaction is None:
        return RefundEligibility(eligible=False, window_days=window_days, reason="no_payment")

    days = days_since_payment(transaction.paid_at or transaction.created_at, current)
    common: dict[str, Any] = {
        "window_days": window_days,
        "days_since_payment": days,
        "transaction_id": transaction.id,
        "amount": transaction.amount,
        "currency": transaction.currency,
    }
    if transaction.status == TransactionStatus.REFUNDED:
        return RefundEligibility(eligible=False, reason="already_refunded", **common)
    if transaction.provider == ProviderName.MOBILE_IAP:
        return RefundEligibility(eligible=False, reason="provider_managed", **common)
    existing = repo.find_refund_request_for_transaction(transaction.id)
    if existing is not None and existing.status == RefundRequestStatus.COMPLETED:
        return RefundEligibility(eligible=False, reason="already_refunded", **common)
    if existing is not None and existing.status == RefundRequestStatus.REJECTED:
        return RefundEligibility(eligible=False, reason="refund_rejected", **common)
    if days > int(window_days):
        return RefundEligibility(eligible=False, reason="window_expired", **common)
    return RefundEligibility(eligible=True, **common)


def _reject(request_id: str, exc: ProviderCallFailure, *, session_factory: SessionFactory | None, now: dt.datetime) -> None:
    with session_scope(session_factory) as session:
        BillingRepository(session).mark_refund_rejected(request_id, failure_reason=str(exc), now=now)


def request_refund(
    subscription_id: str,
    reason: Optional[str] = None,
    *,
    user_id: Optional[str] = None,
    provider: Optional[BaseRefundProvider] = None,
    session_factory: SessionFactory | None = None,
    now: Optional[dt.datetime] = None,
    window_days: int = REFUND_WINDOW_DAYS,
) -> dict[str, Any]:
    """
    Refund the latest payment and downgrade the subscription to free.

    Runs in three steps so no row lock is held across the provider call:
    1. record (or resume) a `pending` refund request;
    2. call the provider, keyed on the request id;
    3. only after the provider confirmed: complete the request, mark the
       payment refunded and force the subscription to free.
    A crash between 2 and 3 leaves a `pending` request that the next call
    resumes with the same idempotency key.
    """

    current = _as_utc_aware(now) if now else dt.datetime.now(dt.timezone.utc)
    refund_provider = provider or get_refund_provider()

    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        subscription = repo.get_subscription(subscription_id)
        if subscription is None or (user_id is not None and subscription.user_id != str(user_id)):
            raise NotFound(f"subscription not found: {subscription_id}")
        eligibility = check_eligibility(repo, subscription.id, now=current, window_days=window_days)
        transaction = repo.get_transaction(eligibility.transaction_id) if eligibility.transaction_id else None
        existing = repo.find_refund_request_for_transaction(transaction.id) if transaction is not None else None
        resumable = existing is not None and existing.status == RefundRequestStatus.PENDING
        if transaction is None or not (eligibility.eligible or resumable):
            reason_code = eligibility.reason or "no_payment"
            raise RefundIneligible(_INELIGIBLE_MESSAGES.get(reason_code, reason_code), reason=reason_code)
        refund_request, created = repo.create_refund_request(
            subscription=subscription,
            transaction=transaction,
            reason=reason,
            now=current,
        )
        request_id = refund_request.id
        owner_id = subscription.user_id
        charge_id = transaction.provider_charge_id
        transaction_id = transaction.id
        amount = Decimal(transaction.amount)
        currency = transaction.currency
        lineage = subscription.external_subscription_id

    log_event(
        _LOGGER,
        logging.INFO,
        "billing.refund.requested",
        refund_id=request_id,
        subscription_id=subscription_id,
        user_id=owner_id,
        amount=amount,
        resumed=not created,
    )

    try:
        receipt = refund_provider.refund_charge(
            charge_id=charge_id,
            amount=amount,
            currency=currency,
            idempotency_key=f"refund:{request_id}",
        )
    except ProviderCallFailure as exc:
        if not exc.retryable:
            _reject(request_id, exc, session_factory=session_factory, now=current)
        log_event(
            _LOGGER,
            logging.WARNING,
            "billing.refund.provider_failed",
            refund_id=request_id,
            retryable=exc.retryable,
            status_code=exc.status_code,
            error_message=str(exc),
        )
        raise

    event = BillingEvent(
        provider_event_id=f"refund:{request_id}",
        provider=ProviderName.CARD,
        event_kind=EventKind.REFUNDED,
        user_ref=owner_id,
        provider_type="refund.requested",
        occurred_at=current,
        amount=amount,
        currency=currency,
        charge_id=charge_id,
        subscription_ref=lineage,
    )
    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        repo.mark_refund_completed(request_id, provider_refund_id=receipt.provider_refund_id, now=current)
        repo.mark_transaction_refunded(transaction_id, now=current)
        apply_event(repo, event, owner_id, now=current)

    if lineage:
        try:
            refund_provider.cancel_subscription(subscription_ref=lineage, idempotency_key=f"refund-cancel:{request_id}")
        except ProviderCallFailure as exc:
            # The local row is already free; the provider's next webhook reconciles.
            log_event(
                _LOGGER,
                logging.WARNING,
                "billing.refund.cancel_failed",
                refund_id=request_id,
                subscription_ref=lineage,
                error_message=str(exc),
            )

    invalidate_subscription_status(owner_id)
    log_event(
        _LOGGER,
        logging.INFO,
        "billing.refund.completed",
        refund_id=request_id,
        user_id=owner_id,
        provider_refund_id=receipt.provider_refund_id,
    )
    return {"refundId": request_id, "amount": str(amount), "currency": currency, "status": RefundRequestStatus.COMPLETED.value}
