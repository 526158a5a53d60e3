from __future__ import annotations

import datetime as dt
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import OperationalError

from config import SUBSCRIPTION_UPDATE_MAX_ATTEMPTS
from observability import get_logger, log_event

from .errors import ConcurrencyConflict, ProviderConflictError
from .events import BillingEvent, EventKind
from .models import (
    BillingCycle,
    ProviderName,
    SubscriptionStatus,
    Tier,
    TransactionStatus,
    UserSubscription,
)
from .repository import BillingRepository, SubscriptionVersionConflict, _as_utc_aware

_LOGGER = get_logger("renvo.billing.state_machine")

_PAYMENT_KINDS = frozenset({EventKind.CREATED, EventKind.RENEWED})
_DOWNGRADE_KINDS = frozenset({EventKind.EXPIRED, EventKind.GRACE_PERIOD_EXPIRED})
_REVOKE_KINDS = frozenset({EventKind.REFUNDED, EventKind.REVOKED})


@dataclass(frozen=True)
class Transition:
    """Planned change to one `UserSubscription` row; `values` empty means ignored."""

    values: dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    transaction_status: Optional[TransactionStatus] = None
    refund_charge: bool = False

    @property
    def applies(self) -> bool:
        return bool(self.values)


def _ignored(reason: str) -> Transition:
    return Transition(values={}, reason=reason)


def _lineage(subscription: UserSubscription, provider: Optional[ProviderName]) -> Optional[str]:
    if provider == ProviderName.CARD:
        return subscription.external_subscription_id
    if provider == ProviderName.MOBILE_IAP:
        return subscription.original_transaction_id
    return None


def _linkage_cleared(provider: Optional[ProviderName]) -> dict[str, Any]:
    if provider == ProviderName.CARD:
        # Customer id is kept so a later checkout reuses the same card customer.
        return {"external_subscription_id": None}
    if provider == ProviderName.MOBILE_IAP:
        return {"original_transaction_id": None, "product_id": None}
    return {}


def _default_period_end(start: dt.datetime, cycle: BillingCycle) -> dt.datetime:
    if cycle == BillingCycle.ANNUAL:
        return start + relativedelta(years=1)
    return start + relativedelta(months=1)


def _later(left: Optional[dt.datetime], right: Optional[dt.datetime]) -> Optional[dt.datetime]:
    if left is None:
        return right
    if right is None:
        return left
    return max(_as_utc_aware(left), _as_utc_aware(right))


def _free_values(subscription: UserSubscription, event: BillingEvent) -> dict[str, Any]:
    values: dict[str, Any] = {
        "tier_id": Tier.FREE,
        "provider": None,
        "billing_cycle": BillingCycle.NONE,
        "current_period_start": None,
        "current_period_end": None,
        "cancel_at_period_end": False,
        "grace_started_at": None,
    }
    values.update(_linkage_cleared(subscription.provider or event.provider))
    return values


def _revoked_lineage_reason(
    subscription: UserSubscription,
    event: BillingEvent,
    occurred_at: dt.datetime,
) -> Optional[str]:
    """
    Refunded lineages stay refunded whatever order the provider delivers in.

    A card lineage is terminal once refunded: a new checkout creates a new
    provider subscription id. An App Store lineage keeps its original
    transaction id across resubscribes, so only a purchase made after the
    refund can reactivate it; renewals of it are dropped.
    """

    if not event.subscription_ref or subscription.revoked_reference != event.subscription_ref:
        return None
    if subscription.revoked_at is None:
        return None
    if event.provider == ProviderName.CARD:
        return "card subscription was refunded"
    if event.event_kind == EventKind.RENEWED:
        return "renewal of a refunded lineage"
    purchased_at = _as_utc_aware(event.period_start) if event.period_start else occurred_at
    if purchased_at <= _as_utc_aware(subscription.revoked_at):
        return "purchase predates the refund of this lineage"
    return None


def plan_transition(subscription: UserSubscription, event: BillingEvent, *, now: dt.datetime) -> Transition:
    """
    Decide how `event` changes `subscription`. Pure: reads the row, writes nothing.

    Raises `ProviderConflictError` when the row is linked to the other provider.
    """

    kind = event.event_kind
    if kind == EventKind.IGNORED:
        return _ignored(f"unsupported provider event: {event.provider_type or '-'}")

    linked = subscription.provider
    if linked is not None and linked != event.provider:
        raise ProviderConflictError(
            f"subscription is linked to {linked.value}; rejected {event.provider.value} {kind.value} event"
        )

    current_lineage = _lineage(subscription, linked)
    occurred_at = _as_utc_aware(event.occurred_at) if event.occurred_at else now
    is_premium = subscription.tier_id == Tier.PREMIUM

    if kind in _PAYMENT_KINDS:
        revoked_reason = _revoked_lineage_reason(subscription, event, occurred_at)
        if revoked_reason:
            return _ignored(revoked_reason)
        cycle = event.billing_cycle or (
            subscription.billing_cycle if subscription.billing_cycle != BillingCycle.NONE else BillingCycle.MONTHLY
        )
        period_start = _as_utc_aware(event.period_start) if event.period_start else occurred_at
        period_end = _as_utc_aware(event.period_end) if event.period_end else _default_period_end(period_start, cycle)
        same_lineage = bool(current_lineage) and current_lineage == event.subscription_ref
        if same_lineage and is_premium and subscription.current_period_end is not None:
            # An older renewal arriving late must not shrink the paid period.
            if _as_utc_aware(subscription.current_period_end) > period_end:
                period_start = _as_utc_aware(subscription.current_period_start or period_start)
                period_end = _as_utc_aware(subscription.current_period_end)
        values: dict[str, Any] = {
            "tier_id": Tier.PREMIUM,
            "provider": event.provider,
            "status": SubscriptionStatus.ACTIVE,
            "billing_cycle": cycle,
            "current_period_start": period_start,
            "current_period_end": period_end,
            "cancel_at_period_end": False,
            "canceled_at": None,
            "grace_started_at": None,
        }
        if event.provider == ProviderName.CARD:
            if event.subscription_ref:
                values["external_subscription_id"] = event.subscription_ref
            if event.customer_id:
                values["external_customer_id"] = event.customer_id
        else:
            values["original_transaction_id"] = event.subscription_ref
            values["product_id"] = event.product_id or subscription.product_id
        return Transition(
            values=values,
            transaction_status=TransactionStatus.SUCCEEDED if event.charge_id else None,
        )

    if kind in _REVOKE_KINDS:
        values = _free_values(subscription, event)
        values.update(
            {
                "status": SubscriptionStatus.CANCELED,
                "canceled_at": now,
                "revoked_reference": event.subscription_ref or current_lineage or subscription.revoked_reference,
                "revoked_at": _later(subscription.revoked_at, occurred_at),
            }
        )
        return Transition(values=values, refund_charge=bool(event.charge_id))

    # Remaining kinds only make sense against the lineage the row is linked to.
    if not is_premium or linked is None:
        return _ignored(f"{kind.value} for a subscription that is not premium")
    if event.subscription_ref and current_lineage and event.subscription_ref != current_lineage:
        return _ignored(f"{kind.value} for a superseded subscription lineage")

    if kind == EventKind.FAILED:
        return Transition(
            values={
                "status": SubscriptionStatus.GRACE_PERIOD,
                "grace_started_at": subscription.grace_started_at or occurred_at,
            },
            transaction_status=TransactionStatus.FAILED if event.charge_id else None,
        )

    if kind == EventKind.CANCELED or (kind == EventKind.AUTO_RENEW_CHANGED and event.auto_renew is False):
        if subscription.status == SubscriptionStatus.CANCELED and subscription.cancel_at_period_end:
            return _ignored("already canceled at period end")
        values = {
            "status": SubscriptionStatus.CANCELED,
            "cancel_at_period_end": True,
            "canceled_at": occurred_at,
        }
        if event.period_end:
            values["current_period_end"] = _later(subscription.current_period_end, event.period_end)
        return Transition(values=values)

    if kind == EventKind.AUTO_RENEW_CHANGED:
        if event.auto_renew is None:
            return _ignored("renewal status unknown")
        if subscription.status != SubscriptionStatus.CANCELED:
            return _ignored("auto-renew already enabled")
        return Transition(
            values={
                "status": SubscriptionStatus.ACTIVE,
                "cancel_at_period_end": False,
                "canceled_at": None,
            }
        )

    if kind in _DOWNGRADE_KINDS:
        values = _free_values(subscription, event)
        values["status"] = SubscriptionStatus.ACTIVE
        return Transition(values=values)

    return _ignored(f"no transition for {kind.value}")


def _record_money(
    repo: BillingRepository,
    subscription: UserSubscription,
    event: BillingEvent,
    transition: Transition,
    *,
    now: dt.datetime,
) -> Optional[str]:
    if transition.transaction_status is not None and event.charge_id:
        transaction = repo.record_payment_transaction(
            subscription=subscription,
            provider=event.provider,
            provider_charge_id=event.charge_id,
            amount=event.amount,
            currency=event.currency,
            status=transition.transaction_status,
            external_invoice_id=event.invoice_id,
            source_event_id=event.ledger_event_id,
            paid_at=event.occurred_at or now,
            now=now,
        )
        return transaction.id
    if transition.refund_charge and event.charge_id:
        transaction = repo.get_transaction_by_charge_id(event.charge_id)
        if transaction is not None and transaction.status == TransactionStatus.SUCCEEDED:
            repo.mark_transaction_refunded(transaction.id, now=now)
        return transaction.id if transaction is not None else None
    return None


def apply_event(
    repo: BillingRepository,
    event: BillingEvent,
    user_id: str,
    *,
    now: Optional[dt.datetime] = None,
    max_attempts: int = SUBSCRIPTION_UPDATE_MAX_ATTEMPTS,
) -> dict[str, Any]:
    """
    Apply `event` to the user's subscription with an optimistic version check.

    A losing writer re-reads the row and re-plans; after `max_attempts`
    conflicts the event is reported as `ConcurrencyConflict`.
    """

    current = _as_utc_aware(now) if now else dt.datetime.now(dt.timezone.utc)
    repo.get_or_create_subscription(user_id, now=current)
    for _attempt in range(max(1, int(max_attempts))):
        subscription = repo.get_subscription_by_user(user_id, fresh=True)
        if subscription is None:
            raise ConcurrencyConflict(f"subscription row vanished for user={user_id}")
        previous = (subscription.tier_id, subscription.status)
        transition = plan_transition(subscription, event, now=current)
        if not transition.applies:
            log_event(
                _LOGGER,
                logging.INFO,
                "billing.subscription.transition_ignored",
                user_id=user_id,
                event_id=event.ledger_event_id,
                event_kind=event.event_kind,
                reason=transition.reason,
            )
            return {
                "status": "ignored",
                "reason": transition.reason,
                "event_id": event.ledger_event_id,
                "user_id": user_id,
                "subscription_id": subscription.id,
                "tier": subscription.tier_id.value,
                "subscription_status": subscription.status.value,
            }

        values = dict(transition.values)
        values["last_event_at"] = _later(subscription.last_event_at, event.occurred_at or current)
        try:
            with repo.session.begin_nested():
                repo.update_subscription_versioned(
                    subscription.id,
                    expected_version=subscription.version,
                    values=values,
                    now=current,
                )
                transaction_id = _record_money(repo, subscription, event, transition, now=current)
        except SubscriptionVersionConflict:
            time.sleep(0.01)
            continue
        except OperationalError as exc:
            message = str(exc).lower()
            if "database is locked" in message or "deadlock" in message:
                time.sleep(0.02)
                continue
            raise

        updated = repo.get_subscription(subscription.id, fresh=True)
        assert updated is not None
        log_event(
            _LOGGER,
            logging.INFO,
            "billing.subscription.transitioned",
            user_id=user_id,
            event_id=event.ledger_event_id,
            event_kind=event.event_kind,
            provider=event.provider,
            from_tier=previous[0],
            from_status=previous[1],
            to_tier=updated.tier_id,
            to_status=updated.status,
            version=updated.version,
        )
        return {
            "status": "processed",
            "event_id": event.ledger_event_id,
            "user_id": user_id,
            "subscription_id": updated.id,
            "tier": updated.tier_id.value,
            "subscription_status": updated.status.value,
            "transaction_id": transaction_id,
        }

    raise ConcurrencyConflict(f"subscription update conflict for user={user_id}")
