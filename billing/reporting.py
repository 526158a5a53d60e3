from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Final

from .db import SessionFactory, session_scope
from .entitlements import get_cached_status
from .models import PaymentHistoryStatus, Tier, UserSubscription
from .repository import BillingRepository

UNLIMITED: Final[int] = -1
# Used when the tier catalogue has not been seeded yet.
DEFAULT_RECURRING_ITEM_LIMITS: Final[dict[str, int]] = {Tier.FREE.value: 5, Tier.PREMIUM.value: UNLIMITED}


def subscription_payload(subscription: UserSubscription) -> dict[str, Any]:
    period_end = subscription.current_period_end
    return {
        "userId": subscription.user_id,
        "subscriptionId": subscription.id,
        "tier": subscription.tier_id.value,
        "status": subscription.status.value,
        "provider": subscription.provider.value if subscription.provider else None,
        "billingCycle": subscription.billing_cycle.value,
        "periodEnd": period_end.isoformat() if period_end else None,
        "cancelAtPeriodEnd": bool(subscription.cancel_at_period_end),
    }


def get_subscription_status(
    user_id: str,
    *,
    session_factory: SessionFactory | None = None,
    force_refresh: bool = False,
) -> dict[str, Any]:
    """`{tier, status, provider, periodEnd, ...}`; users without a row read as free."""

    def _load(normalized_user_id: str) -> dict[str, Any]:
        with session_scope(session_factory) as session:
            subscription = BillingRepository(session).get_or_create_subscription(normalized_user_id)
            return subscription_payload(subscription)

    return get_cached_status(user_id, _load, force_refresh=force_refresh)


def recurring_item_limit(repo: BillingRepository, tier: Tier) -> int:
    row = repo.get_tier(tier.value)
    if row is not None:
        return int(row.recurring_item_limit)
    return DEFAULT_RECURRING_ITEM_LIMITS[tier.value]


def can_add_recurring_item(repo: BillingRepository, user_id: str) -> dict[str, Any]:
    subscription = repo.get_subscription_by_user(user_id)
    tier = subscription.tier_id if subscription is not None else Tier.FREE
    limit = recurring_item_limit(repo, tier)
    current_count = repo.count_tracked_recurring_items(user_id)
    return {
        "allowed": limit == UNLIMITED or current_count < limit,
        "currentCount": current_count,
        "limit": limit,
        "tier": tier.value,
    }


def get_payment_stats(repo: BillingRepository, user_id: str) -> dict[str, Any]:
    """Counts per history status plus `paymentRate = paid / (paid + skipped) * 100`."""
    summary = repo.payment_history_summary(user_id)
    counts = summary["counts"]
    paid = counts[PaymentHistoryStatus.PAID]
    skipped = counts[PaymentHistoryStatus.SKIPPED]
    decided = paid + skipped
    rate = (Decimal(paid) * 100 / Decimal(decided)) if decided else Decimal("0")
    return {
        "total": sum(counts.values()),
        "paid": paid,
        "skipped": skipped,
        "pending": counts[PaymentHistoryStatus.PENDING],
        "cancelled": counts[PaymentHistoryStatus.CANCELLED],
        "totalAmountPaid": str(summary["amounts"][PaymentHistoryStatus.PAID]),
        "paymentRate": float(rate.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)),
    }
