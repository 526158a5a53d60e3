from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from .db import SessionFactory, session_scope
from .models import Tier
from .repository import BillingRepository


@dataclass(frozen=True)
class SeedTier:
    tier_id: str
    name: str
    monthly_price: Decimal
    annual_price: Decimal
    recurring_item_limit: int


SEED_VERSION = 1

DEFAULT_TIERS: tuple[SeedTier, ...] = (
    SeedTier(
        tier_id=Tier.FREE.value,
        name="Free",
        monthly_price=Decimal("0.00"),
        annual_price=Decimal("0.00"),
        recurring_item_limit=5,
    ),
    SeedTier(
        tier_id=Tier.PREMIUM.value,
        name="Premium",
        monthly_price=Decimal("4.99"),
        annual_price=Decimal("39.99"),
        # -1 means unlimited.
        recurring_item_limit=-1,
    ),
)


def seed_default_tiers(*, session_factory: SessionFactory | None = None) -> dict[str, int]:
    """
    Ensure the tier catalogue exists.

    Rows are keyed by `tier_id` and never overwritten, so operator edits to
    prices or limits survive restarts.
    """

    created = 0
    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        for seed in DEFAULT_TIERS:
            if repo.get_tier(seed.tier_id) is not None:
                continue
            repo.create_tier(
                tier_id=seed.tier_id,
                name=seed.name,
                monthly_price=seed.monthly_price,
                annual_price=seed.annual_price,
                recurring_item_limit=seed.recurring_item_limit,
            )
            created += 1
    return {"seed_version": SEED_VERSION, "tiers_created": created, "tiers_total": len(DEFAULT_TIERS)}
