from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Literal, Optional

from .models import BillingCycle, ProviderName


class EventKind(str, enum.Enum):
    CREATED = "created"
    RENEWED = "renewed"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"
    REVOKED = "revoked"
    AUTO_RENEW_CHANGED = "auto_renew_changed"
    EXPIRED = "expired"
    GRACE_PERIOD_EXPIRED = "grace_period_expired"
    # Ledgered for audit, never applied to a subscription.
    IGNORED = "ignored"


UserRefKind = Literal["user_id", "original_transaction_id", "customer_id"]

LEDGER_PREFIX: Dict[ProviderName, str] = {
    ProviderName.CARD: "stripe",
    ProviderName.MOBILE_IAP: "apple",
}


@dataclass(frozen=True)
class BillingEvent:
    """
    Provider-agnostic notification produced by an adapter.

    Constructed per request and never persisted directly; only the ledger entry
    and the resulting subscription/transaction rows are stored.
    """

    provider_event_id: str
    provider: ProviderName
    event_kind: EventKind
    user_ref: Optional[str]
    user_ref_kind: UserRefKind = "user_id"
    provider_type: str = ""
    occurred_at: Optional[datetime] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    charge_id: Optional[str] = None
    invoice_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    auto_renew: Optional[bool] = None
    billing_cycle: Optional[BillingCycle] = None
    product_id: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_ref: Optional[str] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def ledger_event_id(self) -> str:
        return f"{LEDGER_PREFIX[self.provider]}:{self.provider_event_id}"

    @property
    def is_payment(self) -> bool:
        return bool(self.charge_id) and self.event_kind in {
            EventKind.CREATED,
            EventKind.RENEWED,
            EventKind.FAILED,
        }
