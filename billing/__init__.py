from .db import (
    ENGINE,
    SessionLocal,
    build_session_factory,
    check_database,
    init_billing_db,
    session_scope,
)
from .entitlements import invalidate_subscription_status
from .errors import (
    AuthenticityError,
    BillingError,
    ConcurrencyConflict,
    InvalidOperation,
    LimitReached,
    NotFound,
    PayloadError,
    ProviderCallFailure,
    ProviderConflictError,
    RefundIneligible,
    UserResolutionError,
)
from .events import BillingEvent, EventKind
from .models import (
    Base,
    BillingCycle,
    EventLedgerEntry,
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
    Tier,
    TransactionStatus,
    UserSubscription,
)
from .provider import BaseRefundProvider, CardRefundProvider, MockRefundProvider, RefundReceipt, get_refund_provider
from .repository import BillingRepository, BillingStateError, SubscriptionVersionConflict
from .seed import seed_default_tiers
from .state_machine import apply_event, plan_transition

__all__ = [
    "AuthenticityError",
    "Base",
    "BaseRefundProvider",
    "BillingCycle",
    "BillingError",
    "BillingEvent",
    "BillingRepository",
    "BillingStateError",
    "CardRefundProvider",
    "ConcurrencyConflict",
    "ENGINE",
    "EventKind",
    "EventLedgerEntry",
    "InvalidOperation",
    "LedgerStatus",
    "LimitReached",
    "MockRefundProvider",
    "NotFound",
    "PayloadError",
    "PaymentHistoryEntry",
    "PaymentHistoryStatus",
    "PaymentTransaction",
    "ProviderCallFailure",
    "ProviderConflictError",
    "ProviderName",
    "RecurringItem",
    "RecurringItemStatus",
    "RefundIneligible",
    "RefundReceipt",
    "RefundRequest",
    "RefundRequestStatus",
    "RepeatInterval",
    "SessionLocal",
    "SubscriptionStatus",
    "SubscriptionVersionConflict",
    "Tier",
    "TransactionStatus",
    "UserResolutionError",
    "UserSubscription",
    "apply_event",
    "build_session_factory",
    "check_database",
    "get_refund_provider",
    "init_billing_db",
    "invalidate_subscription_status",
    "plan_transition",
    "seed_default_tiers",
    "session_scope",
]
