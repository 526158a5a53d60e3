from __future__ import annotations

import datetime as dt
import functools
import json
import logging
from typing import Any, Callable, Optional, Sequence

from cryptography import x509

from config import (
    CARD_WEBHOOK_SECRET,
    CARD_WEBHOOK_TOLERANCE_SECONDS,
    GRACE_PERIOD_DAYS,
    IAP_BUNDLE_ID,
    IAP_PREMIUM_PRODUCT_IDS,
    IAP_ROOT_CERT_PATH,
    IAP_ROOT_CERTS_PEM,
    LEDGER_PENDING_LEASE_SECONDS,
    LEDGER_REPLAY_BATCH_SIZE,
    LEDGER_REPLAY_MAX_RETRIES,
)
from observability import get_logger, log_event

from . import ledger
from .card_adapter import normalize_card_event, parse_card_payload, parse_card_webhook
from .db import SessionFactory, session_scope
from .entitlements import invalidate_subscription_status
from .errors import (
    BillingError,
    ConcurrencyConflict,
    InvalidOperation,
    NotFound,
    PayloadError,
    ProviderConflictError,
    UserResolutionError,
)
from .events import BillingEvent, EventKind
from .iap_adapter import (
    DEFAULT_PREMIUM_PRODUCT_IDS,
    billing_cycle_for_product,
    decode_notification,
    decode_signed_transaction,
    normalize_iap_notification,
)
from .iap_jws import load_trusted_roots
from .models import LedgerStatus, ProviderName, SubscriptionStatus, Tier, UserSubscription
from .provider import BaseRefundProvider, get_refund_provider
from .repository import BillingRepository, _as_utc_aware
from .state_machine import apply_event

_LOGGER = get_logger("renvo.billing.service")


def premium_product_ids() -> frozenset[str]:
    return IAP_PREMIUM_PRODUCT_IDS or DEFAULT_PREMIUM_PRODUCT_IDS


@functools.lru_cache(maxsize=1)
def trusted_iap_roots() -> tuple[x509.Certificate, ...]:
    return tuple(load_trusted_roots(pem_value=IAP_ROOT_CERTS_PEM, pem_path=IAP_ROOT_CERT_PATH))


def _utc_now(now: Optional[dt.datetime]) -> dt.datetime:
    return _as_utc_aware(now) if now else dt.datetime.now(dt.timezone.utc)


# ---------------------------------------------------------------------------
# User resolution
# ---------------------------------------------------------------------------


def resolve_user_id(repo: BillingRepository, event: BillingEvent) -> str:
    """
    Map the event's user reference to a user id.

    - `user_id`: carried directly in card metadata.
    - `customer_id`: stored card customer on the subscription row.
    - `original_transaction_id`: IAP link on the subscription row, then the
      IAP audit trail (the link is cleared when a lineage expires).
    """

    ref = str(event.user_ref or "").strip()
    if not ref:
        raise UserResolutionError(f"{event.ledger_event_id} carries no user reference")
    if event.user_ref_kind == "user_id":
        return ref
    if event.user_ref_kind == "customer_id":
        subscription = repo.find_subscription_by_customer_id(ref)
        if subscription is not None:
            return subscription.user_id
    elif event.user_ref_kind == "original_transaction_id":
        subscription = repo.find_subscription_by_original_transaction_id(ref)
        if subscription is not None:
            return subscription.user_id
        user_id = repo.latest_iap_user_id(ref)
        if user_id:
            return user_id
    raise UserResolutionError(f"no user for {event.user_ref_kind}={ref}")


# ---------------------------------------------------------------------------
# Webhook pipeline
# ---------------------------------------------------------------------------


def _apply_in_session(repo: BillingRepository, event: BillingEvent, *, now: dt.datetime) -> dict[str, Any]:
    if event.event_kind == EventKind.IGNORED:
        return {
            "status": "ignored",
            "reason": f"unsupported provider event: {event.provider_type or '-'}",
            "event_id": event.ledger_event_id,
        }
    user_id = resolve_user_id(repo, event)
    if event.provider == ProviderName.MOBILE_IAP and event.subscription_ref:
        repo.record_iap_transaction(
            user_id=user_id,
            original_transaction_id=event.subscription_ref,
            transaction_id=event.charge_id or event.subscription_ref,
            notification_type=event.provider_type,
            product_id=event.product_id,
            purchase_date=event.period_start,
            expires_date=event.period_end,
            now=now,
        )
    try:
        return apply_event(repo, event, user_id, now=now)
    except BillingError as exc:
        exc.user_id = user_id
        raise


def process_recorded_event(
    event: BillingEvent,
    *,
    ledger_event_id: Optional[str] = None,
    session_factory: SessionFactory | None = None,
    now: Optional[dt.datetime] = None,
) -> dict[str, Any]:
    """
    Process an event whose ledger entry this caller owns.

    Failures never propagate: the entry is parked as `failed` with an error
    code and the raw payload stays available for replay.
    """

    event_id = ledger_event_id or event.ledger_event_id
    current = _utc_now(now)
    try:
        with session_scope(session_factory) as session:
            repo = BillingRepository(session)
            result = _apply_in_session(repo, event, now=current)
            result["event_id"] = event_id
            repo.mark_ledger_processed(event_id, result=result, user_id=result.get("user_id"), now=current)
    except BillingError as exc:
        user_id = exc.user_id
        ledger.mark_failed(
            event_id,
            error_code=exc.code,
            error_message=str(exc),
            user_id=user_id,
            session_factory=session_factory,
            now=current,
        )
        log_event(
            _LOGGER,
            logging.WARNING,
            "billing.webhook.failed",
            event_id=event_id,
            provider=event.provider,
            event_kind=event.event_kind,
            error_code=exc.code,
            error_message=str(exc),
            user_id=user_id,
        )
        return {"status": "failed", "event_id": event_id, "error_code": exc.code}
    except Exception as exc:  # noqa: BLE001
        ledger.mark_failed(
            event_id,
            error_code="UNEXPECTED_ERROR",
            error_message=f"{type(exc).__name__}: {exc}",
            session_factory=session_factory,
            now=current,
        )
        _LOGGER.exception("billing.webhook.failed", extra={"event_id": event_id, "error_code": "UNEXPECTED_ERROR"})
        return {"status": "failed", "event_id": event_id, "error_code": "UNEXPECTED_ERROR"}

    invalidate_subscription_status(result.get("user_id"))
    log_event(
        _LOGGER,
        logging.INFO,
        f"billing.webhook.{result.get('status', 'processed')}",
        event_id=event_id,
        provider=event.provider,
        event_kind=event.event_kind,
        user_id=result.get("user_id"),
        reason=result.get("reason"),
    )
    return result


def handle_event(
    event: BillingEvent,
    *,
    raw_payload: str,
    session_factory: SessionFactory | None = None,
    now: Optional[dt.datetime] = None,
    on_recorded: Optional[Callable[[], None]] = None,
) -> dict[str, Any]:
    """
    Ledger the verified event and process it exactly once across concurrent deliveries.

    `on_recorded` fires once the ledger entry is committed. A redelivery that
    finds the entry still `pending` past its lease takes it over, so a crashed
    writer cannot strand the event.
    """

    event_id = event.ledger_event_id
    log_event(
        _LOGGER,
        logging.INFO,
        "billing.webhook.received",
        event_id=event_id,
        provider=event.provider,
        event_kind=event.event_kind,
        provider_type=event.provider_type,
    )
    record = ledger.record_if_new(
        event_id,
        provider=event.provider,
        event_kind=event.event_kind.value,
        raw_payload=raw_payload,
        session_factory=session_factory,
        now=now,
    )
    if on_recorded is not None:
        on_recorded()
    if not record.is_new:
        if record.status == LedgerStatus.PENDING and ledger.claim_stale(event_id, session_factory=session_factory, now=now):
            return process_recorded_event(event, session_factory=session_factory, now=now)
        settled = ledger.wait_for_outcome(event_id, session_factory=session_factory) or record
        return {
            "status": "duplicate",
            "event_id": event_id,
            "ledger_status": settled.status.value,
            "prior_result": settled.prior_result,
        }
    return process_recorded_event(event, session_factory=session_factory, now=now)


def handle_card_webhook(
    payload: bytes,
    signature_header: str,
    *,
    secret: Optional[str] = None,
    session_factory: SessionFactory | None = None,
    now: Optional[dt.datetime] = None,
    on_recorded: Optional[Callable[[], None]] = None,
) -> dict[str, Any]:
    """Raises `AuthenticityError` / `PayloadError` before anything is ledgered."""
    event = parse_card_webhook(
        payload,
        signature_header,
        CARD_WEBHOOK_SECRET if secret is None else secret,
        tolerance_seconds=CARD_WEBHOOK_TOLERANCE_SECONDS,
        now=now,
    )
    return handle_event(
        event,
        raw_payload=payload.decode("utf-8"),
        session_factory=session_factory,
        now=now,
        on_recorded=on_recorded,
    )


def handle_iap_webhook(
    payload: bytes,
    *,
    trusted_roots: Optional[Sequence[x509.Certificate]] = None,
    session_factory: SessionFactory | None = None,
    now: Optional[dt.datetime] = None,
    on_recorded: Optional[Callable[[], None]] = None,
) -> dict[str, Any]:
    roots = trusted_iap_roots() if trusted_roots is None else trusted_roots
    notification = decode_notification(payload, roots, bundle_id=IAP_BUNDLE_ID)
    event = normalize_iap_notification(notification, premium_product_ids=premium_product_ids())
    # The verified, decoded notification is ledgered so replay does not depend on certificate validity.
    raw_payload = json.dumps(notification, ensure_ascii=False, sort_keys=True)
    return handle_event(event, raw_payload=raw_payload, session_factory=session_factory, now=now, on_recorded=on_recorded)


# ---------------------------------------------------------------------------
# First-purchase linking
# ---------------------------------------------------------------------------


def link_iap_purchase(
    user_id: str,
    signed_transaction: str,
    *,
    trusted_roots: Optional[Sequence[x509.Certificate]] = None,
    session_factory: SessionFactory | None = None,
    now: Optional[dt.datetime] = None,
) -> dict[str, Any]:
    """
    Link a StoreKit purchase to `user_id` and activate premium.

    Later App Store notifications carry only the original transaction id;
    this link is what resolves them to the user.
    """

    roots = trusted_iap_roots() if trusted_roots is None else trusted_roots
    info = decode_signed_transaction(signed_transaction, roots, bundle_id=IAP_BUNDLE_ID)
    original_transaction_id = str(info["originalTransactionId"]).strip()
    transaction_id = str(info.get("transactionId") or original_transaction_id).strip()
    product_id = str(info.get("productId") or "").strip() or None
    if product_id not in premium_product_ids():
        raise PayloadError(f"product is not a premium subscription: {product_id or '-'}")

    current = _utc_now(now)
    event = normalize_iap_notification(
        {
            "notificationUUID": f"purchase:{transaction_id}",
            "notificationType": "SUBSCRIBED",
            "subtype": "INITIAL_BUY",
            "signedDate": info.get("signedDate") or int(current.timestamp() * 1000),
            "data": {"transactionInfo": info},
        },
        premium_product_ids=premium_product_ids(),
    )
    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        owner = repo.find_subscription_by_original_transaction_id(original_transaction_id)
        if owner is not None and owner.user_id != str(user_id):
            raise InvalidOperation("this purchase is already linked to another account")
        already = any(row.transaction_id == transaction_id for row in repo.list_iap_transactions(user_id=user_id, limit=200))
        if not already:
            repo.record_iap_transaction(
                user_id=user_id,
                original_transaction_id=original_transaction_id,
                transaction_id=transaction_id,
                notification_type="PURCHASE",
                product_id=product_id,
                purchase_date=event.period_start,
                expires_date=event.period_end,
                now=current,
            )
        result = apply_event(repo, event, str(user_id), now=current)

    invalidate_subscription_status(user_id)
    log_event(
        _LOGGER,
        logging.INFO,
        "billing.iap.purchase_linked",
        user_id=user_id,
        original_transaction_id=original_transaction_id,
        product_id=product_id,
        already_processed=already,
    )
    return {
        "status": result["status"],
        "alreadyProcessed": already,
        "tier": result["tier"],
        "subscriptionStatus": result["subscription_status"],
        "productId": product_id,
        "billingCycle": billing_cycle_for_product(product_id).value,
        "originalTransactionId": original_transaction_id,
        "expiresAt": event.period_end,
    }


# ---------------------------------------------------------------------------
# Replay of parked events
# ---------------------------------------------------------------------------


def _event_from_ledger(provider: ProviderName, raw_payload: str) -> BillingEvent:
    if provider == ProviderName.CARD:
        return normalize_card_event(parse_card_payload(raw_payload.encode("utf-8")))
    try:
        notification = json.loads(raw_payload)
    except ValueError as exc:
        raise PayloadError(f"ledgered IAP payload is not JSON: {exc}") from exc
    if not isinstance(notification, dict):
        raise PayloadError("ledgered IAP payload must be an object")
    return normalize_iap_notification(notification, premium_product_ids=premium_product_ids())


def replay_ledger_event(
    event_id: str,
    *,
    session_factory: SessionFactory | None = None,
    now: Optional[dt.datetime] = None,
) -> dict[str, Any]:
    """
    Re-run a ledger entry from its stored payload.

    Replayable entries are `failed` ones and `pending` ones whose lease ran
    out (the writer died before settling them).
    """

    current = _utc_now(now)
    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        entry = repo.get_ledger_entry(event_id)
        if entry is None:
            raise NotFound(f"ledger entry not found: {event_id}")
        abandoned = ledger.lease_expired(entry, now=current)
        if entry.status != LedgerStatus.FAILED and not abandoned:
            raise InvalidOperation(
                f"only failed or abandoned entries can be replayed (status={entry.status.value})"
            )
        provider = entry.provider
        raw_payload = entry.raw_payload
        if abandoned:
            claimed = repo.claim_stale_ledger_entry(
                event_id,
                stale_before=current - dt.timedelta(seconds=LEDGER_PENDING_LEASE_SECONDS),
                now=current,
            )
        else:
            claimed = repo.claim_ledger_entry_for_replay(event_id, now=current)
        if not claimed:
            raise ConcurrencyConflict(f"ledger entry is already being replayed: {event_id}")

    log_event(
        _LOGGER,
        logging.INFO,
        "billing.ledger.replay_started",
        event_id=event_id,
        provider=provider,
        abandoned=abandoned,
    )
    try:
        event = _event_from_ledger(provider, raw_payload)
    except BillingError as exc:
        ledger.mark_failed(
            event_id,
            error_code=exc.code,
            error_message=str(exc),
            session_factory=session_factory,
            now=now,
        )
        return {"status": "failed", "event_id": event_id, "error_code": exc.code}
    return process_recorded_event(event, ledger_event_id=event_id, session_factory=session_factory, now=now)


def replay_failed_events(
    *,
    batch_size: int = LEDGER_REPLAY_BATCH_SIZE,
    max_retries: int = LEDGER_REPLAY_MAX_RETRIES,
    session_factory: SessionFactory | None = None,
    now: Optional[dt.datetime] = None,
) -> dict[str, int]:
    """Replay a batch of parked entries plus pending entries left behind by dead writers."""
    current = _utc_now(now)
    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        failed = repo.list_ledger_entries(
            status=LedgerStatus.FAILED,
            max_retry_count=max_retries,
            limit=batch_size,
        )
        abandoned = repo.list_ledger_entries(
            status=LedgerStatus.PENDING,
            leased_before=current - dt.timedelta(seconds=LEDGER_PENDING_LEASE_SECONDS),
            limit=batch_size,
        )
        event_ids = [entry.event_id for entry in [*abandoned, *failed]]

    summary = {"attempted": 0, "processed": 0, "ignored": 0, "failed": 0, "skipped": 0}
    for event_id in event_ids:
        try:
            result = replay_ledger_event(event_id, session_factory=session_factory, now=now)
        except BillingError:
            # Claimed by another replayer or no longer failed.
            summary["skipped"] += 1
            continue
        summary["attempted"] += 1
        status = str(result.get("status") or "failed")
        summary[status if status in summary else "failed"] += 1
    log_event(_LOGGER, logging.INFO, "billing.ledger.replay_batch", **summary)
    return summary


# ---------------------------------------------------------------------------
# User-initiated cancellation
# ---------------------------------------------------------------------------


def cancel_subscription(
    user_id: str,
    *,
    immediate: bool = False,
    provider: Optional[BaseRefundProvider] = None,
    session_factory: SessionFactory | None = None,
    now: Optional[dt.datetime] = None,
) -> dict[str, Any]:
    """
    Cancel the user's card subscription.

    By default renewal stops at period end and premium stays until then;
    `immediate` ends it now and downgrades to free. The provider is called
    with no transaction open, and local state only changes once it agreed.
    """

    current = _utc_now(now)
    card_provider = provider or get_refund_provider()
    with session_scope(session_factory) as session:
        subscription = BillingRepository(session).get_subscription_by_user(user_id)
        if subscription is None or subscription.tier_id != Tier.PREMIUM or subscription.provider is None:
            raise NotFound("no active subscription to cancel")
        if subscription.provider == ProviderName.MOBILE_IAP:
            raise InvalidOperation("in-app subscriptions are cancelled from the app store")
        lineage = subscription.external_subscription_id
        if not lineage:
            raise InvalidOperation("subscription has no card subscription id")
        if not immediate and subscription.status == SubscriptionStatus.CANCELED:
            raise InvalidOperation("subscription is already set to cancel at period end")
        subscription_id = subscription.id
        period_end = subscription.current_period_end

    mode = "immediate" if immediate else "period_end"
    idempotency_key = f"cancel:{lineage}:{mode}"
    reported_period_end: Optional[dt.datetime] = None
    if immediate:
        card_provider.cancel_subscription(subscription_ref=lineage, idempotency_key=idempotency_key)
    else:
        reported_period_end = card_provider.schedule_cancellation(subscription_ref=lineage, idempotency_key=idempotency_key)

    event = BillingEvent(
        provider_event_id=f"cancel:{subscription_id}:{mode}:{int(current.timestamp())}",
        provider=ProviderName.CARD,
        event_kind=EventKind.EXPIRED if immediate else EventKind.CANCELED,
        user_ref=str(user_id),
        provider_type=f"user.cancel.{mode}",
        occurred_at=current,
        period_end=reported_period_end,
        subscription_ref=lineage,
    )
    with session_scope(session_factory) as session:
        result = apply_event(BillingRepository(session), event, str(user_id), now=current)

    invalidate_subscription_status(user_id)
    cancel_at = current if immediate else (reported_period_end or period_end)
    log_event(
        _LOGGER,
        logging.INFO,
        "billing.subscription.cancel_requested",
        user_id=user_id,
        subscription_ref=lineage,
        immediate=immediate,
        subscription_status=result["subscription_status"],
    )
    return {
        "subscriptionId": lineage,
        "cancelAt": _as_utc_aware(cancel_at).isoformat() if cancel_at else None,
        "immediate": immediate,
        "tier": result["tier"],
        "status": result["subscription_status"],
    }


# ---------------------------------------------------------------------------
# Lapsed subscription sweep
# ---------------------------------------------------------------------------


def _lineage_of(subscription: UserSubscription) -> Optional[str]:
    if subscription.provider == ProviderName.CARD:
        return subscription.external_subscription_id
    return subscription.original_transaction_id


def expire_lapsed_subscriptions(
    *,
    grace_days: int = GRACE_PERIOD_DAYS,
    session_factory: SessionFactory | None = None,
    now: Optional[dt.datetime] = None,
) -> int:
    """
    Downgrade premium rows the providers never reported as expired.

    Canceled rows lapse at period end; grace-period rows lapse `grace_days`
    after it. Each goes through the state machine as a synthetic event.
    """

    current = _utc_now(now)
    with session_scope(session_factory) as session:
        lapsed = [
            (row.user_id, row.id, row.provider, row.status, _lineage_of(row), row.current_period_end)
            for row in BillingRepository(session).list_lapsed_subscriptions(now=current, grace_days=grace_days)
        ]

    expired = 0
    for user_id, subscription_id, provider, status, lineage, period_end in lapsed:
        if provider is None:
            continue
        kind = EventKind.EXPIRED if status == SubscriptionStatus.CANCELED else EventKind.GRACE_PERIOD_EXPIRED
        event = BillingEvent(
            provider_event_id=f"sweep:{subscription_id}:{_as_utc_aware(period_end).isoformat()}",
            provider=provider,
            event_kind=kind,
            user_ref=user_id,
            provider_type="sweep",
            occurred_at=current,
            subscription_ref=lineage,
        )
        try:
            with session_scope(session_factory) as session:
                result = apply_event(BillingRepository(session), event, user_id, now=current)
        except (ConcurrencyConflict, ProviderConflictError) as exc:
            log_event(
                _LOGGER,
                logging.WARNING,
                "billing.subscription.sweep_failed",
                user_id=user_id,
                error_code=exc.code,
                error_message=str(exc),
            )
            continue
        if result["status"] == "processed":
            expired += 1
            invalidate_subscription_status(user_id)
    log_event(_LOGGER, logging.INFO, "billing.subscription.sweep_completed", expired=expired, candidates=len(lapsed))
    return expired
