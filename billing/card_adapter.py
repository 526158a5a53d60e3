from __future__ import annotations

import datetime as dt
import hashlib
import hmac
import json
from decimal import Decimal, InvalidOperation
from typing import Any, Final, Optional

from .errors import AuthenticityError, PayloadError
from .events import BillingEvent, EventKind
from .models import BillingCycle, ProviderName

SIGNATURE_SCHEME: Final[str] = "v1"

# Subscription statuses that mean the provider has given up collecting.
_TERMINAL_SUBSCRIPTION_STATUSES: Final[frozenset[str]] = frozenset({"unpaid", "incomplete_expired", "canceled"})
_USER_ID_METADATA_KEYS: Final[tuple[str, ...]] = ("user_id", "supabase_user_id")


def verify_card_signature(
    payload: bytes,
    signature_header: str,
    secret: str,
    *,
    tolerance_seconds: int = 300,
    now: Optional[dt.datetime] = None,
) -> None:
    """
    Verify a Stripe-style `t=<unix>,v1=<hex>` signature header.

    - Signed message: `"<t>.<raw body>"`, HMAC-SHA256 with the endpoint secret.
    - Any one matching `v1` entry is accepted (secret rotation sends several).
    - Timestamps further than `tolerance_seconds` from now are replays.
    """

    secret_key = str(secret or "").encode("utf-8")
    if not secret_key:
        raise AuthenticityError("card webhook secret is not configured")
    timestamp: Optional[int] = None
    candidates: list[str] = []
    for part in str(signature_header or "").split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as exc:
                raise AuthenticityError("malformed signature timestamp") from exc
        elif key == SIGNATURE_SCHEME and value:
            candidates.append(value.strip())
    if timestamp is None or not candidates:
        raise AuthenticityError("missing signature header fields")

    current = now or dt.datetime.now(dt.timezone.utc)
    if tolerance_seconds > 0 and abs(current.timestamp() - timestamp) > tolerance_seconds:
        raise AuthenticityError("signature timestamp outside tolerance")

    signed = str(timestamp).encode("utf-8") + b"." + payload
    expected = hmac.new(secret_key, signed, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
        raise AuthenticityError("signature mismatch")


def parse_card_payload(payload: bytes) -> dict[str, Any]:
    try:
        event = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise PayloadError(f"invalid card webhook payload: {exc}") from exc
    if not isinstance(event, dict):
        raise PayloadError("card webhook payload must be a JSON object")
    return event


def _epoch(value: Any) -> Optional[dt.datetime]:
    if value in {None, ""}:
        return None
    try:
        return dt.datetime.fromtimestamp(float(value), tz=dt.timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _minor_to_amount(value: Any) -> Optional[Decimal]:
    if value in {None, ""}:
        return None
    # bool is a subclass of int, treat it as invalid for webhook payloads.
    if isinstance(value, bool):
        raise PayloadError("amount must be an integer number of minor units")
    try:
        return (Decimal(str(value)) / Decimal(100)).quantize(Decimal("0.01"))
    except InvalidOperation as exc:
        raise PayloadError("amount must be an integer number of minor units") from exc


def _as_dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def _id_of(value: Any) -> Optional[str]:
    # Expanded objects carry their id inside; collapsed ones are the id.
    if isinstance(value, dict):
        value = value.get("id")
    raw = str(value or "").strip()
    return raw or None


def _metadata_user_id(obj: dict[str, Any]) -> Optional[str]:
    sources = [
        _as_dict(obj.get("metadata")),
        _as_dict(_as_dict(obj.get("subscription_details")).get("metadata")),
        _as_dict(_as_dict(_as_dict(obj.get("parent")).get("subscription_details")).get("metadata")),
    ]
    for metadata in sources:
        for key in _USER_ID_METADATA_KEYS:
            value = str(metadata.get(key) or "").strip()
            if value:
                return value
    return None


def _cycle_from_interval(interval: Any) -> Optional[BillingCycle]:
    normalized = str(interval or "").strip().lower()
    if normalized == "month":
        return BillingCycle.MONTHLY
    if normalized == "year":
        return BillingCycle.ANNUAL
    return None


def _first_line(invoice: dict[str, Any]) -> dict[str, Any]:
    lines = _as_dict(invoice.get("lines")).get("data")
    if isinstance(lines, list) and lines and isinstance(lines[0], dict):
        return lines[0]
    return {}


def _invoice_fields(invoice: dict[str, Any]) -> dict[str, Any]:
    line = _first_line(invoice)
    period = _as_dict(line.get("period"))
    recurring = _as_dict(_as_dict(line.get("price")).get("recurring"))
    interval = recurring.get("interval") or _as_dict(line.get("plan")).get("interval")
    subscription_ref = _id_of(invoice.get("subscription")) or _id_of(
        _as_dict(_as_dict(invoice.get("parent")).get("subscription_details")).get("subscription")
    )
    paid_at = _epoch(_as_dict(invoice.get("status_transitions")).get("paid_at"))
    return {
        "invoice_id": _id_of(invoice.get("id")),
        "charge_id": _id_of(invoice.get("payment_intent")) or _id_of(invoice.get("charge")),
        "currency": str(invoice.get("currency") or "usd").strip().lower(),
        "period_start": _epoch(period.get("start")),
        "period_end": _epoch(period.get("end")),
        "billing_cycle": _cycle_from_interval(interval),
        "subscription_ref": subscription_ref,
        "paid_at": paid_at,
    }


def _subscription_period(subscription: dict[str, Any]) -> tuple[Optional[dt.datetime], Optional[dt.datetime]]:
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if end is None:
        items = _as_dict(subscription.get("items")).get("data")
        if isinstance(items, list) and items and isinstance(items[0], dict):
            start = items[0].get("current_period_start")
            end = items[0].get("current_period_end")
    return _epoch(start), _epoch(end)


def _subscription_cycle(subscription: dict[str, Any]) -> Optional[BillingCycle]:
    items = _as_dict(subscription.get("items")).get("data")
    if isinstance(items, list) and items and isinstance(items[0], dict):
        price = _as_dict(items[0].get("price"))
        return _cycle_from_interval(_as_dict(price.get("recurring")).get("interval"))
    return _cycle_from_interval(_as_dict(subscription.get("plan")).get("interval"))


def normalize_card_event(event: dict[str, Any]) -> BillingEvent:
    """Map one card-processor event to a `BillingEvent`; unsupported types become `IGNORED`."""

    event_id = str(event.get("id") or "").strip()
    if not event_id:
        raise PayloadError("card event id is required")
    event_type = str(event.get("type") or "").strip()
    if not event_type:
        raise PayloadError("card event type is required")
    obj = _as_dict(_as_dict(event.get("data")).get("object"))
    occurred_at = _epoch(event.get("created"))
    customer_id = _id_of(obj.get("customer"))
    user_id = _metadata_user_id(obj)
    base: dict[str, Any] = {
        "provider_event_id": event_id,
        "provider": ProviderName.CARD,
        "provider_type": event_type,
        "occurred_at": occurred_at,
        "customer_id": customer_id,
        "user_ref": user_id or customer_id,
        "user_ref_kind": "user_id" if user_id else "customer_id",
        "raw_payload": event,
    }

    if event_type in {"invoice.payment_succeeded", "invoice.paid", "invoice.payment_failed"}:
        fields = _invoice_fields(obj)
        succeeded = event_type != "invoice.payment_failed"
        if succeeded:
            kind = EventKind.CREATED if obj.get("billing_reason") == "subscription_create" else EventKind.RENEWED
            amount = _minor_to_amount(obj.get("amount_paid"))
        else:
            kind = EventKind.FAILED
            amount = _minor_to_amount(obj.get("amount_due"))
        return BillingEvent(
            event_kind=kind,
            amount=amount,
            currency=fields["currency"],
            charge_id=fields["charge_id"],
            invoice_id=fields["invoice_id"],
            period_start=fields["period_start"],
            period_end=fields["period_end"],
            billing_cycle=fields["billing_cycle"],
            subscription_ref=fields["subscription_ref"],
            **base,
        )

    if event_type in {"customer.subscription.created", "customer.subscription.updated"}:
        status = str(obj.get("status") or "").strip().lower()
        period_start, period_end = _subscription_period(obj)
        common = {
            "period_start": period_start,
            "period_end": period_end,
            "billing_cycle": _subscription_cycle(obj),
            "subscription_ref": _id_of(obj.get("id")),
        }
        if status in _TERMINAL_SUBSCRIPTION_STATUSES:
            return BillingEvent(event_kind=EventKind.EXPIRED, **common, **base)
        if event_type == "customer.subscription.created":
            kind = EventKind.CREATED if status in {"active", "trialing"} else EventKind.IGNORED
            return BillingEvent(event_kind=kind, **common, **base)
        return BillingEvent(
            event_kind=EventKind.AUTO_RENEW_CHANGED,
            auto_renew=not bool(obj.get("cancel_at_period_end")),
            **common,
            **base,
        )

    if event_type == "customer.subscription.deleted":
        _, period_end = _subscription_period(obj)
        return BillingEvent(
            event_kind=EventKind.EXPIRED,
            period_end=period_end,
            subscription_ref=_id_of(obj.get("id")),
            **base,
        )

    if event_type == "charge.refunded":
        return BillingEvent(
            event_kind=EventKind.REFUNDED,
            amount=_minor_to_amount(obj.get("amount_refunded")),
            currency=str(obj.get("currency") or "usd").strip().lower(),
            charge_id=_id_of(obj.get("payment_intent")) or _id_of(obj.get("id")),
            invoice_id=_id_of(obj.get("invoice")),
            **base,
        )

    return BillingEvent(event_kind=EventKind.IGNORED, **base)


def parse_card_webhook(
    payload: bytes,
    signature_header: str,
    secret: str,
    *,
    tolerance_seconds: int = 300,
    now: Optional[dt.datetime] = None,
) -> BillingEvent:
    verify_card_signature(payload, signature_header, secret, tolerance_seconds=tolerance_seconds, now=now)
    return normalize_card_event(parse_card_payload(payload))
