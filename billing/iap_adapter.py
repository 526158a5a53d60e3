from __future__ import annotations

import datetime as dt
import json
from decimal import Decimal
from typing import Any, Final, Optional, Sequence

from cryptography import x509

from .errors import AuthenticityError, PayloadError
from .events import BillingEvent, EventKind
from .iap_jws import verify_signed_payload
from .models import BillingCycle, ProviderName

DEFAULT_PREMIUM_PRODUCT_IDS: Final[frozenset[str]] = frozenset(
    {
        "com.ronnie39.renvo.premium.monthly.v1",
        "com.ronnie39.renvo.premium.yearly.v1",
    }
)

_KIND_BY_NOTIFICATION: Final[dict[str, EventKind]] = {
    "SUBSCRIBED": EventKind.CREATED,
    "DID_RENEW": EventKind.RENEWED,
    "DID_FAIL_TO_RENEW": EventKind.FAILED,
    "DID_CHANGE_RENEWAL_STATUS": EventKind.AUTO_RENEW_CHANGED,
    "EXPIRED": EventKind.EXPIRED,
    "GRACE_PERIOD_EXPIRED": EventKind.GRACE_PERIOD_EXPIRED,
    "REFUND": EventKind.REFUNDED,
    "REVOKE": EventKind.REVOKED,
}


def _as_dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def _millis(value: Any) -> Optional[dt.datetime]:
    if value in {None, ""}:
        return None
    try:
        return dt.datetime.fromtimestamp(float(value) / 1000.0, tz=dt.timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _price(value: Any) -> Optional[Decimal]:
    # App Store prices are in milliunits of the storefront currency.
    if value in {None, ""} or isinstance(value, bool):
        return None
    try:
        return (Decimal(str(value)) / Decimal(1000)).quantize(Decimal("0.01"))
    except ArithmeticError:
        return None


def billing_cycle_for_product(product_id: Optional[str]) -> BillingCycle:
    normalized = str(product_id or "").lower()
    if "yearly" in normalized or "annual" in normalized:
        return BillingCycle.ANNUAL
    return BillingCycle.MONTHLY


def decode_notification(
    body: bytes,
    trusted_roots: Sequence[x509.Certificate],
    *,
    bundle_id: str = "",
) -> dict[str, Any]:
    """
    Verify an App Store Server Notification body and return it fully decoded.

    The outer `signedPayload` and the nested `signedTransactionInfo` /
    `signedRenewalInfo` segments are each verified; the result carries the
    decoded nested claims under `data.transactionInfo` / `data.renewalInfo`.
    """

    try:
        envelope = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise PayloadError(f"invalid IAP webhook payload: {exc}") from exc
    if not isinstance(envelope, dict) or not str(envelope.get("signedPayload") or "").strip():
        raise PayloadError("signedPayload is required")

    notification = verify_signed_payload(envelope["signedPayload"], trusted_roots)
    data = _as_dict(notification.get("data"))
    if bundle_id and data.get("bundleId") and str(data.get("bundleId")) != bundle_id:
        raise AuthenticityError(f"notification is for another bundle: {data.get('bundleId')}")
    if data.get("signedTransactionInfo"):
        data["transactionInfo"] = verify_signed_payload(data["signedTransactionInfo"], trusted_roots)
    if data.get("signedRenewalInfo"):
        data["renewalInfo"] = verify_signed_payload(data["signedRenewalInfo"], trusted_roots)
    notification["data"] = data
    return notification


def decode_signed_transaction(
    signed_transaction: str,
    trusted_roots: Sequence[x509.Certificate],
    *,
    bundle_id: str = "",
) -> dict[str, Any]:
    """Verify the transaction JWS a client received from StoreKit at purchase time."""
    info = verify_signed_payload(signed_transaction, trusted_roots)
    if bundle_id and info.get("bundleId") and str(info.get("bundleId")) != bundle_id:
        raise AuthenticityError(f"transaction is for another bundle: {info.get('bundleId')}")
    if not str(info.get("originalTransactionId") or "").strip():
        raise PayloadError("originalTransactionId is required")
    return info


def _auto_renew(subtype: str, renewal_info: dict[str, Any]) -> Optional[bool]:
    if subtype == "AUTO_RENEW_ENABLED":
        return True
    if subtype == "AUTO_RENEW_DISABLED":
        return False
    status = renewal_info.get("autoRenewStatus")
    if status is None:
        return None
    return str(status).strip() == "1"


def normalize_iap_notification(
    notification: dict[str, Any],
    *,
    premium_product_ids: frozenset[str] = DEFAULT_PREMIUM_PRODUCT_IDS,
) -> BillingEvent:
    """Map a decoded App Store notification to a `BillingEvent`; other types become `IGNORED`."""

    notification_uuid = str(notification.get("notificationUUID") or "").strip()
    if not notification_uuid:
        raise PayloadError("notificationUUID is required")
    notification_type = str(notification.get("notificationType") or "").strip().upper()
    subtype = str(notification.get("subtype") or "").strip().upper()
    data = _as_dict(notification.get("data"))
    transaction = _as_dict(data.get("transactionInfo"))
    renewal = _as_dict(data.get("renewalInfo"))

    original_transaction_id = str(
        transaction.get("originalTransactionId") or renewal.get("originalTransactionId") or ""
    ).strip()
    product_id = str(transaction.get("productId") or renewal.get("productId") or "").strip() or None
    kind = _KIND_BY_NOTIFICATION.get(notification_type, EventKind.IGNORED)
    if product_id and premium_product_ids and product_id not in premium_product_ids:
        kind = EventKind.IGNORED
    if kind != EventKind.IGNORED and not original_transaction_id:
        raise PayloadError(f"{notification_type} notification carries no originalTransactionId")

    charge_id = str(transaction.get("transactionId") or "").strip() or None
    return BillingEvent(
        provider_event_id=notification_uuid,
        provider=ProviderName.MOBILE_IAP,
        event_kind=kind,
        user_ref=original_transaction_id or None,
        user_ref_kind="original_transaction_id",
        provider_type=f"{notification_type}:{subtype}" if subtype else notification_type,
        occurred_at=_millis(notification.get("signedDate")),
        amount=_price(transaction.get("price")),
        currency=str(transaction.get("currency") or "usd").strip().lower() or None,
        charge_id=charge_id,
        period_start=_millis(transaction.get("purchaseDate")),
        period_end=_millis(transaction.get("expiresDate")),
        auto_renew=_auto_renew(subtype, renewal) if kind == EventKind.AUTO_RENEW_CHANGED else None,
        billing_cycle=billing_cycle_for_product(product_id) if product_id else None,
        product_id=product_id,
        subscription_ref=original_transaction_id or None,
        raw_payload=notification,
    )
