from __future__ import annotations

import datetime as dt
import json
from decimal import Decimal

import pytest
from cryptography.hazmat.primitives.serialization import Encoding

from billing import AuthenticityError, BillingCycle, EventKind, PayloadError, ProviderName
from billing.iap_adapter import (
    decode_notification,
    decode_signed_transaction,
    normalize_iap_notification,
)
from billing.iap_jws import load_trusted_roots, verify_signed_payload

MONTHLY = "com.ronnie39.renvo.premium.monthly.v1"
YEARLY = "com.ronnie39.renvo.premium.yearly.v1"
PURCHASED_MS = 1740830400000
EXPIRES_MS = 1743508800000


def _transaction(**overrides) -> dict:
    info = {
        "originalTransactionId": "otx-1",
        "transactionId": "tx-1",
        "productId": MONTHLY,
        "bundleId": "com.ronnie39.renvo",
        "purchaseDate": PURCHASED_MS,
        "expiresDate": EXPIRES_MS,
        "price": 4990,
        "currency": "USD",
    }
    info.update(overrides)
    return info


def _body(signer, notification_type: str, *, subtype: str = "", transaction: dict | None = None, renewal: dict | None = None) -> bytes:
    data: dict = {"bundleId": "com.ronnie39.renvo"}
    if transaction is not None:
        data["signedTransactionInfo"] = signer.sign(transaction)
    if renewal is not None:
        data["signedRenewalInfo"] = signer.sign(renewal)
    claims = {
        "notificationType": notification_type,
        "subtype": subtype,
        "notificationUUID": f"uuid-{notification_type.lower()}",
        "signedDate": PURCHASED_MS,
        "data": data,
    }
    return json.dumps({"signedPayload": signer.sign(claims)}).encode("utf-8")


# ---------------------------------------------------------------------------
# JWS verification
# ---------------------------------------------------------------------------


def test_verified_payload_returns_claims(jws_signer) -> None:
    claims = verify_signed_payload(jws_signer.sign({"hello": "world"}), [jws_signer.root])
    assert claims == {"hello": "world"}


def test_chain_from_untrusted_root_is_rejected(jws_signer, untrusted_jws_signer) -> None:
    with pytest.raises(AuthenticityError):
        verify_signed_payload(untrusted_jws_signer.sign({"a": 1}), [jws_signer.root])


def test_missing_trust_anchor_is_rejected(jws_signer) -> None:
    with pytest.raises(AuthenticityError):
        verify_signed_payload(jws_signer.sign({"a": 1}), [])


def test_tampered_claims_fail_signature(jws_signer) -> None:
    token = jws_signer.sign({"price": 4990})
    header, _claims, signature = token.split(".")
    forged_claims = jws_signer.sign({"price": 1}).split(".")[1]
    with pytest.raises(AuthenticityError):
        verify_signed_payload(f"{header}.{forged_claims}.{signature}", [jws_signer.root])


def test_garbage_token_is_a_payload_error(jws_signer) -> None:
    with pytest.raises(PayloadError):
        verify_signed_payload("not-a-jws", [jws_signer.root])


def test_trusted_roots_load_from_pem_with_escaped_newlines(jws_signer) -> None:
    pem = jws_signer.root.public_bytes(Encoding.PEM).decode("ascii").replace("\n", "\\n")
    roots = load_trusted_roots(pem_value=pem)
    assert roots == [jws_signer.root]


# ---------------------------------------------------------------------------
# Notification decoding and normalization
# ---------------------------------------------------------------------------


def test_subscribed_notification_normalizes_to_created(jws_signer) -> None:
    notification = decode_notification(_body(jws_signer, "SUBSCRIBED", subtype="INITIAL_BUY", transaction=_transaction()), [jws_signer.root])
    event = normalize_iap_notification(notification)
    assert event.provider == ProviderName.MOBILE_IAP
    assert event.event_kind == EventKind.CREATED
    assert event.ledger_event_id == "apple:uuid-subscribed"
    assert event.user_ref == "otx-1"
    assert event.user_ref_kind == "original_transaction_id"
    assert event.charge_id == "tx-1"
    assert event.amount == Decimal("4.99")
    assert event.billing_cycle == BillingCycle.MONTHLY
    assert event.period_end == dt.datetime.fromtimestamp(EXPIRES_MS / 1000, tz=dt.timezone.utc)


def test_yearly_product_maps_to_annual_cycle(jws_signer) -> None:
    notification = decode_notification(
        _body(jws_signer, "DID_RENEW", transaction=_transaction(productId=YEARLY)),
        [jws_signer.root],
    )
    event = normalize_iap_notification(notification)
    assert event.event_kind == EventKind.RENEWED
    assert event.billing_cycle == BillingCycle.ANNUAL


@pytest.mark.parametrize(
    ("notification_type", "subtype", "renewal", "expected_auto_renew"),
    [
        ("DID_CHANGE_RENEWAL_STATUS", "AUTO_RENEW_DISABLED", None, False),
        ("DID_CHANGE_RENEWAL_STATUS", "AUTO_RENEW_ENABLED", None, True),
        ("DID_CHANGE_RENEWAL_STATUS", "", {"originalTransactionId": "otx-1", "autoRenewStatus": 0}, False),
    ],
)
def test_renewal_status_changes(jws_signer, notification_type, subtype, renewal, expected_auto_renew) -> None:
    notification = decode_notification(
        _body(jws_signer, notification_type, subtype=subtype, transaction=_transaction(), renewal=renewal),
        [jws_signer.root],
    )
    event = normalize_iap_notification(notification)
    assert event.event_kind == EventKind.AUTO_RENEW_CHANGED
    assert event.auto_renew is expected_auto_renew


@pytest.mark.parametrize(
    ("notification_type", "kind"),
    [
        ("DID_FAIL_TO_RENEW", EventKind.FAILED),
        ("EXPIRED", EventKind.EXPIRED),
        ("GRACE_PERIOD_EXPIRED", EventKind.GRACE_PERIOD_EXPIRED),
        ("REFUND", EventKind.REFUNDED),
        ("REVOKE", EventKind.REVOKED),
        ("PRICE_INCREASE", EventKind.IGNORED),
    ],
)
def test_notification_type_mapping(jws_signer, notification_type, kind) -> None:
    notification = decode_notification(_body(jws_signer, notification_type, transaction=_transaction()), [jws_signer.root])
    assert normalize_iap_notification(notification).event_kind == kind


def test_non_premium_product_is_ignored(jws_signer) -> None:
    notification = decode_notification(
        _body(jws_signer, "SUBSCRIBED", transaction=_transaction(productId="com.ronnie39.renvo.tipjar")),
        [jws_signer.root],
    )
    assert normalize_iap_notification(notification).event_kind == EventKind.IGNORED


def test_other_bundle_is_rejected(jws_signer) -> None:
    body = _body(jws_signer, "SUBSCRIBED", transaction=_transaction())
    with pytest.raises(AuthenticityError):
        decode_notification(body, [jws_signer.root], bundle_id="com.example.other")


def test_body_without_signed_payload_is_a_payload_error(jws_signer) -> None:
    with pytest.raises(PayloadError):
        decode_notification(b'{"foo": 1}', [jws_signer.root])


def test_signed_transaction_requires_original_transaction_id(jws_signer) -> None:
    with pytest.raises(PayloadError):
        decode_signed_transaction(jws_signer.sign({"transactionId": "tx-9"}), [jws_signer.root])
