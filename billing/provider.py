from __future__ import annotations

import abc
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Literal, Optional

import httpx

from config import CARD_API_BASE_URL, CARD_API_SECRET_KEY, REFUND_PROVIDER

from .errors import ProviderCallFailure

RefundProviderName = Literal["mock", "card"]


@dataclass(frozen=True)
class RefundReceipt:
    """Provider confirmation of a refund; `provider_refund_id` is the provider's own id."""

    provider: RefundProviderName
    provider_refund_id: str
    status: str
    raw: Dict[str, Any] = field(default_factory=dict)


class BaseRefundProvider(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> RefundProviderName:
        raise NotImplementedError

    @abc.abstractmethod
    def refund_charge(
        self,
        *,
        charge_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> RefundReceipt:
        """
        Refund one charge. Must raise `ProviderCallFailure` unless the provider
        confirmed the refund; retries reuse `idempotency_key`.
        """

    @abc.abstractmethod
    def cancel_subscription(self, *, subscription_ref: str, idempotency_key: str) -> None:
        """Stop provider-side recurring billing for one subscription lineage."""

    @abc.abstractmethod
    def schedule_cancellation(self, *, subscription_ref: str, idempotency_key: str) -> Optional[datetime]:
        """Turn off renewal at period end; returns the period end the provider reports, if any."""


class MockRefundProvider(BaseRefundProvider):
    """In-process provider for development and tests; records the calls it received."""

    def __init__(self) -> None:
        self.refunds: list[Dict[str, Any]] = []
        self.cancellations: list[str] = []
        self.scheduled_cancellations: list[str] = []

    @property
    def name(self) -> RefundProviderName:
        return "mock"

    def refund_charge(
        self,
        *,
        charge_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> RefundReceipt:
        for previous in self.refunds:
            if previous["idempotency_key"] == idempotency_key:
                return RefundReceipt(provider="mock", provider_refund_id=previous["id"], status="succeeded")
        refund_id = f"re_mock_{uuid.uuid4().hex[:16]}"
        self.refunds.append(
            {
                "id": refund_id,
                "charge_id": charge_id,
                "amount": amount,
                "currency": currency,
                "idempotency_key": idempotency_key,
            }
        )
        return RefundReceipt(provider="mock", provider_refund_id=refund_id, status="succeeded")

    def cancel_subscription(self, *, subscription_ref: str, idempotency_key: str) -> None:
        _ = idempotency_key
        self.cancellations.append(subscription_ref)

    def schedule_cancellation(self, *, subscription_ref: str, idempotency_key: str) -> Optional[datetime]:
        _ = idempotency_key
        self.scheduled_cancellations.append(subscription_ref)
        return None


def _period_end(data: Dict[str, Any]) -> Optional[datetime]:
    # Newer API versions report the period on the subscription items instead.
    value = data.get("current_period_end")
    if value is None:
        items = (data.get("items") or {}).get("data") or []
        value = items[0].get("current_period_end") if items and isinstance(items[0], dict) else None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc) if value is not None else None
    except (TypeError, ValueError):
        return None


def _minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


class CardRefundProvider(BaseRefundProvider):
    """Stripe-compatible REST client for refunds and subscription cancellation."""

    def __init__(self, *, api_base_url: str = CARD_API_BASE_URL, secret_key: str = CARD_API_SECRET_KEY) -> None:
        self._api_base_url = str(api_base_url or "").rstrip("/")
        self._secret_key = str(secret_key or "")

    @property
    def name(self) -> RefundProviderName:
        return "card"

    def _request(self, method: str, path: str, *, idempotency_key: str, data: Optional[Dict[str, Any]] = None) -> httpx.Response:
        if not self._secret_key:
            raise ProviderCallFailure("CARD_API_SECRET_KEY is missing", retryable=False)
        headers = {
            "Authorization": f"Bearer {self._secret_key}",
            "Idempotency-Key": idempotency_key,
            "Accept": "application/json",
        }
        try:
            resp = httpx.request(
                method,
                f"{self._api_base_url}{path}",
                data=data,
                headers=headers,
                timeout=20.0,
                trust_env=False,
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            body = (exc.response.text or "")[:200]
            # 429 and 5xx are transient; any other 4xx is final.
            raise ProviderCallFailure(
                f"card provider rejected {method} {path}: status={status_code} body={body}",
                retryable=status_code >= 500 or status_code == 429,
                status_code=status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderCallFailure(f"card provider unreachable for {method} {path}: {exc}") from exc
        return resp

    def refund_charge(
        self,
        *,
        charge_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> RefundReceipt:
        _ = currency  # refunds are always in the charge currency
        key = "charge" if str(charge_id).startswith("ch_") else "payment_intent"
        resp = self._request(
            "POST",
            "/v1/refunds",
            idempotency_key=idempotency_key,
            data={key: charge_id, "amount": _minor_units(amount)},
        )
        data = resp.json() if resp.content else {}
        refund_id = str(data.get("id") or "").strip()
        status = str(data.get("status") or "").strip().lower()
        if not refund_id or status in {"failed", "canceled"}:
            raise ProviderCallFailure(
                f"card provider did not confirm refund: status={status or '-'}",
                retryable=False,
            )
        return RefundReceipt(provider="card", provider_refund_id=refund_id, status=status or "succeeded", raw=data)

    def cancel_subscription(self, *, subscription_ref: str, idempotency_key: str) -> None:
        self._request("DELETE", f"/v1/subscriptions/{subscription_ref}", idempotency_key=idempotency_key)

    def schedule_cancellation(self, *, subscription_ref: str, idempotency_key: str) -> Optional[datetime]:
        resp = self._request(
            "POST",
            f"/v1/subscriptions/{subscription_ref}",
            idempotency_key=idempotency_key,
            data={"cancel_at_period_end": "true"},
        )
        return _period_end(resp.json() if resp.content else {})


def get_refund_provider(name: Optional[str] = None) -> BaseRefundProvider:
    """
    Provider factory.

    If `name` is not provided, reads from config.REFUND_PROVIDER.
    """

    selected = (name or REFUND_PROVIDER or "mock").strip().lower()
    if selected in {"card", "stripe"}:
        return CardRefundProvider()
    return MockRefundProvider()
