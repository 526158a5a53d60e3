from __future__ import annotations

import asyncio
import datetime as dt
import logging
import threading
import time
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Callable, Dict, List, Literal, Optional

import redis
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth import AuthError, AuthIdentity, decode_access_token, extract_bearer_token
from billing import (
    BillingError,
    BillingRepository,
    PaymentHistoryStatus,
    ProviderCallFailure,
    ProviderName,
    RecurringItem,
    RecurringItemStatus,
    RefundIneligible,
    RepeatInterval,
    check_database,
    init_billing_db,
    seed_default_tiers,
    session_scope,
)
from billing.db import SessionFactory
from billing.ledger import get_record
from billing.models import EventLedgerEntry, LedgerStatus, PaymentHistoryEntry
from billing.refunds import check_eligibility, request_refund
from billing.renewals import (
    confirm_payment,
    create_recurring_item,
    days_past_due,
    dismiss_one_time,
    list_history,
    list_past_due,
    update_recurring_item,
)
from billing.reporting import can_add_recurring_item, get_payment_stats, get_subscription_status
from billing.service import (
    cancel_subscription,
    handle_card_webhook,
    handle_iap_webhook,
    link_iap_purchase,
    replay_ledger_event,
)
from config import (
    APP_VERSION,
    AUTH_ENABLED,
    AUTH_TOKEN_SECRET,
    CARD_WEBHOOK_SECRET,
    CORS_ORIGINS,
    REDIS_DISABLED,
    REDIS_URL,
    ROOT_PATH,
    STARTUP_BOOTSTRAP_ENABLED,
    WEBHOOK_DEADLINE_SECONDS,
)
from errors import ERROR_CODE_MAP, explain_error
from observability import bind_trace_id, configure_json_logging, get_logger, log_event

configure_json_logging()
APP_LOGGER = get_logger("renvo.api")

# None selects the configured database; tests point this at an isolated engine.
BILLING_SESSION_FACTORY: SessionFactory | None = None
WEBHOOK_RECORD_POLL_SECONDS = 0.05

ERROR_STATUS_BY_CODE: Dict[str, int] = {
    "AUTHENTICITY_FAILED": 401,
    "INVALID_PAYLOAD": 400,
    "USER_RESOLUTION_FAILED": 422,
    "PROVIDER_MISMATCH": 409,
    "CONCURRENCY_CONFLICT": 409,
    "REFUND_INELIGIBLE": 422,
    "PROVIDER_CALL_FAILED": 502,
    "INVALID_OPERATION": 422,
    "NOT_FOUND": 404,
    "LIMIT_REACHED": 403,
}
SECURITY_HEADERS: Dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}
# JSON API only; the docs pages load their assets from a CDN and are exempt.
CONTENT_SECURITY_POLICY = "default-src 'none'; frame-ancestors 'none'; base-uri 'none'"


@asynccontextmanager
async def lifespan(_: FastAPI):
    if AUTH_ENABLED and not AUTH_TOKEN_SECRET:
        raise RuntimeError("AUTH_TOKEN_SECRET is required when AUTH_ENABLED=true")
    if STARTUP_BOOTSTRAP_ENABLED:
        init_billing_db()
        seed_default_tiers()
    yield


app = FastAPI(title="Renvo Billing", version=APP_VERSION, root_path=ROOT_PATH, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-User-Id", "X-Trace-Id"],
    expose_headers=["X-Trace-Id"],
)


def _request_trace_id(request: Request) -> str:
    raw = str(getattr(request.state, "trace_id", "") or "").strip()
    if raw:
        return raw
    return uuid.uuid4().hex


def _request_user_id(request: Request) -> Optional[str]:
    identity = getattr(request.state, "auth_identity", None)
    return identity.user_id if isinstance(identity, AuthIdentity) else None


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    trace_id = str(request.headers.get("X-Trace-Id") or uuid.uuid4().hex).strip()[:64]
    request.state.trace_id = trace_id
    bind_trace_id(trace_id)
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = int((time.perf_counter() - started) * 1000)
    log_event(
        APP_LOGGER,
        logging.INFO,
        "request.completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=duration_ms,
        user_id=_request_user_id(request),
    )
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    for key, value in SECURITY_HEADERS.items():
        if key not in response.headers:
            response.headers[key] = value
    path = request.url.path
    if path.startswith("/docs") or path.startswith("/redoc"):
        return response
    if "Content-Security-Policy" not in response.headers:
        response.headers["Content-Security-Policy"] = CONTENT_SECURITY_POLICY
    return response


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    trace_id = _request_trace_id(request)
    explained = explain_error(exc.code) or {}
    content: Dict[str, Any] = {
        "error_code": exc.code,
        "message": explained.get("message", "request failed"),
        "hint": explained.get("hint"),
        "detail": str(exc),
        "trace_id": trace_id,
    }
    if isinstance(exc, RefundIneligible):
        content["reason"] = exc.reason
    if isinstance(exc, ProviderCallFailure):
        content["retryable"] = exc.retryable
    log_event(
        APP_LOGGER,
        logging.WARNING,
        "request.billing_error",
        path=request.url.path,
        error_code=exc.code,
        error_message=str(exc),
        user_id=_request_user_id(request),
    )
    return JSONResponse(
        status_code=ERROR_STATUS_BY_CODE.get(exc.code, 400),
        content=content,
        headers={"X-Trace-Id": trace_id},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    trace_id = _request_trace_id(request)
    log_event(
        APP_LOGGER,
        logging.ERROR,
        "request.unhandled_exception",
        user_id=_request_user_id(request),
        method=request.method,
        path=request.url.path,
        exception_type=type(exc).__name__,
        exception_message=str(exc),
    )
    return JSONResponse(
        status_code=500,
        content={
            "error_code": "INTERNAL_SERVER_ERROR",
            "message": "internal server error",
            "trace_id": trace_id,
        },
        headers={"X-Trace-Id": trace_id},
    )


def get_current_identity(request: Request) -> AuthIdentity:
    """Bearer JWT when auth is enabled; the `X-User-Id` header in local development."""
    if AUTH_ENABLED:
        try:
            token = extract_bearer_token(request.headers.get("Authorization"))
            identity = decode_access_token(token, AUTH_TOKEN_SECRET)
        except AuthError as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc
    else:
        user_id = str(request.headers.get("X-User-Id") or "").strip()
        if not user_id:
            raise HTTPException(status_code=401, detail="missing X-User-Id header")
        identity = AuthIdentity(user_id=user_id, role=str(request.headers.get("X-User-Role") or "user"))
    request.state.auth_identity = identity
    return identity


def get_current_user_id(identity: AuthIdentity = Depends(get_current_identity)) -> str:
    return identity.user_id


def require_admin(identity: AuthIdentity = Depends(get_current_identity)) -> AuthIdentity:
    if identity.role != "admin":
        raise HTTPException(status_code=403, detail="admin role required")
    return identity


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class WebhookResponse(BaseModel):
    status: str
    event_id: Optional[str] = None
    reason: Optional[str] = None
    error_code: Optional[str] = None


class IapPurchaseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    signed_transaction: str = Field(..., alias="signedTransaction", min_length=1, max_length=20000)


class RecurringItemCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    cost: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    currency: str = Field(default="usd", min_length=3, max_length=8)
    repeat_interval: RepeatInterval = RepeatInterval.MONTHLY
    renewal_date: dt.date
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("name", "currency", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> str:
        return str(value or "").strip()


class RecurringItemUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    cost: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    repeat_interval: Optional[RepeatInterval] = None
    renewal_date: Optional[dt.date] = None
    status: Optional[RecurringItemStatus] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class ConfirmPaymentRequest(BaseModel):
    outcome: Literal["paid", "skipped"]
    payment_date: Optional[dt.date] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class RefundCreateRequest(BaseModel):
    subscription_id: Optional[str] = Field(default=None, max_length=36)
    reason: Optional[str] = Field(default=None, max_length=500)


class SubscriptionCancelRequest(BaseModel):
    immediate: bool = False


def _item_payload(item: RecurringItem, *, today: Optional[dt.date] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": item.id,
        "name": item.name,
        "cost": str(item.cost),
        "currency": item.currency,
        "repeatInterval": item.repeat_interval.value,
        "renewalDate": item.renewal_date.isoformat(),
        "status": item.status.value,
        "notes": item.notes,
    }
    if today is not None:
        payload["daysPastDue"] = days_past_due(item, today)
    return payload


def _history_payload(entry: PaymentHistoryEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "recurringItemId": entry.recurring_item_id,
        "dueDate": entry.due_date.isoformat(),
        "paymentDate": entry.payment_date.isoformat(),
        "status": entry.status.value,
        "amount": str(entry.amount),
        "notes": entry.notes,
    }


def _ledger_payload(entry: EventLedgerEntry) -> Dict[str, Any]:
    return {
        "eventId": entry.event_id,
        "provider": entry.provider.value,
        "eventKind": entry.event_kind,
        "status": entry.status.value,
        "userId": entry.user_id,
        "errorCode": entry.error_code,
        "errorMessage": entry.error_message,
        "retryCount": entry.retry_count,
        "receivedAt": entry.received_at.isoformat() if entry.received_at else None,
    }


def _today() -> dt.date:
    return dt.datetime.now(dt.timezone.utc).date()


# ---------------------------------------------------------------------------
# Operational endpoints
# ---------------------------------------------------------------------------


@app.get("/health")
async def health() -> Dict[str, Any]:
    report: Dict[str, Any] = {"status": "ok", "db": "ok", "redis": "ok", "version": app.version, "details": {}}
    if not check_database():
        report["db"] = "error"
        report["status"] = "degraded"
    if REDIS_DISABLED:
        report["redis"] = "disabled"
    else:
        started = time.perf_counter()
        try:
            redis.Redis.from_url(REDIS_URL, socket_timeout=1.0).ping()
            report["details"]["redis_latency_ms"] = int((time.perf_counter() - started) * 1000)
        except redis.RedisError as exc:
            report["redis"] = "error"
            report["details"]["redis"] = str(exc)
            report["status"] = "degraded"
    return report


@app.get("/error-codes")
async def error_codes() -> Dict[str, Dict[str, str]]:
    return ERROR_CODE_MAP


# ---------------------------------------------------------------------------
# Provider webhooks
# ---------------------------------------------------------------------------


async def _run_webhook(
    request: Request,
    provider: ProviderName,
    handler: Callable[[Callable[[], None]], Dict[str, Any]],
) -> WebhookResponse:
    """
    Run the webhook pipeline under a hard deadline.

    Past the deadline the provider gets a 200 while processing continues in
    its thread, but only once the ledger entry is committed; until then the
    request keeps waiting so a crash can never drop an acknowledged event.
    """

    recorded = threading.Event()
    work = asyncio.ensure_future(asyncio.to_thread(handler, recorded.set))
    try:
        try:
            result = await asyncio.wait_for(asyncio.shield(work), timeout=WEBHOOK_DEADLINE_SECONDS)
        except asyncio.TimeoutError:
            while not (recorded.is_set() or work.done()):
                await asyncio.sleep(WEBHOOK_RECORD_POLL_SECONDS)
            if not work.done():
                log_event(
                    APP_LOGGER,
                    logging.WARNING,
                    "billing.webhook.deadline_exceeded",
                    provider=provider,
                    deadline_seconds=WEBHOOK_DEADLINE_SECONDS,
                )
                return WebhookResponse(status="accepted")
            result = work.result()
    except BillingError as exc:
        outcome = "rejected_signature" if exc.code == "AUTHENTICITY_FAILED" else "rejected_payload"
        log_event(
            APP_LOGGER,
            logging.WARNING,
            f"billing.webhook.{outcome}",
            provider=provider,
            error_code=exc.code,
            error_message=str(exc),
            remote_addr=request.client.host if request.client else None,
        )
        raise
    return WebhookResponse(
        status=str(result.get("status") or "processed"),
        event_id=result.get("event_id"),
        reason=result.get("reason"),
        error_code=result.get("error_code"),
    )


@app.post("/billing/webhooks/card", response_model=WebhookResponse)
async def card_webhook(request: Request) -> WebhookResponse:
    raw = await request.body()
    signature = request.headers.get("Stripe-Signature") or ""
    secret = CARD_WEBHOOK_SECRET
    session_factory = BILLING_SESSION_FACTORY
    return await _run_webhook(
        request,
        ProviderName.CARD,
        lambda on_recorded: handle_card_webhook(
            raw, signature, secret=secret, session_factory=session_factory, on_recorded=on_recorded
        ),
    )


@app.post("/billing/webhooks/iap", response_model=WebhookResponse)
async def iap_webhook(request: Request) -> WebhookResponse:
    raw = await request.body()
    session_factory = BILLING_SESSION_FACTORY
    return await _run_webhook(
        request,
        ProviderName.MOBILE_IAP,
        lambda on_recorded: handle_iap_webhook(raw, session_factory=session_factory, on_recorded=on_recorded),
    )


@app.post("/billing/iap/purchases")
async def iap_purchase(payload: IapPurchaseRequest, user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    return await asyncio.to_thread(
        link_iap_purchase,
        user_id,
        payload.signed_transaction,
        session_factory=BILLING_SESSION_FACTORY,
    )


# ---------------------------------------------------------------------------
# Subscription status and limits
# ---------------------------------------------------------------------------


@app.get("/billing/subscription")
def subscription_status(
    refresh: bool = Query(default=False),
    user_id: str = Depends(get_current_user_id),
) -> Dict[str, Any]:
    return get_subscription_status(user_id, session_factory=BILLING_SESSION_FACTORY, force_refresh=refresh)


@app.get("/billing/limits/recurring-items")
def recurring_item_limits(user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    with session_scope(BILLING_SESSION_FACTORY) as session:
        return can_add_recurring_item(BillingRepository(session), user_id)


# ---------------------------------------------------------------------------
# Recurring items
# ---------------------------------------------------------------------------


@app.get("/recurring-items")
def list_recurring_items(
    include_cancelled: bool = Query(default=False),
    user_id: str = Depends(get_current_user_id),
) -> List[Dict[str, Any]]:
    with session_scope(BILLING_SESSION_FACTORY) as session:
        items = BillingRepository(session).list_recurring_items(user_id=user_id, include_cancelled=include_cancelled)
        return [_item_payload(item) for item in items]


@app.post("/recurring-items", status_code=201)
def create_item(payload: RecurringItemCreateRequest, user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    with session_scope(BILLING_SESSION_FACTORY) as session:
        item = create_recurring_item(
            BillingRepository(session),
            user_id,
            name=payload.name,
            cost=payload.cost,
            repeat_interval=payload.repeat_interval,
            renewal_date=payload.renewal_date,
            currency=payload.currency.lower(),
            notes=payload.notes,
        )
        return _item_payload(item)


@app.get("/recurring-items/past-due")
def past_due_items(user_id: str = Depends(get_current_user_id)) -> List[Dict[str, Any]]:
    today = _today()
    with session_scope(BILLING_SESSION_FACTORY) as session:
        items = list_past_due(BillingRepository(session), user_id, today=today)
        return [_item_payload(item, today=today) for item in items]


@app.get("/recurring-items/stats")
def payment_stats(user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    with session_scope(BILLING_SESSION_FACTORY) as session:
        return get_payment_stats(BillingRepository(session), user_id)


@app.patch("/recurring-items/{item_id}")
def update_item(
    item_id: str,
    payload: RecurringItemUpdateRequest,
    user_id: str = Depends(get_current_user_id),
) -> Dict[str, Any]:
    with session_scope(BILLING_SESSION_FACTORY) as session:
        item = update_recurring_item(
            BillingRepository(session),
            item_id,
            user_id,
            **payload.model_dump(exclude_unset=True),
        )
        return _item_payload(item)


@app.post("/recurring-items/{item_id}/confirm")
def confirm_item_payment(
    item_id: str,
    payload: ConfirmPaymentRequest,
    user_id: str = Depends(get_current_user_id),
) -> Dict[str, Any]:
    with session_scope(BILLING_SESSION_FACTORY) as session:
        repo = BillingRepository(session)
        next_date = confirm_payment(
            repo,
            item_id,
            user_id,
            PaymentHistoryStatus(payload.outcome),
            payment_date=payload.payment_date,
            notes=payload.notes,
        )
        item = repo.get_recurring_item(item_id, user_id=user_id)
        return {
            "newRenewalDate": next_date.isoformat() if next_date else None,
            "item": _item_payload(item) if item is not None else None,
        }


@app.post("/recurring-items/{item_id}/dismiss")
def dismiss_item(item_id: str, user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    with session_scope(BILLING_SESSION_FACTORY) as session:
        entry = dismiss_one_time(BillingRepository(session), item_id, user_id)
        return _history_payload(entry)


@app.get("/recurring-items/{item_id}/history")
def item_history(
    item_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(get_current_user_id),
) -> List[Dict[str, Any]]:
    with session_scope(BILLING_SESSION_FACTORY) as session:
        entries = list_history(BillingRepository(session), item_id, user_id, limit=limit, offset=offset)
        return [_history_payload(entry) for entry in entries]


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------


def _owned_subscription_id(repo: BillingRepository, user_id: str, subscription_id: Optional[str]) -> str:
    subscription = repo.get_subscription(subscription_id) if subscription_id else repo.get_subscription_by_user(user_id)
    if subscription is None or subscription.user_id != user_id:
        raise HTTPException(status_code=404, detail="subscription not found")
    return subscription.id


@app.get("/billing/refunds/eligibility")
def refund_eligibility(
    subscription_id: Optional[str] = Query(default=None, max_length=36),
    user_id: str = Depends(get_current_user_id),
) -> Dict[str, Any]:
    with session_scope(BILLING_SESSION_FACTORY) as session:
        repo = BillingRepository(session)
        owned_id = _owned_subscription_id(repo, user_id, subscription_id)
        return check_eligibility(repo, owned_id).as_dict()


def _refund_owned_subscription(user_id: str, subscription_id: Optional[str], reason: Optional[str]) -> Dict[str, Any]:
    with session_scope(BILLING_SESSION_FACTORY) as session:
        owned_id = _owned_subscription_id(BillingRepository(session), user_id, subscription_id)
    return request_refund(owned_id, reason, user_id=user_id, session_factory=BILLING_SESSION_FACTORY)


@app.post("/billing/refunds")
async def create_refund(payload: RefundCreateRequest, user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    # Database and provider calls both block; neither may run on the event loop.
    return await asyncio.to_thread(_refund_owned_subscription, user_id, payload.subscription_id, payload.reason)


@app.post("/billing/subscription/cancel")
async def cancel_current_subscription(
    payload: Optional[SubscriptionCancelRequest] = None,
    user_id: str = Depends(get_current_user_id),
) -> Dict[str, Any]:
    immediate = bool(payload.immediate) if payload is not None else False
    return await asyncio.to_thread(
        cancel_subscription,
        user_id,
        immediate=immediate,
        session_factory=BILLING_SESSION_FACTORY,
    )


# ---------------------------------------------------------------------------
# Ledger operations
# ---------------------------------------------------------------------------


@app.get("/billing/ledger/failed")
def failed_ledger_entries(
    provider: Optional[ProviderName] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _admin: AuthIdentity = Depends(require_admin),
) -> List[Dict[str, Any]]:
    with session_scope(BILLING_SESSION_FACTORY) as session:
        entries = BillingRepository(session).list_ledger_entries(
            status=LedgerStatus.FAILED,
            provider=provider,
            limit=limit,
            offset=offset,
        )
        return [_ledger_payload(entry) for entry in entries]


@app.post("/billing/ledger/{event_id}/replay")
async def replay_ledger_entry(event_id: str, admin: AuthIdentity = Depends(require_admin)) -> Dict[str, Any]:
    result = await asyncio.to_thread(replay_ledger_event, event_id, session_factory=BILLING_SESSION_FACTORY)
    record = get_record(event_id, session_factory=BILLING_SESSION_FACTORY)
    log_event(
        APP_LOGGER,
        logging.INFO,
        "billing.ledger.replayed",
        event_id=event_id,
        operator=admin.user_id,
        ledger_status=record.status if record else None,
    )
    return result
