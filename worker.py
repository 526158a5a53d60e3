import json
import logging
import time
from typing import Any, Optional

import redis
from celery import Celery
from celery.signals import task_failure

from billing.tasks import run_expire_lapsed_subscriptions, run_past_due_sweep, run_replay_failed_events
from config import (
    CELERY_ALWAYS_EAGER,
    EXPIRY_SWEEP_INTERVAL_SECONDS,
    LEDGER_REPLAY_INTERVAL_SECONDS,
    PAST_DUE_SWEEP_INTERVAL_SECONDS,
    REDIS_DISABLED,
    REDIS_URL,
    WORKER_DEAD_LETTER_KEY,
    WORKER_TASK_MAX_RETRIES,
    WORKER_TASK_RETRY_DELAY_SECONDS,
)
from observability import configure_json_logging

_LOGGER = logging.getLogger(__name__)

_USE_REDIS = not (REDIS_DISABLED or CELERY_ALWAYS_EAGER)
_BROKER_URL = REDIS_URL if _USE_REDIS else "memory://"
_BACKEND_URL = REDIS_URL if _USE_REDIS else "cache+memory://"

celery_app = Celery("renvo_billing", broker=_BROKER_URL, backend=_BACKEND_URL)
if not _USE_REDIS:
    celery_app.conf.task_always_eager = True
    celery_app.conf.task_ignore_result = True
celery_app.conf.task_default_retry_delay = WORKER_TASK_RETRY_DELAY_SECONDS
celery_app.conf.task_acks_late = True
celery_app.conf.worker_prefetch_multiplier = 1
celery_app.conf.timezone = "UTC"
celery_app.conf.beat_schedule = {
    "billing-replay-failed-events": {
        "task": "billing.replay_failed_events",
        "schedule": LEDGER_REPLAY_INTERVAL_SECONDS,
    },
    "billing-expire-lapsed-subscriptions": {
        "task": "billing.expire_lapsed_subscriptions",
        "schedule": EXPIRY_SWEEP_INTERVAL_SECONDS,
    },
    "billing-past-due-sweep": {
        "task": "billing.past_due_sweep",
        "schedule": PAST_DUE_SWEEP_INTERVAL_SECONDS,
    },
}

redis_client: Optional[redis.Redis] = redis.Redis.from_url(REDIS_URL, decode_responses=True) if _USE_REDIS else None


def _enqueue_dead_letter(
    *,
    task_name: str,
    task_id: Optional[str],
    args: Any,
    kwargs: Any,
    exception: Exception,
    retries: int,
    max_retries: int,
) -> None:
    payload = {
        "task": str(task_name or "unknown"),
        "task_id": str(task_id or ""),
        "args": args,
        "kwargs": kwargs,
        "retries": int(retries),
        "max_retries": int(max_retries),
        "error_type": type(exception).__name__,
        "error_message": str(exception),
        "ts": time.time(),
    }
    serialized = json.dumps(payload, ensure_ascii=False, default=str)
    if redis_client is not None:
        try:
            redis_client.rpush(WORKER_DEAD_LETTER_KEY, serialized)
        except redis.RedisError:
            _LOGGER.exception("failed to enqueue dead letter")
    _LOGGER.error("task moved to dead letter: %s", serialized)


@task_failure.connect  # type: ignore[misc]
def _handle_task_failure(  # noqa: ANN001
    sender=None,
    task_id=None,
    exception=None,
    args=None,
    kwargs=None,
    einfo=None,  # noqa: ARG001
    **_extras,
) -> None:
    if sender is None or exception is None:
        return
    retries = int(getattr(getattr(sender, "request", None), "retries", 0) or 0)
    sender_max = getattr(sender, "max_retries", None)
    max_retries = WORKER_TASK_MAX_RETRIES if sender_max in {None, -1} else int(sender_max)
    if retries < max_retries:
        return
    _enqueue_dead_letter(
        task_name=str(getattr(sender, "name", "unknown")),
        task_id=str(task_id or ""),
        args=args,
        kwargs=kwargs,
        exception=exception if isinstance(exception, Exception) else RuntimeError(str(exception)),
        retries=retries,
        max_retries=max_retries,
    )


@celery_app.on_after_configure.connect  # type: ignore[misc]
def _configure_logging(sender=None, **_kwargs) -> None:  # noqa: ANN001, ARG001
    configure_json_logging()


@celery_app.task(
    name="billing.replay_failed_events",
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_jitter=True,
    retry_kwargs={"max_retries": WORKER_TASK_MAX_RETRIES},
)
def replay_failed_events_task() -> dict:
    return run_replay_failed_events()


@celery_app.task(
    name="billing.expire_lapsed_subscriptions",
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_jitter=True,
    retry_kwargs={"max_retries": WORKER_TASK_MAX_RETRIES},
)
def expire_lapsed_subscriptions_task() -> int:
    return run_expire_lapsed_subscriptions()


@celery_app.task(
    name="billing.past_due_sweep",
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_jitter=True,
    retry_kwargs={"max_retries": WORKER_TASK_MAX_RETRIES},
)
def past_due_sweep_task() -> dict:
    return run_past_due_sweep()
