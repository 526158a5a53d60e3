import os
from typing import Any, Dict

import yaml

ROOT_DIR = os.path.dirname(__file__)


def _load_dotenv(path: str, existing_env: set[str], allow_override: bool = False) -> None:
    if not os.path.exists(path):
        return
    try:
        with open(path, "r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if line.startswith("export "):
                    line = line[7:].strip()
                if "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                if not key:
                    continue
                current_value = str(os.environ.get(key, "") or "").strip()
                # Do not treat empty pre-existing env vars as authoritative.
                if key in existing_env and current_value:
                    continue
                if key in os.environ and (not allow_override) and current_value:
                    continue
                value = value.strip()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
                    value = value[1:-1]
                os.environ[key] = value
    except OSError:
        return


_EXISTING_ENV = set(os.environ.keys())
_load_dotenv(os.path.join(ROOT_DIR, ".env"), _EXISTING_ENV, allow_override=False)
_load_dotenv(os.path.join(ROOT_DIR, ".env.local"), _EXISTING_ENV, allow_override=True)

APP_ENV = os.getenv("APP_ENV", "dev")
CONFIG_PATH = os.getenv("CONFIG_PATH", os.path.join(ROOT_DIR, "config.yaml"))

_ENV_ONLY_KEYS = {
    "AUTH_TOKEN_SECRET",
    "CARD_WEBHOOK_SECRET",
    "CARD_API_SECRET_KEY",
}


def _load_config(path: str, env: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw_data: Any = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError):
        return {}
    data = raw_data or {}
    if isinstance(data, dict) and env in data and isinstance(data[env], dict):
        return dict(data[env])
    if isinstance(data, dict):
        return dict(data)
    return {}


_CONFIG = _load_config(CONFIG_PATH, APP_ENV)


def _get(name: str, default: Any) -> Any:
    if name in os.environ:
        return os.environ[name]
    if name in _ENV_ONLY_KEYS:
        return default
    if isinstance(_CONFIG, dict):
        if name in _CONFIG:
            return _CONFIG[name]
        lower = name.lower()
        if lower in _CONFIG:
            return _CONFIG[lower]
    return default


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes"}


def _parse_csv(value: Any) -> list[str]:
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [item.strip() for item in str(value or "").split(",") if item.strip()]


API_HOST = _get("API_HOST", "127.0.0.1")
API_PORT = int(_get("API_PORT", "8010"))
_root_path = str(_get("ROOT_PATH", "")).strip()
if _root_path and not _root_path.startswith("/"):
    _root_path = f"/{_root_path}"
ROOT_PATH = _root_path.rstrip("/") if _root_path else ""
APP_VERSION = str(_get("APP_VERSION", "0.3.0"))
CORS_ORIGINS = _parse_csv(_get("CORS_ORIGINS", "http://localhost:8081"))
STARTUP_BOOTSTRAP_ENABLED = _parse_bool(_get("STARTUP_BOOTSTRAP_ENABLED", "true"), True)

DATABASE_URL = str(
    _get(
        "DATABASE_URL",
        f"sqlite:///{os.path.join(ROOT_DIR, '.renvo', 'billing.db')}",
    )
).strip()
DATABASE_ECHO = str(_get("DATABASE_ECHO", "false")).lower() in {"1", "true", "yes"}

REDIS_URL = _get("REDIS_URL", "redis://localhost:6379/0")
REDIS_DISABLED = str(_get("REDIS_DISABLED", "false")).lower() in {"1", "true", "yes"}
CELERY_ALWAYS_EAGER = str(_get("CELERY_ALWAYS_EAGER", "false")).lower() in {"1", "true", "yes"}

AUTH_ENABLED = str(_get("AUTH_ENABLED", "true")).lower() in {"1", "true", "yes"}
AUTH_TOKEN_SECRET = str(_get("AUTH_TOKEN_SECRET", "")).strip()

# Card processor (Stripe-compatible webhooks and REST API).
CARD_WEBHOOK_SECRET = str(_get("CARD_WEBHOOK_SECRET", "")).strip()
CARD_WEBHOOK_TOLERANCE_SECONDS = int(_get("CARD_WEBHOOK_TOLERANCE_SECONDS", "300"))
CARD_API_BASE_URL = str(_get("CARD_API_BASE_URL", "https://api.stripe.com")).strip().rstrip("/")
CARD_API_SECRET_KEY = str(_get("CARD_API_SECRET_KEY", "")).strip()
REFUND_PROVIDER = str(_get("REFUND_PROVIDER", "mock")).strip().lower() or "mock"

# Mobile in-app purchases (App Store Server Notifications v2).
IAP_ROOT_CERTS_PEM = str(_get("IAP_ROOT_CERTS_PEM", "")).strip()
IAP_ROOT_CERT_PATH = str(_get("IAP_ROOT_CERT_PATH", "")).strip()
IAP_BUNDLE_ID = str(_get("IAP_BUNDLE_ID", "")).strip()
IAP_PREMIUM_PRODUCT_IDS = frozenset(_parse_csv(_get("IAP_PREMIUM_PRODUCT_IDS", "")))

REFUND_WINDOW_DAYS = int(_get("REFUND_WINDOW_DAYS", "7"))
GRACE_PERIOD_DAYS = int(_get("GRACE_PERIOD_DAYS", "16"))
SUBSCRIPTION_UPDATE_MAX_ATTEMPTS = max(1, int(_get("SUBSCRIPTION_UPDATE_MAX_ATTEMPTS", "5")))
LEDGER_WAIT_SECONDS = float(_get("LEDGER_WAIT_SECONDS", "3.0"))
WEBHOOK_DEADLINE_SECONDS = float(_get("WEBHOOK_DEADLINE_SECONDS", "5.0"))
# A pending ledger entry untouched for this long is taken over by a redelivery or the replay sweep.
LEDGER_PENDING_LEASE_SECONDS = max(WEBHOOK_DEADLINE_SECONDS, float(_get("LEDGER_PENDING_LEASE_SECONDS", "60")))
LEDGER_REPLAY_BATCH_SIZE = int(_get("LEDGER_REPLAY_BATCH_SIZE", "50"))
LEDGER_REPLAY_MAX_RETRIES = int(_get("LEDGER_REPLAY_MAX_RETRIES", "5"))

# Celery worker and beat schedule.
WORKER_TASK_MAX_RETRIES = int(_get("WORKER_TASK_MAX_RETRIES", "3"))
WORKER_TASK_RETRY_DELAY_SECONDS = int(_get("WORKER_TASK_RETRY_DELAY_SECONDS", "10"))
WORKER_DEAD_LETTER_KEY = str(_get("WORKER_DEAD_LETTER_KEY", "billing:dead_letter")).strip()
LEDGER_REPLAY_INTERVAL_SECONDS = float(_get("LEDGER_REPLAY_INTERVAL_SECONDS", "300"))
EXPIRY_SWEEP_INTERVAL_SECONDS = float(_get("EXPIRY_SWEEP_INTERVAL_SECONDS", "3600"))
PAST_DUE_SWEEP_INTERVAL_SECONDS = float(_get("PAST_DUE_SWEEP_INTERVAL_SECONDS", "86400"))
