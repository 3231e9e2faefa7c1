import os
from typing import Any, Dict

import yaml

ROOT_DIR = os.path.dirname(__file__)


def _read_env_file(path: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    except OSError:
        return values
    for raw_line in lines:
        line = raw_line.strip()
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = (part.strip() for part in line.split("=", 1))
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        if key:
            values[key] = value
    return values


def _apply_env_file(path: str, process_env: set[str], *, override: bool) -> None:
    """
    Load ``path`` into os.environ.

    Non-empty variables from the real process environment always win;
    ``override`` lets a later file replace values set by an earlier one.
    """

    for key, value in _read_env_file(path).items():
        current = str(os.environ.get(key) or "").strip()
        if current and (key in process_env or not override):
            continue
        os.environ[key] = value


_PROCESS_ENV = set(os.environ.keys())
_apply_env_file(os.path.join(ROOT_DIR, ".env"), _PROCESS_ENV, override=False)
_apply_env_file(os.path.join(ROOT_DIR, ".env.local"), _PROCESS_ENV, override=True)

APP_ENV = os.getenv("APP_ENV", "dev")
CONFIG_PATH = os.getenv("CONFIG_PATH", os.path.join(ROOT_DIR, "config.yaml"))

# Never read from config.yaml; these must come from the process environment.
_ENV_ONLY_KEYS = {
    "RAZORPAY_KEY_SECRET",
    "MOCK_GATEWAY_SECRET",
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


def _parse_int(value: Any, default: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _parse_float(value: Any, default: float) -> float:
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


DATABASE_URL = str(
    _get(
        "DATABASE_URL",
        f"sqlite:///{os.path.join(ROOT_DIR, '.billing', 'billing.db')}",
    )
).strip()
DATABASE_ECHO = _parse_bool(_get("DATABASE_ECHO", "false"), False)
LOG_LEVEL = str(_get("LOG_LEVEL", "INFO")).strip().upper() or "INFO"

# Payment gateway
PAYMENT_PROVIDER = str(_get("PAYMENT_PROVIDER", "mock")).strip().lower() or "mock"
PAYMENT_CURRENCY = str(_get("PAYMENT_CURRENCY", "INR")).strip().upper() or "INR"
PAYMENT_GATEWAY_TIMEOUT_SECONDS = _parse_float(_get("PAYMENT_GATEWAY_TIMEOUT_SECONDS", "10"), 10.0)
RAZORPAY_KEY_ID = str(_get("RAZORPAY_KEY_ID", "")).strip()
RAZORPAY_KEY_SECRET = str(_get("RAZORPAY_KEY_SECRET", "")).strip()
RAZORPAY_API_BASE_URL = (
    str(_get("RAZORPAY_API_BASE_URL", "https://api.razorpay.com/v1")).strip().rstrip("/")
    or "https://api.razorpay.com/v1"
)
MOCK_GATEWAY_SECRET = str(_get("MOCK_GATEWAY_SECRET", "mock_secret")).strip()

# Recurring invoice generation
BILLING_SCHEDULE_CRON = str(_get("BILLING_SCHEDULE_CRON", "0 3 * * *")).strip() or "0 3 * * *"
BILLING_SCHEDULE_TIMEZONE = str(_get("BILLING_SCHEDULE_TIMEZONE", "Asia/Kolkata")).strip() or "Asia/Kolkata"
BILLING_JOB_LOCK_TTL_SECONDS = _parse_int(_get("BILLING_JOB_LOCK_TTL_SECONDS", "3600"), 3600)
