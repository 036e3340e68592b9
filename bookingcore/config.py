import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        return float(raw)
    except ValueError:
        return float(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./bookingcore.db")
    DB_TIMEOUT_SECONDS = _get_float("DB_TIMEOUT_SECONDS", 5.0)
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", False)
    DEFAULT_TENANT_SLUG = os.getenv("DEFAULT_TENANT_SLUG", "default").strip().lower()
    DEFAULT_TENANT_NAME = os.getenv("DEFAULT_TENANT_NAME", "Default").strip()
    MULTI_TENANCY_ENABLED = _get_bool("MULTI_TENANCY_ENABLED", True)

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    LOG_FORMAT = os.getenv("LOG_FORMAT", "json").strip().lower()
    SLOW_REQUEST_MS = _get_int("SLOW_REQUEST_MS", 1000)

    CACHE_BACKEND = os.getenv("CACHE_BACKEND", "disk").strip().lower()
    CACHE_DIR = os.getenv("CACHE_DIR", "./.cache").strip()
    CACHE_TIMEOUT_SECONDS = _get_float("CACHE_TIMEOUT_SECONDS", 2.0)
    REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379/0").strip()
    SETTINGS_CACHE_TTL_SECONDS = _get_int("SETTINGS_CACHE_TTL_SECONDS", 300)

    EVENT_BUS_ENABLED = _get_bool("EVENT_BUS_ENABLED", False)
    EVENT_BUS_STREAM = os.getenv("EVENT_BUS_STREAM", "bookingcore.events").strip()
    AUDIT_STREAM = os.getenv("AUDIT_STREAM", "bookingcore.audit").strip()

    BUSINESS_TIMEZONE = os.getenv("BUSINESS_TIMEZONE", "UTC").strip() or "UTC"
    HOLIDAYS_COUNTRY = os.getenv("HOLIDAYS_COUNTRY", "").strip().upper()
    DEFAULT_OPEN_HOUR = _get_int("DEFAULT_OPEN_HOUR", 9)
    DEFAULT_CLOSE_HOUR = _get_int("DEFAULT_CLOSE_HOUR", 17)
    MIN_SLOT_MINUTES = _get_int("MIN_SLOT_MINUTES", 15)

    DEFAULT_CURRENCY = os.getenv("EXCHANGE_BASE_CURRENCY", "USD").strip().upper()
    WEEKEND_SURCHARGE_PCT = _get_float("WEEKEND_SURCHARGE_PCT", 0.15)
    PEAK_SURCHARGE_PCT = _get_float("PEAK_SURCHARGE_PCT", 0.10)
    EMERGENCY_SURCHARGE_PCT = _get_float("EMERGENCY_SURCHARGE_PCT", 0.50)

    ROTATION_CACHE_TTL_SECONDS = _get_int("ROTATION_CACHE_TTL_SECONDS", 3600)


settings = Settings()
