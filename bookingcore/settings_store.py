import json
from dataclasses import dataclass
from enum import Enum

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .core.cache import KeyValueCache
from .errors import UpstreamFailure, store_call
from .models import TenantSetting, utc_now_naive

logger = structlog.get_logger("bookingcore.settings")

SERVICE_REQUESTS_KEY = "service_requests"
ORGANIZATION_KEY = "organization"
PRICING_KEY = "pricing"

ASSIGNMENT_TARGET_STATUSES = {"ASSIGNED", "IN_PROGRESS"}

DEFAULT_TENANT_SETTINGS = {
    SERVICE_REQUESTS_KEY: {
        "auto_assign": True,
        "auto_assign_strategy": "load_based",
        "default_request_status": "SUBMITTED",
    },
    ORGANIZATION_KEY: {
        "default_currency": None,
    },
    PRICING_KEY: {
        "weekend_surcharge_pct": None,
        "peak_surcharge_pct": None,
        "peak_hours": None,
    },
}


class AssignmentStrategy(str, Enum):
    LOAD_BASED = "load_based"
    SKILL_BASED = "skill_based"
    ROUND_ROBIN = "round_robin"

    @classmethod
    def parse(cls, raw: object) -> "AssignmentStrategy":
        try:
            return cls(str(raw or "").strip().lower())
        except ValueError:
            return cls.LOAD_BASED


@dataclass(frozen=True)
class ServiceRequestSettings:
    auto_assign: bool = True
    auto_assign_strategy: AssignmentStrategy = AssignmentStrategy.LOAD_BASED
    default_request_status: str = "SUBMITTED"

    @property
    def assignment_status(self) -> str:
        preferred = (self.default_request_status or "").strip().upper()
        return preferred if preferred in ASSIGNMENT_TARGET_STATUSES else "ASSIGNED"


def _json_loads(raw: str | None, default: dict) -> dict:
    if not raw:
        return dict(default)
    try:
        value = json.loads(raw)
    except ValueError:
        return dict(default)
    return value if isinstance(value, dict) else dict(default)


def _cache_key(tenant_id: int | None, key: str) -> str:
    return f"tenant-settings:{tenant_id if tenant_id is not None else 'default'}:{key}"


def _cache_get(cache: KeyValueCache | None, cache_key: str) -> dict | None:
    if cache is None:
        return None
    try:
        return cache.get(cache_key)
    except UpstreamFailure as exc:
        logger.warning("settings_cache_unavailable", key=cache_key, error=str(exc))
        return None


def _cache_set(cache: KeyValueCache | None, cache_key: str, value: dict) -> None:
    if cache is None:
        return
    try:
        cache.set(cache_key, value, settings.SETTINGS_CACHE_TTL_SECONDS)
    except UpstreamFailure as exc:
        logger.warning("settings_cache_unavailable", key=cache_key, error=str(exc))


def get_tenant_setting(
    db: Session,
    tenant_id: int | None,
    key: str,
    cache: KeyValueCache | None = None,
) -> dict:
    default_value = dict(DEFAULT_TENANT_SETTINGS.get(key, {}))
    if tenant_id is None:
        return default_value

    cache_key = _cache_key(tenant_id, key)
    cached = _cache_get(cache, cache_key)
    if isinstance(cached, dict):
        return cached

    with store_call("settings.read"):
        row = db.execute(
            select(TenantSetting).where(
                TenantSetting.tenant_id == tenant_id,
                TenantSetting.key == key,
            )
        ).scalar_one_or_none()
    value = default_value
    if row is not None:
        value = {**default_value, **_json_loads(row.value_json, default_value)}
    _cache_set(cache, cache_key, value)
    return value


def upsert_tenant_setting(
    db: Session,
    tenant_id: int,
    key: str,
    value: dict,
    cache: KeyValueCache | None = None,
) -> TenantSetting:
    normalized_key = (key or "").strip()
    if not normalized_key:
        raise ValueError("setting key is required")
    if not isinstance(value, dict):
        raise ValueError("setting value must be an object")

    with store_call("settings.write"):
        row = db.execute(
            select(TenantSetting).where(
                TenantSetting.tenant_id == tenant_id,
                TenantSetting.key == normalized_key,
            )
        ).scalar_one_or_none()
        if row is None:
            row = TenantSetting(tenant_id=tenant_id, key=normalized_key)
            db.add(row)
        row.value_json = json.dumps(value, ensure_ascii=True)
        row.updated_at = utc_now_naive()
        db.commit()
        db.refresh(row)

    if cache is not None:
        try:
            cache.delete(_cache_key(tenant_id, normalized_key))
        except UpstreamFailure as exc:
            logger.warning("settings_cache_invalidation_failed", key=normalized_key, error=str(exc))
    return row


def get_service_request_settings(
    db: Session, tenant_id: int | None, cache: KeyValueCache | None = None
) -> ServiceRequestSettings:
    raw = get_tenant_setting(db, tenant_id, SERVICE_REQUESTS_KEY, cache)
    return ServiceRequestSettings(
        auto_assign=bool(raw.get("auto_assign", True)),
        auto_assign_strategy=AssignmentStrategy.parse(raw.get("auto_assign_strategy")),
        default_request_status=str(raw.get("default_request_status") or "SUBMITTED"),
    )


def get_default_currency(
    db: Session, tenant_id: int | None, cache: KeyValueCache | None = None
) -> str:
    raw = get_tenant_setting(db, tenant_id, ORGANIZATION_KEY, cache)
    currency = str(raw.get("default_currency") or "").strip().upper()
    return currency or settings.DEFAULT_CURRENCY
