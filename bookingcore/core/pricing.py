"""Price quotes for a booking.

A quote is an itemised breakdown: the service base price plus signed
components in a fixed order (OVERAGE, WEEKEND, PEAK, EMERGENCY, promotion).
Every percentage amount is rounded half-up to the cent on its own. When the
requested currency differs from the tenant's base currency each amount is
converted with the newest exchange rate row; if no row exists the rate is 1.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import store_call
from ..models import ExchangeRate
from ..settings_store import PRICING_KEY, get_default_currency, get_tenant_setting
from .availability import Slot, get_service, to_local
from .cache import KeyValueCache
from .conflicts import is_bookable

logger = structlog.get_logger("bookingcore.pricing")

MIN_DURATION_MIN = 15


@dataclass(frozen=True)
class PriceComponent:
    code: str
    label: str
    # positive for surcharges, negative for discounts
    amount_cents: int


@dataclass(frozen=True)
class PriceBreakdown:
    currency: str
    base_cents: int
    components: tuple[PriceComponent, ...]
    subtotal_cents: int
    total_cents: int

    @classmethod
    def zero(cls, currency: str) -> "PriceBreakdown":
        return cls(currency=currency, base_cents=0, components=(), subtotal_cents=0, total_cents=0)

    @property
    def is_usable(self) -> bool:
        return self.total_cents > 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class PeakRange:
    """Local hours [start_hour, end_hour)."""

    start_hour: int
    end_hour: int

    def contains(self, hour: int) -> bool:
        return self.start_hour <= hour < self.end_hour


DEFAULT_PEAK_HOURS = (PeakRange(10, 12), PeakRange(15, 17))


@dataclass(frozen=True)
class PromotionContext:
    service_id: str
    base_cents: int
    tenant_id: int | None = None


PromotionResolver = Callable[[str, PromotionContext], PriceComponent | None]


@dataclass(frozen=True)
class PricingOptions:
    currency: str | None = None
    weekend_surcharge_pct: float | None = None
    peak_hours: tuple[PeakRange, ...] | None = None
    peak_surcharge_pct: float | None = None
    emergency_surcharge_pct: float = 0.0
    promo_code: str | None = None
    resolve_promotion: PromotionResolver | None = field(default=None, compare=False)


@dataclass(frozen=True)
class PriceQuery:
    service_id: str
    scheduled_at: datetime
    duration_min: int | None = None
    tenant_id: int | None = None


def round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percent_of(amount_cents: int, percent: float) -> int:
    return round_cents(Decimal(amount_cents) * Decimal(str(percent)))


def convert_cents(amount_cents: int, rate: Decimal) -> int:
    return round_cents(Decimal(amount_cents) * rate)


def is_weekend(local_dt: datetime) -> bool:
    return local_dt.weekday() >= 5


def is_within_peak(local_dt: datetime, ranges: Iterable[PeakRange]) -> bool:
    return any(r.contains(local_dt.hour) for r in ranges)


DEFAULT_PROMO_CODES = {
    "WELCOME10": 0.10,
    "SAVE15": 0.15,
}


def code_table_promotions(table: dict[str, float] | None = None) -> PromotionResolver:
    """Build a resolver that discounts a fixed share of the base price per code."""
    codes = {k.upper(): v for k, v in (table or DEFAULT_PROMO_CODES).items()}

    def resolve(code: str, context: PromotionContext) -> PriceComponent | None:
        normalized = (code or "").strip().upper()
        pct = codes.get(normalized)
        if pct is None:
            return None
        return PriceComponent(
            code=f"PROMO_{normalized}",
            label=f"Promo {normalized}",
            amount_cents=-percent_of(context.base_cents, pct),
        )

    return resolve


def emergency_rate_for_booking_type(booking_type: str | None) -> float:
    if (booking_type or "").strip().upper() == "EMERGENCY":
        return float(settings.EMERGENCY_SURCHARGE_PCT)
    return 0.0


def _parse_peak_hours(raw) -> tuple[PeakRange, ...] | None:
    if not isinstance(raw, list):
        return None
    ranges: list[PeakRange] = []
    for item in raw:
        try:
            start_hour, end_hour = int(item[0]), int(item[1])
        except (TypeError, ValueError, IndexError, KeyError):
            continue
        if 0 <= start_hour < end_hour <= 24:
            ranges.append(PeakRange(start_hour, end_hour))
    return tuple(ranges)


def resolve_options(
    db: Session,
    tenant_id: int | None,
    options: PricingOptions,
    cache: KeyValueCache | None = None,
) -> tuple[float, tuple[PeakRange, ...], float]:
    """Caller options win, then tenant pricing settings, then global defaults."""
    tenant_pricing = get_tenant_setting(db, tenant_id, PRICING_KEY, cache)

    weekend_pct = options.weekend_surcharge_pct
    if weekend_pct is None:
        weekend_pct = tenant_pricing.get("weekend_surcharge_pct")
    if weekend_pct is None:
        weekend_pct = settings.WEEKEND_SURCHARGE_PCT

    peak_pct = options.peak_surcharge_pct
    if peak_pct is None:
        peak_pct = tenant_pricing.get("peak_surcharge_pct")
    if peak_pct is None:
        peak_pct = settings.PEAK_SURCHARGE_PCT

    peak_hours = options.peak_hours
    if peak_hours is None:
        peak_hours = _parse_peak_hours(tenant_pricing.get("peak_hours"))
    if peak_hours is None:
        peak_hours = DEFAULT_PEAK_HOURS

    return float(weekend_pct), tuple(peak_hours), float(peak_pct)


def latest_exchange_rate(db: Session, base: str, target: str) -> Decimal | None:
    stmt = (
        select(ExchangeRate.rate)
        .where(ExchangeRate.base == base, ExchangeRate.target == target)
        .order_by(ExchangeRate.fetched_at.desc(), ExchangeRate.id.desc())
        .limit(1)
    )
    with store_call("exchange_rates.read"):
        rate = db.execute(stmt).scalar_one_or_none()
    if rate is None:
        return None
    return Decimal(str(rate))


def _clamp_discount(component: PriceComponent, running_total: int) -> PriceComponent:
    if component.amount_cents >= 0 or running_total + component.amount_cents >= 0:
        return component
    return PriceComponent(component.code, component.label, -running_total)


def _floor_total(components: list[PriceComponent], base_cents: int) -> list[PriceComponent]:
    # conversion rounds each amount on its own, so a fully discounted quote can land at -1
    total = base_cents + sum(c.amount_cents for c in components)
    if total >= 0:
        return components
    for idx in range(len(components) - 1, -1, -1):
        if components[idx].amount_cents < 0:
            c = components[idx]
            components[idx] = PriceComponent(c.code, c.label, c.amount_cents - total)
            break
    return components


def calculate_price(
    db: Session,
    query: PriceQuery,
    options: PricingOptions | None = None,
    cache: KeyValueCache | None = None,
) -> PriceBreakdown:
    options = options or PricingOptions()
    service = get_service(db, query.service_id, query.tenant_id)
    if not is_bookable(service):
        logger.info("price_zero_inactive_service", service_id=query.service_id)
        return PriceBreakdown.zero(settings.DEFAULT_CURRENCY)

    base_currency = get_default_currency(db, service.tenant_id, cache)
    target_currency = (options.currency or base_currency).strip().upper()

    base_cents = round_cents(Decimal(str(service.base_price or 0)) * 100)
    standard_min = max(MIN_DURATION_MIN, int(service.standard_duration_min or 60))
    duration_min = max(MIN_DURATION_MIN, int(query.duration_min or standard_min))
    weekend_pct, peak_hours, peak_pct = resolve_options(db, service.tenant_id, options, cache)
    local_start = to_local(query.scheduled_at)

    components: list[PriceComponent] = []

    if duration_min > standard_min and base_cents > 0:
        extra = duration_min - standard_min
        overage = round_cents(Decimal(base_cents) * extra / standard_min)
        if overage > 0:
            components.append(PriceComponent("OVERAGE", "Duration overage", overage))

    if weekend_pct > 0 and is_weekend(local_start):
        amount = percent_of(base_cents, weekend_pct)
        if amount > 0:
            components.append(PriceComponent("WEEKEND", "Weekend surcharge", amount))

    if peak_pct > 0 and peak_hours and is_within_peak(local_start, peak_hours):
        amount = percent_of(base_cents, peak_pct)
        if amount > 0:
            components.append(PriceComponent("PEAK", "Peak hours surcharge", amount))

    emergency_pct = float(options.emergency_surcharge_pct or 0)
    if emergency_pct > 0:
        amount = percent_of(base_cents, emergency_pct)
        if amount > 0:
            components.append(PriceComponent("EMERGENCY", "Emergency surcharge", amount))

    promo_code = (options.promo_code or "").strip()
    if promo_code and options.resolve_promotion is not None:
        context = PromotionContext(
            service_id=service.id, base_cents=base_cents, tenant_id=service.tenant_id
        )
        discount = options.resolve_promotion(promo_code, context)
        if discount is not None:
            running_total = base_cents + sum(c.amount_cents for c in components)
            components.append(_clamp_discount(discount, running_total))

    currency = base_currency
    if target_currency != base_currency:
        rate = latest_exchange_rate(db, base_currency, target_currency)
        if rate is None:
            # TODO: reject cross-currency quotes without a rate once every tenant has a rate feed
            logger.warning(
                "exchange_rate_missing",
                base=base_currency,
                target=target_currency,
                service_id=service.id,
            )
            rate = Decimal(1)
        base_cents = convert_cents(base_cents, rate)
        components = [
            PriceComponent(c.code, c.label, convert_cents(c.amount_cents, rate)) for c in components
        ]
        components = _floor_total(components, base_cents)
        currency = target_currency

    subtotal_cents = base_cents
    total_cents = subtotal_cents + sum(c.amount_cents for c in components)
    return PriceBreakdown(
        currency=currency,
        base_cents=base_cents,
        components=tuple(components),
        subtotal_cents=subtotal_cents,
        total_cents=total_cents,
    )


def quote_slots(
    db: Session,
    service_id: str,
    slots: list[Slot],
    duration_min: int | None = None,
    options: PricingOptions | None = None,
    tenant_id: int | None = None,
    cache: KeyValueCache | None = None,
) -> list[dict]:
    out: list[dict] = []
    for slot in slots:
        breakdown = calculate_price(
            db,
            PriceQuery(
                service_id=service_id,
                scheduled_at=slot.start,
                duration_min=duration_min,
                tenant_id=tenant_id,
            ),
            options,
            cache,
        )
        out.append(
            {
                "start": slot.start,
                "end": slot.end,
                "available": slot.available,
                "price_cents": breakdown.total_cents,
                "currency": breakdown.currency,
            }
        )
    return out
