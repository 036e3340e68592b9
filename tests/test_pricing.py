from datetime import datetime
from decimal import Decimal

import pytest

from bookingcore.core.availability import compute_availability
from bookingcore.core.pricing import (
    PeakRange,
    PriceComponent,
    PriceQuery,
    PricingOptions,
    calculate_price,
    code_table_promotions,
    emergency_rate_for_booking_type,
    percent_of,
    quote_slots,
)
from bookingcore.errors import UpstreamFailure
from bookingcore.settings_store import ORGANIZATION_KEY, PRICING_KEY, upsert_tenant_setting

SATURDAY_10 = datetime(2031, 3, 15, 10, 0)
MONDAY_10_30 = datetime(2031, 3, 17, 10, 30)
MONDAY_13 = datetime(2031, 3, 17, 13, 0)

NO_PEAK = PricingOptions(peak_hours=())


def _codes(breakdown) -> dict[str, int]:
    return {c.code: c.amount_cents for c in breakdown.components}


def _assert_total_invariant(breakdown) -> None:
    assert breakdown.total_cents == breakdown.subtotal_cents + sum(
        c.amount_cents for c in breakdown.components
    )


def test_saturday_weekend_surcharge(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)

    quote = calculate_price(db, PriceQuery(service_id=service.id, scheduled_at=SATURDAY_10), NO_PEAK)

    assert quote.currency == "USD"
    assert quote.base_cents == 10000
    assert quote.subtotal_cents == 10000
    assert _codes(quote) == {"WEEKEND": 1500}
    assert quote.total_cents == 11500


def test_weekday_peak_hours_surcharge(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)

    peak = calculate_price(db, PriceQuery(service_id=service.id, scheduled_at=MONDAY_10_30))
    off_peak = calculate_price(db, PriceQuery(service_id=service.id, scheduled_at=MONDAY_13))

    assert _codes(peak) == {"PEAK": 1000}
    assert peak.total_cents == 11000
    assert off_peak.components == ()
    assert off_peak.total_cents == 10000


def test_weekend_and_peak_stack_in_order(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)

    quote = calculate_price(db, PriceQuery(service_id=service.id, scheduled_at=SATURDAY_10))

    assert [c.code for c in quote.components] == ["WEEKEND", "PEAK"]
    assert quote.total_cents == 12500


def test_custom_peak_ranges(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)
    options = PricingOptions(peak_hours=(PeakRange(13, 14),), peak_surcharge_pct=0.2)

    quote = calculate_price(db, PriceQuery(service_id=service.id, scheduled_at=MONDAY_13), options)

    assert _codes(quote) == {"PEAK": 2000}


def test_duration_overage_is_prorated(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)

    quote = calculate_price(
        db, PriceQuery(service_id=service.id, scheduled_at=MONDAY_13, duration_min=90)
    )

    assert _codes(quote) == {"OVERAGE": 5000}
    assert quote.total_cents == 15000


def test_short_duration_is_clamped_and_never_discounted(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)

    quote = calculate_price(
        db, PriceQuery(service_id=service.id, scheduled_at=MONDAY_13, duration_min=5)
    )

    assert quote.components == ()
    assert quote.total_cents == 10000


def test_emergency_surcharge(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)
    options = PricingOptions(emergency_surcharge_pct=emergency_rate_for_booking_type("emergency"))

    quote = calculate_price(db, PriceQuery(service_id=service.id, scheduled_at=MONDAY_13), options)

    assert _codes(quote) == {"EMERGENCY": 5000}
    assert emergency_rate_for_booking_type("standard") == 0.0
    assert emergency_rate_for_booking_type(None) == 0.0


def test_promo_code_discount(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)
    options = PricingOptions(promo_code="welcome10", resolve_promotion=code_table_promotions())

    quote = calculate_price(db, PriceQuery(service_id=service.id, scheduled_at=MONDAY_13), options)

    assert quote.components == (PriceComponent("PROMO_WELCOME10", "Promo WELCOME10", -1000),)
    assert quote.total_cents == 9000


def test_unknown_promo_code_is_ignored(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)
    options = PricingOptions(promo_code="NOPE", resolve_promotion=code_table_promotions())

    quote = calculate_price(db, PriceQuery(service_id=service.id, scheduled_at=MONDAY_13), options)

    assert quote.components == ()
    assert quote.total_cents == 10000


def test_promo_without_resolver_is_ignored(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)

    quote = calculate_price(
        db,
        PriceQuery(service_id=service.id, scheduled_at=MONDAY_13),
        PricingOptions(promo_code="WELCOME10"),
    )

    assert quote.total_cents == 10000


def test_oversized_discount_is_clamped_to_zero_total(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)

    def everything_free(code, context):
        return PriceComponent(f"PROMO_{code}", "Free", -context.base_cents * 5)

    options = PricingOptions(peak_hours=(), promo_code="FREE", resolve_promotion=everything_free)
    quote = calculate_price(db, PriceQuery(service_id=service.id, scheduled_at=SATURDAY_10), options)

    assert _codes(quote) == {"WEEKEND": 1500, "PROMO_FREE": -11500}
    assert quote.total_cents == 0
    _assert_total_invariant(quote)


def test_percentages_round_half_up():
    assert percent_of(1005, 0.10) == 101
    assert percent_of(1005, 0.15) == 151
    assert percent_of(-1005, 0.10) == -101


def test_half_cent_component_rounds_up(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant, base_price=Decimal("10.05"))

    quote = calculate_price(db, PriceQuery(service_id=service.id, scheduled_at=SATURDAY_10), NO_PEAK)

    assert _codes(quote) == {"WEEKEND": 151}
    assert quote.total_cents == 1156


def test_currency_conversion_uses_latest_rate(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)
    factory.rate("USD", "EUR", "0.80", datetime(2031, 1, 1))
    factory.rate("USD", "EUR", "0.90", datetime(2031, 3, 1))

    quote = calculate_price(
        db,
        PriceQuery(service_id=service.id, scheduled_at=SATURDAY_10),
        PricingOptions(currency="eur", peak_hours=()),
    )

    assert quote.currency == "EUR"
    assert quote.base_cents == 9000
    assert _codes(quote) == {"WEEKEND": 1350}
    assert quote.total_cents == 10350
    _assert_total_invariant(quote)


def test_missing_exchange_rate_falls_back_to_one(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)

    quote = calculate_price(
        db,
        PriceQuery(service_id=service.id, scheduled_at=MONDAY_13),
        PricingOptions(currency="GBP"),
    )

    assert quote.currency == "GBP"
    assert quote.total_cents == 10000


def test_inactive_or_missing_service_prices_at_zero(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant, status="INACTIVE")

    inactive = calculate_price(db, PriceQuery(service_id=service.id, scheduled_at=MONDAY_13))
    missing = calculate_price(db, PriceQuery(service_id="missing", scheduled_at=MONDAY_13))

    for quote in (inactive, missing):
        assert quote.total_cents == 0
        assert quote.components == ()
        assert quote.currency == "USD"
        assert quote.is_usable is False


def test_tenant_pricing_settings_override_globals(db, factory, cache):
    tenant = factory.tenant()
    service = factory.service(tenant)
    upsert_tenant_setting(
        db,
        tenant.id,
        PRICING_KEY,
        {"weekend_surcharge_pct": 0.2, "peak_hours": []},
        cache,
    )

    quote = calculate_price(
        db, PriceQuery(service_id=service.id, scheduled_at=SATURDAY_10), cache=cache
    )

    assert _codes(quote) == {"WEEKEND": 2000}
    assert quote.total_cents == 12000


def test_tenant_default_currency_is_the_base_currency(db, factory, cache):
    tenant = factory.tenant()
    service = factory.service(tenant)
    upsert_tenant_setting(db, tenant.id, ORGANIZATION_KEY, {"default_currency": "eur"}, cache)

    quote = calculate_price(
        db, PriceQuery(service_id=service.id, scheduled_at=MONDAY_13), cache=cache
    )

    assert quote.currency == "EUR"
    assert quote.total_cents == 10000


def test_quotes_are_deterministic(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)
    query = PriceQuery(service_id=service.id, scheduled_at=SATURDAY_10, duration_min=75)
    options = PricingOptions(promo_code="SAVE15", resolve_promotion=code_table_promotions())

    first = calculate_price(db, query, options)
    second = calculate_price(db, query, options)

    assert first == second
    _assert_total_invariant(first)


def test_quote_slots_attaches_price_to_each_slot(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)
    slots = compute_availability(db, service.id, datetime(2031, 3, 17), datetime(2031, 3, 17, 23))

    rows = quote_slots(db, service.id, slots, tenant_id=tenant.id)

    by_hour = {row["start"].hour: row for row in rows}
    assert len(rows) == 8
    assert by_hour[10]["price_cents"] == 11000
    assert by_hour[13]["price_cents"] == 10000
    assert all(row["currency"] == "USD" for row in rows)


def test_store_outage_is_not_priced_as_zero(db, factory, break_store):
    tenant = factory.tenant()
    service = factory.service(tenant)
    break_store()

    with pytest.raises(UpstreamFailure):
        calculate_price(db, PriceQuery(service_id=service.id, scheduled_at=MONDAY_13), NO_PEAK)


def test_exchange_rate_outage_is_not_treated_as_missing_rate(db, factory, break_store):
    tenant = factory.tenant()
    service = factory.service(tenant)
    break_store("exchange_rates")

    with pytest.raises(UpstreamFailure):
        calculate_price(
            db,
            PriceQuery(service_id=service.id, scheduled_at=MONDAY_13),
            PricingOptions(currency="EUR", peak_hours=()),
        )
