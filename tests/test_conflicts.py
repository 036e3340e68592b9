from datetime import datetime, timedelta, timezone

import pytest

from bookingcore.core.conflicts import ConflictQuery, ConflictReason, check_conflict
from bookingcore.errors import UpstreamFailure
from bookingcore.models import Service

MONDAY = datetime(2031, 3, 17)


def _at(hour: int, minute: int = 0) -> datetime:
    return MONDAY.replace(hour=hour, minute=minute)


def test_overlapping_booking_reports_conflicting_id(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)
    existing = factory.booking(service, _at(10), 60)

    result = check_conflict(db, ConflictQuery(service_id=service.id, start=_at(10, 30), duration_min=60))

    assert result.conflict is True
    assert result.reason == ConflictReason.OVERLAP
    assert result.conflicting_booking_id == existing.id


def test_back_to_back_bookings_do_not_conflict(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)
    factory.booking(service, _at(10), 60)

    after = check_conflict(db, ConflictQuery(service_id=service.id, start=_at(11), duration_min=60))
    before = check_conflict(db, ConflictQuery(service_id=service.id, start=_at(9), duration_min=60))

    assert after.conflict is False
    assert before.conflict is False


def test_buffer_extends_existing_booking_window(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant, buffer_time_min=15)
    existing = factory.booking(service, _at(10), 60)

    inside_buffer = check_conflict(db, ConflictQuery(service_id=service.id, start=_at(11), duration_min=30))
    after_buffer = check_conflict(
        db, ConflictQuery(service_id=service.id, start=_at(11, 15), duration_min=30)
    )

    assert inside_buffer.conflict is True
    assert inside_buffer.reason == ConflictReason.OVERLAP
    assert inside_buffer.conflicting_booking_id == existing.id
    assert after_buffer.conflict is False


def test_excluded_booking_is_ignored_when_rescheduling(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)
    existing = factory.booking(service, _at(10), 60)

    result = check_conflict(
        db,
        ConflictQuery(
            service_id=service.id,
            start=_at(10, 30),
            duration_min=60,
            exclude_booking_id=existing.id,
        ),
    )

    assert result.conflict is False


def test_cancelled_and_completed_bookings_do_not_block(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)
    factory.booking(service, _at(10), 60, status="CANCELLED")
    factory.booking(service, _at(10), 60, status="COMPLETED")

    result = check_conflict(db, ConflictQuery(service_id=service.id, start=_at(10), duration_min=60))

    assert result.conflict is False


def test_daily_cap_blocks_additional_bookings(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant, max_daily_bookings=2)
    first = factory.booking(service, _at(9), 60)
    factory.booking(service, _at(13), 60)

    capped = check_conflict(db, ConflictQuery(service_id=service.id, start=_at(15), duration_min=60))
    moving_existing = check_conflict(
        db,
        ConflictQuery(
            service_id=service.id,
            start=_at(15),
            duration_min=60,
            exclude_booking_id=first.id,
        ),
    )

    assert capped.conflict is True
    assert capped.reason == ConflictReason.DAILY_CAP
    assert capped.info == {"max_daily": 2}
    assert moving_existing.conflict is False


def test_daily_cap_counts_only_the_requested_day(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant, max_daily_bookings=1)
    factory.booking(service, datetime(2031, 3, 18, 10), 60)

    result = check_conflict(db, ConflictQuery(service_id=service.id, start=_at(10), duration_min=60))

    assert result.conflict is False


def test_inactive_or_disabled_service_is_not_bookable(db, factory):
    tenant = factory.tenant()
    inactive = factory.service(tenant, status="INACTIVE")
    disabled = factory.service(tenant, booking_enabled=False)

    for service in (inactive, disabled):
        result = check_conflict(db, ConflictQuery(service_id=service.id, start=_at(10), duration_min=60))
        assert result.conflict is True
        assert result.reason == ConflictReason.SERVICE_INACTIVE


def test_unknown_service_is_reported_as_inactive(db, factory):
    factory.tenant()

    result = check_conflict(db, ConflictQuery(service_id="missing", start=_at(10), duration_min=60))

    assert result.conflict is True
    assert result.reason == ConflictReason.SERVICE_INACTIVE


def test_team_member_scope_only_checks_that_members_bookings(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)
    factory.member(tenant, "a")
    factory.member(tenant, "b")
    factory.booking(service, _at(10), 60, assigned_team_member_id="a")

    other_member = check_conflict(
        db,
        ConflictQuery(service_id=service.id, start=_at(10), duration_min=60, team_member_id="b"),
    )
    same_member = check_conflict(
        db,
        ConflictQuery(service_id=service.id, start=_at(10), duration_min=60, team_member_id="a"),
    )

    assert other_member.conflict is False
    assert same_member.conflict is True


def test_timezone_aware_start_is_normalised(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)
    existing = factory.booking(service, _at(10), 60)
    offset_start = datetime(2031, 3, 17, 11, 30, tzinfo=timezone(timedelta(hours=1)))

    result = check_conflict(db, ConflictQuery(service_id=service.id, start=offset_start, duration_min=30))

    assert result.conflict is True
    assert result.conflicting_booking_id == existing.id


def test_proposal_running_past_midnight_sees_next_day_booking(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)
    early = factory.booking(service, datetime(2031, 3, 18, 1, 30), 60)

    result = check_conflict(db, ConflictQuery(service_id=service.id, start=_at(22), duration_min=240))

    assert result.conflict is True
    assert result.reason == ConflictReason.OVERLAP
    assert result.conflicting_booking_id == early.id


def test_long_booking_from_previous_evening_blocks_early_start(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant)
    overnight = factory.booking(service, datetime(2031, 3, 16, 21, 0), 300)

    blocked = check_conflict(db, ConflictQuery(service_id=service.id, start=_at(1), duration_min=30))
    after = check_conflict(db, ConflictQuery(service_id=service.id, start=_at(2), duration_min=30))

    assert blocked.conflict is True
    assert blocked.conflicting_booking_id == overnight.id
    assert after.conflict is False


def test_daily_cap_is_scoped_to_the_requested_member(db, factory):
    tenant = factory.tenant()
    service = factory.service(tenant, max_daily_bookings=1)
    factory.member(tenant, "a")
    factory.member(tenant, "b")
    factory.booking(service, _at(9), 60, assigned_team_member_id="a")

    same_member = check_conflict(
        db,
        ConflictQuery(service_id=service.id, start=_at(14), duration_min=60, team_member_id="a"),
    )
    other_member = check_conflict(
        db,
        ConflictQuery(service_id=service.id, start=_at(14), duration_min=60, team_member_id="b"),
    )
    whole_service = check_conflict(db, ConflictQuery(service_id=service.id, start=_at(14), duration_min=60))

    assert same_member.reason == ConflictReason.DAILY_CAP
    assert other_member.conflict is False
    assert whole_service.reason == ConflictReason.DAILY_CAP


def test_store_outage_is_not_reported_as_free_slot(db, factory, break_store):
    tenant = factory.tenant()
    service = factory.service(tenant)
    break_store()

    with pytest.raises(UpstreamFailure):
        check_conflict(db, ConflictQuery(service_id=service.id, start=_at(10), duration_min=60))


def test_booking_read_outage_propagates(db, factory, break_store):
    tenant = factory.tenant()
    service = factory.service(tenant)
    db.get(Service, service.id)
    break_store("bookings")

    with pytest.raises(UpstreamFailure):
        check_conflict(db, ConflictQuery(service_id=service.id, start=_at(10), duration_min=60))
