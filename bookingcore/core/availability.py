"""Bookable slot generation for a service over a date range.

All instants are stored as naive UTC. Business hours, weekdays and
holidays are evaluated in the configured business timezone.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from functools import lru_cache
from zoneinfo import ZoneInfo

import holidays
import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import NotFound, store_call
from ..models import (
    ACTIVE_BOOKING_STATUSES,
    BlackoutPeriod,
    Booking,
    BusinessHours,
    Service,
)

logger = structlog.get_logger("bookingcore.availability")


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime
    available: bool


@dataclass(frozen=True)
class DayHours:
    start: time
    end: time
    break_start: time | None = None
    break_end: time | None = None


@dataclass(frozen=True)
class WeeklyHours:
    """Opening hours keyed by weekday (Monday=0); a missing day is closed."""

    days: dict[int, DayHours]
    configured: bool = True

    def for_day(self, day: date) -> DayHours | None:
        return self.days.get(day.weekday())

    @classmethod
    def default(cls) -> "WeeklyHours":
        hours = DayHours(
            start=time(settings.DEFAULT_OPEN_HOUR, 0),
            end=time(settings.DEFAULT_CLOSE_HOUR, 0),
        )
        return cls(days={weekday: hours for weekday in range(7)}, configured=False)


@dataclass(frozen=True)
class BusyWindow:
    start: datetime
    end: datetime
    booking_id: str | None = None


def business_tz() -> tzinfo:
    name = settings.BUSINESS_TIMEZONE
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_local(value: datetime) -> datetime:
    aware = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return aware.astimezone(business_tz())


def local_to_utc_naive(day: date, at: time) -> datetime:
    local = datetime.combine(day, at).replace(tzinfo=business_tz())
    return to_utc_naive(local)


def add_minutes(value: datetime, minutes: int) -> datetime:
    return value + timedelta(minutes=int(minutes))


def overlaps(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> bool:
    return a_start < b_end and b_start < a_end


def local_day_bounds(instant: datetime) -> tuple[datetime, datetime]:
    """Return the naive-UTC [start, end) of the local calendar day holding ``instant``."""
    day = to_local(instant).date()
    return local_to_utc_naive(day, time.min), local_to_utc_naive(day + timedelta(days=1), time.min)


def buffered_window(
    start: datetime, duration_min: int, buffer_min: int, booking_id: str | None = None
) -> BusyWindow:
    return BusyWindow(
        start=add_minutes(start, -buffer_min),
        end=add_minutes(start, int(duration_min) + buffer_min),
        booking_id=booking_id,
    )


@lru_cache(maxsize=16)
def _holiday_calendar(country: str):
    return holidays.country_holidays(country)


def is_public_holiday(day: date) -> bool:
    country = settings.HOLIDAYS_COUNTRY
    if not country:
        return False
    return day in _holiday_calendar(country)


def get_weekly_hours(db: Session, tenant_id: int) -> WeeklyHours:
    with store_call("business_hours.read"):
        rows = (
            db.execute(select(BusinessHours).where(BusinessHours.tenant_id == tenant_id))
            .scalars()
            .all()
        )
    if not rows:
        return WeeklyHours.default()

    days: dict[int, DayHours] = {}
    for row in rows:
        if not row.is_working_day or row.start_time is None or row.end_time is None:
            continue
        if row.end_time <= row.start_time:
            continue
        days[int(row.weekday)] = DayHours(
            start=row.start_time,
            end=row.end_time,
            break_start=row.break_start,
            break_end=row.break_end,
        )
    return WeeklyHours(days=days, configured=True)


def get_service(db: Session, service_id: str, tenant_id: int | None = None) -> Service | None:
    with store_call("service.read"):
        service = db.get(Service, service_id)
    if service is None:
        return None
    if tenant_id is not None and service.tenant_id != tenant_id:
        return None
    return service


def longest_booking_minutes(
    db: Session, service: Service, team_member_id: str | None = None
) -> int:
    stmt = select(func.max(Booking.duration_min)).where(
        Booking.service_id == service.id,
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
    )
    if team_member_id:
        stmt = stmt.where(Booking.assigned_team_member_id == team_member_id)
    with store_call("bookings.read"):
        longest = db.execute(stmt).scalar()
    return int(longest or 0)


def list_busy_windows(
    db: Session,
    service: Service,
    window_start: datetime,
    window_end: datetime,
    team_member_id: str | None = None,
    exclude_booking_id: str | None = None,
) -> list[BusyWindow]:
    """Active bookings whose buffered window intersects ``[window_start, window_end)``.

    The read reaches back by the longest active booking so a long booking
    that started well before the range is still seen.
    """
    buffer_min = int(service.buffer_time_min or 0)
    lookback = buffer_min + longest_booking_minutes(db, service, team_member_id)
    stmt = select(Booking).where(
        Booking.service_id == service.id,
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        Booking.scheduled_at >= add_minutes(window_start, -lookback),
        Booking.scheduled_at <= add_minutes(window_end, buffer_min),
    )
    if team_member_id:
        stmt = stmt.where(Booking.assigned_team_member_id == team_member_id)
    if exclude_booking_id:
        stmt = stmt.where(Booking.id != exclude_booking_id)
    stmt = stmt.order_by(Booking.scheduled_at.asc(), Booking.id.asc())

    with store_call("bookings.read"):
        bookings = db.execute(stmt).scalars().all()
    windows = [
        buffered_window(b.scheduled_at, int(b.duration_min), buffer_min, booking_id=b.id)
        for b in bookings
    ]
    return [w for w in windows if overlaps(w.start, w.end, window_start, window_end)]


def list_blackouts(
    db: Session,
    service: Service,
    window_start: datetime,
    window_end: datetime,
    team_member_id: str | None = None,
) -> list[BusyWindow]:
    member_filter = BlackoutPeriod.team_member_id.is_(None)
    if team_member_id:
        member_filter = or_(member_filter, BlackoutPeriod.team_member_id == team_member_id)
    stmt = select(BlackoutPeriod).where(
        BlackoutPeriod.tenant_id == service.tenant_id,
        or_(BlackoutPeriod.service_id.is_(None), BlackoutPeriod.service_id == service.id),
        member_filter,
        BlackoutPeriod.start_at < window_end,
        BlackoutPeriod.end_at > window_start,
    )
    with store_call("blackouts.read"):
        rows = db.execute(stmt).scalars().all()
    return [BusyWindow(start=row.start_at, end=row.end_at) for row in rows]


def generate_day_slots(day: date, hours: DayHours, slot_minutes: int) -> list[tuple[datetime, datetime]]:
    """Contiguous slots inside opening hours; a slot running past closing time is dropped."""
    out: list[tuple[datetime, datetime]] = []
    day_end = local_to_utc_naive(day, hours.end)
    cursor = local_to_utc_naive(day, hours.start)
    step = timedelta(minutes=slot_minutes)
    while cursor < day_end:
        slot_end = cursor + step
        if slot_end > day_end:
            break
        out.append((cursor, slot_end))
        cursor = slot_end
    return out


def _iter_local_days(from_dt: datetime, to_dt: datetime):
    day = to_local(from_dt).date()
    last = to_local(to_dt).date()
    while day <= last:
        yield day
        day += timedelta(days=1)


def compute_availability(
    db: Session,
    service_id: str,
    from_dt: datetime,
    to_dt: datetime,
    slot_minutes: int | None = None,
    team_member_id: str | None = None,
    tenant_id: int | None = None,
    now: datetime | None = None,
) -> list[Slot]:
    service = get_service(db, service_id, tenant_id)
    if service is None:
        raise NotFound("Service", service_id)

    start = to_utc_naive(from_dt)
    end = to_utc_naive(to_dt)
    if end < start:
        return []

    resolved_minutes = max(
        settings.MIN_SLOT_MINUTES,
        int(slot_minutes or service.standard_duration_min or 60),
    )
    weekly = get_weekly_hours(db, service.tenant_id)
    if not weekly.configured:
        logger.info("business_hours_defaulted", service_id=service.id, tenant_id=service.tenant_id)

    day_start, _ = local_day_bounds(start)
    _, day_end = local_day_bounds(end)
    busy = list_busy_windows(db, service, day_start, day_end, team_member_id=team_member_id)
    blocked = list_blackouts(db, service, day_start, day_end, team_member_id=team_member_id)
    cutoff = to_utc_naive(now) if now is not None else None

    slots: list[Slot] = []
    for day in _iter_local_days(start, end):
        hours = weekly.for_day(day)
        if hours is None or is_public_holiday(day):
            continue
        pause = None
        if hours.break_start and hours.break_end and hours.break_end > hours.break_start:
            pause = (local_to_utc_naive(day, hours.break_start), local_to_utc_naive(day, hours.break_end))

        for slot_start, slot_end in generate_day_slots(day, hours, resolved_minutes):
            available = not any(overlaps(slot_start, slot_end, w.start, w.end) for w in busy)
            if available and blocked:
                available = not any(overlaps(slot_start, slot_end, w.start, w.end) for w in blocked)
            if available and pause:
                available = not overlaps(slot_start, slot_end, pause[0], pause[1])
            if available and cutoff is not None and slot_start < cutoff:
                available = False
            slots.append(Slot(start=slot_start, end=slot_end, available=available))
    return slots
