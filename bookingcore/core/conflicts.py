from dataclasses import dataclass
from datetime import datetime
from enum import Enum

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..errors import store_call
from ..models import ACTIVE_BOOKING_STATUSES, SERVICE_ACTIVE, Booking, Service
from .availability import (
    add_minutes,
    get_service,
    list_busy_windows,
    local_day_bounds,
    longest_booking_minutes,
    overlaps,
    to_utc_naive,
)

logger = structlog.get_logger("bookingcore.conflicts")


class ConflictReason(str, Enum):
    SERVICE_INACTIVE = "SERVICE_INACTIVE"
    OVERLAP = "OVERLAP"
    DAILY_CAP = "DAILY_CAP"
    # reserved until slot checks consult business hours
    OUTSIDE_BUSINESS_HOURS = "OUTSIDE_BUSINESS_HOURS"


@dataclass(frozen=True)
class ConflictQuery:
    service_id: str
    start: datetime
    duration_min: int
    exclude_booking_id: str | None = None
    team_member_id: str | None = None
    tenant_id: int | None = None


@dataclass(frozen=True)
class ConflictResult:
    conflict: bool
    reason: ConflictReason | None = None
    conflicting_booking_id: str | None = None
    info: dict | None = None

    @classmethod
    def clear(cls) -> "ConflictResult":
        return cls(conflict=False)


def is_bookable(service: Service | None) -> bool:
    if service is None:
        return False
    return str(service.status or "").upper() == SERVICE_ACTIVE and bool(service.booking_enabled)


def count_day_bookings(
    db: Session,
    service: Service,
    instant: datetime,
    exclude_booking_id: str | None = None,
    team_member_id: str | None = None,
) -> int:
    """Active bookings overlapping the local day of ``instant``, scoped like the overlap check."""
    day_start, day_end = local_day_bounds(instant)
    # a booking that started on an earlier day still counts if it runs into this one
    lookback = longest_booking_minutes(db, service, team_member_id)
    stmt = select(Booking.id, Booking.scheduled_at, Booking.duration_min).where(
        Booking.service_id == service.id,
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        Booking.scheduled_at < day_end,
        Booking.scheduled_at >= add_minutes(day_start, -lookback),
    )
    if team_member_id:
        stmt = stmt.where(Booking.assigned_team_member_id == team_member_id)
    if exclude_booking_id:
        stmt = stmt.where(Booking.id != exclude_booking_id)
    with store_call("bookings.count"):
        rows = db.execute(stmt).all()
    return sum(
        1
        for _id, scheduled_at, duration in rows
        if overlaps(scheduled_at, add_minutes(scheduled_at, int(duration)), day_start, day_end)
    )


def check_conflict(db: Session, query: ConflictQuery) -> ConflictResult:
    service = get_service(db, query.service_id, query.tenant_id)
    if not is_bookable(service):
        return ConflictResult(conflict=True, reason=ConflictReason.SERVICE_INACTIVE)

    start = to_utc_naive(query.start)
    end = add_minutes(start, int(query.duration_min))

    max_daily = int(service.max_daily_bookings or 0)
    if max_daily > 0:
        booked = count_day_bookings(
            db,
            service,
            start,
            exclude_booking_id=query.exclude_booking_id,
            team_member_id=query.team_member_id,
        )
        if booked >= max_daily:
            logger.info(
                "booking_conflict",
                reason=ConflictReason.DAILY_CAP.value,
                service_id=service.id,
                booked=booked,
                max_daily=max_daily,
            )
            return ConflictResult(
                conflict=True,
                reason=ConflictReason.DAILY_CAP,
                info={"max_daily": max_daily},
            )

    busy = list_busy_windows(
        db,
        service,
        start,
        end,
        team_member_id=query.team_member_id,
        exclude_booking_id=query.exclude_booking_id,
    )
    for window in busy:
        if overlaps(start, end, window.start, window.end):
            logger.info(
                "booking_conflict",
                reason=ConflictReason.OVERLAP.value,
                service_id=service.id,
                conflicting_booking_id=window.booking_id,
            )
            return ConflictResult(
                conflict=True,
                reason=ConflictReason.OVERLAP,
                conflicting_booking_id=window.booking_id,
            )
    return ConflictResult.clear()
