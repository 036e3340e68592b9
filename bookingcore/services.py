from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .core.assignment import auto_assign, get_service_request
from .core.availability import get_service, to_local, to_utc_naive
from .core.cache import KeyValueCache
from .core.conflicts import ConflictQuery, ConflictReason, ConflictResult, check_conflict, is_bookable
from .core.events import EventPublisher, get_publisher
from .core.pricing import PriceQuery, PricingOptions, calculate_price
from .errors import InvalidState, NotFound, SchedulingConflict, UpstreamFailure, store_call
from .models import (
    ACTIVE_BOOKING_STATUSES,
    ALLOWED_BOOKING_STATUS_TRANSITIONS,
    ALLOWED_SERVICE_REQUEST_TRANSITIONS,
    BOOKING_STATUSES,
    SERVICE_REQUEST_STATUSES,
    Booking,
    BookingStatusEvent,
    Client,
    Service,
    ServiceRequest,
    ServiceRequestStatusEvent,
    Tenant,
    utc_now_naive,
)

logger = structlog.get_logger("bookingcore.services")

REQUEST_PRIORITIES = {"LOW", "MEDIUM", "HIGH", "URGENT"}


def get_or_create_tenant(db: Session, slug: str, name: str | None = None) -> Tenant:
    normalized_slug = slug.strip().lower()
    try:
        with store_call("tenant.upsert"):
            tenant = db.execute(
                select(Tenant).where(Tenant.slug == normalized_slug)
            ).scalar_one_or_none()
            if tenant:
                return tenant

            tenant = Tenant(slug=normalized_slug, name=(name or normalized_slug).strip())
            db.add(tenant)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return db.execute(select(Tenant).where(Tenant.slug == normalized_slug)).scalar_one()
            db.refresh(tenant)
    except UpstreamFailure:
        db.rollback()
        raise
    return tenant


def get_or_create_client(db: Session, tenant_id: int, name: str, email: str) -> Client:
    normalized_email = email.strip().lower()
    try:
        with store_call("client.upsert"):
            obj = db.execute(
                select(Client).where(Client.tenant_id == tenant_id, Client.email == normalized_email)
            ).scalar_one_or_none()
            if obj:
                return obj
            obj = Client(tenant_id=tenant_id, name=name.strip(), email=normalized_email)
            db.add(obj)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return db.execute(
                    select(Client).where(
                        Client.tenant_id == tenant_id, Client.email == normalized_email
                    )
                ).scalar_one()
            db.refresh(obj)
    except UpstreamFailure:
        db.rollback()
        raise
    return obj


def _lock_service(db: Session, service_id: str) -> None:
    # serialises concurrent writers on the same service where the backend supports row locks
    db.execute(select(Service.id).where(Service.id == service_id).with_for_update()).first()


def _raise_on_conflict(result: ConflictResult) -> None:
    if result.conflict:
        raise SchedulingConflict(result)


def add_booking_status_event(
    db: Session,
    booking: Booking,
    from_status: str | None,
    to_status: str,
    actor: str | None = None,
    note: str | None = None,
) -> BookingStatusEvent:
    event = BookingStatusEvent(
        tenant_id=booking.tenant_id,
        booking_id=booking.id,
        from_status=from_status,
        to_status=to_status,
        actor=(actor or "").strip() or None,
        note=(note or "").strip() or None,
        created_at=utc_now_naive(),
    )
    db.add(event)
    db.flush()
    return event


def add_service_request_status_event(
    db: Session,
    request: ServiceRequest,
    from_status: str | None,
    to_status: str,
    actor: str | None = None,
    note: str | None = None,
) -> ServiceRequestStatusEvent:
    event = ServiceRequestStatusEvent(
        tenant_id=request.tenant_id,
        service_request_id=request.id,
        from_status=from_status,
        to_status=to_status,
        actor=(actor or "").strip() or None,
        note=(note or "").strip() or None,
        created_at=utc_now_naive(),
    )
    db.add(event)
    db.flush()
    return event


def get_booking(db: Session, tenant_id: int, booking_id: str) -> Booking:
    with store_call("booking.read"):
        booking = db.get(Booking, booking_id)
    if booking is None or booking.tenant_id != tenant_id:
        raise NotFound("Booking", booking_id)
    return booking


def create_booking(
    db: Session,
    tenant_id: int,
    service_id: str,
    scheduled_at: datetime,
    duration_min: int | None = None,
    team_member_id: str | None = None,
    service_request_id: str | None = None,
    pricing: PricingOptions | None = None,
    cache: KeyValueCache | None = None,
    publisher: EventPublisher | None = None,
    actor: str | None = None,
) -> Booking:
    service = get_service(db, service_id, tenant_id)
    if service is None:
        raise NotFound("Service", service_id)
    if service_request_id is not None:
        get_service_request(db, service_request_id, tenant_id)

    start = to_utc_naive(scheduled_at)
    resolved_duration = int(duration_min or service.standard_duration_min or 60)
    if resolved_duration <= 0:
        raise InvalidState("duration_min must be > 0")

    query = ConflictQuery(
        service_id=service.id,
        start=start,
        duration_min=resolved_duration,
        team_member_id=team_member_id,
        tenant_id=tenant_id,
    )
    if not is_bookable(service):
        raise SchedulingConflict(ConflictResult(conflict=True, reason=ConflictReason.SERVICE_INACTIVE))
    quote = calculate_price(
        db,
        PriceQuery(service_id=service.id, scheduled_at=start, duration_min=resolved_duration, tenant_id=tenant_id),
        pricing,
        cache,
    )
    if not quote.is_usable:
        raise InvalidState("Invalid price quote")

    try:
        with store_call("booking.create"):
            _lock_service(db, service.id)
            _raise_on_conflict(check_conflict(db, query))

            booking = Booking(
                tenant_id=tenant_id,
                service_id=service.id,
                scheduled_at=start,
                duration_min=resolved_duration,
                status="PENDING",
                assigned_team_member_id=team_member_id,
                service_request_id=service_request_id,
                price_cents=quote.total_cents,
                currency=quote.currency,
            )
            db.add(booking)
            db.flush()
            # re-validate inside the write transaction; another writer may have committed meanwhile
            _raise_on_conflict(
                check_conflict(
                    db,
                    ConflictQuery(
                        service_id=service.id,
                        start=start,
                        duration_min=resolved_duration,
                        team_member_id=team_member_id,
                        tenant_id=tenant_id,
                        exclude_booking_id=booking.id,
                    ),
                )
            )
            add_booking_status_event(db, booking, None, "PENDING", actor=actor, note="created")
            db.commit()
            db.refresh(booking)
    except IntegrityError:
        db.rollback()
        if service_request_id is None:
            raise
        existing = db.execute(
            select(Booking).where(
                Booking.tenant_id == tenant_id,
                Booking.service_request_id == service_request_id,
            )
        ).scalar_one_or_none()
        if existing:
            return existing
        raise
    except (SchedulingConflict, UpstreamFailure):
        db.rollback()
        raise

    logger.info(
        "booking_created",
        booking_id=booking.id,
        service_id=service.id,
        scheduled_at=start.isoformat(),
        price_cents=booking.price_cents,
    )
    events = publisher or get_publisher()
    events.emit_availability_update(service.id, to_local(start).date())
    events.audit("booking:create", actor=actor, target_id=booking.id, details={"service_id": service.id})
    return booking


def reschedule_booking(
    db: Session,
    tenant_id: int,
    booking_id: str,
    new_start: datetime,
    actor: str | None = None,
    publisher: EventPublisher | None = None,
) -> Booking:
    booking = get_booking(db, tenant_id, booking_id)
    if booking.status not in ACTIVE_BOOKING_STATUSES:
        raise InvalidState(f"Cannot reschedule a {booking.status.lower()} booking")

    old_start = booking.scheduled_at
    start = to_utc_naive(new_start)
    query = ConflictQuery(
        service_id=booking.service_id,
        start=start,
        duration_min=int(booking.duration_min),
        exclude_booking_id=booking.id,
        team_member_id=booking.assigned_team_member_id,
        tenant_id=tenant_id,
    )
    try:
        with store_call("booking.reschedule"):
            _lock_service(db, booking.service_id)
            _raise_on_conflict(check_conflict(db, query))
            booking.scheduled_at = start
            db.flush()
            _raise_on_conflict(check_conflict(db, query))
            add_booking_status_event(
                db,
                booking,
                booking.status,
                booking.status,
                actor=actor,
                note=f"rescheduled from {old_start.isoformat()}",
            )
            db.commit()
            db.refresh(booking)
    except (SchedulingConflict, UpstreamFailure):
        db.rollback()
        raise

    logger.info(
        "booking_rescheduled",
        booking_id=booking.id,
        old_start=old_start.isoformat(),
        new_start=start.isoformat(),
    )
    events = publisher or get_publisher()
    if booking.service_request_id:
        events.emit_service_request_update(booking.service_request_id, action="rescheduled")
    events.emit_availability_update(booking.service_id, to_local(old_start).date())
    events.emit_availability_update(booking.service_id, to_local(start).date())
    events.audit(
        "booking:reschedule",
        actor=actor,
        target_id=booking.id,
        details={"scheduled_at": start.isoformat()},
    )
    return booking


def reschedule_service_request_booking(
    db: Session,
    tenant_id: int,
    service_request_id: str,
    new_start: datetime,
    actor: str | None = None,
    publisher: EventPublisher | None = None,
) -> Booking:
    get_service_request(db, service_request_id, tenant_id)
    with store_call("booking.read"):
        booking = db.execute(
            select(Booking).where(
                Booking.tenant_id == tenant_id,
                Booking.service_request_id == service_request_id,
            )
        ).scalar_one_or_none()
    if booking is None:
        raise InvalidState("No linked booking to reschedule")
    return reschedule_booking(db, tenant_id, booking.id, new_start, actor=actor, publisher=publisher)


def update_booking_status(
    db: Session,
    tenant_id: int,
    booking_id: str,
    status: str,
    actor: str | None = None,
    note: str | None = None,
    publisher: EventPublisher | None = None,
) -> Booking:
    normalized = (status or "").strip().upper()
    if normalized not in BOOKING_STATUSES:
        raise InvalidState("Invalid booking status")

    booking = get_booking(db, tenant_id, booking_id)
    current = booking.status
    if normalized == current:
        return booking
    if normalized not in ALLOWED_BOOKING_STATUS_TRANSITIONS.get(current, set()):
        raise InvalidState(f"Invalid booking status transition: {current} -> {normalized}")

    try:
        with store_call("booking.status"):
            booking.status = normalized
            add_booking_status_event(db, booking, current, normalized, actor=actor, note=note)
            db.commit()
            db.refresh(booking)
    except UpstreamFailure:
        db.rollback()
        raise

    if normalized in {"CANCELLED", "COMPLETED"}:
        (publisher or get_publisher()).emit_availability_update(
            booking.service_id, to_local(booking.scheduled_at).date()
        )
    return booking


def create_service_request(
    db: Session,
    tenant_id: int,
    client_name: str,
    client_email: str,
    service_id: str,
    title: str | None = None,
    description: str | None = None,
    priority: str = "MEDIUM",
    cache: KeyValueCache | None = None,
    publisher: EventPublisher | None = None,
) -> ServiceRequest:
    service = get_service(db, service_id, tenant_id)
    if service is None or str(service.status).upper() != "ACTIVE":
        raise InvalidState("Service not found or inactive")

    normalized_priority = (priority or "MEDIUM").strip().upper()
    if normalized_priority not in REQUEST_PRIORITIES:
        raise InvalidState("Invalid priority")

    client = get_or_create_client(db, tenant_id, client_name, client_email)
    resolved_title = (title or "").strip() or (
        f"{service.name} request - {client.name} - {utc_now_naive().date().isoformat()}"
    )
    try:
        with store_call("service_request.create"):
            request = ServiceRequest(
                tenant_id=tenant_id,
                client_id=client.id,
                service_id=service.id,
                title=resolved_title,
                description=(description or "").strip() or None,
                priority=normalized_priority,
                status="SUBMITTED",
            )
            db.add(request)
            db.flush()
            add_service_request_status_event(
                db, request, None, "SUBMITTED", actor=client.email, note="created"
            )
            db.commit()
            db.refresh(request)
    except UpstreamFailure:
        db.rollback()
        raise

    events = publisher or get_publisher()
    try:
        request = auto_assign(db, request.id, cache=cache, publisher=events)
    except UpstreamFailure as exc:
        # the request is already stored; it stays in the manual assignment queue
        logger.warning("auto_assign_failed", service_request_id=request.id, error=str(exc))
        db.rollback()
        db.refresh(request)

    events.audit(
        "service-request:create",
        actor=client.email,
        target_id=request.id,
        details={"service_id": service.id},
    )
    return request


def update_service_request_status(
    db: Session,
    tenant_id: int,
    service_request_id: str,
    status: str,
    actor: str | None = None,
    publisher: EventPublisher | None = None,
) -> ServiceRequest:
    normalized = (status or "").strip().upper()
    if normalized not in SERVICE_REQUEST_STATUSES:
        raise InvalidState("Invalid service request status")

    request = get_service_request(db, service_request_id, tenant_id)
    current = request.status
    if normalized == current:
        return request
    if normalized not in ALLOWED_SERVICE_REQUEST_TRANSITIONS.get(current, set()):
        raise InvalidState(f"Invalid status transition: {current} -> {normalized}")

    try:
        with store_call("service_request.status"):
            request.status = normalized
            add_service_request_status_event(db, request, current, normalized, actor=actor)
            db.commit()
            db.refresh(request)
    except UpstreamFailure:
        db.rollback()
        raise

    (publisher or get_publisher()).emit_service_request_update(request.id, status=normalized)
    return request
