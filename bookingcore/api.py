from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.orm import Session

from .config import settings
from .core.assignment import assign_manually, auto_assign, team_workload_summary
from .core.availability import compute_availability
from .core.cache import KeyValueCache, get_cache
from .core.events import EventPublisher, get_publisher
from .core.pricing import (
    PeakRange,
    PriceQuery,
    PricingOptions,
    calculate_price,
    code_table_promotions,
    emergency_rate_for_booking_type,
    quote_slots,
)
from .db import get_db
from .errors import InvalidState, NotFound, SchedulingConflict, UpstreamFailure
from .models import Booking, ServiceRequest, Tenant, utc_now_naive
from .schemas import (
    BookingCreate,
    BookingOut,
    BookingReschedule,
    BookingStatusUpdate,
    PriceBreakdownOut,
    PricingRequest,
    ServiceRequestAssign,
    ServiceRequestCreate,
    ServiceRequestOut,
    ServiceRequestStatusUpdate,
    SlotOut,
    TeamWorkloadOut,
)
from .services import (
    create_booking,
    create_service_request,
    get_or_create_tenant,
    reschedule_booking,
    reschedule_service_request_booking,
    update_booking_status,
    update_service_request_status,
)

logger = structlog.get_logger("bookingcore.api")

router = APIRouter(prefix="/api")


@contextmanager
def _http_errors() -> Iterator[None]:
    try:
        yield
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidState as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except SchedulingConflict as exc:
        reason = exc.reason.value if exc.reason is not None else None
        raise HTTPException(
            status_code=409,
            detail={
                "message": "Scheduling conflict detected",
                "reason": reason,
                "conflicting_booking_id": exc.conflicting_booking_id,
            },
        ) from exc
    except UpstreamFailure as exc:
        logger.error("upstream_failure", operation=exc.operation, error=str(exc))
        raise HTTPException(status_code=503, detail="Storage temporarily unavailable") from exc


def _resolve_tenant_or_default(db: Session, tenant_slug: Optional[str]) -> Tenant:
    slug = (tenant_slug or settings.DEFAULT_TENANT_SLUG).strip().lower()
    tenant_name = settings.DEFAULT_TENANT_NAME if slug == settings.DEFAULT_TENANT_SLUG else slug
    return get_or_create_tenant(db, slug=slug, name=tenant_name)


def get_current_tenant(
    db: Session = Depends(get_db),
    x_tenant_slug: Optional[str] = Header(default=None),
) -> Tenant:
    with _http_errors():
        return _resolve_tenant_or_default(db, x_tenant_slug)


def get_actor(x_actor_email: Optional[str] = Header(default=None)) -> Optional[str]:
    return (x_actor_email or "").strip().lower() or None


def _pricing_options(
    currency: Optional[str] = None,
    booking_type: Optional[str] = None,
    promo_code: Optional[str] = None,
    weekend_surcharge_pct: Optional[float] = None,
    peak_surcharge_pct: Optional[float] = None,
    peak_hours: Optional[list] = None,
) -> PricingOptions:
    return PricingOptions(
        currency=(currency or "").strip().upper() or None,
        weekend_surcharge_pct=weekend_surcharge_pct,
        peak_surcharge_pct=peak_surcharge_pct,
        peak_hours=(
            tuple(PeakRange(p.start_hour, p.end_hour) for p in peak_hours)
            if peak_hours is not None
            else None
        ),
        emergency_surcharge_pct=emergency_rate_for_booking_type(booking_type),
        promo_code=promo_code,
        resolve_promotion=code_table_promotions(),
    )


def _to_booking_out(b: Booking) -> BookingOut:
    return BookingOut(
        id=b.id,
        service_id=b.service_id,
        scheduled_at=b.scheduled_at,
        duration_min=b.duration_min,
        status=b.status,
        assigned_team_member_id=b.assigned_team_member_id,
        service_request_id=b.service_request_id,
        price_cents=b.price_cents,
        currency=b.currency,
        created_at=b.created_at,
    )


def _to_service_request_out(r: ServiceRequest) -> ServiceRequestOut:
    return ServiceRequestOut(
        id=r.id,
        service_id=r.service_id,
        client_id=r.client_id,
        title=r.title,
        description=r.description,
        priority=r.priority,
        status=r.status,
        assigned_team_member_id=r.assigned_team_member_id,
        assigned_at=r.assigned_at,
        assigned_by=r.assigned_by,
        created_at=r.created_at,
    )


@router.get("/availability", response_model=List[SlotOut])
def get_availability(
    service_id: str = Query(...),
    date_from: datetime = Query(..., alias="from"),
    date_to: datetime = Query(..., alias="to"),
    slot_minutes: Optional[int] = Query(None, ge=1, le=1440),
    team_member_id: Optional[str] = Query(None),
    include_price: bool = Query(False),
    currency: Optional[str] = Query(None, min_length=3, max_length=3),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    cache: KeyValueCache = Depends(get_cache),
):
    with _http_errors():
        slots = compute_availability(
            db,
            service_id,
            date_from,
            date_to,
            slot_minutes=slot_minutes,
            team_member_id=team_member_id,
            tenant_id=tenant.id,
            now=utc_now_naive(),
        )
        if not include_price:
            return [SlotOut(start=s.start, end=s.end, available=s.available) for s in slots]
        quoted = quote_slots(
            db,
            service_id,
            slots,
            duration_min=slot_minutes,
            options=_pricing_options(currency=currency),
            tenant_id=tenant.id,
            cache=cache,
        )
    return [SlotOut(**row) for row in quoted]


@router.post("/pricing", response_model=PriceBreakdownOut)
def quote_price(
    payload: PricingRequest,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    cache: KeyValueCache = Depends(get_cache),
):
    options = _pricing_options(
        currency=payload.currency,
        booking_type=payload.booking_type,
        promo_code=payload.promo_code,
        weekend_surcharge_pct=payload.weekend_surcharge_pct,
        peak_surcharge_pct=payload.peak_surcharge_pct,
        peak_hours=payload.peak_hours,
    )
    with _http_errors():
        breakdown = calculate_price(
            db,
            PriceQuery(
                service_id=payload.service_id,
                scheduled_at=payload.scheduled_at,
                duration_min=payload.duration_min,
                tenant_id=tenant.id,
            ),
            options,
            cache,
        )
    return PriceBreakdownOut(**breakdown.to_dict())


@router.post("/bookings", response_model=BookingOut)
def add_booking(
    payload: BookingCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    cache: KeyValueCache = Depends(get_cache),
    publisher: EventPublisher = Depends(get_publisher),
    actor: Optional[str] = Depends(get_actor),
):
    options = _pricing_options(
        currency=payload.currency,
        booking_type=payload.booking_type,
        promo_code=payload.promo_code,
    )
    with _http_errors():
        booking = create_booking(
            db,
            tenant.id,
            payload.service_id,
            payload.scheduled_at,
            duration_min=payload.duration_min,
            team_member_id=payload.team_member_id,
            service_request_id=payload.service_request_id,
            pricing=options,
            cache=cache,
            publisher=publisher,
            actor=actor,
        )
    return _to_booking_out(booking)


@router.post("/bookings/{booking_id}/reschedule", response_model=BookingOut)
def reschedule(
    booking_id: str,
    payload: BookingReschedule,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    publisher: EventPublisher = Depends(get_publisher),
    actor: Optional[str] = Depends(get_actor),
):
    with _http_errors():
        booking = reschedule_booking(
            db, tenant.id, booking_id, payload.scheduled_at, actor=actor, publisher=publisher
        )
    return _to_booking_out(booking)


@router.patch("/bookings/{booking_id}/status", response_model=BookingOut)
def change_booking_status(
    booking_id: str,
    payload: BookingStatusUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    publisher: EventPublisher = Depends(get_publisher),
    actor: Optional[str] = Depends(get_actor),
):
    with _http_errors():
        booking = update_booking_status(
            db,
            tenant.id,
            booking_id,
            payload.status,
            actor=actor,
            note=payload.note,
            publisher=publisher,
        )
    return _to_booking_out(booking)


@router.post("/service-requests", response_model=ServiceRequestOut)
def add_service_request(
    payload: ServiceRequestCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    cache: KeyValueCache = Depends(get_cache),
    publisher: EventPublisher = Depends(get_publisher),
):
    with _http_errors():
        request = create_service_request(
            db,
            tenant.id,
            client_name=payload.client_name,
            client_email=payload.client_email,
            service_id=payload.service_id,
            title=payload.title,
            description=payload.description,
            priority=payload.priority,
            cache=cache,
            publisher=publisher,
        )
    return _to_service_request_out(request)


@router.post("/service-requests/{service_request_id}/auto-assign", response_model=ServiceRequestOut)
def run_auto_assign(
    service_request_id: str,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    cache: KeyValueCache = Depends(get_cache),
    publisher: EventPublisher = Depends(get_publisher),
):
    with _http_errors():
        request = auto_assign(
            db, service_request_id, cache=cache, publisher=publisher, tenant_id=tenant.id
        )
    return _to_service_request_out(request)


@router.post("/service-requests/{service_request_id}/assign", response_model=ServiceRequestOut)
def assign_team_member(
    service_request_id: str,
    payload: ServiceRequestAssign,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    publisher: EventPublisher = Depends(get_publisher),
    actor: Optional[str] = Depends(get_actor),
):
    with _http_errors():
        request = assign_manually(
            db,
            service_request_id,
            payload.team_member_id,
            actor=actor,
            publisher=publisher,
            tenant_id=tenant.id,
        )
    return _to_service_request_out(request)


@router.patch("/service-requests/{service_request_id}/status", response_model=ServiceRequestOut)
def change_service_request_status(
    service_request_id: str,
    payload: ServiceRequestStatusUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    publisher: EventPublisher = Depends(get_publisher),
    actor: Optional[str] = Depends(get_actor),
):
    with _http_errors():
        request = update_service_request_status(
            db, tenant.id, service_request_id, payload.status, actor=actor, publisher=publisher
        )
    return _to_service_request_out(request)


@router.post("/service-requests/{service_request_id}/reschedule", response_model=BookingOut)
def reschedule_linked_booking(
    service_request_id: str,
    payload: BookingReschedule,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    publisher: EventPublisher = Depends(get_publisher),
    actor: Optional[str] = Depends(get_actor),
):
    with _http_errors():
        booking = reschedule_service_request_booking(
            db, tenant.id, service_request_id, payload.scheduled_at, actor=actor, publisher=publisher
        )
    return _to_booking_out(booking)


@router.get("/team/workload", response_model=List[TeamWorkloadOut])
def get_team_workload(
    max_concurrent: int = Query(3, ge=1, le=100),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    with _http_errors():
        rows = team_workload_summary(db, tenant.id, max_concurrent=max_concurrent)
    return [TeamWorkloadOut(**row) for row in rows]
