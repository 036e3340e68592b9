import uuid
from datetime import datetime, time, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

SERVICE_ACTIVE = "ACTIVE"
SERVICE_INACTIVE = "INACTIVE"

BOOKING_STATUSES = {"PENDING", "CONFIRMED", "COMPLETED", "CANCELLED"}
ACTIVE_BOOKING_STATUSES = ("PENDING", "CONFIRMED")
ALLOWED_BOOKING_STATUS_TRANSITIONS = {
    "PENDING": {"CONFIRMED", "CANCELLED"},
    "CONFIRMED": {"COMPLETED", "CANCELLED"},
    "COMPLETED": set(),
    "CANCELLED": set(),
}

SERVICE_REQUEST_STATUSES = {
    "SUBMITTED",
    "IN_REVIEW",
    "APPROVED",
    "ASSIGNED",
    "IN_PROGRESS",
    "COMPLETED",
    "CANCELLED",
}
ALLOWED_SERVICE_REQUEST_TRANSITIONS = {
    "SUBMITTED": {"IN_REVIEW", "APPROVED", "ASSIGNED", "IN_PROGRESS", "CANCELLED"},
    "IN_REVIEW": {"APPROVED", "ASSIGNED", "IN_PROGRESS", "CANCELLED"},
    "APPROVED": {"ASSIGNED", "IN_PROGRESS", "CANCELLED"},
    "ASSIGNED": {"IN_PROGRESS", "CANCELLED"},
    "IN_PROGRESS": {"COMPLETED", "CANCELLED"},
    "COMPLETED": set(),
    "CANCELLED": set(),
}
TERMINAL_SERVICE_REQUEST_STATUSES = ("COMPLETED", "CANCELLED")
WORKLOAD_STATUSES = ("ASSIGNED", "IN_PROGRESS")

TEAM_MEMBER_ACTIVE = "active"
TEAM_MEMBER_INACTIVE = "inactive"


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Tenant(Base):
    __tablename__ = "tenants"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(80), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(120))


class Client(Base):
    __tablename__ = "clients"
    __table_args__ = (UniqueConstraint("tenant_id", "email", name="uq_clients_tenant_email"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(200))
    email: Mapped[str] = mapped_column(String(200), index=True)


class Service(Base):
    __tablename__ = "services"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(200))
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=SERVICE_ACTIVE, index=True)
    base_price: Mapped[float] = mapped_column(Numeric(10, 2), default=0)
    standard_duration_min: Mapped[int] = mapped_column(Integer, default=60)
    buffer_time_min: Mapped[int] = mapped_column(Integer, default=0)
    # 0 means no daily cap
    max_daily_bookings: Mapped[int] = mapped_column(Integer, default=0)
    booking_enabled: Mapped[bool] = mapped_column(Boolean, default=True)


class TeamMember(Base):
    __tablename__ = "team_members"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(120))
    email: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=TEAM_MEMBER_ACTIVE, index=True)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True)
    specialties: Mapped[list] = mapped_column(JSON, default=list)


class ServiceRequest(Base):
    __tablename__ = "service_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    client_id: Mapped[str] = mapped_column(ForeignKey("clients.id"), index=True)
    service_id: Mapped[str] = mapped_column(ForeignKey("services.id"), index=True)
    title: Mapped[str] = mapped_column(String(300))
    description: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    priority: Mapped[str] = mapped_column(String(16), default="MEDIUM")
    status: Mapped[str] = mapped_column(String(32), default="SUBMITTED", index=True)
    assigned_team_member_id: Mapped[str | None] = mapped_column(
        ForeignKey("team_members.id"), nullable=True, index=True
    )
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    assigned_by: Mapped[str | None] = mapped_column(String(120), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)

    service = relationship("Service")
    client = relationship("Client")


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    service_id: Mapped[str] = mapped_column(ForeignKey("services.id"), index=True)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    duration_min: Mapped[int] = mapped_column(Integer, default=60)
    status: Mapped[str] = mapped_column(String(16), default="PENDING", index=True)
    assigned_team_member_id: Mapped[str | None] = mapped_column(
        ForeignKey("team_members.id"), nullable=True, index=True
    )
    service_request_id: Mapped[str | None] = mapped_column(
        ForeignKey("service_requests.id"), nullable=True, unique=True
    )
    price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str | None] = mapped_column(String(8), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    service = relationship("Service")


class BusinessHours(Base):
    __tablename__ = "business_hours"
    __table_args__ = (UniqueConstraint("tenant_id", "weekday", name="uq_business_hours_tenant_weekday"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    # Monday=0 .. Sunday=6
    weekday: Mapped[int] = mapped_column(Integer)
    is_working_day: Mapped[bool] = mapped_column(Boolean, default=True)
    start_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    end_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    break_start: Mapped[time | None] = mapped_column(Time, nullable=True)
    break_end: Mapped[time | None] = mapped_column(Time, nullable=True)


class BlackoutPeriod(Base):
    __tablename__ = "blackout_periods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    service_id: Mapped[str | None] = mapped_column(ForeignKey("services.id"), nullable=True, index=True)
    team_member_id: Mapped[str | None] = mapped_column(
        ForeignKey("team_members.id"), nullable=True, index=True
    )
    start_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    end_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    reason: Mapped[str | None] = mapped_column(String(200), nullable=True)


class ExchangeRate(Base):
    __tablename__ = "exchange_rates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    base: Mapped[str] = mapped_column(String(8), index=True)
    target: Mapped[str] = mapped_column(String(8), index=True)
    rate: Mapped[float] = mapped_column(Numeric(18, 8))
    fetched_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)


class TenantSetting(Base):
    __tablename__ = "tenant_settings"
    __table_args__ = (UniqueConstraint("tenant_id", "key", name="uq_tenant_settings_tenant_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    key: Mapped[str] = mapped_column(String(80))
    value_json: Mapped[str] = mapped_column(String(4000), default="{}")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class ServiceRequestStatusEvent(Base):
    __tablename__ = "service_request_status_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    service_request_id: Mapped[str] = mapped_column(ForeignKey("service_requests.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    from_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str] = mapped_column(String(32))
    actor: Mapped[str | None] = mapped_column(String(120), nullable=True)
    note: Mapped[str | None] = mapped_column(String(300), nullable=True)


class BookingStatusEvent(Base):
    __tablename__ = "booking_status_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    from_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    to_status: Mapped[str] = mapped_column(String(16))
    actor: Mapped[str | None] = mapped_column(String(120), nullable=True)
    note: Mapped[str | None] = mapped_column(String(300), nullable=True)
