from datetime import datetime

from pydantic import BaseModel, Field, field_validator


class SlotOut(BaseModel):
    start: datetime
    end: datetime
    available: bool
    price_cents: int | None = None
    currency: str | None = None


class PeakRangeIn(BaseModel):
    start_hour: int = Field(ge=0, le=23)
    end_hour: int = Field(ge=1, le=24)


class PricingRequest(BaseModel):
    service_id: str
    scheduled_at: datetime
    duration_min: int | None = Field(default=None, ge=1, le=1440)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    booking_type: str | None = Field(default=None, max_length=32)
    promo_code: str | None = Field(default=None, max_length=64)
    weekend_surcharge_pct: float | None = Field(default=None, ge=0, le=5)
    peak_surcharge_pct: float | None = Field(default=None, ge=0, le=5)
    peak_hours: list[PeakRangeIn] | None = None


class PriceComponentOut(BaseModel):
    code: str
    label: str
    amount_cents: int


class PriceBreakdownOut(BaseModel):
    currency: str
    base_cents: int
    components: list[PriceComponentOut]
    subtotal_cents: int
    total_cents: int


class BookingCreate(BaseModel):
    service_id: str
    scheduled_at: datetime
    duration_min: int | None = Field(default=None, ge=1, le=1440)
    team_member_id: str | None = None
    service_request_id: str | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    booking_type: str | None = Field(default=None, max_length=32)
    promo_code: str | None = Field(default=None, max_length=64)


class BookingReschedule(BaseModel):
    scheduled_at: datetime


class BookingStatusUpdate(BaseModel):
    status: str = Field(min_length=3, max_length=20)
    note: str | None = Field(default=None, max_length=500)

    @field_validator("status")
    @classmethod
    def normalize_status(cls, value: str) -> str:
        return value.strip().upper()


class BookingOut(BaseModel):
    id: str
    service_id: str
    scheduled_at: datetime
    duration_min: int
    status: str
    assigned_team_member_id: str | None = None
    service_request_id: str | None = None
    price_cents: int | None = None
    currency: str | None = None
    created_at: datetime


class ServiceRequestCreate(BaseModel):
    service_id: str
    client_name: str = Field(min_length=2, max_length=120)
    client_email: str = Field(min_length=3, max_length=255)
    title: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=2000)
    priority: str = Field(default="MEDIUM", max_length=10)

    @field_validator("client_email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        normalized = value.strip().lower()
        if "@" not in normalized or normalized.startswith("@") or normalized.endswith("@"):
            raise ValueError("client_email must be a valid email address")
        return normalized


class ServiceRequestAssign(BaseModel):
    team_member_id: str


class ServiceRequestStatusUpdate(BaseModel):
    status: str = Field(min_length=3, max_length=20)


class ServiceRequestOut(BaseModel):
    id: str
    service_id: str
    client_id: str
    title: str
    description: str | None = None
    priority: str
    status: str
    assigned_team_member_id: str | None = None
    assigned_at: datetime | None = None
    assigned_by: str | None = None
    created_at: datetime


class TeamWorkloadOut(BaseModel):
    team_member_id: str
    name: str
    is_available: bool
    specialties: list[str]
    active_assignments: int
    available_slots: int
    availability_pct: int
