import uuid
from datetime import datetime, time
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from bookingcore.config import settings
from bookingcore.core.cache import DiskKeyValueCache
from bookingcore.core.events import EventPublisher
from bookingcore.db import Base
from bookingcore.models import (
    BlackoutPeriod,
    Booking,
    BusinessHours,
    Client,
    ExchangeRate,
    Service,
    ServiceRequest,
    TeamMember,
    Tenant,
)


@pytest.fixture(autouse=True)
def calendar_settings(monkeypatch):
    monkeypatch.setattr(settings, "BUSINESS_TIMEZONE", "UTC")
    monkeypatch.setattr(settings, "HOLIDAYS_COUNTRY", "")
    monkeypatch.setattr(settings, "EVENT_BUS_ENABLED", False)
    monkeypatch.setattr(settings, "MULTI_TENANCY_ENABLED", True)
    monkeypatch.setattr(settings, "DEFAULT_CURRENCY", "USD")
    monkeypatch.setattr(settings, "WEEKEND_SURCHARGE_PCT", 0.15)
    monkeypatch.setattr(settings, "PEAK_SURCHARGE_PCT", 0.10)
    monkeypatch.setattr(settings, "EMERGENCY_SURCHARGE_PCT", 0.50)


@pytest.fixture
def session_factory(tmp_path):
    db_path = tmp_path / "test_bookingcore.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def cache(tmp_path):
    kv = DiskKeyValueCache(str(tmp_path / "cache"))
    yield kv
    kv.close()


class RecordingPublisher(EventPublisher):
    def __init__(self):
        super().__init__(enabled=False)
        self.events: list[tuple[str, dict]] = []

    def emit(self, stream: str, event_type: str, payload: dict) -> bool:
        self.events.append((event_type, payload))
        return super().emit(stream, event_type, payload)

    def of_type(self, event_type: str) -> list[dict]:
        return [payload for kind, payload in self.events if kind == event_type]


@pytest.fixture
def publisher():
    return RecordingPublisher()


class Factory:
    def __init__(self, db):
        self.db = db

    def tenant(self, slug: str = "acme") -> Tenant:
        obj = Tenant(slug=slug, name=slug.title())
        self.db.add(obj)
        self.db.commit()
        return obj

    def service(self, tenant: Tenant, **overrides) -> Service:
        values = {
            "name": "Consultation",
            "category": "Advisory",
            "status": "ACTIVE",
            "base_price": Decimal("100.00"),
            "standard_duration_min": 60,
            "buffer_time_min": 0,
            "max_daily_bookings": 0,
            "booking_enabled": True,
        }
        values.update(overrides)
        obj = Service(tenant_id=tenant.id, **values)
        self.db.add(obj)
        self.db.commit()
        return obj

    def member(self, tenant: Tenant, member_id: str, name: str | None = None, **overrides) -> TeamMember:
        values = {"status": "active", "is_available": True, "specialties": []}
        values.update(overrides)
        obj = TeamMember(id=member_id, tenant_id=tenant.id, name=name or member_id.upper(), **values)
        self.db.add(obj)
        self.db.commit()
        return obj

    def client(self, tenant: Tenant, email: str = "client@example.com") -> Client:
        obj = Client(tenant_id=tenant.id, name="Client", email=email)
        self.db.add(obj)
        self.db.commit()
        return obj

    def request(self, tenant: Tenant, service: Service, **overrides) -> ServiceRequest:
        client = overrides.pop("client", None) or self.client(
            tenant, email=f"client-{uuid.uuid4().hex[:8]}@example.com"
        )
        values = {"title": "Request", "priority": "MEDIUM", "status": "SUBMITTED"}
        values.update(overrides)
        obj = ServiceRequest(tenant_id=tenant.id, client_id=client.id, service_id=service.id, **values)
        self.db.add(obj)
        self.db.commit()
        return obj

    def booking(self, service: Service, scheduled_at: datetime, duration_min: int = 60, **overrides) -> Booking:
        values = {"status": "PENDING"}
        values.update(overrides)
        obj = Booking(
            tenant_id=service.tenant_id,
            service_id=service.id,
            scheduled_at=scheduled_at,
            duration_min=duration_min,
            **values,
        )
        self.db.add(obj)
        self.db.commit()
        return obj

    def hours(
        self,
        tenant: Tenant,
        weekday: int,
        start: time | None = time(9, 0),
        end: time | None = time(17, 0),
        is_working_day: bool = True,
        break_start: time | None = None,
        break_end: time | None = None,
    ) -> BusinessHours:
        obj = BusinessHours(
            tenant_id=tenant.id,
            weekday=weekday,
            is_working_day=is_working_day,
            start_time=start,
            end_time=end,
            break_start=break_start,
            break_end=break_end,
        )
        self.db.add(obj)
        self.db.commit()
        return obj

    def blackout(self, tenant: Tenant, start_at: datetime, end_at: datetime, **overrides) -> BlackoutPeriod:
        obj = BlackoutPeriod(tenant_id=tenant.id, start_at=start_at, end_at=end_at, **overrides)
        self.db.add(obj)
        self.db.commit()
        return obj

    def rate(self, base: str, target: str, rate: str, fetched_at: datetime) -> ExchangeRate:
        obj = ExchangeRate(base=base, target=target, rate=Decimal(rate), fetched_at=fetched_at)
        self.db.add(obj)
        self.db.commit()
        return obj


@pytest.fixture
def factory(db):
    return Factory(db)


def _database_down(statement="") -> OperationalError:
    return OperationalError(str(statement), {}, Exception("database is locked"))


@pytest.fixture
def break_store(db, monkeypatch):
    """Make ``db`` fail reads like an unreachable database.

    ``break_store()`` fails every statement; ``break_store("exchange_rates")``
    only the ones that touch that table.
    """

    def _break(table: str | None = None) -> None:
        # Load committed (expired) objects now so the test's own attribute
        # access does not hit the broken store before the code under test.
        for obj in list(db.identity_map.values()):
            db.refresh(obj)
        real_execute = db.execute

        def execute(statement, *args, **kwargs):
            if table is None or table in str(statement):
                raise _database_down(statement)
            return real_execute(statement, *args, **kwargs)

        monkeypatch.setattr(db, "execute", execute)

    return _break
