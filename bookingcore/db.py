from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import settings


def engine_connect_args(database_url: str, timeout_seconds: float) -> dict:
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": float(timeout_seconds)}
    if database_url.startswith("postgresql"):
        timeout_ms = int(float(timeout_seconds) * 1000)
        return {
            "connect_timeout": max(1, int(timeout_seconds)),
            "options": f"-c statement_timeout={timeout_ms}",
        }
    return {}


def make_engine(database_url: str, timeout_seconds: float | None = None) -> Engine:
    timeout = settings.DB_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
    eng = create_engine(
        database_url,
        echo=False,
        connect_args=engine_connect_args(database_url, timeout),
    )
    # WAL keeps readers unblocked while a booking write is in flight
    if database_url.startswith("sqlite"):
        @event.listens_for(eng, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    return eng


engine = make_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


class Base(DeclarativeBase):
    pass


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
