from fastapi import FastAPI
from sqlalchemy import text

from .api import router
from .config import settings
from .core.logging_config import setup_logging
from .core.middleware import RequestTracingMiddleware
from .db import Base, SessionLocal, engine

if settings.DATABASE_URL.startswith("sqlite") or bool(settings.DB_AUTO_CREATE_ALL):
    Base.metadata.create_all(bind=engine)
setup_logging()

app = FastAPI(
    title="BookingCore",
    description="Scheduling, pricing and staff assignment API",
    version="0.1.0",
)
app.add_middleware(RequestTracingMiddleware)
app.include_router(router)


@app.get("/ping")
def ping():
    return {"ok": True}


@app.get("/health")
def health():
    db_status = "ok"
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except Exception as exc:
        db_status = f"error: {exc.__class__.__name__}"
    return {"status": "ok" if db_status == "ok" else "degraded", "db": db_status}
